"""Due-card selection for review sessions.

Picks today's new cards and due reviews for a learner while enforcing the
daily quotas from their settings. Quotas are advisory: they are computed from
a count read at selection time, not reserved.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from studyloop.models.card import Card
from studyloop.models.user_srs_settings import UserSrsSettings
from studyloop.srs.store import CardStore

logger = logging.getLogger(__name__)


@dataclass
class DueSelection:
    """Cards selected for a session, before interleaving."""

    new_cards: list[Card] = field(default_factory=list)
    due_cards: list[Card] = field(default_factory=list)
    reviewed_today: int = 0

    @property
    def total(self) -> int:
        return len(self.new_cards) + len(self.due_cards)

    @property
    def cards(self) -> list[Card]:
        """New cards first, then due cards in due order."""
        return [*self.new_cards, *self.due_cards]


def local_midnight(now: datetime, timezone: str) -> datetime:
    """Return the start of ``now``'s day in ``timezone`` as naive UTC."""
    try:
        tz = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, counting the day from UTC midnight", timezone)
        tz = ZoneInfo("UTC")
    local_now = now.replace(tzinfo=UTC).astimezone(tz)
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(UTC).replace(tzinfo=None)


async def select_due(
    store: CardStore,
    user_id: int,
    now: datetime,
    srs_settings: UserSrsSettings,
) -> DueSelection:
    """Select new and due cards for a learner, honoring daily quotas.

    Args:
        store: Card persistence.
        user_id: The learner to select for.
        now: Current time (naive UTC).
        srs_settings: The learner's quota settings.

    Returns:
        A DueSelection whose total never exceeds ``max_reviews_per_day`` and
        whose new-card count never exceeds ``max_new_cards_per_day``.

    Raises:
        StoreUnavailable: the store could not be reached. Not retried here.
    """
    since = local_midnight(now, srs_settings.timezone or "UTC")
    reviewed_today = await store.count_reviews_since(user_id, since)
    remaining = max(0, srs_settings.max_reviews_per_day - reviewed_today)

    new_limit = max(0, min(srs_settings.max_new_cards_per_day, remaining))
    new_cards = (await store.list_new_cards(user_id, new_limit))[:new_limit]

    due_limit = remaining - len(new_cards)
    due_cards = (await store.list_due_cards(user_id, now, due_limit))[: max(0, due_limit)]

    selection = DueSelection(new_cards=new_cards, due_cards=due_cards, reviewed_today=reviewed_today)
    logger.info(
        "Selected for user %d: %d new + %d due = %d (%d reviewed today, %d remaining)",
        user_id,
        len(new_cards),
        len(due_cards),
        selection.total,
        reviewed_today,
        remaining,
    )
    return selection

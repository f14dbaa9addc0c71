"""Review processing: one grading event from rating to persisted state.

The card write is the source of truth. The review log and concept mastery
updates that follow it are best-effort: their failures are logged and
reported as warnings, never rolled into the card write.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from studyloop.config import utcnow
from studyloop.errors import InternalError, NotFoundError, SrsError, ValidationError
from studyloop.models.review_log import ReviewLog
from studyloop.srs.fsrs import FSRS, MemoryState
from studyloop.srs.mastery import apply_review, new_mastery, resolves_gaps
from studyloop.srs.states import CardState, Rating, check_transition
from studyloop.srs.store import CardStore, CardUpdate

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
# Largest duration the review log column can hold.
MAX_DURATION_MS = 2**31 - 1


@dataclass
class ReviewOutcome:
    """What the caller learns after a review is recorded."""

    card_id: int
    next_due: datetime
    scheduled_days: float
    new_state: CardState
    reps: int
    lapses: int
    warnings: list[str] = field(default_factory=list)


def elapsed_days_since(last_review: datetime | None, now: datetime) -> float:
    """Days since the last review; 0 for a card never reviewed or reviewed in the future."""
    if last_review is None:
        return 0.0
    return max(0.0, (now - last_review).total_seconds()) / SECONDS_PER_DAY


class ReviewProcessor:
    """Applies ratings to cards through the memory model and the card store."""

    def __init__(self, store: CardStore, fsrs: FSRS | None = None) -> None:
        self.store = store
        self.fsrs = fsrs or FSRS()

    async def submit_review(
        self,
        card_id: int,
        user_id: int,
        rating: int,
        duration_ms: int | None = None,
        now: datetime | None = None,
    ) -> ReviewOutcome:
        """Record a rating for a card and schedule its next review.

        Args:
            card_id: The card being graded.
            user_id: The learner grading it; must own the card.
            rating: 1=Again, 2=Hard, 3=Good, 4=Easy.
            duration_ms: How long the learner took, if known.
            now: Review time (defaults to utcnow).

        Returns:
            ReviewOutcome with the next due date and new state.

        Raises:
            ValidationError: malformed ids, rating or duration.
            NotFoundError: the card does not exist or belongs to someone else.
            StoreUnavailable: the card could not be read or written.
            InternalError: the stored card violates its invariants.
        """
        _validate(card_id, user_id, rating, duration_ms)
        now = now or utcnow()

        card = await self.store.get_card(card_id)
        if card is None or card.user_id != user_id:
            raise NotFoundError("Card not found")

        srs_settings = await self.store.get_settings(user_id)
        old_state = CardState(card.state)
        stability_before = card.stability
        difficulty_before = card.difficulty

        concepts = card.concepts
        memory = MemoryState(
            state=old_state,
            stability=stability_before,
            difficulty=difficulty_before,
            elapsed_days=elapsed_days_since(card.last_review, now),
        )
        try:
            result = self.fsrs.process_review(memory, rating, now, srs_settings.target_retention)
        except InternalError:
            logger.error("Refusing to schedule card %d for user %d: %r", card_id, user_id, memory)
            raise
        check_transition(old_state, result.state)

        lapsed = rating == Rating.AGAIN and old_state == CardState.REVIEW
        await self.store.save_review(
            card,
            CardUpdate(
                stability=result.stability,
                difficulty=result.difficulty,
                due_date=result.due_date,
                scheduled_days=result.scheduled_days,
                state=result.state,
                elapsed_days=0.0,
                reps=card.reps + 1,
                lapses=card.lapses + (1 if lapsed else 0),
                last_review=now,
            ),
        )
        logger.info(
            "Card %d rated %d: %s -> %s, next due in %.2f days",
            card_id,
            rating,
            old_state.value,
            result.state.value,
            result.scheduled_days,
        )

        outcome = ReviewOutcome(
            card_id=card_id,
            next_due=result.due_date,
            scheduled_days=result.scheduled_days,
            new_state=result.state,
            reps=card.reps,
            lapses=card.lapses,
        )

        log_entry = ReviewLog(
            card_id=card_id,
            user_id=user_id,
            rating=int(rating),
            duration_ms=duration_ms,
            state_before=old_state.value,
            stability_before=stability_before,
            stability_after=result.stability,
            difficulty_before=difficulty_before,
            difficulty_after=result.difficulty,
            reviewed_at=now,
        )
        try:
            await self.store.append_review_log(log_entry)
        except SrsError as exc:
            logger.warning("Review log write failed for card %d: %s", card_id, exc)
            outcome.warnings.append("review_log_failed")

        if concepts:
            await self._update_mastery(concepts, user_id, Rating(rating).is_correct, now, outcome)

        return outcome

    async def _update_mastery(
        self,
        concepts: list[str],
        user_id: int,
        correct: bool,
        now: datetime,
        outcome: ReviewOutcome,
    ) -> None:
        for concept_id in concepts:
            try:
                mastery = await self.store.get_mastery(user_id, concept_id)
                if mastery is None:
                    mastery = new_mastery(user_id, concept_id)
                apply_review(mastery, correct, now)
                await self.store.save_mastery(mastery)
                if resolves_gaps(mastery, correct):
                    resolved = await self.store.resolve_knowledge_gaps(user_id, concept_id, now)
                    if resolved:
                        logger.info("Resolved %d knowledge gap(s) for concept %s", resolved, concept_id)
            except SrsError as exc:
                logger.warning("Concept mastery update failed for %s: %s", concept_id, exc)
                outcome.warnings.append(f"mastery_failed:{concept_id}")


def _validate(card_id: int, user_id: int, rating: int, duration_ms: int | None) -> None:
    if not isinstance(card_id, int) or card_id <= 0:
        raise ValidationError("card_id is required")
    if not isinstance(user_id, int) or user_id <= 0:
        raise ValidationError("user_id is required")
    if isinstance(rating, bool) or not isinstance(rating, int) or rating not in {r.value for r in Rating}:
        raise ValidationError(f"rating must be 1-4, got {rating!r}")
    if duration_ms is not None and not 0 <= duration_ms <= MAX_DURATION_MS:
        raise ValidationError(f"duration_ms must be between 0 and {MAX_DURATION_MS}")

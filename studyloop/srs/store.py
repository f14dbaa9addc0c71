"""Card persistence boundary.

``CardStore`` is the only place the scheduling engine touches storage.
``SqlCardStore`` implements it on an async SQLAlchemy session; every call is
bounded by a timeout and infrastructure failures surface as
``StoreUnavailable`` instead of driver exceptions.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from studyloop.config import settings
from studyloop.errors import StaleCardError, StoreUnavailable
from studyloop.models.card import Card
from studyloop.models.concept_mastery import ConceptMastery, KnowledgeGap
from studyloop.models.course import Course
from studyloop.models.review_log import ReviewLog
from studyloop.models.user_srs_settings import UserSrsSettings
from studyloop.srs.states import CardState

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CardUpdate:
    """The memory-state fields written back after a review."""

    stability: float
    difficulty: float
    due_date: datetime
    scheduled_days: float
    state: CardState
    elapsed_days: float
    reps: int
    lapses: int
    last_review: datetime


class CardStore(ABC):
    """Abstract card persistence used by the selector and review processor."""

    @abstractmethod
    async def get_card(self, card_id: int) -> Card | None: ...

    @abstractmethod
    async def get_settings(self, user_id: int) -> UserSrsSettings:
        """Return the user's settings, or application defaults if none are stored."""

    @abstractmethod
    async def count_reviews_since(self, user_id: int, since: datetime) -> int: ...

    @abstractmethod
    async def list_new_cards(self, user_id: int, limit: int) -> list[Card]:
        """Cards in state ``new``, oldest first."""

    @abstractmethod
    async def list_due_cards(self, user_id: int, now: datetime, limit: int) -> list[Card]:
        """Non-new cards with ``due_date <= now``, earliest due first."""

    @abstractmethod
    async def count_due_by_state(self, user_id: int, now: datetime) -> dict[CardState, int]: ...

    @abstractmethod
    async def save_review(self, card: Card, changes: CardUpdate) -> Card:
        """Write a review's result, failing with StaleCardError on a concurrent update."""

    @abstractmethod
    async def append_review_log(self, entry: ReviewLog) -> None: ...

    @abstractmethod
    async def get_mastery(self, user_id: int, concept_id: str) -> ConceptMastery | None: ...

    @abstractmethod
    async def save_mastery(self, mastery: ConceptMastery) -> None: ...

    @abstractmethod
    async def resolve_knowledge_gaps(self, user_id: int, concept_id: str, now: datetime) -> int:
        """Mark open gaps for the concept resolved; return how many changed."""

    @abstractmethod
    async def get_course(self, course_id: int) -> Course | None: ...

    @abstractmethod
    async def card_positions(self, user_id: int, course_id: int) -> set[tuple[int, int]]:
        """(lesson_index, step_index) pairs that already have a card."""

    @abstractmethod
    async def add_cards(self, cards: list[Card]) -> None: ...


class SqlCardStore(CardStore):
    """CardStore backed by an async SQLAlchemy session."""

    def __init__(self, session: AsyncSession, timeout: float | None = None) -> None:
        self.session = session
        self.timeout = timeout if timeout is not None else settings.store_timeout_seconds

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except TimeoutError as exc:
            await self._rollback()
            raise StoreUnavailable(f"{operation} timed out after {self.timeout}s") from exc
        except StaleDataError as exc:
            await self._rollback()
            raise StaleCardError(f"{operation}: card was modified concurrently") from exc
        except (SQLAlchemyError, OverflowError, ValueError) as exc:
            # Covers driver errors and values the driver cannot bind.
            await self._rollback()
            logger.warning("%s failed: %s", operation, exc)
            raise StoreUnavailable(f"{operation} failed") from exc

    async def _rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback failed")

    async def get_card(self, card_id: int) -> Card | None:
        return await self._run("get_card", self.session.get(Card, card_id))

    async def get_settings(self, user_id: int) -> UserSrsSettings:
        stmt = select(UserSrsSettings).where(UserSrsSettings.user_id == user_id)
        result = await self._run("get_settings", self.session.execute(stmt))
        row = result.scalar_one_or_none()
        return row if row is not None else UserSrsSettings.defaults(user_id)

    async def count_reviews_since(self, user_id: int, since: datetime) -> int:
        stmt = select(func.count(ReviewLog.id)).where(
            and_(ReviewLog.user_id == user_id, ReviewLog.reviewed_at >= since)
        )
        result = await self._run("count_reviews_since", self.session.execute(stmt))
        return result.scalar() or 0

    async def list_new_cards(self, user_id: int, limit: int) -> list[Card]:
        if limit <= 0:
            return []
        stmt = (
            select(Card)
            .where(and_(Card.user_id == user_id, Card.state == CardState.NEW))
            .order_by(Card.created_at.asc(), Card.id.asc())
            .limit(limit)
        )
        result = await self._run("list_new_cards", self.session.execute(stmt))
        return list(result.scalars().all())

    async def list_due_cards(self, user_id: int, now: datetime, limit: int) -> list[Card]:
        if limit <= 0:
            return []
        stmt = (
            select(Card)
            .where(
                and_(
                    Card.user_id == user_id,
                    Card.state != CardState.NEW,
                    Card.due_date <= now,
                )
            )
            .order_by(Card.due_date.asc(), Card.id.asc())
            .limit(limit)
        )
        result = await self._run("list_due_cards", self.session.execute(stmt))
        return list(result.scalars().all())

    async def count_due_by_state(self, user_id: int, now: datetime) -> dict[CardState, int]:
        stmt = (
            select(Card.state, func.count(Card.id))
            .where(and_(Card.user_id == user_id, Card.due_date <= now))
            .group_by(Card.state)
        )
        result = await self._run("count_due_by_state", self.session.execute(stmt))
        counts = {state: 0 for state in CardState}
        for state, count in result.all():
            counts[CardState(state)] = count
        return counts

    async def save_review(self, card: Card, changes: CardUpdate) -> Card:
        card.stability = changes.stability
        card.difficulty = changes.difficulty
        card.due_date = changes.due_date
        card.scheduled_days = changes.scheduled_days
        card.state = changes.state
        card.elapsed_days = changes.elapsed_days
        card.reps = changes.reps
        card.lapses = changes.lapses
        card.last_review = changes.last_review
        await self._run("save_review", self.session.commit())
        return card

    async def append_review_log(self, entry: ReviewLog) -> None:
        self.session.add(entry)
        await self._run("append_review_log", self.session.commit())

    async def get_mastery(self, user_id: int, concept_id: str) -> ConceptMastery | None:
        stmt = select(ConceptMastery).where(
            and_(ConceptMastery.user_id == user_id, ConceptMastery.concept_id == concept_id)
        )
        result = await self._run("get_mastery", self.session.execute(stmt))
        return result.scalar_one_or_none()

    async def save_mastery(self, mastery: ConceptMastery) -> None:
        self.session.add(mastery)
        await self._run("save_mastery", self.session.commit())

    async def resolve_knowledge_gaps(self, user_id: int, concept_id: str, now: datetime) -> int:
        stmt = (
            update(KnowledgeGap)
            .where(
                and_(
                    KnowledgeGap.user_id == user_id,
                    KnowledgeGap.concept_id == concept_id,
                    KnowledgeGap.status == "open",
                )
            )
            .values(status="resolved", resolved_at=now, updated_at=now)
        )
        result = await self._run("resolve_knowledge_gaps", self.session.execute(stmt))
        await self._run("resolve_knowledge_gaps", self.session.commit())
        return result.rowcount or 0

    async def get_course(self, course_id: int) -> Course | None:
        return await self._run("get_course", self.session.get(Course, course_id))

    async def card_positions(self, user_id: int, course_id: int) -> set[tuple[int, int]]:
        stmt = select(Card.lesson_index, Card.step_index).where(
            and_(Card.user_id == user_id, Card.course_id == course_id)
        )
        result = await self._run("card_positions", self.session.execute(stmt))
        return {(lesson, step) for lesson, step in result.all()}

    async def add_cards(self, cards: list[Card]) -> None:
        if not cards:
            return
        self.session.add_all(cards)
        await self._run("add_cards", self.session.commit())

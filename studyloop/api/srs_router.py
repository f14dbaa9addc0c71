"""API routes for the review-card scheduler.

This layer is the engine's caller: it owns the retry policy for transient
store failures. Read paths retry ``StoreUnavailable`` with backoff; the
review write is never retried automatically.
"""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from studyloop.api.schemas import (
    CardResponse,
    DueCardsResponse,
    DueSummaryResponse,
    ErrorResponse,
    GenerateCardsResponse,
    IntervalPreviewResponse,
    SubmitReviewRequest,
    SubmitReviewResponse,
)
from studyloop.config import settings, utcnow
from studyloop.database import get_session
from studyloop.errors import NotFoundError, StoreUnavailable, Unauthenticated
from studyloop.models.card import Card
from studyloop.srs.card_generator import generate_cards
from studyloop.srs.fsrs import FSRS, MemoryState
from studyloop.srs.interleave import interleave, interleave_by_lesson
from studyloop.srs.review import ReviewProcessor, elapsed_days_since
from studyloop.srs.selector import select_due
from studyloop.srs.states import CardState, Rating
from studyloop.srs.store import CardStore, SqlCardStore

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/srs",
    tags=["srs"],
    responses={code: {"model": ErrorResponse} for code in (400, 401, 404, 500, 503)},
)


async def current_user_id(x_user_id: str | None = Header(default=None)) -> int:
    """Resolve the caller from the X-User-Id header set by the auth proxy."""
    if not x_user_id:
        raise Unauthenticated("Please log in to review cards")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise Unauthenticated("Invalid user identity") from None
    if user_id <= 0:
        raise Unauthenticated("Invalid user identity")
    return user_id


async def get_store(db: AsyncSession = Depends(get_session)) -> CardStore:
    return SqlCardStore(db)


def _read_retrying() -> AsyncRetrying:
    return AsyncRetrying(
        retry=retry_if_exception_type(StoreUnavailable),
        stop=stop_after_attempt(settings.store_retry_attempts),
        wait=wait_exponential(multiplier=0.2, max=settings.store_retry_max_wait_seconds),
        reraise=True,
    )


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC)


def card_response(card: Card) -> CardResponse:
    return CardResponse(
        id=card.id,
        user_id=card.user_id,
        course_id=card.course_id,
        lesson_index=card.lesson_index,
        step_index=card.step_index,
        card_type=card.card_type,
        front=card.front,
        back=card.back,
        stability=card.stability,
        difficulty=card.difficulty,
        elapsed_days=card.elapsed_days,
        scheduled_days=card.scheduled_days,
        reps=card.reps,
        lapses=card.lapses,
        state=CardState(card.state).value,
        due_date=_as_utc(card.due_date),
        last_review=_as_utc(card.last_review) if card.last_review else None,
        concept_ids=card.concepts,
    )


@router.get("/due", response_model=DueCardsResponse)
async def due_cards(
    user_id: int = Depends(current_user_id),
    store: CardStore = Depends(get_store),
) -> DueCardsResponse:
    """Get the cards due for review today, interleaved if the learner wants it."""
    now = utcnow()
    async for attempt in _read_retrying():
        with attempt:
            srs_settings = await store.get_settings(user_id)
            selection = await select_due(store, user_id, now, srs_settings)

    cards = selection.cards
    if srs_settings.interleave_reviews and len(cards) > 1:
        if settings.interleave_strategy == "lesson":
            cards = interleave_by_lesson(cards, now=now)
        else:
            cards = interleave(cards, now=now)

    return DueCardsResponse(
        cards_due=len(cards),
        new_cards=len(selection.new_cards),
        review_cards=len(selection.due_cards),
        cards=[card_response(card) for card in cards],
    )


@router.get("/summary", response_model=DueSummaryResponse)
async def due_summary(
    user_id: int = Depends(current_user_id),
    store: CardStore = Depends(get_store),
) -> DueSummaryResponse:
    """Count the cards due right now, by state."""
    async for attempt in _read_retrying():
        with attempt:
            counts = await store.count_due_by_state(user_id, utcnow())

    return DueSummaryResponse(
        total_due=sum(counts.values()),
        new=counts[CardState.NEW],
        learning=counts[CardState.LEARNING],
        review=counts[CardState.REVIEW],
        relearning=counts[CardState.RELEARNING],
    )


@router.post("/review", response_model=SubmitReviewResponse)
async def submit_review(
    request: SubmitReviewRequest,
    user_id: int = Depends(current_user_id),
    store: CardStore = Depends(get_store),
) -> SubmitReviewResponse:
    """Record a rating for one card."""
    processor = ReviewProcessor(store, FSRS())
    outcome = await processor.submit_review(
        card_id=request.card_id,
        user_id=user_id,
        rating=request.rating,
        duration_ms=request.duration_ms,
    )
    return SubmitReviewResponse(
        success=True,
        next_due=_as_utc(outcome.next_due),
        scheduled_days=outcome.scheduled_days,
        new_state=outcome.new_state.value,
        warnings=outcome.warnings,
    )


@router.get("/cards/{card_id}/preview", response_model=IntervalPreviewResponse)
async def preview_card(
    card_id: int,
    user_id: int = Depends(current_user_id),
    store: CardStore = Depends(get_store),
) -> IntervalPreviewResponse:
    """Show the interval each rating would give this card right now."""
    now = utcnow()
    async for attempt in _read_retrying():
        with attempt:
            card = await store.get_card(card_id)
            srs_settings = await store.get_settings(user_id)
    if card is None or card.user_id != user_id:
        raise NotFoundError("Card not found")

    memory = MemoryState(
        state=CardState(card.state),
        stability=card.stability,
        difficulty=card.difficulty,
        elapsed_days=elapsed_days_since(card.last_review, now),
    )
    labels = FSRS().preview_intervals(memory, now, srs_settings.target_retention)
    return IntervalPreviewResponse(
        card_id=card_id,
        again=labels[Rating.AGAIN],
        hard=labels[Rating.HARD],
        good=labels[Rating.GOOD],
        easy=labels[Rating.EASY],
    )


@router.post("/courses/{course_id}/cards", response_model=GenerateCardsResponse)
async def generate_course_cards(
    course_id: int,
    user_id: int = Depends(current_user_id),
    store: CardStore = Depends(get_store),
) -> GenerateCardsResponse:
    """Create review cards for a course's quiz-able steps."""
    result = await generate_cards(store, course_id, user_id)
    return GenerateCardsResponse(created=result.created, skipped=result.skipped)

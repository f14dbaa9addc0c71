"""Pydantic schemas for API request/response models."""

from datetime import datetime

from pydantic import BaseModel, Field

from studyloop.srs.review import MAX_DURATION_MS

# --- Cards ---


class CardResponse(BaseModel):
    """A card as handed to the review client."""

    id: int
    user_id: int
    course_id: int
    lesson_index: int
    step_index: int
    card_type: str
    front: str
    back: str
    stability: float
    difficulty: float
    elapsed_days: float
    scheduled_days: float
    reps: int
    lapses: int
    state: str
    due_date: datetime
    last_review: datetime | None = None
    concept_ids: list[str] = Field(default_factory=list)


class DueCardsResponse(BaseModel):
    """Cards due for review today."""

    cards_due: int
    new_cards: int
    review_cards: int
    cards: list[CardResponse]


class DueSummaryResponse(BaseModel):
    """Counts of cards due right now, by lifecycle state."""

    total_due: int
    new: int
    learning: int
    review: int
    relearning: int


class IntervalPreviewResponse(BaseModel):
    """The next interval each rating would give, as short labels."""

    card_id: int
    again: str
    hard: str
    good: str
    easy: str


# --- Reviews ---


class SubmitReviewRequest(BaseModel):
    card_id: int = Field(gt=0)
    rating: int = Field(ge=1, le=4)  # 1=Again, 2=Hard, 3=Good, 4=Easy
    duration_ms: int | None = Field(default=None, ge=0, le=MAX_DURATION_MS)


class SubmitReviewResponse(BaseModel):
    """Scheduling info after a review is recorded."""

    success: bool
    next_due: datetime
    scheduled_days: float
    new_state: str
    warnings: list[str] = Field(default_factory=list)


# --- Generation ---


class GenerateCardsResponse(BaseModel):
    created: int
    skipped: int


class ErrorBody(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorBody

"""FSRS (Free Spaced Repetition Scheduler) memory model.

An implementation of the FSRS-4.5 update rules on top of a four-state card
lifecycle (new, learning, review, relearning).
Reference: https://github.com/open-spaced-repetition/fsrs4anki

Key concepts:
- Stability (S): Days until recall probability decays to ~90%.
- Difficulty (D): A value between 1 and 10 representing inherent item difficulty.
- Retrievability (R): The probability of recall at a given time since last review.
- Rating: 1=Again, 2=Hard, 3=Good, 4=Easy

Everything here is pure: the caller supplies ``now`` and nothing reads the
clock or a random source, so identical inputs give identical outputs.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol, assert_never

from studyloop.config import settings
from studyloop.errors import InternalError, ValidationError
from studyloop.srs.states import CardState, Rating

logger = logging.getLogger(__name__)

# FSRS-4.5 default parameters
# w[0..3]: initial stability for Again/Hard/Good/Easy on first review
# w[4..5]: initial difficulty and its per-rating slope
# w[6..7]: difficulty update step and mean reversion weight
# w[8..10]: stability growth after a successful recall
# w[11..14]: stability after a lapse
# w[15..16]: hard penalty / easy bonus on stability growth
DEFAULT_WEIGHTS = [
    0.4, 0.6, 2.4, 5.8,
    4.93, 0.94,
    0.86, 0.01,
    1.49, 0.14, 0.94,
    2.18, 0.05, 0.34, 1.26,
    0.29, 2.61,
]

DEFAULT_TARGET_RETENTION = 0.9

# Bounds
MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
MIN_STABILITY = 0.1  # ~2.4 hours
LAPSE_STABILITY_FACTOR = 0.5  # a lapse at least halves stability

# Learning steps, in minutes
AGAIN_STEP_MINUTES = 1
HARD_STEP_MINUTES = 6

EASY_BONUS = 1.3
MINUTES_PER_DAY = 24 * 60


class MemoryCard(Protocol):
    """Anything carrying a card's memory state (ORM Card, MemoryState, ...)."""

    state: CardState
    stability: float
    difficulty: float
    elapsed_days: float


@dataclass
class MemoryState:
    """A detached card memory state, handy for previews and tests."""

    state: CardState = CardState.NEW
    stability: float = 0.0
    difficulty: float = 0.0
    elapsed_days: float = 0.0


@dataclass(frozen=True)
class ScheduleResult:
    """The outcome of applying one rating to a card."""

    stability: float
    difficulty: float
    state: CardState
    # Whole days >= 1 in state review; learning steps are fractions of a day.
    scheduled_days: float
    due_date: datetime
    retrievability: float  # estimated recall probability at review time


class FSRS:
    """Free Spaced Repetition Scheduler."""

    def __init__(
        self,
        weights: list[float] | None = None,
        maximum_interval: int | None = None,
    ) -> None:
        """Initialize FSRS with optional custom weights and interval cap."""
        self.w = list(weights or DEFAULT_WEIGHTS)
        if len(self.w) != len(DEFAULT_WEIGHTS):
            raise ValidationError(f"Expected {len(DEFAULT_WEIGHTS)} FSRS weights, got {len(self.w)}")
        self.maximum_interval = maximum_interval or settings.maximum_interval

    def process_review(
        self,
        card: MemoryCard,
        rating: int,
        now: datetime,
        target_retention: float = DEFAULT_TARGET_RETENTION,
    ) -> ScheduleResult:
        """Apply a rating to a card and compute its next memory state.

        Args:
            card: Current memory state; ``elapsed_days`` must be >= 0.
            rating: Review rating (1=Again, 2=Hard, 3=Good, 4=Easy).
            now: The review time; the due date is computed from it.
            target_retention: Desired recall probability at the due date.

        Returns:
            ScheduleResult with the new stability, difficulty, state and due date.

        Raises:
            ValidationError: rating, retention or elapsed time out of range.
            InternalError: the stored memory state violates its invariants.
        """
        grade = _validate_rating(rating)
        if not 0 < target_retention < 1:
            raise ValidationError(f"target_retention must be in (0, 1), got {target_retention}")
        if card.elapsed_days is None or card.elapsed_days < 0:
            raise ValidationError(f"elapsed_days must be >= 0, got {card.elapsed_days}")
        self._check_invariants(card)

        state = CardState(card.state)
        match state:
            case CardState.NEW:
                return self._review_new(grade, now, target_retention)
            case CardState.LEARNING | CardState.RELEARNING:
                return self._review_learning(card, state, grade, now, target_retention)
            case CardState.REVIEW:
                return self._review_mature(card, grade, now, target_retention)
            case _:
                assert_never(state)

    def preview_intervals(
        self,
        card: MemoryCard,
        now: datetime,
        target_retention: float = DEFAULT_TARGET_RETENTION,
    ) -> dict[Rating, str]:
        """Return a short label of the next interval for every rating."""
        return {
            rating: format_interval(self.process_review(card, rating, now, target_retention).scheduled_days)
            for rating in Rating
        }

    def interval_for(self, stability: float, target_retention: float = DEFAULT_TARGET_RETENTION) -> int:
        """Convert stability to a whole-day interval for the target retention.

        interval = S * ln(target_retention) / ln(0.9), which equals S at 90%
        retention, clamped to [1, maximum_interval].
        """
        interval = stability * math.log(target_retention) / math.log(DEFAULT_TARGET_RETENTION)
        return max(1, min(round(interval), self.maximum_interval))

    # --- per-state rules ---

    def _review_new(self, grade: Rating, now: datetime, target_retention: float) -> ScheduleResult:
        stability = self.w[grade - 1]
        difficulty = self._initial_difficulty(grade)
        if grade == Rating.AGAIN:
            return _learning_step(stability, difficulty, CardState.LEARNING, AGAIN_STEP_MINUTES, now)
        if grade == Rating.HARD:
            return _learning_step(stability, difficulty, CardState.LEARNING, HARD_STEP_MINUTES, now)
        return self._graduate(stability, difficulty, now, target_retention, retrievability=1.0)

    def _review_learning(
        self,
        card: MemoryCard,
        state: CardState,
        grade: Rating,
        now: datetime,
        target_retention: float,
    ) -> ScheduleResult:
        stability = max(MIN_STABILITY, card.stability)
        difficulty = self._next_difficulty(card.difficulty, grade)
        if grade == Rating.AGAIN:
            stability = max(MIN_STABILITY, stability * LAPSE_STABILITY_FACTOR)
            return _learning_step(stability, difficulty, state, AGAIN_STEP_MINUTES, now)
        if grade == Rating.HARD:
            return _learning_step(stability, difficulty, state, HARD_STEP_MINUTES, now)
        if grade == Rating.EASY:
            stability *= EASY_BONUS
        return self._graduate(stability, difficulty, now, target_retention, retrievability=1.0)

    def _review_mature(
        self,
        card: MemoryCard,
        grade: Rating,
        now: datetime,
        target_retention: float,
    ) -> ScheduleResult:
        stability = max(MIN_STABILITY, card.stability)
        retrievability = self.retrievability(card.elapsed_days, stability)
        difficulty = self._next_difficulty(card.difficulty, grade)

        if grade == Rating.AGAIN:
            new_stability = self._stability_after_lapse(stability, card.difficulty, retrievability)
            return _learning_step(
                new_stability,
                difficulty,
                CardState.RELEARNING,
                AGAIN_STEP_MINUTES,
                now,
                retrievability=retrievability,
            )

        new_stability = self._stability_after_success(stability, card.difficulty, retrievability, grade)
        return self._graduate(new_stability, difficulty, now, target_retention, retrievability)

    def _graduate(
        self,
        stability: float,
        difficulty: float,
        now: datetime,
        target_retention: float,
        retrievability: float,
    ) -> ScheduleResult:
        interval = self.interval_for(stability, target_retention)
        return ScheduleResult(
            stability=stability,
            difficulty=difficulty,
            state=CardState.REVIEW,
            scheduled_days=float(interval),
            due_date=now + timedelta(days=interval),
            retrievability=retrievability,
        )

    # --- formulas ---

    @staticmethod
    def retrievability(elapsed_days: float, stability: float) -> float:
        """Probability of recall after ``elapsed_days``.

        Uses the power forgetting curve: R = (1 + t / (9 * S))^(-1)
        """
        if stability <= 0 or elapsed_days <= 0:
            return 1.0
        return (1 + elapsed_days / (9 * stability)) ** -1

    def _initial_difficulty(self, grade: Rating) -> float:
        """D0(G) = w4 - (G - 3) * w5"""
        return _clamp_difficulty(self.w[4] - (grade - 3) * self.w[5])

    def _next_difficulty(self, difficulty: float, grade: Rating) -> float:
        """Rating-weighted step, then mean reversion toward D0(Good)."""
        stepped = difficulty - self.w[6] * (grade - 3)
        reverted = self.w[7] * self._initial_difficulty(Rating.GOOD) + (1 - self.w[7]) * stepped
        return _clamp_difficulty(reverted)

    def _stability_after_success(
        self,
        stability: float,
        difficulty: float,
        retrievability: float,
        grade: Rating,
    ) -> float:
        """S' = S * (1 + e^w8 * (11 - D) * S^-w9 * (e^(w10 * (1 - R)) - 1) * penalty)"""
        if grade == Rating.HARD:
            modifier = self.w[15]
        elif grade == Rating.EASY:
            modifier = self.w[16]
        else:
            modifier = 1.0
        growth = (
            math.exp(self.w[8])
            * (11 - difficulty)
            * stability ** (-self.w[9])
            * (math.exp(self.w[10] * (1 - retrievability)) - 1)
            * modifier
        )
        return stability * (1 + growth)

    def _stability_after_lapse(self, stability: float, difficulty: float, retrievability: float) -> float:
        """S' = w11 * D^-w12 * ((S + 1)^w13 - 1) * e^(w14 * (1 - R)), never above S / 2."""
        forgotten = (
            self.w[11]
            * difficulty ** (-self.w[12])
            * ((stability + 1) ** self.w[13] - 1)
            * math.exp(self.w[14] * (1 - retrievability))
        )
        return max(MIN_STABILITY, min(forgotten, stability * LAPSE_STABILITY_FACTOR))

    def _check_invariants(self, card: MemoryCard) -> None:
        problems = []
        if not math.isfinite(card.stability) or card.stability < 0:
            problems.append(f"stability={card.stability}")
        if not math.isfinite(card.difficulty) or card.difficulty < 0:
            problems.append(f"difficulty={card.difficulty}")
        if CardState(card.state) != CardState.NEW and not (
            MIN_DIFFICULTY <= card.difficulty <= MAX_DIFFICULTY
        ):
            problems.append(f"difficulty={card.difficulty} outside [1, 10]")
        if problems:
            logger.error(
                "Invalid memory state for card %s (state=%s): %s",
                getattr(card, "id", None),
                card.state,
                ", ".join(problems),
            )
            raise InternalError(f"Invalid memory state: {', '.join(problems)}")


def _validate_rating(rating: int) -> Rating:
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValidationError(f"rating must be an integer 1-4, got {rating!r}")
    try:
        return Rating(rating)
    except ValueError:
        raise ValidationError(f"rating must be 1-4, got {rating}") from None


def _clamp_difficulty(difficulty: float) -> float:
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, difficulty))


def _learning_step(
    stability: float,
    difficulty: float,
    state: CardState,
    minutes: int,
    now: datetime,
    retrievability: float = 1.0,
) -> ScheduleResult:
    return ScheduleResult(
        stability=stability,
        difficulty=difficulty,
        state=state,
        scheduled_days=minutes / MINUTES_PER_DAY,
        due_date=now + timedelta(minutes=minutes),
        retrievability=retrievability,
    )


def format_interval(days: float) -> str:
    """Render an interval the way rating buttons show it: 1m, 3d, 2mo, 1.5y."""
    if days < 1:
        return f"{round(days * MINUTES_PER_DAY)}m"
    if days < 30:
        return f"{round(days)}d"
    if days < 365:
        return f"{round(days / 30)}mo"
    return f"{days / 365:.1f}y"


def is_due(due_date: datetime, now: datetime) -> bool:
    """True if a card due at ``due_date`` can be reviewed at ``now``."""
    return due_date <= now

"""Card lifecycle states and review ratings.

State machine::

    new -> learning | review
    learning -> learning | review
    review -> review | relearning
    relearning -> relearning | review

There is no way back to ``new`` and no terminal state.
"""

from enum import Enum, IntEnum
from typing import assert_never

from studyloop.errors import InternalError


class CardState(Enum):
    """Where a card is in its lifecycle."""

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"


class Rating(IntEnum):
    """How well the learner recalled a card."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @property
    def is_correct(self) -> bool:
        return self >= Rating.GOOD


def allowed_next_states(state: CardState) -> frozenset[CardState]:
    """Return the states a card may move to from ``state``."""
    match state:
        case CardState.NEW:
            return frozenset({CardState.LEARNING, CardState.REVIEW})
        case CardState.LEARNING:
            return frozenset({CardState.LEARNING, CardState.REVIEW})
        case CardState.REVIEW:
            return frozenset({CardState.REVIEW, CardState.RELEARNING})
        case CardState.RELEARNING:
            return frozenset({CardState.RELEARNING, CardState.REVIEW})
        case _:
            assert_never(state)


def check_transition(old: CardState, new: CardState) -> None:
    """Raise InternalError if ``old -> new`` is not a legal move."""
    if new not in allowed_next_states(old):
        raise InternalError(f"Illegal card state transition {old.value} -> {new.value}")

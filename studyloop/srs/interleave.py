"""Interleaving of selected review cards.

Mixing material from different courses and lessons in one session improves
long-term retention. The orderings here are pure: they never drop or
duplicate a card, and equal due dates keep their input order.
"""

from collections import Counter, deque
from collections.abc import Callable, Hashable, Iterable, Sequence
from datetime import datetime
from typing import Protocol, TypeVar

from studyloop.config import utcnow

MAX_CONSECUTIVE_SAME_LESSON = 3
NO_OP_SIZE = 3


class Schedulable(Protocol):
    course_id: int
    lesson_index: int
    due_date: datetime


C = TypeVar("C", bound=Schedulable)


def lesson_key(card: Schedulable) -> tuple[int, int]:
    return (card.course_id, card.lesson_index)


class _Run:
    """Tracks the current streak of same-lesson cards at the end of the output."""

    def __init__(self) -> None:
        self.key: Hashable | None = None
        self.length = 0

    def would_exceed(self, key: Hashable, limit: int) -> bool:
        return key == self.key and self.length >= limit

    def push(self, key: Hashable) -> None:
        if key == self.key:
            self.length += 1
        else:
            self.key = key
            self.length = 1


class _Layout:
    """Output under construction plus what is left to place.

    A lesson whose remaining cards outnumber ``limit`` times all other
    remaining cards is critical: every other card is needed as a separator,
    so it must be placed next whenever the run allows. At most one lesson
    can be critical. Placing only cards that respect this keeps the limit
    reachable for as long as the input allows it at all.
    """

    def __init__(self, cards: Sequence[Schedulable], limit: int) -> None:
        self.limit = limit
        self.result: list = []
        self.run = _Run()
        self.remaining = Counter(lesson_key(card) for card in cards)
        self.left = len(cards)

    def critical(self) -> Hashable | None:
        if not self.left:
            return None
        key, count = max(self.remaining.items(), key=lambda item: item[1])
        if count > self.limit * (self.left - count):
            return key
        return None

    def blocks(self, key: Hashable) -> bool:
        critical = self.critical()
        return self.run.would_exceed(key, self.limit) or critical not in (None, key)

    def place(self, card: Schedulable) -> None:
        key = lesson_key(card)
        self.result.append(card)
        self.run.push(key)
        self.remaining[key] -= 1
        self.left -= 1

    def release(self, queues: list[deque]) -> None:
        """Place one card out of turn when every queue head is blocked."""
        critical = self.critical()
        if critical is not None and self.run.would_exceed(critical, self.limit):
            critical = None
        for queue in queues:
            for index, card in enumerate(queue):
                key = lesson_key(card)
                if key == critical or (critical is None and key != self.run.key):
                    del queue[index]
                    self.place(card)
                    return
        # Only one lesson is left: keep every card rather than honor the limit.
        for queue in queues:
            while queue:
                self.place(queue.popleft())


def _group(cards: Iterable[C], key: Callable[[C], Hashable]) -> list[list[C]]:
    groups: dict[Hashable, list[C]] = {}
    for card in cards:
        groups.setdefault(key(card), []).append(card)
    return list(groups.values())


def interleave(cards: Sequence[C], now: datetime | None = None) -> list[C]:
    """Reorder cards so the same course/lesson does not cluster.

    Algorithm:
    1. Group cards by course; inside a group, overdue cards first, then by due date.
    2. Order groups by the due date of their first card.
    3. Round-robin through the groups, 1 card per group per round when there
       are more than 2 groups, otherwise 2.
    4. Never put more than 3 cards of the same (course, lesson) in a row: a
       group whose next card would break this sits the round out, and so does
       a group holding back a lesson that still needs separators.
    5. If every group is blocked, the lesson needing separators goes next,
       otherwise the first queued card from another lesson. With a single
       lesson left, the rest is appended in group order.

    The limit is only exceeded when no ordering of the input could meet it.
    """
    cards = list(cards)
    if len(cards) <= NO_OP_SIZE:
        return cards
    now = now or utcnow()

    groups = _group(cards, key=lambda c: c.course_id)
    for group in groups:
        group.sort(key=lambda c: (not c.due_date < now, c.due_date))
    groups.sort(key=lambda g: g[0].due_date)

    queues = [deque(group) for group in groups]
    per_round = 1 if len(queues) > 2 else 2
    layout = _Layout(cards, MAX_CONSECUTIVE_SAME_LESSON)

    while any(queues):
        added = False
        for queue in queues:
            taken = 0
            while queue and taken < per_round and not layout.blocks(lesson_key(queue[0])):
                layout.place(queue.popleft())
                taken += 1
                added = True
        if not added:
            layout.release(queues)

    return layout.result


def interleave_by_lesson(
    cards: Sequence[C],
    now: datetime | None = None,
    max_consecutive: int = 2,
) -> list[C]:
    """Alternate ordering that groups by (course, lesson) instead of course.

    Groups holding an overdue card go first; otherwise groups keep the order
    in which they first appear. Takes one card per group per round with a
    stricter consecutive limit, releasing a single card out of turn when stuck.
    """
    cards = list(cards)
    if len(cards) <= NO_OP_SIZE:
        return cards
    now = now or utcnow()

    groups = _group(cards, key=lesson_key)
    for group in groups:
        group.sort(key=lambda c: c.due_date)
    groups.sort(key=lambda g: not any(c.due_date < now for c in g))

    queues = [deque(group) for group in groups]
    layout = _Layout(cards, max_consecutive)

    while any(queues):
        added = False
        for queue in queues:
            if queue and not layout.blocks(lesson_key(queue[0])):
                layout.place(queue.popleft())
                added = True
        if not added:
            layout.release(queues)

    return layout.result

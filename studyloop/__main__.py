"""CLI interface for studyloop.

Usage:
    python -m studyloop due --user 1              Show today's session, in review order
    python -m studyloop summary --user 1          Count due cards by state
    python -m studyloop preview 42 --user 1       Show the next interval for each rating
    python -m studyloop generate 7 --user 1       Create cards for a course
"""

import argparse
import asyncio
import logging

from studyloop.config import settings, utcnow
from studyloop.database import async_session, engine
from studyloop.errors import SrsError
from studyloop.models import Base
from studyloop.srs.card_generator import generate_cards
from studyloop.srs.fsrs import FSRS, MemoryState
from studyloop.srs.interleave import interleave, interleave_by_lesson
from studyloop.srs.review import elapsed_days_since
from studyloop.srs.selector import select_due
from studyloop.srs.states import CardState, Rating
from studyloop.srs.store import SqlCardStore


async def ensure_db() -> None:
    """Create tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def cmd_due(args: argparse.Namespace) -> None:
    """Show the cards due today in the order they would be reviewed."""
    await ensure_db()
    now = utcnow()

    async with async_session() as db:
        store = SqlCardStore(db)
        srs_settings = await store.get_settings(args.user)
        selection = await select_due(store, args.user, now, srs_settings)

    cards = selection.cards
    if srs_settings.interleave_reviews:
        order = interleave_by_lesson if settings.interleave_strategy == "lesson" else interleave
        cards = order(cards, now=now)

    print(f"  {len(selection.due_cards)} cards due, {len(selection.new_cards)} new cards available")
    print(f"  ({selection.reviewed_today} reviewed today)\n")
    for i, card in enumerate(cards, 1):
        label = " (NEW)" if CardState(card.state) == CardState.NEW else ""
        print(f"  {i:>3}. [course {card.course_id} / lesson {card.lesson_index}] {card.front[:60]}{label}")


async def cmd_summary(args: argparse.Namespace) -> None:
    """Count due cards by lifecycle state."""
    await ensure_db()

    async with async_session() as db:
        counts = await SqlCardStore(db).count_due_by_state(args.user, utcnow())

    print("\n  Due Now")
    for state in CardState:
        print(f"  {state.value + ':':<14} {counts[state]}")
    print(f"  {'total:':<14} {sum(counts.values())}")
    print()


async def cmd_preview(args: argparse.Namespace) -> None:
    """Show the interval each rating would give a card."""
    await ensure_db()
    now = utcnow()

    async with async_session() as db:
        store = SqlCardStore(db)
        card = await store.get_card(args.card_id)
        if card is None or card.user_id != args.user:
            print(f"  Card {args.card_id} not found.")
            return
        srs_settings = await store.get_settings(args.user)

    memory = MemoryState(
        state=CardState(card.state),
        stability=card.stability,
        difficulty=card.difficulty,
        elapsed_days=elapsed_days_since(card.last_review, now),
    )
    labels = FSRS().preview_intervals(memory, now, srs_settings.target_retention)
    print(f"  Card {card.id} ({CardState(card.state).value})")
    for rating in Rating:
        print(f"  {rating.value}={rating.name.title():<6} {labels[rating]}")


async def cmd_generate(args: argparse.Namespace) -> None:
    """Create cards for a course's quiz-able steps."""
    await ensure_db()

    async with async_session() as db:
        try:
            result = await generate_cards(SqlCardStore(db), args.course_id, args.user)
        except SrsError as exc:
            print(f"  {exc.message}")
            return

    print(f"  {result.created} cards created, {result.skipped} skipped")


def main() -> None:
    """Entry point for the studyloop CLI."""
    parser = argparse.ArgumentParser(
        prog="studyloop",
        description="Spaced repetition review scheduler",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    due_parser = subparsers.add_parser("due", help="Show cards due for review")
    due_parser.add_argument("-u", "--user", type=int, required=True, help="User id")

    summary_parser = subparsers.add_parser("summary", help="Count due cards by state")
    summary_parser.add_argument("-u", "--user", type=int, required=True, help="User id")

    preview_parser = subparsers.add_parser("preview", help="Preview intervals for a card")
    preview_parser.add_argument("card_id", type=int, help="Card id")
    preview_parser.add_argument("-u", "--user", type=int, required=True, help="User id")

    generate_parser = subparsers.add_parser("generate", help="Generate cards for a course")
    generate_parser.add_argument("course_id", type=int, help="Course id")
    generate_parser.add_argument("-u", "--user", type=int, required=True, help="User id")

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    if not args.command:
        parser.print_help()
        return

    cmd_map = {
        "due": cmd_due,
        "summary": cmd_summary,
        "preview": cmd_preview,
        "generate": cmd_generate,
    }

    asyncio.run(cmd_map[args.command](args))


if __name__ == "__main__":
    main()

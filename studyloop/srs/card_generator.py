"""Card generation from course content.

Walks a course's lessons and steps and creates one review card per
quiz-able step. Steps that already have a card are skipped, so generation
can be re-run after a course is extended.

Course content format::

    {
        "lessons": [
            {"title": "...", "steps": [{"type": "question", "question": "...", "answer": "..."}]}
        ],
        "concepts": {"0": ["concept-a"], "0:2": ["concept-b"]}
    }
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from studyloop.config import utcnow
from studyloop.errors import NotFoundError
from studyloop.models.card import Card
from studyloop.models.course import Course
from studyloop.srs.states import CardState
from studyloop.srs.store import CardStore

logger = logging.getLogger(__name__)

MIN_EXPLANATION_WORDS = 20
MAX_BACK_WORDS = 200


@dataclass
class CardDraft:
    lesson_index: int
    step_index: int
    card_type: str
    front: str
    back: str


@dataclass
class GenerationResult:
    created: int = 0
    skipped: int = 0


def _truncate_words(text: str, limit: int = MAX_BACK_WORDS) -> str:
    words = text.split()
    if len(words) <= limit:
        return text.strip()
    return " ".join(words[:limit]) + "..."


def _draft_from_step(lesson_index: int, step_index: int, lesson_title: str, step: dict) -> CardDraft | None:
    """Turn a single step into a card, or None if it isn't worth reviewing."""
    step_type = step.get("type")
    title = step.get("title") or lesson_title or "this topic"

    if step_type == "question":
        question = (step.get("question") or "").strip()
        if not question:
            return None
        if step.get("options"):
            back = json.dumps(
                {
                    "options": step["options"],
                    "correctIndex": step.get("correct_index", 0),
                    "explanation": step.get("explanation", ""),
                }
            )
            return CardDraft(lesson_index, step_index, "multiple_choice", question, back)
        if isinstance(step.get("correct"), bool):
            back = json.dumps({"correct": step["correct"], "explanation": step.get("explanation", "")})
            return CardDraft(lesson_index, step_index, "true_false", question, back)
        answer = (step.get("answer") or "").strip()
        if not answer:
            return None
        return CardDraft(lesson_index, step_index, "flashcard", question, _truncate_words(answer))

    if step_type == "key_point":
        content = (step.get("content") or "").strip()
        if not content:
            return None
        return CardDraft(lesson_index, step_index, "key_point", f"What is the key point about {title}?",
                         _truncate_words(content))

    if step_type == "formula":
        formula = (step.get("formula") or "").strip()
        if not formula:
            return None
        back = formula
        if step.get("explanation"):
            back = f"{formula}\n\n{step['explanation']}"
        return CardDraft(lesson_index, step_index, "formula", f"What is the formula for {title}?",
                         _truncate_words(back))

    if step_type == "explanation":
        content = (step.get("content") or "").strip()
        if len(content.split()) < MIN_EXPLANATION_WORDS:
            return None
        return CardDraft(lesson_index, step_index, "explanation", f"Explain {title}.", _truncate_words(content))

    return None


def draft_cards(content: dict) -> list[CardDraft]:
    """Extract card drafts from parsed course content, in lesson/step order."""
    drafts: list[CardDraft] = []
    for lesson_index, lesson in enumerate(content.get("lessons") or []):
        if not isinstance(lesson, dict):
            continue
        for step_index, step in enumerate(lesson.get("steps") or []):
            if not isinstance(step, dict):
                continue
            draft = _draft_from_step(lesson_index, step_index, lesson.get("title", ""), step)
            if draft is not None:
                drafts.append(draft)
    return drafts


def concept_ids_for(concepts: dict, lesson_index: int, step_index: int) -> list[str] | None:
    """Concepts mapped to a step, falling back to the lesson's concepts."""
    exact = concepts.get(f"{lesson_index}:{step_index}")
    if exact:
        return list(exact)
    lesson = concepts.get(str(lesson_index))
    return list(lesson) if lesson else None


async def generate_cards(
    store: CardStore,
    course_id: int,
    user_id: int,
    now: datetime | None = None,
) -> GenerationResult:
    """Create new cards for every quiz-able step of a course.

    Raises:
        NotFoundError: the course does not exist or belongs to another user.
    """
    course: Course | None = await store.get_course(course_id)
    if course is None or course.user_id != user_id:
        raise NotFoundError("Course not found")
    now = now or utcnow()

    content = course.parsed_content
    concepts = content.get("concepts") or {}
    existing = await store.card_positions(user_id, course_id)

    result = GenerationResult()
    cards: list[Card] = []
    for draft in draft_cards(content):
        if (draft.lesson_index, draft.step_index) in existing:
            result.skipped += 1
            continue
        concept_ids = concept_ids_for(concepts, draft.lesson_index, draft.step_index)
        cards.append(
            Card(
                user_id=user_id,
                course_id=course_id,
                lesson_index=draft.lesson_index,
                step_index=draft.step_index,
                card_type=draft.card_type,
                front=draft.front,
                back=draft.back,
                concept_ids=json.dumps(concept_ids) if concept_ids else None,
                stability=0.0,
                difficulty=0.0,
                elapsed_days=0.0,
                scheduled_days=0.0,
                reps=0,
                lapses=0,
                state=CardState.NEW,
                due_date=now,
                created_at=now,
                updated_at=now,
            )
        )

    await store.add_cards(cards)
    result.created = len(cards)
    logger.info(
        "Generated cards for course %d: %d created, %d skipped",
        course_id,
        result.created,
        result.skipped,
    )
    return result

"""Tests for review processing: card write, review log and concept mastery."""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from studyloop.errors import InternalError, NotFoundError, StoreUnavailable, ValidationError
from studyloop.models import Card, ConceptMastery, KnowledgeGap, ReviewLog
from studyloop.srs.review import ReviewProcessor, elapsed_days_since
from studyloop.srs.states import CardState, Rating
from studyloop.srs.store import SqlCardStore
from factories import NOW, make_card


class LogFailingStore(SqlCardStore):
    async def append_review_log(self, entry: ReviewLog) -> None:
        raise StoreUnavailable("append_review_log timed out")


class FlakyCommitSession(AsyncSession):
    """Session whose Nth commit fails the way a dropped connection would."""

    def __init__(self, *args, fail_on: int, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_on = fail_on
        self.commits = 0

    async def commit(self) -> None:
        self.commits += 1
        if self.commits == self.fail_on:
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))
        await super().commit()


class MasteryFailingStore(SqlCardStore):
    def __init__(self, session, failing_concept: str) -> None:
        super().__init__(session)
        self.failing_concept = failing_concept

    async def get_mastery(self, user_id: int, concept_id: str) -> ConceptMastery | None:
        if concept_id == self.failing_concept:
            raise StoreUnavailable("get_mastery timed out")
        return await super().get_mastery(user_id, concept_id)


async def _add(db, card: Card) -> Card:
    db.add(card)
    await db.commit()
    return card


async def _logs(db) -> list[ReviewLog]:
    return list((await db.execute(select(ReviewLog))).scalars().all())


async def _mastery(db, concept_id: str) -> ConceptMastery | None:
    stmt = select(ConceptMastery).where(ConceptMastery.concept_id == concept_id)
    return (await db.execute(stmt)).scalar_one_or_none()


class TestSubmitReview:
    @pytest.mark.asyncio
    async def test_new_card_good(self, db, user, course) -> None:
        card = await _add(db, make_card(user.id, course.id))
        processor = ReviewProcessor(SqlCardStore(db))

        outcome = await processor.submit_review(card.id, user.id, Rating.GOOD, duration_ms=4200, now=NOW)

        assert outcome.new_state == CardState.REVIEW
        assert outcome.next_due >= NOW + timedelta(days=1)
        assert outcome.reps == 1
        assert outcome.warnings == []

        stored = await db.get(Card, card.id)
        assert stored.state == CardState.REVIEW
        assert stored.stability > 0
        assert stored.last_review == NOW
        assert stored.due_date == outcome.next_due

        [log] = await _logs(db)
        assert log.state_before == "new"
        assert log.rating == 3
        assert log.duration_ms == 4200
        assert log.stability_before == 0.0
        assert log.stability_after == stored.stability

    @pytest.mark.asyncio
    async def test_lapse(self, db, user, course) -> None:
        card = await _add(
            db,
            make_card(
                user.id, course.id, state=CardState.REVIEW, stability=10.0, difficulty=5.0,
                reps=4, last_review=NOW - timedelta(days=12), due_date=NOW - timedelta(days=2),
            ),
        )
        outcome = await ReviewProcessor(SqlCardStore(db)).submit_review(card.id, user.id, 1, now=NOW)

        assert outcome.new_state == CardState.RELEARNING
        assert outcome.lapses == 1
        assert outcome.reps == 5
        stored = await db.get(Card, card.id)
        assert stored.stability < 10.0
        assert stored.elapsed_days == 0.0
        assert stored.due_date == NOW + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_again_while_learning_is_not_a_lapse(self, db, user, course) -> None:
        card = await _add(
            db,
            make_card(user.id, course.id, state=CardState.LEARNING, stability=0.4, difficulty=6.8, reps=1),
        )
        outcome = await ReviewProcessor(SqlCardStore(db)).submit_review(card.id, user.id, 1, now=NOW)
        assert outcome.new_state == CardState.LEARNING
        assert outcome.lapses == 0

    @pytest.mark.asyncio
    async def test_other_users_card_is_not_found(self, db, user, course) -> None:
        card = await _add(db, make_card(user.id, course.id))
        processor = ReviewProcessor(SqlCardStore(db))
        with pytest.raises(NotFoundError):
            await processor.submit_review(card.id, user.id + 1, 3, now=NOW)
        with pytest.raises(NotFoundError):
            await processor.submit_review(card.id + 100, user.id, 3, now=NOW)
        assert await _logs(db) == []

    @pytest.mark.parametrize(
        "card_id,rating,duration_ms",
        [(1, 0, None), (1, 5, None), (1, True, None), (0, 3, None), (1, 3, -5), (1, 3, 2**31)],
    )
    @pytest.mark.asyncio
    async def test_invalid_input(self, db, user, course, card_id, rating, duration_ms) -> None:
        await _add(db, make_card(user.id, course.id))
        with pytest.raises(ValidationError):
            await ReviewProcessor(SqlCardStore(db)).submit_review(card_id, user.id, rating, duration_ms, now=NOW)

    @pytest.mark.asyncio
    async def test_corrupt_card_is_refused(self, db, user, course) -> None:
        card = await _add(
            db,
            make_card(user.id, course.id, state=CardState.REVIEW, stability=-1.0, difficulty=5.0),
        )
        with pytest.raises(InternalError):
            await ReviewProcessor(SqlCardStore(db)).submit_review(card.id, user.id, 3, now=NOW)
        stored = await db.get(Card, card.id)
        assert stored.reps == 0
        assert stored.stability == -1.0

    @pytest.mark.asyncio
    async def test_log_failure_degrades_to_warning(self, session_factory, db, user, course) -> None:
        card = await _add(db, make_card(user.id, course.id))
        outcome = await ReviewProcessor(LogFailingStore(db)).submit_review(card.id, user.id, 3, now=NOW)

        assert outcome.warnings == ["review_log_failed"]
        async with session_factory() as fresh:
            stored = await fresh.get(Card, card.id)
            assert stored.state == CardState.REVIEW
            assert stored.reps == 1
            assert await _logs(fresh) == []

    @pytest.mark.asyncio
    async def test_failed_log_commit_keeps_card_and_mastery(self, db_engine, session_factory, db, user, course) -> None:
        card = await _add(db, make_card(user.id, course.id, concept_ids=["mitosis"]))
        card_id, user_id = card.id, user.id

        # Commit 1 writes the card, commit 2 the review log.
        async with FlakyCommitSession(db_engine, expire_on_commit=False, fail_on=2) as session:
            outcome = await ReviewProcessor(SqlCardStore(session)).submit_review(card_id, user_id, 3, now=NOW)
            assert session.commits == 3

        assert outcome.warnings == ["review_log_failed"]
        assert outcome.new_state == CardState.REVIEW
        async with session_factory() as fresh:
            stored = await fresh.get(Card, card_id)
            assert stored.state == CardState.REVIEW
            assert stored.reps == 1
            assert await _logs(fresh) == []
            mastery = await _mastery(fresh, "mitosis")
            assert mastery.mastery_level == pytest.approx(0.05)
            assert mastery.total_exposures == 1


def test_elapsed_days_since() -> None:
    assert elapsed_days_since(None, NOW) == 0.0
    assert elapsed_days_since(NOW - timedelta(days=3, hours=12), NOW) == pytest.approx(3.5)
    assert elapsed_days_since(NOW + timedelta(hours=2), NOW) == 0.0


class TestConceptMastery:
    @pytest.mark.asyncio
    async def test_first_correct_answer_creates_mastery(self, db, user, course) -> None:
        card = await _add(db, make_card(user.id, course.id, concept_ids=["mitosis"]))
        await ReviewProcessor(SqlCardStore(db)).submit_review(card.id, user.id, 3, now=NOW)

        mastery = await _mastery(db, "mitosis")
        assert mastery.mastery_level == pytest.approx(0.05)
        assert mastery.total_exposures == 1
        assert mastery.successful_recalls == 1
        assert mastery.last_reviewed_at == NOW

    @pytest.mark.asyncio
    async def test_miss_lowers_mastery(self, db, user, course) -> None:
        db.add(
            ConceptMastery(
                user_id=user.id, concept_id="mitosis", mastery_level=0.3, peak_mastery=0.3,
                total_exposures=3, successful_recalls=2,
            )
        )
        card = await _add(db, make_card(user.id, course.id, concept_ids=["mitosis"]))
        await ReviewProcessor(SqlCardStore(db)).submit_review(card.id, user.id, Rating.HARD, now=NOW)

        mastery = await _mastery(db, "mitosis")
        assert mastery.mastery_level == pytest.approx(0.2)
        assert mastery.peak_mastery == pytest.approx(0.3)
        assert mastery.total_exposures == 4
        assert mastery.successful_recalls == 2

    @pytest.mark.asyncio
    async def test_crossing_threshold_resolves_gaps(self, db, user, course) -> None:
        db.add_all(
            [
                ConceptMastery(user_id=user.id, concept_id="mitosis", mastery_level=0.47, peak_mastery=0.47),
                KnowledgeGap(user_id=user.id, concept_id="mitosis", status="open"),
                KnowledgeGap(user_id=user.id, concept_id="meiosis", status="open"),
            ]
        )
        card = await _add(db, make_card(user.id, course.id, concept_ids=["mitosis"]))
        await ReviewProcessor(SqlCardStore(db)).submit_review(card.id, user.id, Rating.EASY, now=NOW)

        gaps = (await db.execute(select(KnowledgeGap).order_by(KnowledgeGap.id))).scalars().all()
        assert [(g.concept_id, g.status) for g in gaps] == [("mitosis", "resolved"), ("meiosis", "open")]
        assert gaps[0].resolved_at == NOW

    @pytest.mark.asyncio
    async def test_mastery_failure_degrades_per_concept(self, db, user, course) -> None:
        card = await _add(db, make_card(user.id, course.id, concept_ids=["mitosis", "meiosis"]))
        store = MasteryFailingStore(db, failing_concept="mitosis")
        outcome = await ReviewProcessor(store).submit_review(card.id, user.id, 3, now=NOW)

        assert outcome.warnings == ["mastery_failed:mitosis"]
        assert outcome.new_state == CardState.REVIEW
        assert await _mastery(db, "mitosis") is None
        assert (await _mastery(db, "meiosis")).mastery_level == pytest.approx(0.05)

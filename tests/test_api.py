"""Tests for the review scheduler API routes."""

import json
from datetime import timedelta

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from studyloop.api.srs_router import get_store
from studyloop.config import utcnow
from studyloop.database import get_session
from studyloop.errors import StoreUnavailable
from studyloop.main import app
from studyloop.models import Course
from studyloop.srs.states import CardState
from studyloop.srs.store import SqlCardStore
from factories import make_card


class FlakyStore(SqlCardStore):
    """Fails the first ``failures`` reads of settings and cards."""

    def __init__(self, session: AsyncSession, failures: int) -> None:
        super().__init__(session)
        self.failures = failures
        self.calls = 0

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise StoreUnavailable("connection reset")

    async def get_settings(self, user_id: int):
        self._maybe_fail()
        return await super().get_settings(user_id)

    async def get_card(self, card_id: int):
        self._maybe_fail()
        return await super().get_card(card_id)


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def _use_flaky_store(failures: int) -> list[FlakyStore]:
    stores: list[FlakyStore] = []

    async def override_store(db: AsyncSession = Depends(get_session)) -> FlakyStore:
        store = FlakyStore(db, failures)
        stores.append(store)
        return store

    app.dependency_overrides[get_store] = override_store
    return stores


def _headers(user) -> dict[str, str]:
    return {"X-User-Id": str(user.id)}


@pytest_asyncio.fixture
async def seeded(db, user, course):
    """Two new cards and two due reviews, plus one review not due until next week."""
    now = utcnow()
    db.add_all(
        [
            make_card(
                user.id, course.id, lesson_index=0, step_index=0,
                created_at=now - timedelta(days=1), due_date=now - timedelta(days=1),
            ),
            make_card(
                user.id, course.id, lesson_index=0, step_index=1,
                concept_ids=["mitosis"], created_at=now, due_date=now,
            ),
            make_card(
                user.id, course.id, lesson_index=1, step_index=0, state=CardState.REVIEW,
                stability=4.0, difficulty=5.0, reps=2, last_review=now - timedelta(days=5),
                due_date=now - timedelta(days=1),
            ),
            make_card(
                user.id, course.id, lesson_index=1, step_index=1, state=CardState.RELEARNING,
                stability=1.0, difficulty=7.0, reps=5, lapses=1, last_review=now - timedelta(hours=1),
                due_date=now - timedelta(minutes=30),
            ),
            make_card(
                user.id, course.id, lesson_index=2, step_index=0, state=CardState.REVIEW,
                stability=20.0, difficulty=4.0, reps=3, last_review=now, due_date=now + timedelta(days=7),
            ),
        ]
    )
    await db.commit()
    return user


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_identity(self, client) -> None:
        response = await client.get("/api/srs/due")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    @pytest.mark.parametrize("header", ["abc", "0", "-4"])
    @pytest.mark.asyncio
    async def test_malformed_identity(self, client, header: str) -> None:
        response = await client.post(
            "/api/srs/review", json={"card_id": 1, "rating": 3}, headers={"X-User-Id": header}
        )
        assert response.status_code == 401


class TestDueCards:
    @pytest.mark.asyncio
    async def test_due_cards(self, client, seeded) -> None:
        response = await client.get("/api/srs/due", headers=_headers(seeded))
        assert response.status_code == 200
        data = response.json()
        assert (data["cards_due"], data["new_cards"], data["review_cards"]) == (4, 2, 2)
        states = sorted(card["state"] for card in data["cards"])
        assert states == ["new", "new", "relearning", "review"]
        by_step = {(c["lesson_index"], c["step_index"]): c for c in data["cards"]}
        assert by_step[(0, 1)]["concept_ids"] == ["mitosis"]

    @pytest.mark.asyncio
    async def test_nothing_due_for_a_stranger(self, client, seeded) -> None:
        response = await client.get("/api/srs/due", headers={"X-User-Id": str(seeded.id + 1)})
        assert response.status_code == 200
        assert response.json()["cards_due"] == 0

    @pytest.mark.asyncio
    async def test_summary(self, client, seeded) -> None:
        response = await client.get("/api/srs/summary", headers=_headers(seeded))
        assert response.json() == {"total_due": 4, "new": 2, "learning": 0, "review": 1, "relearning": 1}

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, client, seeded) -> None:
        stores = _use_flaky_store(failures=1)
        response = await client.get("/api/srs/due", headers=_headers(seeded))
        assert response.status_code == 200
        assert response.json()["cards_due"] == 4
        assert stores[0].calls == 2

    @pytest.mark.asyncio
    async def test_persistent_failure_is_503(self, client, seeded) -> None:
        _use_flaky_store(failures=100)
        response = await client.get("/api/srs/due", headers=_headers(seeded))
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"


class TestSubmitReview:
    async def _card_id(self, client, user, step: tuple[int, int]) -> int:
        response = await client.get("/api/srs/due", headers=_headers(user))
        return next(c["id"] for c in response.json()["cards"] if (c["lesson_index"], c["step_index"]) == step)

    @pytest.mark.asyncio
    async def test_review_new_card(self, client, seeded) -> None:
        card_id = await self._card_id(client, seeded, (0, 0))
        response = await client.post(
            "/api/srs/review",
            json={"card_id": card_id, "rating": 3, "duration_ms": 5100},
            headers=_headers(seeded),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["new_state"] == "review"
        assert data["scheduled_days"] >= 1
        assert data["warnings"] == []
        assert data["next_due"]

        summary = await client.get("/api/srs/summary", headers=_headers(seeded))
        assert summary.json()["new"] == 1

    @pytest.mark.asyncio
    async def test_lapse(self, client, seeded) -> None:
        card_id = await self._card_id(client, seeded, (1, 0))
        response = await client.post(
            "/api/srs/review", json={"card_id": card_id, "rating": 1}, headers=_headers(seeded)
        )
        assert response.json()["new_state"] == "relearning"
        assert response.json()["scheduled_days"] < 1

    @pytest.mark.parametrize(
        "body",
        [
            {"card_id": 1, "rating": 7},
            {"card_id": 1, "rating": 0},
            {"rating": 3},
            {"card_id": -1, "rating": 3},
            {"card_id": 1, "rating": 3, "duration_ms": 2**31},
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_body(self, client, seeded, body: dict) -> None:
        response = await client.post("/api/srs/review", json=body, headers=_headers(seeded))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_someone_elses_card(self, client, seeded) -> None:
        card_id = await self._card_id(client, seeded, (0, 0))
        response = await client.post(
            "/api/srs/review",
            json={"card_id": card_id, "rating": 3},
            headers={"X-User-Id": str(seeded.id + 1)},
        )
        assert response.status_code == 404
        assert response.json()["error"] == {"code": "NOT_FOUND", "message": "Card not found"}

    @pytest.mark.asyncio
    async def test_write_path_is_not_retried(self, client, seeded) -> None:
        card_id = await self._card_id(client, seeded, (0, 0))
        stores = _use_flaky_store(failures=1)
        response = await client.post(
            "/api/srs/review", json={"card_id": card_id, "rating": 3}, headers=_headers(seeded)
        )
        assert response.status_code == 503
        assert stores[0].calls == 1


class TestPreviewAndGenerate:
    @pytest.mark.asyncio
    async def test_preview_new_card(self, client, seeded) -> None:
        due = await client.get("/api/srs/due", headers=_headers(seeded))
        card_id = next(c["id"] for c in due.json()["cards"] if c["state"] == "new")
        response = await client.get(f"/api/srs/cards/{card_id}/preview", headers=_headers(seeded))
        assert response.json() == {"card_id": card_id, "again": "1m", "hard": "6m", "good": "2d", "easy": "6d"}

    @pytest.mark.asyncio
    async def test_preview_unknown_card(self, client, seeded) -> None:
        response = await client.get("/api/srs/cards/9999/preview", headers=_headers(seeded))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_generate_cards(self, client, db, user) -> None:
        content = {
            "lessons": [
                {
                    "title": "Osmosis",
                    "steps": [
                        {"type": "question", "question": "What moves in osmosis?", "answer": "Water"},
                        {"type": "key_point", "content": "Water moves toward higher solute concentration."},
                    ],
                }
            ]
        }
        course = Course(user_id=user.id, title="Membranes", content=json.dumps(content))
        db.add(course)
        await db.commit()

        first = await client.post(f"/api/srs/courses/{course.id}/cards", headers=_headers(user))
        assert first.json() == {"created": 2, "skipped": 0}
        second = await client.post(f"/api/srs/courses/{course.id}/cards", headers=_headers(user))
        assert second.json() == {"created": 0, "skipped": 2}

        missing = await client.post("/api/srs/courses/9999/cards", headers=_headers(user))
        assert missing.status_code == 404

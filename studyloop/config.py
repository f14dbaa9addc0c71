from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime.

    Keeps datetimes naive so they stay compatible with SQLite
    (which doesn't store tz info).
    """
    return datetime.now(UTC).replace(tzinfo=None)


class Settings(BaseSettings):
    app_name: str = "studyloop"
    database_url: str = f"sqlite+aiosqlite:///{Path(__file__).resolve().parent.parent / 'data' / 'studyloop.db'}"
    target_retention: float = 0.9
    max_new_cards_per_day: int = 20
    max_reviews_per_day: int = 100
    interleave_reviews: bool = True
    interleave_strategy: Literal["course", "lesson"] = "course"
    maximum_interval: int = 36500  # days
    store_timeout_seconds: float = 5.0
    store_retry_attempts: int = 3
    store_retry_max_wait_seconds: float = 4.0
    debug: bool = False

    model_config = {"env_prefix": "STUDYLOOP_", "env_file": ".env"}


settings = Settings()

import os
import tempfile
from pathlib import Path

# Point the app-wide engine at a throwaway database before anything imports it.
os.environ.setdefault(
    "STUDYLOOP_DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(tempfile.mkdtemp()) / 'studyloop-test.db'}",
)

import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from studyloop.models import Base, Course, User  # noqa: E402


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'srs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def user(db) -> User:
    user = User(name="Ada", email="ada@example.com")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def course(db, user) -> Course:
    course = Course(user_id=user.id, title="Cell Biology", content="{}")
    db.add(course)
    await db.commit()
    return course

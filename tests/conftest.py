"""Shared fixtures: a fresh in-memory database per test plus row factories."""

import itertools
import os
from datetime import timedelta

# Must be set before anything imports trendrank.config.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["OTEL_ENABLED"] = "false"
os.environ["SNAPSHOT_SCHEDULER_ENABLED"] = "false"

import pytest
import pytest_asyncio

from trendrank.database import build_engine, build_sessionmaker, init_db
from trendrank.models import Post, User, utcnow


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    eng = build_engine("sqlite+aiosqlite://")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def make_user(db):
    counter = itertools.count()

    async def _make(premium=False, verified_status="none", **kwargs):
        user = User(
            username=kwargs.pop("username", f"user{next(counter)}"),
            premium=premium,
            verified_status=verified_status,
            **kwargs,
        )
        db.add(user)
        await db.flush()
        return user

    return _make


@pytest.fixture
def make_post(db, now):
    async def _make(user, age=timedelta(hours=1), **kwargs):
        kwargs.setdefault("created_at", now - age)
        post = Post(user_id=user.user_id, **kwargs)
        db.add(post)
        await db.flush()
        return post

    return _make

from __future__ import annotations

import asyncio
import os

# settings are read once, on first import of the package
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTH_JWKS_URL", "http://auth.test/.well-known/jwks.json")
os.environ.setdefault("RL_ENABLED", "false")
os.environ.setdefault("ENABLE_NATS", "false")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("CACHE_ENABLED", "false")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from travel_rewards.models import Base


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}"


@pytest.fixture
def session_maker(db_url):
    """A session factory on a fresh file-backed database with all tables created."""
    engine = create_async_engine(db_url, poolclass=NullPool)

    async def _create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create())
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def run_db(session_maker):
    """Run ``scenario(session_maker)`` to completion and return its result."""
    def run(scenario):
        return asyncio.run(scenario(session_maker))
    return run

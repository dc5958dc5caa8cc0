# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from sqlalchemy.ext.asyncio import create_async_engine

from taskflow_api.crud_task import TaskStore
from taskflow_api.database import create_session_factory, init_models
from taskflow_api.queue_manager import JobQueue

from .fakes import RecordingTaskStore


@pytest_asyncio.fixture()
async def engine(tmp_path: Path):
    """
    Real SQLite database per test.

    A file (not :memory:) so that concurrent sessions see each other's writes
    the same way separate connections would in production.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tasks.sqlite3'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
def store(session_factory) -> TaskStore:
    return TaskStore(session_factory)


@pytest.fixture()
def recording_store(session_factory) -> RecordingTaskStore:
    return RecordingTaskStore(session_factory)


@pytest_asyncio.fixture()
async def redis_client():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture()
async def queue(redis_client) -> JobQueue:
    # block_ms=0: poll instead of blocking reads so tests stay fast
    q = JobQueue(redis_client, "test", visibility_timeout=30.0, block_ms=0, poll_interval=0.01)
    await q.initialize()
    return q

"""
Shared fixtures: a throwaway SQLite database per test and the in-memory
job queue. No Redis or PostgreSQL is needed.
"""
from typing import Callable

import httpx
import pytest
import pytest_asyncio

from commerce_core.config import Settings
from commerce_core.database import build_engine, build_session_factory
from commerce_core.models.base import Base
# Import all models to register them with Base
from commerce_core.models import plugin, store, webhook  # noqa: F401
from commerce_core.services.job_queue import JobQueue


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        REDIS_URL="",
        MEMORY_QUEUE_TICK_MS=10,
        SENTRY_DSN=None,
    )


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = build_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def job_queue(settings):
    queue = JobQueue(settings)
    await queue.initialize()
    yield queue
    await queue.shutdown()


class RecordingTransport:
    """httpx mock transport that records requests and replies with a fixed status."""

    def __init__(self, status_code: int = 200, body: str = "ok"):
        self.status_code = status_code
        self.body = body
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text=self.body)

    def client_factory(self) -> Callable[[], httpx.AsyncClient]:
        return lambda: httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()

"""
Pytest configuration and shared fixtures.
"""

import asyncio
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from taskscheduler.config import get_settings
from taskscheduler.db import close_db, get_session_context, init_db
from taskscheduler.db.repository import JobRepository
from taskscheduler.scheduler import Scheduler
from taskscheduler.worker.handlers import AbstractJob, register_handler
from taskscheduler.worker.main import QueueDispatcher

# Jobs executed by the mock handlers, as (job id, data)
EXECUTED: list[tuple[UUID, Any]] = []


@register_handler("tests.success")
class SuccessJob(AbstractJob):
    async def run(self) -> bool:
        EXECUTED.append((self.get_id(), self.data))
        return True


@register_handler("tests.sync")
class SyncJob(AbstractJob):
    def run(self) -> bool:
        EXECUTED.append((self.get_id(), self.data))
        return True


@register_handler("tests.false")
class FalseJob(AbstractJob):
    async def run(self) -> bool:
        EXECUTED.append((self.get_id(), self.data))
        return False


@register_handler("tests.error")
class ErrorJob(AbstractJob):
    async def run(self) -> bool:
        EXECUTED.append((self.get_id(), self.data))
        raise RuntimeError("mock handler failure")


@register_handler("tests.not_bool")
class NotBoolJob(AbstractJob):
    async def run(self) -> Any:
        return "yes"


@register_handler("tests.blocking")
class BlockingJob(AbstractJob):
    async def run(self) -> bool:
        EXECUTED.append((self.get_id(), self.data))
        await asyncio.sleep(30)
        return True


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Make every test read settings from a clean environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def executed() -> list[tuple[UUID, Any]]:
    """Jobs run by the mock handlers during the test."""
    EXECUTED.clear()
    return EXECUTED


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[str]:
    """Initialize a throwaway SQLite database."""
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"
    await init_db(database_url)

    yield database_url

    await close_db()


@pytest.fixture
def collection() -> str:
    """Generate a unique queue collection name."""
    return f"queue_{uuid4().hex[:8]}"


@pytest_asyncio.fixture
async def db_session(database: str) -> AsyncGenerator[AsyncSession]:
    """Create a database session committed at the end of the test."""
    async with get_session_context() as session:
        yield session


@pytest_asyncio.fixture
async def repo(db_session: AsyncSession, collection: str) -> JobRepository:
    """Create a repository for the test collection."""
    return JobRepository(db_session, collection)


@pytest.fixture
def scheduler(database: str, collection: str) -> Scheduler:
    """Create a scheduler on the test collection."""
    return Scheduler(collection=collection, queue_size=1_000_000)


@pytest.fixture
def make_dispatcher(scheduler: Scheduler) -> Callable[..., QueueDispatcher]:
    """Factory for dispatchers with short timeouts."""
    counter = iter(range(1000))

    def factory(**kwargs: Any) -> QueueDispatcher:
        kwargs.setdefault("dispatcher_id", f"test-dispatcher-{next(counter)}")
        kwargs.setdefault("batch_size", 10)
        kwargs.setdefault("poll_interval", 0.01)
        kwargs.setdefault("await_timeout", 0.05)
        kwargs.setdefault("restart_delay", 0.01)
        return QueueDispatcher(scheduler, **kwargs)

    return factory


@pytest.fixture
def dispatcher(make_dispatcher: Callable[..., QueueDispatcher]) -> QueueDispatcher:
    """Create a dispatcher on the test collection."""
    return make_dispatcher()


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a condition until it holds or fail after a timeout."""

    async def _wait(
        condition: Callable[[], Any],
        timeout: float = 5.0,
        interval: float = 0.01,
    ) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            result = condition()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            await asyncio.sleep(interval)
        pytest.fail("condition not met before timeout")

    return _wait

"""Shared test fixtures for NotifyRelay."""
import asyncio
import pytest
import pytest_asyncio

from channels.memory_adapter import RecordingSink
from database.store_factory import reset_store
from database.store_memory import InMemoryQueueStore


@pytest.fixture(autouse=True)
def _fresh_store_singleton():
    reset_store()
    yield
    reset_store()


@pytest.fixture
def store() -> InMemoryQueueStore:
    return InMemoryQueueStore()


@pytest_asyncio.fixture
async def sink() -> RecordingSink:
    s = RecordingSink()
    await s.initialize({})
    return s


@pytest.fixture
def wait_until():
    """Poll a predicate on the running loop until it holds or the timeout passes."""

    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.001):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait


@pytest.fixture
def pending_entry() -> dict:
    return {"telegram_id": "42", "message": "Training at 5pm", "status": "pending"}

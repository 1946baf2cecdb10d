"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import asyncio
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from practice_relay.clock import Clock
from practice_relay.completions import CompletionRecorder
from practice_relay.config import Settings
from practice_relay.connectivity import ConnectivityMonitor
from practice_relay.local_storage import JsonFileStorage
from practice_relay.notifications import NotificationSink
from practice_relay.offline_queue import OfflineOperationQueue
from practice_relay.retry import RetryPolicy
from practice_relay.sessions import SessionStateMachine
from practice_relay.store import MemoryDocumentStore

START_TIME = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


class FakeClock(Clock):
    """Manually advanced clock; ``sleep`` records the delay and moves time forward."""

    def __init__(self, start: datetime = START_TIME):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class RecordingNotificationSink(NotificationSink):
    """Keeps every notification as a (level, message) pair."""

    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    def notify(self, level: str, message: str) -> None:
        self.messages.append((level, message))

    def at(self, level: str) -> list[str]:
        return [message for lvl, message in self.messages if lvl == level]


PROVIDER_SETTINGS = {
    "replica_id": "r-replica-1",
    "persona_id": "p-persona-1",
    "api_key": "test-api-key",
    "enabled": True,
}

COURSE = {
    "title": "Subnetting Basics",
    "description": "Learn how to split an IPv4 network into subnets.",
}


@pytest.fixture
def clock():
    """Fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotificationSink()


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def store():
    """Empty in-memory document store."""
    return MemoryDocumentStore()


@pytest_asyncio.fixture
async def seeded_store(store):
    """Store holding provider settings, one course and one user."""
    await store.set("settings", "provider", dict(PROVIDER_SETTINGS))
    await store.set("courses", "course-1", dict(COURSE))
    await store.set("users", "user-1", {"uid": "user-1", "email": "learner@example.com"})
    return store


@pytest.fixture
def storage(tmp_path):
    """Local storage in a temporary directory."""
    return JsonFileStorage(tmp_path / "queue")


@pytest.fixture
def retry_policy(clock):
    """Default retry policy with a seeded jitter source."""
    return RetryPolicy(clock=clock, rng=random.Random(7))


@pytest.fixture
def completions(store, clock):
    return CompletionRecorder(store, clock=clock)


@pytest.fixture
def sessions(store, completions, clock):
    return SessionStateMachine(store, completions, clock=clock, default_ttl=180)


@pytest.fixture
def queue(storage, connectivity, notifier, clock, retry_policy):
    return OfflineOperationQueue(
        storage,
        connectivity,
        notifier,
        clock=clock,
        retry_policy=retry_policy,
    )


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment and the home directory."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        queue_storage_dir=tmp_path / "queue",
        callback_origin="https://app.example.com",
        provider_api_url="https://provider.example.com/v2",
    )

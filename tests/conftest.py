"""
Pytest configuration and fixtures for jobkeeper.

Every test gets its own SQLite file under tmp_path and a ManualClock, so
time only moves when a test advances it.
"""

from datetime import datetime

import pytest

from jobkeeper.clock import ManualClock
from jobkeeper.events import EventBus, EventRecorder
from jobkeeper.models import SessionStatus, Store, SupervisedJob
from jobkeeper.queue import InMemoryQueueBackend


class FakeSampler:
    """Resource sampler returning fixed measurements."""

    def __init__(self, memory: float = 0.0, cpu: float = 0.0, disk: float = 0.0):
        self.memory = memory
        self.cpu = cpu
        self.disk = disk

    def memory_mb(self, session):
        return self.memory

    def cpu_percent(self, session):
        return self.cpu

    def disk_mb(self, session, disk_path):
        return self.disk


@pytest.fixture
def clock():
    return ManualClock(datetime(2025, 1, 1, 12, 0, 0))


@pytest.fixture
def store(tmp_path):
    store = Store(tmp_path / "jobkeeper.db").initialize()
    yield store
    store.close()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorder(events):
    return EventRecorder(events)


@pytest.fixture
def sampler():
    return FakeSampler()


@pytest.fixture
def queue_backend():
    return InMemoryQueueBackend()


@pytest.fixture
def make_session(store, clock):
    """Create a running session directly in the store."""

    def _make(session_id="job-1", job_class="app.jobs.Import", queue="default", **fields):
        fields.setdefault("status", SessionStatus.RUNNING.value)
        fields.setdefault("started_at", clock.now())
        fields.setdefault("metadata", {})
        return SupervisedJob.create(id=session_id, job_class=job_class, queue=queue, **fields)

    return _make

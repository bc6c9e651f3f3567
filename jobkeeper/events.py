"""
Supervision events and the bus that delivers them.

Components publish typed events; notification, alerting and metrics
collaborators subscribe to the types they care about. A subscriber that
raises is logged and skipped so it cannot break the sweep that emitted the
event.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class Event:
    occurred_at: datetime = field(default_factory=datetime.now, kw_only=True)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        data = asdict(self)
        data["event"] = self.name
        return data


@dataclass
class HeartbeatReceived(Event):
    session_id: str
    heartbeat_id: int
    metadata: dict


@dataclass
class HeartbeatMissed(Event):
    session_id: str
    expected_at: datetime
    missed_count: int
    missed_duration_ms: int


@dataclass
class JobStuck(Event):
    session_id: str
    missed_count: int
    last_heartbeat_at: Optional[datetime]


@dataclass
class HealthStatusChanged(Event):
    session_id: str
    previous: str
    current: str
    reason: Optional[str]


@dataclass
class ResourceViolationDetected(Event):
    session_id: str
    violation_type: str
    limit: float
    actual: float


@dataclass
class JobTimeout(Event):
    session_id: str
    timeout_seconds: int
    elapsed_seconds: float


@dataclass
class CircuitBreakerOpened(Event):
    service: str
    failure_count: int
    opened_at: datetime


@dataclass
class CircuitBreakerHalfOpened(Event):
    service: str


@dataclass
class CircuitBreakerClosed(Event):
    service: str


@dataclass
class JobMovedToDeadLetterQueue(Event):
    entry_id: int
    session_id: Optional[str]
    job_class: str
    exception: str
    message: str


@dataclass
class JobSupervisionStarted(Event):
    session_id: str
    job_class: str
    queue: str


@dataclass
class JobSupervisionEnded(Event):
    session_id: str
    status: str


@dataclass
class DeploymentStarted(Event):
    queues: list[str]


@dataclass
class DeploymentCompleted(Event):
    queues: list[str]
    cancelled_count: int


@dataclass
class DeploymentTimedOut(Event):
    queues: list[str]
    timeout_seconds: float
    remaining_count: int


@dataclass
class WorkerCrashed(Event):
    pool: str
    worker_id: str
    pid: int
    exit_code: Optional[int]


@dataclass
class WorkerRestarted(Event):
    pool: str
    worker_id: str
    old_pid: int
    new_pid: int


Listener = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe for supervision events."""

    def __init__(self):
        self._listeners: dict[type, list[Listener]] = {}
        self._catch_all: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: Optional[type], listener: Listener):
        """Register listener for event_type, or for every event when None."""
        with self._lock:
            if event_type is None:
                self._catch_all.append(listener)
            else:
                self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: Optional[type], listener: Listener):
        with self._lock:
            bucket = self._catch_all if event_type is None else self._listeners.get(event_type, [])
            if listener in bucket:
                bucket.remove(listener)

    def emit(self, event: Event):
        with self._lock:
            listeners = list(self._listeners.get(type(event), [])) + list(self._catch_all)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener {listener!r} failed on {event.name}: {e}")


class EventRecorder:
    """Collects every event it sees. Handy for audits and tests."""

    def __init__(self, bus: Optional[EventBus] = None):
        self.events: list[Event] = []
        if bus is not None:
            bus.subscribe(None, self)

    def __call__(self, event: Event):
        self.events.append(event)

    def of_type(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self):
        self.events.clear()


def log_event(event: Event):
    """Default subscriber: write every event to the log."""
    logger.debug(f"{event.name}: {event.to_dict()}")

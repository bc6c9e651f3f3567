"""
Queue backend contract and queue filtering.

The queue backend is an external collaborator: jobkeeper only needs to pause
and resume queues, count the jobs still running on a queue, and dispatch a
stored payload again. InMemoryQueueBackend implements the contract for a
single process and for tests.

QueueFilter decides which queues are supervised: an excluded queue is never
supervised, and an empty allowlist means every queue that is not excluded.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from .config import QueueSettings
from .models import SessionStatus, SupervisedJob

logger = logging.getLogger(__name__)


class QueueBackend(Protocol):
    def pause(self, queue: str) -> None: ...

    def resume(self, queue: str) -> None: ...

    def is_paused(self, queue: str) -> bool: ...

    def running_count(self, queue: str) -> int: ...

    def dispatch(self, job_class: str, payload: Any, queue: str = "default") -> None: ...


@dataclass
class QueuedJob:
    job_class: str
    payload: Any
    queue: str
    dispatched_at: datetime = field(default_factory=datetime.now)


class InMemoryQueueBackend:
    """Process-local queues. Paused queues keep accepting work but hand none out."""

    def __init__(self, handler: Optional[Callable[[QueuedJob], None]] = None):
        self._paused: set[str] = set()
        self._queues: dict[str, deque] = {}
        self._lock = threading.Lock()
        self._handler = handler
        self.dispatched: list[QueuedJob] = []

    def pause(self, queue: str):
        with self._lock:
            self._paused.add(queue)
        logger.info(f"Queue {queue} paused")

    def resume(self, queue: str):
        with self._lock:
            self._paused.discard(queue)
        logger.info(f"Queue {queue} resumed")

    def is_paused(self, queue: str) -> bool:
        with self._lock:
            return queue in self._paused

    def running_count(self, queue: str) -> int:
        active = (SessionStatus.RUNNING.value, SessionStatus.STALLED.value)
        return (
            SupervisedJob.select()
            .where(SupervisedJob.queue == queue, SupervisedJob.status.in_(active))
            .count()
        )

    def dispatch(self, job_class: str, payload: Any, queue: str = "default"):
        job = QueuedJob(job_class=job_class, payload=payload, queue=queue)
        with self._lock:
            self._queues.setdefault(queue, deque()).append(job)
            self.dispatched.append(job)
        logger.info(f"Dispatched {job_class} to queue {queue}")
        if self._handler is not None:
            self._handler(job)

    def pop(self, queue: str) -> QueuedJob | None:
        """Next job for a consumer, or None when the queue is empty or paused."""
        with self._lock:
            if queue in self._paused:
                return None
            pending = self._queues.get(queue)
            return pending.popleft() if pending else None

    def size(self, queue: str) -> int:
        with self._lock:
            return len(self._queues.get(queue, ()))


class QueueFilter:
    """Allowlist/denylist of supervised queues. Exclusion always wins."""

    def __init__(self, supervised: list[str] = None, excluded: list[str] = None):
        self.supervised = [q for q in (supervised or []) if q]
        self.excluded = [q for q in (excluded or []) if q]

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> "QueueFilter":
        return cls(settings.supervised, settings.excluded)

    def should_supervise(self, queue: str) -> bool:
        if queue in self.excluded:
            return False
        if not self.supervised:
            return True
        return queue in self.supervised

    def to_dict(self) -> dict:
        return {
            "supervised_queues": list(self.supervised),
            "excluded_queues": list(self.excluded),
            "mode": "allowlist" if self.supervised else "all_except_excluded",
        }

"""
Per-job supervision.

JobSupervisor is what a running job talks to. supervise() opens a session
(unless the queue filter says the queue is not supervised), records the first
heartbeat carrying the job's limits and heartbeat expectations, and marks it
healthy. The job then beats, reports progress, and finally completes or
fails; failures are counted against the dead letter retry budget.

check() evaluates one session on demand and hands breaches to the
registered callbacks:

    supervisor.on_memory_exceeded(lambda sid, current, limit: ...)
    session_id = supervisor.supervise("reports.Build", queue="reports", memory_limit_mb=256)
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Optional

from .clock import default_clock
from .config import DeadLetterSettings, HeartbeatSettings, ResourceLimits
from .deadletter import DeadLetterStore
from .events import EventBus, JobSupervisionEnded, JobSupervisionStarted
from .health import HealthMonitor
from .heartbeat import HeartbeatTracker
from .models import Heartbeat, SessionStatus, Store, SupervisedJob
from .queue import QueueFilter
from .resources import ResourceGuard

logger = logging.getLogger(__name__)

STUCK_REASON = "job stuck: missed heartbeat threshold reached"


class JobSupervisor:
    """Opens, feeds and closes supervision sessions."""

    def __init__(
        self,
        store: Store,
        events: EventBus,
        heartbeats: HeartbeatTracker,
        health: HealthMonitor,
        resources: ResourceGuard,
        dead_letters: DeadLetterStore,
        queue_filter: QueueFilter = None,
        clock=None,
    ):
        self.store = store
        self.events = events
        self.heartbeats = heartbeats
        self.health = health
        self.resources = resources
        self.dead_letters = dead_letters
        self.queue_filter = queue_filter or QueueFilter()
        self.clock = clock or default_clock
        self._on_stuck: Optional[Callable[[str, dict], None]] = None
        self._on_memory_exceeded: Optional[Callable[[str, float, float], None]] = None
        self._on_cpu_exceeded: Optional[Callable[[str, float, float], None]] = None
        self._on_disk_exceeded: Optional[Callable[[str, float, float], None]] = None
        self._on_timeout: Optional[Callable[[str, float, float], None]] = None

    @property
    def heartbeat_settings(self) -> HeartbeatSettings:
        return self.heartbeats.settings

    @property
    def dead_letter_settings(self) -> DeadLetterSettings:
        return self.dead_letters.settings

    def on_stuck(self, callback: Callable[[str, dict], None]) -> "JobSupervisor":
        self._on_stuck = callback
        return self

    def on_memory_exceeded(self, callback: Callable[[str, float, float], None]) -> "JobSupervisor":
        self._on_memory_exceeded = callback
        return self

    def on_cpu_exceeded(self, callback: Callable[[str, float, float], None]) -> "JobSupervisor":
        self._on_cpu_exceeded = callback
        return self

    def on_disk_exceeded(self, callback: Callable[[str, float, float], None]) -> "JobSupervisor":
        self._on_disk_exceeded = callback
        return self

    def on_timeout(self, callback: Callable[[str, float, float], None]) -> "JobSupervisor":
        self._on_timeout = callback
        return self

    def supervise(
        self,
        job_class: str,
        queue: str = "default",
        payload: Any = None,
        limits: ResourceLimits = None,
        heartbeat_interval: int = None,
        missed_heartbeats_threshold: int = None,
        metadata: dict = None,
        session_id: str = None,
    ) -> str | None:
        """Open a session for a job. Returns its id, or None when the queue is not supervised."""
        if not self.queue_filter.should_supervise(queue):
            logger.debug(f"Skipping supervision for {job_class}: queue {queue} is not supervised")
            return None

        limits = limits or self.resources.limits
        session_id = session_id or str(uuid.uuid4())

        with self.store.atomic():
            SupervisedJob.create(
                id=session_id,
                job_class=job_class,
                queue=queue,
                status=SessionStatus.RUNNING.value,
                started_at=self.clock.now(),
                payload=payload,
                metadata={},
            )

        initial = dict(metadata or {})
        initial.update(
            {
                "job_class": job_class,
                "queue": queue,
                "timeout_seconds": limits.timeout_seconds,
                "memory_limit_mb": limits.memory_mb,
                "cpu_limit_percent": limits.cpu_percent,
                "disk_limit_mb": limits.disk_mb,
                "heartbeat_interval": heartbeat_interval or self.heartbeat_settings.interval_seconds,
                "missed_heartbeats_threshold": missed_heartbeats_threshold or self.heartbeat_settings.missed_threshold,
            }
        )
        self.heartbeats.record_heartbeat(session_id, initial)
        self.health.mark_healthy(session_id)

        logger.info(f"Started supervision of {job_class} on queue {queue} as {session_id}")
        self.events.emit(JobSupervisionStarted(session_id=session_id, job_class=job_class, queue=queue))
        return session_id

    @contextmanager
    def supervised(self, job_class: str, queue: str = "default", payload: Any = None, **options):
        """Supervise the enclosed block: completes on exit, records a failure on exception.

        Yields the session id, or None when the queue is not supervised.
        """
        session_id = self.supervise(job_class, queue=queue, payload=payload, **options)
        try:
            yield session_id
        except Exception as e:
            if session_id is not None:
                self.fail(session_id, e)
            raise
        else:
            if session_id is not None:
                self.complete(session_id)

    def heartbeat(self, session_id: str, metadata: dict = None) -> Heartbeat | None:
        return self.heartbeats.record_heartbeat(session_id, metadata)

    def report_progress(self, session_id: str, current: int, total: int, metadata: dict = None) -> Heartbeat | None:
        progress = dict(metadata or {})
        progress.update(
            {
                "progress_current": current,
                "progress_total": total,
                "progress_percentage": round(current / total * 100, 2) if total > 0 else 0,
            }
        )
        return self.heartbeat(session_id, progress)

    def complete(self, session_id: str) -> bool:
        """Close a session successfully. Returns False for unknown or already finished sessions."""
        with self.store.atomic():
            session = SupervisedJob.get_or_none(SupervisedJob.id == session_id)
            if session is None:
                logger.warning(f"Cannot complete unknown session {session_id}")
                return False
            if session.is_terminal:
                return False

            session.status = SessionStatus.COMPLETED.value
            session.completed_at = self.clock.now()
            session.tracked = False
            session.missed_heartbeats = 0
            session.save()

        logger.info(f"Session {session_id} completed")
        self.events.emit(JobSupervisionEnded(session_id=session_id, status=SessionStatus.COMPLETED.value))
        return True

    def fail(self, session_id: str, exception: BaseException, context: dict = None) -> int | None:
        """Record a failure.

        Returns the delay in seconds before the job should be retried, or None
        once the retry budget is spent and the session has been dead-lettered.
        The delay starts at retry_delay_seconds and doubles with each recorded error.
        """
        self.dead_letters.record_error(session_id, exception, context)

        session = SupervisedJob.get_or_none(SupervisedJob.id == session_id)
        if session is None:
            return None

        if session.is_terminal:
            self.events.emit(JobSupervisionEnded(session_id=session_id, status=session.status))
            return None

        attempt = max(self.dead_letters.error_count(session_id), 1)
        return self.dead_letter_settings.retry_delay_seconds * 2 ** (attempt - 1)

    def check(self, session_id: str) -> dict:
        """Run stuck, resource and timeout checks for one session and fire callbacks."""
        stuck = next((r for r in self.heartbeats.list_stuck() if r.session_id == session_id), None)
        if stuck is not None:
            self.health.mark_unhealthy(session_id, STUCK_REASON)
            if self._on_stuck is not None:
                self._on_stuck(session_id, stuck.metadata)

        checks = {
            "memory": (self.resources.check_memory(session_id), self._on_memory_exceeded),
            "cpu": (self.resources.check_cpu(session_id), self._on_cpu_exceeded),
            "disk": (self.resources.check_disk(session_id), self._on_disk_exceeded),
            "time": (self.resources.check_time(session_id), self._on_timeout),
        }
        for check, callback in checks.values():
            if not check.within_limit and callback is not None:
                callback(session_id, check.current, check.limit)

        report = {name: check.to_dict() for name, (check, _) in checks.items()}
        report["session_id"] = session_id
        report["stuck"] = stuck is not None
        return report

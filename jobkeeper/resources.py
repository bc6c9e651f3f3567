"""
Resource limit enforcement for supervised jobs.

Samples memory, CPU and disk usage with psutil and compares each point-in-time
measurement against its configured ceiling. A breach (actual > limit) appends
a ResourceViolation row and emits ResourceViolationDetected; violations are
never deduplicated here, rate limiting belongs to whoever alerts on them.
Limits come from ResourceLimits and can be overridden per session through the
metadata keys memory_limit_mb, cpu_limit_percent, disk_limit_mb and
timeout_seconds.
"""

import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from .clock import default_clock
from .config import ResourceLimits
from .events import EventBus, JobTimeout, ResourceViolationDetected
from .models import ResourceViolation, Store, SupervisedJob, ViolationType

logger = logging.getLogger(__name__)

MB = 1024 * 1024


def get_directory_size(path: str) -> float:
    """Get total size of a directory in MB."""
    total = 0
    try:
        for dirpath, dirnames, filenames in os.walk(path):
            for filename in filenames:
                filepath = os.path.join(dirpath, filename)
                try:
                    total += os.path.getsize(filepath)
                except (OSError, FileNotFoundError):
                    pass
    except (OSError, PermissionError):
        pass
    return total / MB


@dataclass
class ResourceCheck:
    """Outcome of comparing one measurement with its ceiling."""

    violation_type: str
    within_limit: bool
    current: float
    limit: Optional[float]

    def to_dict(self) -> dict:
        return {
            "type": self.violation_type,
            "within_limit": self.within_limit,
            "current": round(self.current, 2),
            "limit": self.limit,
        }


class ResourceSampler:
    """Point-in-time measurements of a session's process.

    The process is taken from the session metadata key "pid", falling back to
    the current process when the job runs in-process.
    """

    def _process(self, session: Optional[SupervisedJob]) -> psutil.Process | None:
        pid = None
        if session is not None:
            pid = session.get_metadata().get("pid")
        try:
            return psutil.Process(int(pid) if pid else os.getpid())
        except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError):
            return None

    def memory_mb(self, session: Optional[SupervisedJob]) -> float:
        proc = self._process(session)
        if proc is None:
            return 0.0
        try:
            memory_mb = proc.memory_info().rss / MB
            try:
                for child in proc.children(recursive=True):
                    memory_mb += child.memory_info().rss / MB
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
            return memory_mb
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0.0

    def cpu_percent(self, session: Optional[SupervisedJob]) -> float:
        proc = self._process(session)
        if proc is None:
            return 0.0
        try:
            cpu = proc.cpu_percent(interval=0.1)
            try:
                for child in proc.children(recursive=True):
                    cpu += child.cpu_percent(interval=0.1)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
            return cpu
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0.0

    def disk_mb(self, session: Optional[SupervisedJob], disk_path: str) -> float:
        """Size of the session's watched directories, else used space on disk_path."""
        watch_dirs = session.get_metadata().get("watch_dirs") if session is not None else None
        if watch_dirs:
            return sum(get_directory_size(d) for d in watch_dirs if d and os.path.isdir(d))
        try:
            return psutil.disk_usage(disk_path).used / MB
        except OSError as e:
            logger.warning(f"Cannot read disk usage for {disk_path}: {e}")
            return 0.0


class ResourceGuard:
    """Checks supervised sessions against their resource ceilings."""

    def __init__(
        self,
        store: Store,
        events: EventBus,
        limits: ResourceLimits = None,
        sampler: ResourceSampler = None,
        clock=None,
    ):
        self.store = store
        self.events = events
        self.limits = limits or ResourceLimits()
        self.sampler = sampler or ResourceSampler()
        self.clock = clock or default_clock

    def check_memory(self, session_id: str) -> ResourceCheck:
        return self._check(
            session_id,
            ViolationType.MEMORY,
            "memory_limit_mb",
            self.limits.memory_mb,
            self.sampler.memory_mb,
        )

    def check_cpu(self, session_id: str) -> ResourceCheck:
        return self._check(
            session_id,
            ViolationType.CPU,
            "cpu_limit_percent",
            self.limits.cpu_percent,
            self.sampler.cpu_percent,
        )

    def check_disk(self, session_id: str) -> ResourceCheck:
        return self._check(
            session_id,
            ViolationType.DISK,
            "disk_limit_mb",
            self.limits.disk_mb,
            lambda session: self.sampler.disk_mb(session, self.limits.disk_path),
        )

    def check_time(self, session_id: str) -> ResourceCheck:
        """Compare elapsed run time with the session's timeout."""
        session = SupervisedJob.get_or_none(SupervisedJob.id == session_id)
        if session is None:
            return ResourceCheck(ViolationType.TIME.value, True, 0.0, None)

        def elapsed(s):
            return (self.clock.now() - s.started_at).total_seconds()

        check = self._check(session_id, ViolationType.TIME, "timeout_seconds", self.limits.timeout_seconds, elapsed)
        if not check.within_limit:
            self.events.emit(
                JobTimeout(session_id=session_id, timeout_seconds=int(check.limit), elapsed_seconds=check.current)
            )
        return check

    def check_all(self, session_id: str) -> dict[str, ResourceCheck]:
        """Run the memory, CPU and disk checks. Each records its own breach."""
        return {
            ViolationType.MEMORY.value: self.check_memory(session_id),
            ViolationType.CPU.value: self.check_cpu(session_id),
            ViolationType.DISK.value: self.check_disk(session_id),
        }

    def is_within_limits(self, session_id: str) -> bool:
        return all(check.within_limit for check in self.check_all(session_id).values())

    def current_usage(self, session_id: str) -> dict:
        checks = self.check_all(session_id)
        usage = {name: check.to_dict() for name, check in checks.items()}
        usage["all_within_limits"] = all(check.within_limit for check in checks.values())
        return usage

    def violations(self, session_id: str) -> list[ResourceViolation]:
        return list(
            ResourceViolation.select()
            .where(ResourceViolation.supervised_job == session_id)
            .order_by(ResourceViolation.recorded_at.asc(), ResourceViolation.id.asc())
        )

    def clear_violations(self, session_id: str) -> int:
        with self.store.atomic():
            return ResourceViolation.delete().where(ResourceViolation.supervised_job == session_id).execute()

    def _check(
        self,
        session_id: str,
        violation_type: ViolationType,
        limit_key: str,
        default_limit: Optional[float],
        measure: Callable[[Optional[SupervisedJob]], float],
    ) -> ResourceCheck:
        session = SupervisedJob.get_or_none(SupervisedJob.id == session_id)

        limit = default_limit
        if session is not None:
            override = session.get_metadata().get(limit_key)
            if override is not None:
                limit = float(override)

        current = float(measure(session))
        within_limit = limit is None or current <= limit
        check = ResourceCheck(violation_type.value, within_limit, current, limit)

        if within_limit:
            return check

        logger.warning(
            f"Session {session_id} exceeded {violation_type.value} limit: {current:.1f} > {limit}"
        )
        if session is not None:
            with self.store.atomic():
                ResourceViolation.create(
                    supervised_job=session_id,
                    violation_type=violation_type.value,
                    limit_value=limit,
                    actual_value=current,
                    recorded_at=self.clock.now(),
                    metadata={"job_class": session.job_class},
                )
        self.events.emit(
            ResourceViolationDetected(
                session_id=session_id,
                violation_type=violation_type.value,
                limit=limit,
                actual=current,
            )
        )
        return check

"""
Health verdicts for supervised sessions.

Combines heartbeat freshness and resource compliance into a tri-state verdict
(healthy / unhealthy / unknown). One current record is kept per session;
transitions are announced with HealthStatusChanged, re-marking the same
status and reason is silent.
"""

import logging
from datetime import timedelta
from typing import Optional

from .clock import default_clock
from .events import EventBus, HealthStatusChanged
from .heartbeat import HeartbeatTracker
from .models import HealthStatus, JobHealthCheck, Store, SupervisedJob
from .resources import ResourceGuard

logger = logging.getLogger(__name__)

# Staleness allows twice the heartbeat interval before calling a session unhealthy
STALE_GRACE_FACTOR = 2


class HealthMonitor:
    """Tracks the current health verdict of each session."""

    def __init__(
        self,
        store: Store,
        events: EventBus,
        heartbeats: HeartbeatTracker,
        resources: ResourceGuard,
        clock=None,
    ):
        self.store = store
        self.events = events
        self.heartbeats = heartbeats
        self.resources = resources
        self.clock = clock or default_clock

    def perform_health_check(self, session_id: str) -> HealthStatus:
        """Evaluate heartbeat freshness then resource limits and record the verdict."""
        heartbeat = self.heartbeats.get_heartbeat(session_id)

        if heartbeat is None:
            return self.mark_unhealthy(session_id, "no heartbeat data")

        grace = timedelta(seconds=heartbeat["interval"] * STALE_GRACE_FACTOR)
        if self.clock.now() > heartbeat["last_heartbeat_at"] + grace:
            return self.mark_unhealthy(session_id, "heartbeat is stale")

        checks = self.resources.check_all(session_id)
        breached = [check for check in checks.values() if not check.within_limit]
        if breached:
            return self.mark_unhealthy(session_id, f"resource violation: {breached[0].violation_type}")

        return self.mark_healthy(session_id)

    def mark_healthy(self, session_id: str) -> HealthStatus:
        return self._mark(session_id, HealthStatus.HEALTHY, None)

    def mark_unhealthy(self, session_id: str, reason: str) -> HealthStatus:
        return self._mark(session_id, HealthStatus.UNHEALTHY, reason)

    def is_healthy(self, session_id: str) -> bool:
        return self.get_health(session_id)["status"] == HealthStatus.HEALTHY.value

    def get_health(self, session_id: str) -> dict:
        """Current record for a session; sessions never checked read as unknown."""
        record = JobHealthCheck.get_or_none(JobHealthCheck.supervised_job == session_id)
        if record is None:
            return {
                "session_id": session_id,
                "status": HealthStatus.UNKNOWN.value,
                "reason": None,
                "check_count": 0,
                "first_unhealthy_at": None,
                "updated_at": None,
            }
        return record.to_dict()

    def all_health(self, unhealthy_only: bool = False) -> list[dict]:
        query = JobHealthCheck.select().order_by(JobHealthCheck.updated_at.desc())
        if unhealthy_only:
            query = query.where(JobHealthCheck.status == HealthStatus.UNHEALTHY.value)
        return [record.to_dict() for record in query]

    def unhealthy(self) -> list[dict]:
        return self.all_health(unhealthy_only=True)

    def remove_health(self, session_id: str):
        with self.store.atomic():
            JobHealthCheck.delete().where(JobHealthCheck.supervised_job == session_id).execute()

    def _mark(self, session_id: str, status: HealthStatus, reason: Optional[str]) -> HealthStatus:
        now = self.clock.now()

        with self.store.atomic():
            if not SupervisedJob.select().where(SupervisedJob.id == session_id).exists():
                logger.warning(f"Cannot record health for unknown session {session_id}")
                return HealthStatus.UNKNOWN

            record = JobHealthCheck.get_or_none(JobHealthCheck.supervised_job == session_id)
            if record is None:
                record = JobHealthCheck(supervised_job=session_id, check_count=0)
                previous_status, previous_reason = HealthStatus.UNKNOWN.value, None
            else:
                previous_status, previous_reason = record.status, record.reason

            record.status = status.value
            record.reason = reason
            record.check_count += 1
            record.updated_at = now
            if status is HealthStatus.UNHEALTHY:
                if previous_status != HealthStatus.UNHEALTHY.value or record.first_unhealthy_at is None:
                    record.first_unhealthy_at = now
            else:
                record.first_unhealthy_at = None
            record.save()

        if previous_status == status.value and previous_reason == reason:
            return status

        logger.info(
            f"Session {session_id} health {previous_status} -> {status.value}"
            + (f" ({reason})" if reason else "")
        )
        self.events.emit(
            HealthStatusChanged(
                session_id=session_id,
                previous=previous_status,
                current=status.value,
                reason=reason,
            )
        )
        return status

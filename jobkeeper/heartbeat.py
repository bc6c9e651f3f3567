"""
Heartbeat tracking for stuck job detection.

Supervised jobs report heartbeats while they work. A periodic sweep compares
each tracked session's last beat with its expected interval, counts missed
beats, and reports sessions whose missed count reached the threshold as
stuck. Interval and threshold can be overridden per session through the
session metadata keys heartbeat_interval and missed_heartbeats_threshold.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .clock import default_clock
from .config import HeartbeatSettings
from .events import EventBus, HeartbeatMissed, HeartbeatReceived, JobStuck
from .models import Heartbeat, SessionStatus, Store, SupervisedJob

logger = logging.getLogger(__name__)


@dataclass
class StuckReport:
    """A session whose missed heartbeats reached its threshold."""

    session_id: str
    job_class: str
    queue: str
    missed_count: int
    threshold: int
    last_heartbeat_at: Optional[datetime]
    started_at: datetime
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "job_class": self.job_class,
            "queue": self.queue,
            "missed_count": self.missed_count,
            "threshold": self.threshold,
            "last_heartbeat_at": self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None,
            "started_at": self.started_at.isoformat(),
            "metadata": self.metadata,
        }


class HeartbeatTracker:
    """Records heartbeats and detects sessions that stopped sending them."""

    def __init__(self, store: Store, events: EventBus, settings: HeartbeatSettings = None, clock=None):
        self.store = store
        self.events = events
        self.settings = settings or HeartbeatSettings()
        self.clock = clock or default_clock

    def interval_for(self, session: SupervisedJob) -> int:
        metadata = session.get_metadata()
        return int(metadata.get("heartbeat_interval") or self.settings.interval_seconds)

    def threshold_for(self, session: SupervisedJob) -> int:
        metadata = session.get_metadata()
        return int(metadata.get("missed_heartbeats_threshold") or self.settings.missed_threshold)

    def record_heartbeat(self, session_id: str, metadata: dict = None) -> Heartbeat | None:
        """Record a heartbeat and reset the session's missed counter.

        Sessions that were never registered are created on their first beat.
        Beats for completed or failed sessions are ignored.
        """
        metadata = dict(metadata or {})
        now = self.clock.now()

        with self.store.atomic():
            session = SupervisedJob.get_or_none(SupervisedJob.id == session_id)
            if session is None:
                session = SupervisedJob.create(
                    id=session_id,
                    job_class=metadata.get("job_class", "unknown"),
                    queue=metadata.get("queue", "default"),
                    started_at=now,
                    metadata={},
                )
            elif session.is_terminal:
                logger.debug(f"Ignoring heartbeat for finished session {session_id}")
                return None

            # Timestamps never move backwards for a session
            beat_at = now
            if session.last_heartbeat_at and session.last_heartbeat_at > now:
                beat_at = session.last_heartbeat_at

            merged = session.get_metadata()
            merged.update(metadata)
            session.metadata = merged
            session.last_heartbeat_at = beat_at
            session.missed_heartbeats = 0
            session.tracked = True
            if session.status == SessionStatus.STALLED.value:
                session.status = SessionStatus.RUNNING.value
            session.save()

            heartbeat = Heartbeat.create(
                supervised_job=session,
                recorded_at=beat_at,
                memory_usage=metadata.get("memory_usage"),
                cpu_usage=metadata.get("cpu_usage"),
                progress_current=metadata.get("progress_current"),
                progress_total=metadata.get("progress_total"),
                metadata=metadata,
            )

        self.events.emit(HeartbeatReceived(session_id=session_id, heartbeat_id=heartbeat.id, metadata=metadata))
        return heartbeat

    def sweep_for_stuck(self) -> list[StuckReport]:
        """Count missed beats for every tracked session and report stuck ones."""
        now = self.clock.now()
        reports = []
        pending = []

        with self.store.atomic():
            for session in SupervisedJob.select().where(SupervisedJob.tracked == True):  # noqa: E712
                interval = self.interval_for(session)
                threshold = self.threshold_for(session)
                last = session.last_heartbeat_at or session.started_at
                expected_at = last + timedelta(seconds=interval)

                if now > expected_at:
                    session.missed_heartbeats += 1
                    pending.append(
                        HeartbeatMissed(
                            session_id=session.id,
                            expected_at=expected_at,
                            missed_count=session.missed_heartbeats,
                            missed_duration_ms=int((now - expected_at).total_seconds() * 1000),
                        )
                    )

                if session.missed_heartbeats >= threshold:
                    if session.status == SessionStatus.RUNNING.value:
                        session.status = SessionStatus.STALLED.value
                        pending.append(
                            JobStuck(
                                session_id=session.id,
                                missed_count=session.missed_heartbeats,
                                last_heartbeat_at=session.last_heartbeat_at,
                            )
                        )
                    reports.append(self._report(session, threshold))

                session.save()

        for event in pending:
            self.events.emit(event)

        if reports:
            logger.warning(f"{len(reports)} stuck session(s): {', '.join(r.session_id for r in reports)}")
        return reports

    def list_stuck(self) -> list[StuckReport]:
        """Stuck sessions as of the last sweep, without counting new misses."""
        reports = []
        for session in SupervisedJob.select().where(SupervisedJob.tracked == True):  # noqa: E712
            threshold = self.threshold_for(session)
            if session.missed_heartbeats >= threshold:
                reports.append(self._report(session, threshold))
        return reports

    def remove_session(self, session_id: str):
        """Stop tracking a session. Safe to call more than once."""
        with self.store.atomic():
            (
                SupervisedJob.update(tracked=False, missed_heartbeats=0)
                .where(SupervisedJob.id == session_id)
                .execute()
            )

    def get_heartbeat(self, session_id: str) -> dict | None:
        """Last heartbeat data for a session, or None if it never beat."""
        session = SupervisedJob.get_or_none(SupervisedJob.id == session_id)
        if session is None or session.last_heartbeat_at is None:
            return None
        return {
            "session_id": session.id,
            "last_heartbeat_at": session.last_heartbeat_at,
            "missed_count": session.missed_heartbeats,
            "interval": self.interval_for(session),
            "metadata": session.get_metadata(),
        }

    def active_sessions(self) -> list[str]:
        query = SupervisedJob.select(SupervisedJob.id).where(SupervisedJob.tracked == True)  # noqa: E712
        return [session.id for session in query]

    def history(self, session_id: str, limit: int = 100) -> list[Heartbeat]:
        return list(
            Heartbeat.select()
            .where(Heartbeat.supervised_job == session_id)
            .order_by(Heartbeat.recorded_at.desc(), Heartbeat.id.desc())
            .limit(limit)
        )

    def _report(self, session: SupervisedJob, threshold: int) -> StuckReport:
        return StuckReport(
            session_id=session.id,
            job_class=session.job_class,
            queue=session.queue,
            missed_count=session.missed_heartbeats,
            threshold=threshold,
            last_heartbeat_at=session.last_heartbeat_at,
            started_at=session.started_at,
            metadata=session.get_metadata(),
        )

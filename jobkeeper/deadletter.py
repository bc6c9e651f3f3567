"""
Dead letter queue for permanently failed jobs.

Every failure of a session is recorded as a SupervisedJobError. Once a
session's error count reaches max_retries it is marked failed and moved to
the dead letter queue, at most once. Entries keep the payload so they can
be re-dispatched through the queue backend; retrying stamps retried_at and
leaves the entry in place, and an entry may be retried again.
"""

import logging
import traceback
from datetime import timedelta
from typing import Optional

from .clock import default_clock
from .config import DeadLetterSettings
from .events import EventBus, JobMovedToDeadLetterQueue
from .models import DeadLetterJob, SessionStatus, Store, SupervisedJob, SupervisedJobError
from .queue import QueueBackend

logger = logging.getLogger(__name__)


def _exception_name(exception: BaseException) -> str:
    cls = type(exception)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def _format_trace(exception: BaseException) -> str:
    return "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))


class DeadLetterStore:
    """Terminal-failure registry with retry and prune operations."""

    def __init__(
        self,
        store: Store,
        events: EventBus,
        queue_backend: QueueBackend,
        settings: DeadLetterSettings = None,
        clock=None,
    ):
        self.store = store
        self.events = events
        self.queue_backend = queue_backend
        self.settings = settings or DeadLetterSettings()
        self.clock = clock or default_clock

    def record_error(self, session_id: str, exception: BaseException, context: dict = None) -> Optional[DeadLetterJob]:
        """Record one failure and dead-letter the session once its retry budget is spent.

        Returns the dead letter entry when this error exhausted the budget.
        """
        with self.store.atomic():
            session = SupervisedJob.get_or_none(SupervisedJob.id == session_id)
            if session is None:
                logger.warning(f"Cannot record error for unknown session {session_id}")
                return None

            SupervisedJobError.create(
                supervised_job=session,
                exception=_exception_name(exception),
                message=str(exception),
                trace=_format_trace(exception),
                context=context,
                created_at=self.clock.now(),
            )
            error_count = self.error_count(session_id)
            logger.info(f"Session {session_id} recorded error {error_count}/{self.settings.max_retries}: {exception}")

            if error_count < self.settings.max_retries:
                return None

            if not session.is_terminal:
                session.status = SessionStatus.FAILED.value
                session.failed_at = self.clock.now()
                session.tracked = False
                session.save()

        return self.move_to_dead_letter(session, exception)

    def move_to_dead_letter(self, session: SupervisedJob, exception: BaseException) -> Optional[DeadLetterJob]:
        """Create the session's dead letter entry. Never creates a second one."""
        if not self.settings.enabled:
            return None

        with self.store.atomic():
            existing = DeadLetterJob.get_or_none(DeadLetterJob.supervised_job == session.id)
            if existing is not None:
                logger.debug(f"Session {session.id} is already in the dead letter queue")
                return None

            entry = DeadLetterJob.create(
                supervised_job=session.id,
                job_class=session.job_class,
                queue=session.queue,
                exception=_exception_name(exception),
                message=str(exception),
                trace=_format_trace(exception),
                payload=session.payload if session.payload is not None else session.get_metadata(),
                failed_at=self.clock.now(),
            )

        logger.error(f"Session {session.id} ({session.job_class}) moved to dead letter queue: {exception}")
        self.events.emit(
            JobMovedToDeadLetterQueue(
                entry_id=entry.id,
                session_id=session.id,
                job_class=session.job_class,
                exception=entry.exception,
                message=entry.message,
            )
        )
        return entry

    def retry(self, entry_id: int) -> bool:
        """Re-dispatch an entry's payload. Returns False if the entry does not exist.

        Errors raised by the queue backend propagate and leave retried_at untouched.
        """
        entry = DeadLetterJob.get_or_none(DeadLetterJob.id == entry_id)
        if entry is None:
            logger.warning(f"Dead letter entry {entry_id} not found")
            return False

        self.queue_backend.dispatch(entry.job_class, entry.payload, entry.queue)

        with self.store.atomic():
            (
                DeadLetterJob.update(retried_at=self.clock.now(), retry_count=DeadLetterJob.retry_count + 1)
                .where(DeadLetterJob.id == entry_id)
                .execute()
            )

        logger.info(f"Retried dead letter entry {entry_id} ({entry.job_class})")
        return True

    def prune(self, retention_days: int = None) -> int:
        """Delete entries that failed more than retention_days ago. 0 keeps everything."""
        days = self.settings.retention_days if retention_days is None else retention_days
        if days == 0:
            return 0

        cutoff = self.clock.now() - timedelta(days=days)
        with self.store.atomic():
            deleted = DeadLetterJob.delete().where(DeadLetterJob.failed_at < cutoff).execute()

        if deleted:
            logger.info(f"Pruned {deleted} dead letter entries older than {days} days")
        return deleted

    def get(self, entry_id: int) -> DeadLetterJob | None:
        return DeadLetterJob.get_or_none(DeadLetterJob.id == entry_id)

    def all(self, limit: int = None, job_class: str = None) -> list[DeadLetterJob]:
        query = DeadLetterJob.select().order_by(DeadLetterJob.failed_at.desc(), DeadLetterJob.id.desc())
        if job_class:
            query = query.where(DeadLetterJob.job_class == job_class)
        if limit:
            query = query.limit(limit)
        return list(query)

    def count(self) -> int:
        return DeadLetterJob.select().count()

    def error_count(self, session_id: str) -> int:
        return SupervisedJobError.select().where(SupervisedJobError.supervised_job == session_id).count()

    def errors(self, session_id: str) -> list[SupervisedJobError]:
        return list(
            SupervisedJobError.select()
            .where(SupervisedJobError.supervised_job == session_id)
            .order_by(SupervisedJobError.created_at.asc(), SupervisedJobError.id.asc())
        )

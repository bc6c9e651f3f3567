"""
Deployment draining.

Before a release the coordinator pauses the named queues, waits for the
sessions still running on them to finish, and on timeout hands the leftovers
to a callback and optionally cancels them (marks them failed; no OS process
is touched). Resuming the queues is the caller's job, typically in a finally
block:

    coordinator = keeper.deployment().drain_queues(["default"]).wait_for_completion(120)
    try:
        safe = await coordinator.execute()
        ...
    finally:
        coordinator.resume_queues()
"""

import asyncio
import logging
from typing import Callable, Optional

from .clock import default_clock
from .events import DeploymentCompleted, DeploymentStarted, DeploymentTimedOut, EventBus
from .models import SessionStatus, Store, SupervisedJob
from .queue import QueueBackend

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (SessionStatus.RUNNING.value, SessionStatus.STALLED.value)


class QueueDrainer:
    """Stops queues from handing out new work."""

    def __init__(self, queue_backend: QueueBackend):
        self.queue_backend = queue_backend

    def drain(self, queues: list[str]):
        for queue in queues:
            self.queue_backend.pause(queue)

    def resume(self, queues: list[str]):
        for queue in queues:
            self.queue_backend.resume(queue)

    def is_paused(self, queue: str) -> bool:
        return self.queue_backend.is_paused(queue)


class JobWaiter:
    """Polls the job registry until the drained queues have no running sessions."""

    def __init__(self, clock=None, poll_interval: float = 5.0):
        self.clock = clock or default_clock
        self.poll_interval = poll_interval

    def running_sessions(self, queues: list[str]) -> list[SupervisedJob]:
        query = SupervisedJob.select().where(SupervisedJob.status.in_(ACTIVE_STATUSES))
        if queues:
            query = query.where(SupervisedJob.queue.in_(queues))
        return list(query.order_by(SupervisedJob.started_at))

    def remaining_count(self, queues: list[str]) -> int:
        query = SupervisedJob.select().where(SupervisedJob.status.in_(ACTIVE_STATUSES))
        if queues:
            query = query.where(SupervisedJob.queue.in_(queues))
        return query.count()

    async def wait_for_jobs(
        self, queues: list[str], timeout: float, stop_event: Optional[asyncio.Event] = None
    ) -> bool:
        """True once nothing is running, False on timeout or when stop_event fires."""
        started = self.clock.now()

        while True:
            remaining = self.remaining_count(queues)
            if remaining == 0:
                return True

            elapsed = (self.clock.now() - started).total_seconds()
            if elapsed >= timeout:
                return False

            logger.info(f"Waiting for {remaining} running job(s) on {queues or 'all queues'}")
            if await self.clock.sleep(min(self.poll_interval, timeout - elapsed), stop_event):
                return False


class DeploymentCoordinator:
    """Makes it safe to redeploy: drain, wait, optionally cancel."""

    def __init__(self, store: Store, events: EventBus, queue_backend: QueueBackend, clock=None, poll_interval: float = 5.0):
        self.store = store
        self.events = events
        self.clock = clock or default_clock
        self.drainer = QueueDrainer(queue_backend)
        self.waiter = JobWaiter(self.clock, poll_interval)
        self._queues: list[str] = []
        self._timeout: float = 300
        self._cancel = False
        self._on_timeout: Optional[Callable[[list[SupervisedJob]], None]] = None
        self._abort = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def drain_queues(self, queues: list[str]) -> "DeploymentCoordinator":
        self._queues = list(queues)
        return self

    def wait_for_completion(self, timeout_seconds: float) -> "DeploymentCoordinator":
        if timeout_seconds < 0:
            raise ValueError("timeout_seconds cannot be negative")
        self._timeout = timeout_seconds
        return self

    def cancel_long_running(self) -> "DeploymentCoordinator":
        self._cancel = True
        return self

    def on_timeout(self, callback: Callable[[list[SupervisedJob]], None]) -> "DeploymentCoordinator":
        self._on_timeout = callback
        return self

    def abort(self):
        """Stop waiting. execute() then returns False without cancelling anything.

        May be called from any thread. An abort before execute() applies to the
        next run; each run clears it when it returns.
        """
        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._abort.set)
                return
        self._abort.set()

    def resume_queues(self):
        self.drainer.resume(self._queues)

    async def execute(self) -> bool:
        """Returns True iff every job finished before the timeout."""
        self._loop = asyncio.get_running_loop()
        try:
            return await self._execute()
        finally:
            self._abort.clear()

    async def _execute(self) -> bool:
        logger.info(f"Deployment drain started for {self._queues or 'all queues'} (timeout {self._timeout}s)")
        self.events.emit(DeploymentStarted(queues=list(self._queues)))

        self.drainer.drain(self._queues)
        completed = await self.waiter.wait_for_jobs(self._queues, self._timeout, self._abort)

        if completed:
            logger.info("All jobs finished, safe to deploy")
            self.events.emit(DeploymentCompleted(queues=list(self._queues), cancelled_count=0))
            return True

        if self._abort.is_set():
            logger.warning("Deployment drain aborted")
            return False

        remaining = self.waiter.running_sessions(self._queues)
        logger.warning(f"Deployment drain timed out with {len(remaining)} job(s) still running")

        if self._on_timeout is not None:
            try:
                self._on_timeout(remaining)
            except Exception as e:
                logger.error(f"Deployment timeout callback failed: {e}")

        self.events.emit(
            DeploymentTimedOut(queues=list(self._queues), timeout_seconds=self._timeout, remaining_count=len(remaining))
        )

        if self._cancel and remaining:
            cancelled = self._cancel_sessions(remaining)
            self.events.emit(DeploymentCompleted(queues=list(self._queues), cancelled_count=cancelled))

        return False

    def _cancel_sessions(self, sessions: list[SupervisedJob]) -> int:
        now = self.clock.now()
        ids = [session.id for session in sessions]
        with self.store.atomic():
            cancelled = (
                SupervisedJob.update(status=SessionStatus.FAILED.value, failed_at=now, tracked=False)
                .where(SupervisedJob.id.in_(ids), SupervisedJob.status.in_(ACTIVE_STATUSES))
                .execute()
            )
        logger.warning(f"Cancelled {cancelled} long-running job(s): {', '.join(ids)}")
        return cancelled

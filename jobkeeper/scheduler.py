"""
Periodic sweeps.

One loop drives the time-based parts of supervision: counting missed
heartbeats, re-evaluating the health of every tracked session, checking run
time against timeouts, moving expired Open circuits to HalfOpen, and pruning
the dead letter queue whenever its cron schedule comes due.
"""

import asyncio
import logging
from datetime import datetime

from croniter import croniter

from .breaker import CircuitBreaker
from .clock import default_clock
from .deadletter import DeadLetterStore
from .health import HealthMonitor
from .heartbeat import HeartbeatTracker
from .models import HealthStatus
from .resources import ResourceGuard

logger = logging.getLogger(__name__)


def get_next_run(schedule: str, base_time: datetime) -> datetime | None:
    """Next firing of a cron schedule after base_time, or None if it is invalid."""
    try:
        return croniter(schedule, base_time).get_next(datetime)
    except (KeyError, ValueError) as e:
        logger.error(f"Invalid cron schedule '{schedule}': {e}")
        return None


class SweepScheduler:
    """Runs the supervision sweeps on a fixed interval."""

    def __init__(
        self,
        heartbeats: HeartbeatTracker,
        health: HealthMonitor,
        resources: ResourceGuard,
        breakers: CircuitBreaker,
        dead_letters: DeadLetterStore,
        interval: float = 10,
        cleanup_schedule: str = "0 2 * * *",
        clock=None,
    ):
        self.heartbeats = heartbeats
        self.health = health
        self.resources = resources
        self.breakers = breakers
        self.dead_letters = dead_letters
        self.interval = interval
        self.cleanup_schedule = cleanup_schedule
        self.clock = clock or default_clock
        self.next_cleanup = get_next_run(cleanup_schedule, self.clock.now())
        self._task = None
        self._stop_event = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the sweep loop."""
        if self.running:
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Sweep scheduler started (every {self.interval}s)")

    async def stop(self):
        """Stop the sweep loop. Returns once the current sweep has finished."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=max(self.interval, 1) * 2)
            except asyncio.TimeoutError:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None
        logger.info("Sweep scheduler stopped")

    async def _sweep_loop(self):
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in sweep loop: {e}")

            if await self.clock.sleep(self.interval, self._stop_event):
                break

    def run_once(self) -> dict:
        """One full sweep. Returns a summary of what it found."""
        stuck = self.heartbeats.sweep_for_stuck()

        unhealthy = []
        timed_out = []
        for session_id in self.heartbeats.active_sessions():
            try:
                if self.health.perform_health_check(session_id) is HealthStatus.UNHEALTHY:
                    unhealthy.append(session_id)
                if not self.resources.check_time(session_id).within_limit:
                    timed_out.append(session_id)
            except Exception as e:
                logger.error(f"Error checking session {session_id}: {e}")

        half_opened = self.breakers.tick()
        pruned = self.prune_if_due()

        logger.debug(
            f"Sweep: {len(stuck)} stuck, {len(unhealthy)} unhealthy, {len(timed_out)} timed out, "
            f"{len(half_opened)} circuit(s) half-open, {pruned} DLQ entries pruned"
        )
        return {
            "stuck": [report.session_id for report in stuck],
            "unhealthy": unhealthy,
            "timed_out": timed_out,
            "half_opened": half_opened,
            "pruned": pruned,
        }

    def prune_if_due(self) -> int:
        """Prune the dead letter queue if its schedule came due since the last prune."""
        now = self.clock.now()
        if self.next_cleanup is None or now < self.next_cleanup:
            return 0

        pruned = self.dead_letters.prune()
        self.next_cleanup = get_next_run(self.cleanup_schedule, now)
        return pruned

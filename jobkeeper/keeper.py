"""
Component wiring.

Keeper builds every supervision component from one Config, sharing a single
store, event bus, queue backend and clock. The HTTP app and embedding
applications both go through it.
"""

import logging

from .breaker import CircuitBreaker
from .clock import default_clock
from .config import Config, load_config
from .deadletter import DeadLetterStore
from .deployment import DeploymentCoordinator
from .events import EventBus, log_event
from .health import HealthMonitor
from .heartbeat import HeartbeatTracker
from .models import Store, initialize_db
from .queue import InMemoryQueueBackend, QueueBackend, QueueFilter
from .resources import ResourceGuard, ResourceSampler
from .scheduler import SweepScheduler
from .supervisor import JobSupervisor
from .workers import WorkerPoolRegistry, WorkerPoolSupervisor

logger = logging.getLogger(__name__)


class Keeper:
    """All supervision components for one process."""

    def __init__(
        self,
        config: Config = None,
        store: Store = None,
        events: EventBus = None,
        queue_backend: QueueBackend = None,
        clock=None,
        sampler: ResourceSampler = None,
    ):
        self.config = config or load_config()
        self.clock = clock or default_clock
        self.store = store or initialize_db(self.config.db_path)
        self.events = events or EventBus()
        self.events.subscribe(None, log_event)
        self.queue_backend = queue_backend or InMemoryQueueBackend()
        self.queue_filter = QueueFilter.from_settings(self.config.queues)

        self.heartbeats = HeartbeatTracker(self.store, self.events, self.config.heartbeat, self.clock)
        self.resources = ResourceGuard(self.store, self.events, self.config.limits, sampler, self.clock)
        self.health = HealthMonitor(self.store, self.events, self.heartbeats, self.resources, self.clock)
        self.breakers = CircuitBreaker(self.store, self.events, self.config.circuit_breaker, self.clock)
        self.dead_letters = DeadLetterStore(
            self.store, self.events, self.queue_backend, self.config.dead_letter, self.clock
        )
        self.supervisor = JobSupervisor(
            self.store,
            self.events,
            self.heartbeats,
            self.health,
            self.resources,
            self.dead_letters,
            self.queue_filter,
            self.clock,
        )
        self.pools = WorkerPoolRegistry()
        self.scheduler = SweepScheduler(
            self.heartbeats,
            self.health,
            self.resources,
            self.breakers,
            self.dead_letters,
            interval=self.config.sweep_interval,
            cleanup_schedule=self.config.dead_letter.cleanup_schedule,
            clock=self.clock,
        )

    def deployment(self) -> DeploymentCoordinator:
        """A fresh coordinator for one deployment drain."""
        return DeploymentCoordinator(
            self.store,
            self.events,
            self.queue_backend,
            self.clock,
            poll_interval=self.config.deployment_poll_interval,
        )

    def worker_pool(self, name: str, command) -> WorkerPoolSupervisor:
        """Create and register a worker pool."""
        pool = WorkerPoolSupervisor(name, command, self.config.workers, self.events, self.clock)
        return self.pools.register(pool)

    async def start(self):
        logger.info("Starting jobkeeper...")
        await self.scheduler.start()

    async def stop(self):
        logger.info("Shutting down jobkeeper...")
        await self.scheduler.stop()
        self.pools.stop_all()

    def close(self):
        self.store.close()

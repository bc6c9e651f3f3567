"""
Worker pool supervision.

A pool owns a fixed number of worker processes started from one command.
Once a sweep interval (about a second) each worker is examined: a worker
whose process is gone is reported through on_crash and replaced, a worker
that fails its health check goes to on_unhealthy or, when no callback is
set, is restarted in place. The default health check asks that the process
answers signals and stays under the pool's memory ceiling; a custom check
replaces it entirely.

The supervision loop waits on a stop event between sweeps, so stop() from
any task ends it within one interval. A stop() that lands before supervise()
starts is kept, and supervise() then returns without spawning anything.
Shutdown signals every worker first and waits on them against one shared
deadline, off the event loop.
"""

import asyncio
import logging
import os
import shlex
import signal
import subprocess
import threading
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import psutil

from .clock import default_clock
from .config import WorkerSettings
from .events import EventBus, WorkerCrashed, WorkerRestarted

logger = logging.getLogger(__name__)


class WorkerStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"


class Worker:
    """Handle on one worker process."""

    def __init__(
        self,
        id: str,
        queue: str,
        command,
        health_check: Optional[Callable[["Worker"], bool]] = None,
        memory_limit_mb: float = 512.0,
        stop_timeout: float = 10.0,
        clock=None,
    ):
        self.id = id
        self.queue = queue
        self.command = command
        self.memory_limit_mb = memory_limit_mb
        self.stop_timeout = stop_timeout
        self.clock = clock or default_clock
        self.process: Optional[subprocess.Popen] = None
        self.pid = 0
        self.status = WorkerStatus.STOPPED
        self.started_at: Optional[datetime] = None
        self.last_health_check_at: Optional[datetime] = None
        self._health_check = health_check

    def start(self):
        if isinstance(self.command, str):
            shell = self.command.startswith("cd ")
            cmd = self.command if shell else shlex.split(self.command)
        else:
            shell = False
            cmd = list(self.command)

        env = os.environ.copy()
        env["JOBKEEPER_WORKER_ID"] = self.id
        env["JOBKEEPER_WORKER_QUEUE"] = self.queue

        self.process = subprocess.Popen(
            cmd,
            shell=shell,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=env,
            start_new_session=True,  # Own process group so kill() reaches children
        )
        self.pid = self.process.pid
        self.status = WorkerStatus.RUNNING
        self.started_at = self.clock.now()
        logger.info(f"Started worker {self.id} with PID {self.pid}")

    @property
    def exit_code(self) -> int | None:
        return self.process.poll() if self.process else None

    def is_responsive(self) -> bool:
        """Whether the process is still there and accepts signals."""
        if self.status in (WorkerStatus.STOPPED, WorkerStatus.CRASHED) or self.process is None:
            return False
        if self.process.poll() is not None:
            return False
        try:
            return psutil.Process(self.pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def memory_usage(self) -> float:
        """Resident memory of the worker and its children in MB."""
        if not self.pid or self.status is not WorkerStatus.RUNNING:
            return 0.0
        try:
            proc = psutil.Process(self.pid)
            memory_mb = proc.memory_info().rss / 1024 / 1024
            try:
                for child in proc.children(recursive=True):
                    memory_mb += child.memory_info().rss / 1024 / 1024
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
            return memory_mb
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0.0

    def health_check(self) -> bool:
        self.last_health_check_at = self.clock.now()

        if self._health_check is not None:
            return bool(self._health_check(self))

        if not self.is_responsive():
            self.status = WorkerStatus.CRASHED
            return False

        return self.memory_usage() < self.memory_limit_mb

    def terminate(self):
        """Send SIGTERM to the process group without waiting."""
        process = self.process
        if process is None or process.poll() is not None:
            return
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGTERM)
        except ProcessLookupError:
            pass

    def force_kill(self):
        process = self.process
        if process is None or process.poll() is not None:
            return
        logger.warning(f"Worker {self.id} did not stop gracefully, forcing kill")
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except ProcessLookupError:
            pass

    def wait(self, timeout: float) -> bool:
        """Wait up to timeout seconds for the process to exit."""
        if self.process is None:
            return True
        try:
            self.process.wait(timeout=max(timeout, 0))
            return True
        except subprocess.TimeoutExpired:
            return False

    def kill(self):
        """SIGTERM the process group, SIGKILL it if it outlives stop_timeout."""
        stop_workers([self], self.stop_timeout)

    def restart(self):
        self.kill()
        self.start()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "queue": self.queue,
            "pid": self.pid,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_health_check_at": self.last_health_check_at.isoformat() if self.last_health_check_at else None,
            "memory_usage": round(self.memory_usage(), 1),
        }


def stop_workers(workers: list[Worker], timeout: float):
    """Stop several workers against one shared deadline.

    Every worker gets SIGTERM up front. Whatever is still running once
    timeout seconds have passed gets SIGKILL.
    """
    for worker in workers:
        try:
            worker.terminate()
        except OSError as e:
            logger.error(f"Failed to signal worker {worker.id}: {e}")

    deadline = time.monotonic() + timeout
    stubborn = [worker for worker in workers if not worker.wait(deadline - time.monotonic())]

    for worker in stubborn:
        try:
            worker.force_kill()
        except OSError as e:
            logger.error(f"Failed to kill worker {worker.id}: {e}")
    for worker in stubborn:
        if not worker.wait(5):
            logger.error(f"Worker {worker.id} (PID {worker.pid}) survived SIGKILL")

    for worker in workers:
        worker.status = WorkerStatus.STOPPED
        logger.info(f"Stopped worker {worker.id}")


class WorkerPoolSupervisor:
    """Keeps a pool of worker processes alive and healthy."""

    def __init__(self, name: str, command, settings: WorkerSettings = None, events: EventBus = None, clock=None):
        self.name = name
        self.command = command
        self.settings = settings or WorkerSettings()
        self.events = events or EventBus()
        self.clock = clock or default_clock
        self._worker_count = 1
        self._queue = "default"
        self._memory_limit_mb = self.settings.memory_limit_mb
        self._health_check: Optional[Callable[[Worker], bool]] = None
        self._on_unhealthy: Optional[Callable[[Worker], None]] = None
        self._on_crash: Optional[Callable[[Worker], None]] = None
        self._workers: list[Worker] = []
        self._lock = threading.Lock()
        self._stop_event = asyncio.Event()
        self._supervising = False

    def workers(self, count: int) -> "WorkerPoolSupervisor":
        if count < 1:
            raise ValueError("Worker count must be at least 1")
        self._worker_count = count
        return self

    def queue(self, name: str) -> "WorkerPoolSupervisor":
        self._queue = name
        return self

    def memory_limit(self, megabytes: float) -> "WorkerPoolSupervisor":
        self._memory_limit_mb = megabytes
        return self

    def with_health_check(self, callback: Callable[[Worker], bool]) -> "WorkerPoolSupervisor":
        self._health_check = callback
        return self

    def on_unhealthy(self, callback: Callable[[Worker], None]) -> "WorkerPoolSupervisor":
        self._on_unhealthy = callback
        return self

    def on_crash(self, callback: Callable[[Worker], None]) -> "WorkerPoolSupervisor":
        self._on_crash = callback
        return self

    @property
    def is_supervising(self) -> bool:
        return self._supervising

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def supervise(self):
        """Spawn the workers and sweep them until stop() is called.

        Returns at once if stop() was already called.
        """
        if self._supervising:
            raise RuntimeError(f"Pool {self.name} is already supervising")
        if self._stop_event.is_set():
            logger.info(f"Pool {self.name} was stopped before supervision began")
            return

        self._supervising = True
        logger.info(f"Pool {self.name} supervising {self._worker_count} worker(s) on queue {self._queue}")

        try:
            for _ in range(self._worker_count):
                self._spawn_worker()

            while not self._stop_event.is_set():
                try:
                    await self.check_workers()
                except Exception as e:
                    logger.error(f"Error in pool {self.name} sweep: {e}")

                if await self.clock.sleep(self.settings.sweep_interval, self._stop_event):
                    break
        finally:
            await asyncio.to_thread(self._kill_all)
            self._supervising = False
            logger.info(f"Pool {self.name} stopped supervising")

    def stop(self):
        """End supervision and terminate every worker. Safe to call repeatedly.

        Must be called from the event loop thread. While supervise() runs this
        only signals the workers and the supervising task reaps them.
        """
        self._stop_event.set()
        if self._supervising:
            for worker in self.get_workers():
                worker.terminate()
        else:
            self._kill_all()

    def reset(self):
        """Clear a previous stop() so the pool can be supervised again."""
        if self._supervising:
            raise RuntimeError(f"Pool {self.name} is still supervising")
        self._stop_event.clear()

    async def check_workers(self):
        """One sweep over the pool."""
        with self._lock:
            workers = list(self._workers)

        for worker in workers:
            if self._stop_event.is_set():
                return

            if worker.status is WorkerStatus.CRASHED or not worker.is_responsive():
                self._handle_crash(worker)
                continue

            if worker.health_check():
                continue

            if worker.status is WorkerStatus.CRASHED:
                self._handle_crash(worker)
            elif self._on_unhealthy is not None:
                self._on_unhealthy(worker)
            else:
                old_pid = worker.pid
                logger.warning(f"Worker {worker.id} unhealthy, restarting")
                await asyncio.to_thread(worker.restart)
                self.events.emit(
                    WorkerRestarted(pool=self.name, worker_id=worker.id, old_pid=old_pid, new_pid=worker.pid)
                )

    def get_workers(self) -> list[Worker]:
        with self._lock:
            return list(self._workers)

    def status(self) -> dict:
        return {
            "name": self.name,
            "queue": self._queue,
            "worker_count": self._worker_count,
            "supervising": self._supervising,
            "workers": [worker.to_dict() for worker in self.get_workers()],
        }

    def _spawn_worker(self) -> Worker:
        worker = Worker(
            id=f"{self.name}-worker-{uuid.uuid4().hex[:12]}",
            queue=self._queue,
            command=self.command,
            health_check=self._health_check,
            memory_limit_mb=self._memory_limit_mb,
            stop_timeout=self.settings.stop_timeout,
            clock=self.clock,
        )
        worker.start()
        with self._lock:
            self._workers.append(worker)
        return worker

    def _handle_crash(self, worker: Worker):
        worker.status = WorkerStatus.CRASHED
        exit_code = worker.exit_code
        logger.warning(f"Worker {worker.id} (PID {worker.pid}) crashed with exit code {exit_code}")

        if self._on_crash is not None:
            self._on_crash(worker)

        with self._lock:
            if worker in self._workers:
                self._workers.remove(worker)

        self.events.emit(WorkerCrashed(pool=self.name, worker_id=worker.id, pid=worker.pid, exit_code=exit_code))

        if not self._stop_event.is_set():
            self._spawn_worker()

    def _kill_all(self):
        with self._lock:
            workers = list(self._workers)
            self._workers.clear()

        stop_workers(workers, self.settings.stop_timeout)


class WorkerPoolRegistry:
    """Named worker pools known to this process."""

    def __init__(self):
        self._pools: dict[str, WorkerPoolSupervisor] = {}
        self._lock = threading.Lock()

    def register(self, pool: WorkerPoolSupervisor) -> WorkerPoolSupervisor:
        with self._lock:
            if pool.name in self._pools:
                raise ValueError(f"Pool {pool.name} is already registered")
            self._pools[pool.name] = pool
        return pool

    def get(self, name: str) -> WorkerPoolSupervisor | None:
        with self._lock:
            return self._pools.get(name)

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._pools.pop(name, None) is not None

    def all(self) -> list[WorkerPoolSupervisor]:
        with self._lock:
            return list(self._pools.values())

    def status(self) -> list[dict]:
        return [pool.status() for pool in self.all()]

    def stop_all(self):
        for pool in self.all():
            pool.stop()

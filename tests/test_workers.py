"""
Tests for worker pool supervision.

Workers are real short-lived Python processes that just sleep.
"""

import asyncio
import os
import signal
import sys
import time

import psutil
import pytest

from jobkeeper.config import WorkerSettings
from jobkeeper.events import EventBus, EventRecorder, WorkerCrashed, WorkerRestarted
from jobkeeper.workers import Worker, WorkerPoolRegistry, WorkerPoolSupervisor, WorkerStatus, stop_workers

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]
IGNORES_TERM = [
    sys.executable,
    "-c",
    "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)",
]


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def pool(bus):
    settings = WorkerSettings(memory_limit_mb=512.0, sweep_interval=0.05, stop_timeout=5.0)
    pool = WorkerPoolSupervisor("imports", SLEEPER, settings, bus)
    yield pool
    pool.stop()


async def wait_for(condition, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def pid_alive(pid):
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def test_worker_count_must_be_positive(pool):
    with pytest.raises(ValueError):
        pool.workers(0)


def test_worker_lifecycle():
    worker = Worker("w-1", "default", SLEEPER, stop_timeout=5.0)
    worker.start()
    try:
        assert worker.status is WorkerStatus.RUNNING
        assert worker.is_responsive()
        assert worker.memory_usage() > 0
        assert worker.health_check()
        assert worker.last_health_check_at is not None

        old_pid = worker.pid
        worker.restart()
        assert worker.pid != old_pid
        assert not pid_alive(old_pid)
    finally:
        worker.kill()

    assert worker.status is WorkerStatus.STOPPED
    assert not worker.is_responsive()
    assert worker.to_dict()["status"] == "stopped"


def test_default_health_check_enforces_memory_ceiling():
    worker = Worker("w-1", "default", SLEEPER, memory_limit_mb=0.001, stop_timeout=5.0)
    worker.start()
    try:
        assert not worker.health_check()
        assert worker.status is WorkerStatus.RUNNING
    finally:
        worker.kill()


def test_default_health_check_marks_dead_process_crashed():
    worker = Worker("w-1", "default", [sys.executable, "-c", "pass"], stop_timeout=5.0)
    worker.start()
    worker.process.wait(timeout=10)

    assert not worker.health_check()
    assert worker.status is WorkerStatus.CRASHED


@pytest.mark.asyncio
async def test_supervise_spawns_workers_and_stop_ends_it(pool):
    task = asyncio.create_task(pool.workers(2).queue("imports").supervise())
    await wait_for(lambda: len(pool.get_workers()) == 2)
    pids = [worker.pid for worker in pool.get_workers()]

    pool.stop()
    await asyncio.wait_for(task, timeout=5)

    assert pool.get_workers() == []
    assert not pool.is_supervising
    assert not any(pid_alive(pid) for pid in pids)
    pool.stop()


@pytest.mark.asyncio
async def test_supervise_twice_is_rejected(pool):
    task = asyncio.create_task(pool.supervise())
    await wait_for(lambda: pool.is_supervising)

    with pytest.raises(RuntimeError):
        await pool.supervise()

    pool.stop()
    await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_crashed_worker_is_replaced(pool, bus):
    recorder = EventRecorder(bus)
    crashed = []
    pool.workers(2).on_crash(crashed.append)
    task = asyncio.create_task(pool.supervise())
    await wait_for(lambda: len(pool.get_workers()) == 2)

    victim = pool.get_workers()[0]
    os.kill(victim.pid, signal.SIGKILL)
    await wait_for(lambda: crashed and len(pool.get_workers()) == 2)

    assert crashed == [victim]
    assert victim not in pool.get_workers()
    assert victim.status is WorkerStatus.CRASHED
    events = recorder.of_type(WorkerCrashed)
    assert events[0].worker_id == victim.id
    assert events[0].exit_code == -signal.SIGKILL

    pool.stop()
    await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_unhealthy_worker_is_restarted_without_callback(pool, bus):
    recorder = EventRecorder(bus)
    checked = []

    def failing_check(worker):
        checked.append(worker.id)
        return len(checked) > 1

    pool.with_health_check(failing_check)
    task = asyncio.create_task(pool.supervise())
    await wait_for(lambda: recorder.of_type(WorkerRestarted))

    restarted = recorder.of_type(WorkerRestarted)[0]
    assert restarted.old_pid != restarted.new_pid
    assert not pid_alive(restarted.old_pid)
    assert [w.pid for w in pool.get_workers()] == [restarted.new_pid]

    pool.stop()
    await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_unhealthy_callback_replaces_restart(pool, bus):
    recorder = EventRecorder(bus)
    unhealthy = []
    pool.with_health_check(lambda worker: False).on_unhealthy(unhealthy.append)
    task = asyncio.create_task(pool.supervise())
    await wait_for(lambda: len(unhealthy) >= 2)

    assert recorder.of_type(WorkerRestarted) == []
    assert unhealthy[0] is unhealthy[1]

    pool.stop()
    await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_status_reports_workers(pool):
    task = asyncio.create_task(pool.workers(1).queue("billing").supervise())
    await wait_for(lambda: len(pool.get_workers()) == 1)

    status = pool.status()

    assert status["name"] == "imports"
    assert status["queue"] == "billing"
    assert status["supervising"] is True
    assert status["workers"][0]["status"] == "running"
    assert status["workers"][0]["id"].startswith("imports-worker-")

    pool.stop()
    await asyncio.wait_for(task, timeout=5)


def test_registry(bus):
    registry = WorkerPoolRegistry()
    pool = registry.register(WorkerPoolSupervisor("imports", SLEEPER, events=bus))

    assert registry.get("imports") is pool
    assert registry.get("missing") is None
    with pytest.raises(ValueError):
        registry.register(WorkerPoolSupervisor("imports", SLEEPER, events=bus))
    assert [s["name"] for s in registry.status()] == ["imports"]

    registry.stop_all()
    assert registry.remove("imports")
    assert registry.all() == []


@pytest.mark.asyncio
async def test_stop_before_supervision_starts_is_kept(pool):
    task = asyncio.create_task(pool.workers(2).supervise())
    pool.stop()

    await asyncio.wait_for(task, timeout=5)

    assert pool.stop_requested
    assert pool.get_workers() == []
    assert not pool.is_supervising


@pytest.mark.asyncio
async def test_reset_allows_supervising_again(pool):
    pool.stop()
    await asyncio.wait_for(pool.supervise(), timeout=5)

    pool.reset()
    task = asyncio.create_task(pool.supervise())
    await wait_for(lambda: len(pool.get_workers()) == 1)

    with pytest.raises(RuntimeError):
        pool.reset()

    pool.stop()
    await asyncio.wait_for(task, timeout=5)
    assert pool.get_workers() == []


def test_stop_workers_shares_one_deadline():
    workers = [Worker(f"w-{i}", "default", IGNORES_TERM, stop_timeout=1.0) for i in range(3)]
    for worker in workers:
        worker.start()
    time.sleep(0.5)

    started = time.monotonic()
    stop_workers(workers, 1.0)
    elapsed = time.monotonic() - started

    assert elapsed < 2.5
    assert all(worker.status is WorkerStatus.STOPPED for worker in workers)
    assert not any(pid_alive(worker.pid) for worker in workers)


@pytest.mark.asyncio
async def test_stop_does_not_block_the_event_loop(bus):
    settings = WorkerSettings(sweep_interval=0.05, stop_timeout=1.0)
    pool = WorkerPoolSupervisor("stubborn", IGNORES_TERM, settings, bus).workers(3)
    task = asyncio.create_task(pool.supervise())
    await wait_for(lambda: len(pool.get_workers()) == 3)
    pids = [worker.pid for worker in pool.get_workers()]
    await asyncio.sleep(0.5)

    loop = asyncio.get_running_loop()
    started = loop.time()
    pool.stop()
    assert loop.time() - started < 0.5

    ticks = 0

    async def count_ticks():
        nonlocal ticks
        while not task.done():
            ticks += 1
            await asyncio.sleep(0.05)

    await asyncio.wait_for(asyncio.gather(task, count_ticks()), timeout=10)

    assert loop.time() - started < 3 * settings.stop_timeout
    assert ticks > 5
    assert not any(pid_alive(pid) for pid in pids)

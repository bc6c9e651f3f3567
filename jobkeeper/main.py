"""
jobkeeper FastAPI application.

Read-mostly REST surface over the supervision state: stuck sessions, health
records, circuit breakers, the dead letter queue, worker pools and the queue
filter. Jobs running out of process report heartbeats through it as well.
"""

import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Literal, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import __version__
from .config import Config, load_config
from .keeper import Keeper
from .models import BreakerState, SupervisedJob

logger = logging.getLogger(__name__)


def configure_logging(config: Config):
    """Rotating file log plus console, configured once at program start."""
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        handlers=[file_handler, console_handler],
    )


# Pydantic models for API
class HeartbeatCreate(BaseModel):
    metadata: dict = Field(default_factory=dict, description="Progress or resource snapshot")


class ProgressReport(BaseModel):
    current: int = Field(..., ge=0)
    total: int = Field(..., ge=0)
    metadata: dict = Field(default_factory=dict)


class BreakerOverride(BaseModel):
    action: Literal["open", "close", "half_open", "reset"] = Field(..., description="Manual state change")


class PruneRequest(BaseModel):
    retention_days: Optional[int] = Field(None, ge=0, description="Defaults to the configured retention")


def create_app(keeper: Keeper = None, run_scheduler: bool = True) -> FastAPI:
    """Build the app around a Keeper. Without one, a Keeper is built from the environment."""
    if keeper is None:
        config = load_config()
        configure_logging(config)
        keeper = Keeper(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_scheduler:
            await keeper.start()
        yield
        await keeper.stop()

    app = FastAPI(
        title="jobkeeper",
        description="Job supervision: heartbeats, health, resource limits, circuit breakers and dead letters",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.keeper = keeper

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _session_or_404(session_id: str) -> SupervisedJob:
        session = SupervisedJob.get_or_none(SupervisedJob.id == session_id)
        if not session:
            raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
        return session

    @app.get("/api/status")
    async def status():
        """Overview counts."""
        return {
            "version": __version__,
            "active_sessions": len(keeper.heartbeats.active_sessions()),
            "stuck_sessions": len(keeper.heartbeats.list_stuck()),
            "unhealthy_sessions": len(keeper.health.unhealthy()),
            "open_circuits": sum(1 for b in keeper.breakers.all_states() if b["state"] == BreakerState.OPEN.value),
            "dead_letters": keeper.dead_letters.count(),
            "worker_pools": len(keeper.pools.all()),
        }

    # Sessions and heartbeats
    @app.get("/api/sessions/stuck")
    async def list_stuck_sessions():
        return [report.to_dict() for report in keeper.heartbeats.list_stuck()]

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str):
        session = _session_or_404(session_id)
        result = session.to_dict()
        result["health"] = keeper.health.get_health(session_id)
        result["error_count"] = keeper.dead_letters.error_count(session_id)
        return result

    @app.post("/api/sessions/{session_id}/heartbeat")
    async def record_heartbeat(session_id: str, data: HeartbeatCreate):
        """Record a heartbeat. Unknown sessions are registered on their first beat."""
        heartbeat = keeper.heartbeats.record_heartbeat(session_id, data.metadata)
        if heartbeat is None:
            raise HTTPException(status_code=409, detail=f"Session '{session_id}' has already finished")
        return heartbeat.to_dict()

    @app.post("/api/sessions/{session_id}/progress")
    async def report_progress(session_id: str, data: ProgressReport):
        heartbeat = keeper.supervisor.report_progress(session_id, data.current, data.total, data.metadata)
        if heartbeat is None:
            raise HTTPException(status_code=409, detail=f"Session '{session_id}' has already finished")
        return heartbeat.to_dict()

    @app.get("/api/sessions/{session_id}/heartbeats")
    async def list_heartbeats(session_id: str, limit: int = Query(100, ge=1, le=1000)):
        _session_or_404(session_id)
        return [hb.to_dict() for hb in keeper.heartbeats.history(session_id, limit)]

    @app.get("/api/sessions/{session_id}/violations")
    async def list_violations(session_id: str):
        _session_or_404(session_id)
        return [v.to_dict() for v in keeper.resources.violations(session_id)]

    @app.get("/api/sessions/{session_id}/errors")
    async def list_errors(session_id: str):
        _session_or_404(session_id)
        return [e.to_dict() for e in keeper.dead_letters.errors(session_id)]

    # Health
    @app.get("/api/health")
    async def list_health(unhealthy: bool = Query(False, description="Only unhealthy sessions")):
        return keeper.health.all_health(unhealthy_only=unhealthy)

    @app.get("/api/health/{session_id}")
    async def get_health(session_id: str):
        _session_or_404(session_id)
        return keeper.health.get_health(session_id)

    @app.post("/api/health/{session_id}/check")
    async def run_health_check(session_id: str):
        _session_or_404(session_id)
        keeper.health.perform_health_check(session_id)
        return keeper.health.get_health(session_id)

    # Circuit breakers
    @app.get("/api/breakers")
    async def list_breakers():
        return keeper.breakers.all_states()

    @app.get("/api/breakers/{service}")
    async def get_breaker(service: str):
        breaker = keeper.breakers.get(service)
        if not breaker:
            raise HTTPException(status_code=404, detail=f"Circuit breaker '{service}' not found")
        return breaker

    @app.post("/api/breakers/{service}")
    async def override_breaker(service: str, data: BreakerOverride):
        """Force a circuit into a state."""
        getattr(keeper.breakers, data.action)(service)
        return keeper.breakers.get(service)

    @app.delete("/api/breakers/{service}")
    async def delete_breaker(service: str):
        if not keeper.breakers.forget(service):
            raise HTTPException(status_code=404, detail=f"Circuit breaker '{service}' not found")
        return {"status": "deleted", "service": service}

    # Dead letter queue
    @app.get("/api/dead-letters")
    async def list_dead_letters(
        job_class: Optional[str] = Query(None, description="Filter by job class"),
        limit: int = Query(100, ge=1, le=1000),
    ):
        return [entry.to_dict() for entry in keeper.dead_letters.all(limit=limit, job_class=job_class)]

    @app.get("/api/dead-letters/{entry_id}")
    async def get_dead_letter(entry_id: int):
        entry = keeper.dead_letters.get(entry_id)
        if not entry:
            raise HTTPException(status_code=404, detail=f"Dead letter entry {entry_id} not found")
        return entry.to_dict()

    @app.post("/api/dead-letters/{entry_id}/retry")
    async def retry_dead_letter(entry_id: int):
        if not keeper.dead_letters.retry(entry_id):
            raise HTTPException(status_code=404, detail=f"Dead letter entry {entry_id} not found")
        return keeper.dead_letters.get(entry_id).to_dict()

    @app.post("/api/dead-letters/prune")
    async def prune_dead_letters(data: PruneRequest):
        deleted = keeper.dead_letters.prune(data.retention_days)
        return {"status": "pruned", "deleted": deleted}

    # Worker pools
    @app.get("/api/pools")
    async def list_pools():
        return keeper.pools.status()

    @app.get("/api/pools/{name}")
    async def get_pool(name: str):
        pool = keeper.pools.get(name)
        if not pool:
            raise HTTPException(status_code=404, detail=f"Worker pool '{name}' not found")
        return pool.status()

    # Queues
    @app.get("/api/queues")
    async def get_queue_filter():
        result = keeper.queue_filter.to_dict()
        known = sorted(set(result["supervised_queues"]) | set(result["excluded_queues"]))
        result["paused_queues"] = [q for q in known if keeper.queue_backend.is_paused(q)]
        return result

    @app.get("/api/queues/{queue}")
    async def get_queue(queue: str):
        return {
            "queue": queue,
            "supervised": keeper.queue_filter.should_supervise(queue),
            "paused": keeper.queue_backend.is_paused(queue),
            "running": keeper.queue_backend.running_count(queue),
        }

    return app

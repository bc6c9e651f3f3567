"""
Database models for jobkeeper.

Uses Peewee ORM with SQLite. Stores supervision sessions, heartbeats, health
records, resource violations, circuit breaker state, recorded job errors and
the dead letter queue. The Store owns the connection and provides the atomic
read-modify-write block every component mutates state through.
"""

import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum

from peewee import (
    AutoField,
    BooleanField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    FloatField,
    ForeignKeyField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

database = DatabaseProxy()


class SessionStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ViolationType(Enum):
    MEMORY = "memory"
    CPU = "cpu"
    DISK = "disk"
    TIME = "time"


class JSONField(TextField):
    """Text column holding a JSON document."""

    def db_value(self, value):
        if value is None:
            return None
        return json.dumps(value, default=str)

    def python_value(self, value):
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class SupervisedJob(BaseModel):
    """One supervision session: the tracked lifecycle of a running job."""

    id = CharField(primary_key=True)
    job_class = CharField(index=True)
    queue = CharField(default="default", index=True)
    status = CharField(default=SessionStatus.RUNNING.value, index=True)
    started_at = DateTimeField(default=datetime.now, index=True)
    last_heartbeat_at = DateTimeField(null=True)
    completed_at = DateTimeField(null=True)
    failed_at = DateTimeField(null=True)
    metadata = JSONField(null=True)
    payload = JSONField(null=True)  # Arguments needed to re-dispatch the job
    missed_heartbeats = IntegerField(default=0)
    tracked = BooleanField(default=True, index=True)  # Member of the active-session index

    class Meta:
        table_name = "supervised_jobs"

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETED.value, SessionStatus.FAILED.value)

    def get_metadata(self) -> dict:
        return dict(self.metadata or {})

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_class": self.job_class,
            "queue": self.queue,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "last_heartbeat_at": _iso(self.last_heartbeat_at),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
            "metadata": self.get_metadata(),
            "missed_heartbeats": self.missed_heartbeats,
        }


class Heartbeat(BaseModel):
    """A liveness signal emitted by a session."""

    id = AutoField()
    supervised_job = ForeignKeyField(SupervisedJob, backref="heartbeats", on_delete="CASCADE")
    recorded_at = DateTimeField(default=datetime.now, index=True)
    memory_usage = IntegerField(null=True)  # bytes
    cpu_usage = FloatField(null=True)  # percent
    progress_current = IntegerField(null=True)
    progress_total = IntegerField(null=True)
    metadata = JSONField(null=True)

    class Meta:
        table_name = "heartbeats"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.supervised_job_id,
            "recorded_at": _iso(self.recorded_at),
            "memory_usage": self.memory_usage,
            "cpu_usage": self.cpu_usage,
            "progress_current": self.progress_current,
            "progress_total": self.progress_total,
            "metadata": self.metadata or {},
        }


class JobHealthCheck(BaseModel):
    """Current health verdict for a session. One row per session."""

    id = AutoField()
    supervised_job = ForeignKeyField(SupervisedJob, backref="health", unique=True, on_delete="CASCADE")
    status = CharField(default=HealthStatus.UNKNOWN.value, index=True)
    reason = TextField(null=True)
    check_count = IntegerField(default=0)
    first_unhealthy_at = DateTimeField(null=True)
    updated_at = DateTimeField(default=datetime.now)

    class Meta:
        table_name = "job_health_checks"

    def to_dict(self) -> dict:
        return {
            "session_id": self.supervised_job_id,
            "status": self.status,
            "reason": self.reason,
            "check_count": self.check_count,
            "first_unhealthy_at": _iso(self.first_unhealthy_at),
            "updated_at": _iso(self.updated_at),
        }


class ResourceViolation(BaseModel):
    """A recorded breach of a resource ceiling. Append-only."""

    id = AutoField()
    supervised_job = ForeignKeyField(SupervisedJob, backref="violations", on_delete="CASCADE")
    violation_type = CharField(index=True)
    limit_value = FloatField()
    actual_value = FloatField()
    recorded_at = DateTimeField(default=datetime.now, index=True)
    metadata = JSONField(null=True)

    class Meta:
        table_name = "resource_violations"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.supervised_job_id,
            "violation_type": self.violation_type,
            "limit": self.limit_value,
            "actual": self.actual_value,
            "recorded_at": _iso(self.recorded_at),
            "metadata": self.metadata or {},
        }


class CircuitBreakerRecord(BaseModel):
    """Live state of the circuit breaker protecting one service."""

    id = AutoField()
    service_name = CharField(unique=True, index=True)
    state = CharField(default=BreakerState.CLOSED.value, index=True)
    failure_count = IntegerField(default=0)
    success_count = IntegerField(default=0)
    half_open_probes = IntegerField(default=0)  # Probes admitted since entering HalfOpen
    last_failure_at = DateTimeField(null=True)
    opened_at = DateTimeField(null=True)
    last_success_at = DateTimeField(null=True)
    created_at = DateTimeField(default=datetime.now)
    updated_at = DateTimeField(default=datetime.now)

    class Meta:
        table_name = "circuit_breakers"

    def save(self, *args, **kwargs):
        self.updated_at = datetime.now()
        return super().save(*args, **kwargs)

    def to_dict(self) -> dict:
        return {
            "service": self.service_name,
            "state": self.state,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "half_open_probes": self.half_open_probes,
            "last_failure_at": _iso(self.last_failure_at),
            "opened_at": _iso(self.opened_at),
            "last_success_at": _iso(self.last_success_at),
        }


class SupervisedJobError(BaseModel):
    """One recorded failure of a session."""

    id = AutoField()
    supervised_job = ForeignKeyField(SupervisedJob, backref="errors", on_delete="CASCADE")
    exception = CharField()
    message = TextField()
    trace = TextField()
    context = JSONField(null=True)
    created_at = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "supervised_job_errors"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.supervised_job_id,
            "exception": self.exception,
            "message": self.message,
            "context": self.context or {},
            "created_at": _iso(self.created_at),
        }


class DeadLetterJob(BaseModel):
    """A permanently failed job kept for inspection and retry."""

    id = AutoField()
    supervised_job = ForeignKeyField(
        SupervisedJob, backref="dead_letter", null=True, unique=True, on_delete="SET NULL"
    )
    job_class = CharField(index=True)
    queue = CharField(default="default")
    exception = CharField()
    message = TextField()
    trace = TextField()
    payload = JSONField(null=True)
    failed_at = DateTimeField(default=datetime.now, index=True)
    retried_at = DateTimeField(null=True)
    retry_count = IntegerField(default=0)

    class Meta:
        table_name = "dead_letter_queue"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.supervised_job_id,
            "job_class": self.job_class,
            "queue": self.queue,
            "exception": self.exception,
            "message": self.message,
            "trace": self.trace,
            "payload": self.payload,
            "failed_at": _iso(self.failed_at),
            "retried_at": _iso(self.retried_at),
            "retry_count": self.retry_count,
        }


ALL_MODELS = [
    SupervisedJob,
    Heartbeat,
    JobHealthCheck,
    ResourceViolation,
    CircuitBreakerRecord,
    SupervisedJobError,
    DeadLetterJob,
]


class Store:
    """Owns the SQLite database and serializes read-modify-write blocks."""

    def __init__(self, path):
        self.path = str(path)
        self.db = SqliteDatabase(
            self.path,
            pragmas={
                "journal_mode": "wal",
                "cache_size": -64 * 1000,
                "foreign_keys": 1,
                "busy_timeout": 5000,
            },
        )
        self._lock = threading.RLock()

    def initialize(self) -> "Store":
        """Bind the models to this database and create tables."""
        if self.path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        database.initialize(self.db)
        database.create_tables(ALL_MODELS, safe=True)
        return self

    @contextmanager
    def atomic(self):
        """One atomic read-modify-write against the store.

        Holds the process-wide lock and an IMMEDIATE transaction so concurrent
        sweeps and job-originated reports cannot interleave their updates.
        """
        with self._lock:
            with self.db.atomic(lock_type="IMMEDIATE"):
                yield

    def close(self):
        if not self.db.is_closed():
            self.db.close()


def initialize_db(path) -> Store:
    """Open the store at path and create tables."""
    return Store(path).initialize()

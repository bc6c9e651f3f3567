"""
Configuration for jobkeeper.

Loads settings from environment variables with sensible defaults. Each
component receives its own settings section at construction; the top-level
Config bundles them. All persistent data is stored in ~/.jobkeeper/ unless
JOBKEEPER_DATA_DIR says otherwise.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).lower() == "true"


def _env_list(name: str) -> list[str]:
    """Parse a comma-separated variable, dropping empty items."""
    return [item.strip() for item in os.environ.get(name, "").split(",") if item.strip()]


@dataclass
class HeartbeatSettings:
    """Heartbeat expectations used for stuck detection and staleness."""

    interval_seconds: int = _env_int("JOBKEEPER_HEARTBEAT_INTERVAL", 30)
    missed_threshold: int = _env_int("JOBKEEPER_MISSED_HEARTBEATS_THRESHOLD", 3)


@dataclass
class CircuitBreakerSettings:
    """Thresholds for the Closed -> Open -> HalfOpen state machine."""

    enabled: bool = _env_bool("JOBKEEPER_CIRCUIT_BREAKER_ENABLED", True)
    failure_threshold: int = _env_int("JOBKEEPER_CIRCUIT_BREAKER_THRESHOLD", 5)
    success_threshold: int = _env_int("JOBKEEPER_CIRCUIT_BREAKER_SUCCESS_THRESHOLD", 2)
    timeout_seconds: int = _env_int("JOBKEEPER_CIRCUIT_BREAKER_TIMEOUT", 300)
    half_open_attempts: int = _env_int("JOBKEEPER_CIRCUIT_BREAKER_HALF_OPEN_ATTEMPTS", 3)

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")
        if self.success_threshold > self.half_open_attempts:
            raise ValueError("success_threshold cannot exceed half_open_attempts")
        if self.timeout_seconds < 0:
            raise ValueError("timeout_seconds cannot be negative")


@dataclass
class ResourceLimits:
    """Resource ceilings. None means unlimited."""

    memory_mb: Optional[float] = _env_float("JOBKEEPER_MEMORY_LIMIT", None)
    cpu_percent: Optional[float] = _env_float("JOBKEEPER_CPU_LIMIT", None)
    disk_mb: Optional[float] = _env_float("JOBKEEPER_DISK_LIMIT", None)
    timeout_seconds: Optional[int] = _env_int("JOBKEEPER_TIMEOUT", None)
    disk_path: str = os.environ.get("JOBKEEPER_DISK_PATH", "/")


@dataclass
class DeadLetterSettings:
    """Retry budget and retention for permanently failed jobs."""

    enabled: bool = _env_bool("JOBKEEPER_DLQ_ENABLED", True)
    max_retries: int = _env_int("JOBKEEPER_MAX_RETRIES", 3)
    retry_delay_seconds: int = _env_int("JOBKEEPER_RETRY_DELAY", 60)  # Base delay, doubled per attempt
    retention_days: int = _env_int("JOBKEEPER_DLQ_RETENTION_DAYS", 30)
    cleanup_schedule: str = os.environ.get("JOBKEEPER_DLQ_CLEANUP_SCHEDULE", "0 2 * * *")


@dataclass
class QueueSettings:
    """Allowlist/denylist of queues to supervise."""

    supervised: list[str] = field(default_factory=lambda: _env_list("JOBKEEPER_SUPERVISED_QUEUES"))
    excluded: list[str] = field(default_factory=lambda: _env_list("JOBKEEPER_EXCLUDED_QUEUES"))


@dataclass
class WorkerSettings:
    """Defaults for supervised worker pools."""

    memory_limit_mb: float = _env_float("JOBKEEPER_WORKER_MEMORY_LIMIT", 512.0)
    sweep_interval: float = _env_float("JOBKEEPER_WORKER_SWEEP_INTERVAL", 1.0)
    stop_timeout: float = _env_float("JOBKEEPER_WORKER_STOP_TIMEOUT", 10.0)


@dataclass
class Config:
    """jobkeeper configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("JOBKEEPER_DATA_DIR", str(Path.home() / ".jobkeeper")))
    db_path: Path = None
    log_file: Path = None

    # Logging
    log_level: str = os.environ.get("JOBKEEPER_LOG_LEVEL", "INFO")
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Server
    host: str = os.environ.get("JOBKEEPER_HOST", "0.0.0.0")
    port: int = int(os.environ.get("JOBKEEPER_PORT", "9910"))

    # Sweeps
    sweep_interval: float = float(os.environ.get("JOBKEEPER_SWEEP_INTERVAL", "10"))
    deployment_poll_interval: float = float(os.environ.get("JOBKEEPER_DEPLOYMENT_POLL_INTERVAL", "5"))

    heartbeat: HeartbeatSettings = field(default_factory=HeartbeatSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    dead_letter: DeadLetterSettings = field(default_factory=DeadLetterSettings)
    queues: QueueSettings = field(default_factory=QueueSettings)
    workers: WorkerSettings = field(default_factory=WorkerSettings)

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.data_dir = Path(self.data_dir)
        if self.db_path is None:
            self.db_path = self.data_dir / "jobkeeper.db"
        if self.log_file is None:
            self.log_file = self.data_dir / "jobkeeper.log"

        self.data_dir.mkdir(parents=True, exist_ok=True)


def load_config() -> Config:
    """Build a Config from the current environment."""
    return Config()

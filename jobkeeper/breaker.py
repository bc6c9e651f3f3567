"""
Circuit breakers protecting unreliable downstream services.

One persisted record per service drives the Closed -> Open -> HalfOpen state
machine. Every admission decision, counter update and transition is a single
atomic read-modify-write against the store, so two concurrent probes cannot
both close or reopen a circuit from stale reads.

An open circuit is not an error: execute() runs the fallback if one is given
and otherwise returns CIRCUIT_OPEN without touching the guarded action.
"""

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from .clock import default_clock
from .config import CircuitBreakerSettings
from .events import CircuitBreakerClosed, CircuitBreakerHalfOpened, CircuitBreakerOpened, EventBus
from .models import BreakerState, CircuitBreakerRecord, Store

logger = logging.getLogger(__name__)


class _CircuitOpen:
    """Marker returned by execute() when the call was not admitted."""

    def __bool__(self):
        return False

    def __repr__(self):
        return "CIRCUIT_OPEN"


CIRCUIT_OPEN = _CircuitOpen()


class CircuitBreaker:
    """Per-service circuit breakers sharing one store."""

    def __init__(self, store: Store, events: EventBus, settings: CircuitBreakerSettings = None, clock=None):
        self.store = store
        self.events = events
        self.settings = settings or CircuitBreakerSettings()
        self.clock = clock or default_clock
        self._overrides: dict[str, CircuitBreakerSettings] = {}

    def configure(self, service: str, settings: CircuitBreakerSettings):
        """Use dedicated thresholds for one service."""
        self._overrides[service] = settings

    def settings_for(self, service: str) -> CircuitBreakerSettings:
        return self._overrides.get(service, self.settings)

    def execute(self, service: str, action: Callable[[], Any], fallback: Optional[Callable[[], Any]] = None):
        """Run action if the circuit admits it.

        Exceptions raised by action count as failures and propagate. So does an
        action that never finishes, such as a cancelled or interrupted call.
        """
        if not self.settings_for(service).enabled:
            return action()

        if not self.allow(service):
            logger.debug(f"Circuit for {service} is open, call rejected")
            return fallback() if fallback is not None else CIRCUIT_OPEN

        try:
            result = action()
        except BaseException as e:
            self.record_failure(service, e)
            raise

        self.record_success(service)
        return result

    async def execute_async(
        self,
        service: str,
        action: Callable[[], Awaitable[Any]],
        fallback: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        """Coroutine flavour of execute()."""
        if not self.settings_for(service).enabled:
            return await action()

        if not self.allow(service):
            logger.debug(f"Circuit for {service} is open, call rejected")
            return await fallback() if fallback is not None else CIRCUIT_OPEN

        try:
            result = await action()
        except BaseException as e:
            self.record_failure(service, e)
            raise

        self.record_success(service)
        return result

    def allow(self, service: str) -> bool:
        """Decide whether one call may proceed, consuming a probe slot in HalfOpen."""
        settings = self.settings_for(service)
        pending = []

        with self.store.atomic():
            record = self._load(service)
            state = BreakerState(record.state)

            if state is BreakerState.CLOSED:
                return True

            if state is BreakerState.OPEN:
                if not self._timeout_elapsed(record, settings):
                    return False
                self._enter_half_open(record, pending)

            if record.half_open_probes >= settings.half_open_attempts:
                return False
            record.half_open_probes += 1
            record.save()

        self._emit(pending)
        return True

    def record_success(self, service: str):
        settings = self.settings_for(service)
        pending = []

        with self.store.atomic():
            record = self._load(service)
            record.last_success_at = self.clock.now()
            state = BreakerState(record.state)

            if state is BreakerState.HALF_OPEN:
                record.success_count += 1
                if record.success_count >= settings.success_threshold:
                    self._enter_closed(record, pending)
            elif state is BreakerState.CLOSED:
                record.failure_count = 0
            record.save()

        self._emit(pending)

    def record_failure(self, service: str, exception: Optional[BaseException] = None):
        settings = self.settings_for(service)
        pending = []

        with self.store.atomic():
            record = self._load(service)
            record.last_failure_at = self.clock.now()
            state = BreakerState(record.state)

            if state is BreakerState.HALF_OPEN:
                self._enter_open(record, pending, failure_count=record.failure_count + 1)
            elif state is BreakerState.CLOSED:
                record.failure_count += 1
                if record.failure_count >= settings.failure_threshold:
                    self._enter_open(record, pending, failure_count=record.failure_count)
            record.save()

        if exception is not None:
            logger.debug(f"Failure recorded for {service}: {exception!r}")
        self._emit(pending)

    def tick(self) -> list[str]:
        """Move every Open circuit whose timeout elapsed to HalfOpen."""
        moved = []
        pending = []

        with self.store.atomic():
            query = CircuitBreakerRecord.select().where(CircuitBreakerRecord.state == BreakerState.OPEN.value)
            for record in query:
                if self._timeout_elapsed(record, self.settings_for(record.service_name)):
                    self._enter_half_open(record, pending)
                    record.save()
                    moved.append(record.service_name)

        self._emit(pending)
        return moved

    def get_state(self, service: str) -> BreakerState:
        record = CircuitBreakerRecord.get_or_none(CircuitBreakerRecord.service_name == service)
        return BreakerState(record.state) if record else BreakerState.CLOSED

    def is_open(self, service: str) -> bool:
        return self.get_state(service) is BreakerState.OPEN

    def is_half_open(self, service: str) -> bool:
        return self.get_state(service) is BreakerState.HALF_OPEN

    def is_closed(self, service: str) -> bool:
        return self.get_state(service) is BreakerState.CLOSED

    def get(self, service: str) -> dict | None:
        record = CircuitBreakerRecord.get_or_none(CircuitBreakerRecord.service_name == service)
        return record.to_dict() if record else None

    def all_states(self) -> list[dict]:
        query = CircuitBreakerRecord.select().order_by(CircuitBreakerRecord.service_name)
        return [record.to_dict() for record in query]

    # Manual overrides

    def open(self, service: str):
        pending = []
        with self.store.atomic():
            record = self._load(service)
            self._enter_open(record, pending, failure_count=record.failure_count, manual=True)
            record.save()
        logger.info(f"Circuit for {service} opened manually")
        self._emit(pending)

    def close(self, service: str):
        pending = []
        with self.store.atomic():
            record = self._load(service)
            self._enter_closed(record, pending)
            record.save()
        logger.info(f"Circuit for {service} closed manually")
        self._emit(pending)

    def half_open(self, service: str):
        pending = []
        with self.store.atomic():
            record = self._load(service)
            self._enter_half_open(record, pending)
            record.save()
        logger.info(f"Circuit for {service} half-opened manually")
        self._emit(pending)

    def reset(self, service: str):
        """Close the circuit and forget its failure history."""
        pending = []
        with self.store.atomic():
            record = self._load(service)
            self._enter_closed(record, pending)
            record.last_failure_at = None
            record.last_success_at = None
            record.save()
        logger.info(f"Circuit for {service} reset")
        self._emit(pending)

    def forget(self, service: str) -> bool:
        with self.store.atomic():
            deleted = CircuitBreakerRecord.delete().where(CircuitBreakerRecord.service_name == service).execute()
        return deleted > 0

    # Transitions. Callers hold the store lock and save the record afterwards.

    def _load(self, service: str) -> CircuitBreakerRecord:
        record, _ = CircuitBreakerRecord.get_or_create(
            service_name=service,
            defaults={"state": BreakerState.CLOSED.value},
        )
        return record

    def _timeout_elapsed(self, record: CircuitBreakerRecord, settings: CircuitBreakerSettings) -> bool:
        if record.opened_at is None:
            return True
        return self.clock.now() >= record.opened_at + timedelta(seconds=settings.timeout_seconds)

    def _reset_counters(self, record: CircuitBreakerRecord):
        record.failure_count = 0
        record.success_count = 0
        record.half_open_probes = 0

    def _enter_open(self, record: CircuitBreakerRecord, pending: list, failure_count: int, manual: bool = False):
        now = self.clock.now()
        self._reset_counters(record)
        record.state = BreakerState.OPEN.value
        record.opened_at = now
        if not manual:
            logger.warning(f"Circuit for {record.service_name} opened after {failure_count} failure(s)")
        pending.append(
            CircuitBreakerOpened(service=record.service_name, failure_count=failure_count, opened_at=now)
        )

    def _enter_half_open(self, record: CircuitBreakerRecord, pending: list):
        was = record.state
        self._reset_counters(record)
        record.state = BreakerState.HALF_OPEN.value
        if was != BreakerState.HALF_OPEN.value:
            logger.info(f"Circuit for {record.service_name} half-open, admitting probes")
            pending.append(CircuitBreakerHalfOpened(service=record.service_name))

    def _enter_closed(self, record: CircuitBreakerRecord, pending: list):
        was = record.state
        self._reset_counters(record)
        record.state = BreakerState.CLOSED.value
        record.opened_at = None
        if was != BreakerState.CLOSED.value:
            logger.info(f"Circuit for {record.service_name} closed")
            pending.append(CircuitBreakerClosed(service=record.service_name))

    def _emit(self, pending: list):
        for event in pending:
            self.events.emit(event)

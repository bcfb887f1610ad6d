"""
Circuit Breaker for payment-provider calls.

Wraps remote PSP calls (invoice create/cancel/status, pubkey) so a provider
outage fails fast instead of holding request handlers and workers on timeouts.
Only transient failures count toward opening the circuit: a 4xx from the
provider is a bug in our request, not an outage.
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from app.core.exceptions import CircuitBreakerOpenError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


def _is_transient(error: Exception) -> bool:
    # שגיאות עם transient=False (למשל PSP_BAD_REQUEST) לא פותחות את המעגל
    return bool(getattr(error, "transient", True))


class CircuitBreaker:
    """
    Per-service circuit breaker.

    CLOSED → OPEN after ``failure_threshold`` consecutive transient failures;
    OPEN → HALF_OPEN after ``timeout_seconds``; HALF_OPEN → CLOSED after
    ``success_threshold`` successes, back to OPEN on any failure.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    # threading.Lock ולא asyncio.Lock — Celery יוצר event loop חדש לכל task
    _instances_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at = 0.0
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        """Get or create the circuit breaker of a service"""
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Forget all circuit breakers (for testing)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        if new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            self._success_count = 0
        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            }
        )

    def retry_after(self) -> float:
        """Seconds until an open circuit lets a probe through"""
        if self._state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.timeout_seconds - (time.monotonic() - self._opened_at)
        return max(0.0, remaining)

    def _acquire(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self.retry_after() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._half_open_calls += 1
            return True

    def _record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failure_count = 0

    def _record_failure(self, error: Exception) -> None:
        with self._lock:
            self._failure_count += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failure_count,
                    "threshold": self.config.failure_threshold,
                    "error_type": type(error).__name__,
                }
            )
            if self._state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN)
            elif self._failure_count >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``func`` under circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: the circuit is open
        """
        if not self._acquire():
            raise CircuitBreakerOpenError(self.service_name, self.retry_after())

        try:
            result = await func()
        except Exception as e:
            if _is_transient(e):
                self._record_failure(e)
            else:
                self._record_success()
            raise

        self._record_success()
        return result


def get_psp_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker for the payment provider API"""
    return CircuitBreaker.get_instance(
        "psp",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=30.0
        )
    )

"""
Circuit breaker for outbound calls to external services.

Used for best-effort side effects (chat notifications after a payment), so a
provider outage fails fast instead of holding worker slots until timeout.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from app.core.exceptions import CircuitBreakerOpenError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5         # consecutive failures before opening
    success_threshold: int = 2         # half-open successes needed to close
    timeout_seconds: float = 30.0      # open -> half-open after this long
    half_open_max_calls: int = 3       # trial calls allowed while half-open


class CircuitBreaker:
    """
    CLOSED: calls pass, failures counted.
    OPEN: calls rejected with CircuitBreakerOpenError until the timeout passes.
    HALF_OPEN: a few trial calls; enough successes close it, any failure reopens.

    One instance per service name, shared across event loops. A threading
    lock guards state because Celery tasks each run their own loop.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_calls = 0
        self._opened_at = 0.0

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        with cls._instances_lock:
            if service_name not in cls._instances:
                cls._instances[service_name] = cls(service_name, config)
            return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Forget every instance (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _set_state(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            self._successes = 0
        else:
            self._failures = 0
            self._successes = 0
        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            },
        )

    def get_retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.timeout_seconds - (time.monotonic() - self._opened_at)
        return max(0.0, remaining)

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self.get_retry_after() > 0:
                    return False
                self._set_state(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._set_state(CircuitState.OPEN)

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` under the breaker; raises CircuitBreakerOpenError when open."""
        if not self.allow_request():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.record_failure(exc)
            raise
        self.record_success()
        return result

    def snapshot(self) -> dict[str, Any]:
        return {
            "service": self.service_name,
            "state": self._state.value,
            "failure_count": self._failures,
            "retry_after_seconds": round(self.get_retry_after(), 2),
        }


def get_getstream_circuit_breaker() -> CircuitBreaker:
    """Breaker for the GetStream REST API"""
    return CircuitBreaker.get_instance(
        "getstream",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0),
    )

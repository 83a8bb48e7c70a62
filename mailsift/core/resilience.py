"""Circuit breakers for the model API and the store, plus async retry.

A batch touches the model provider once per analyzer per email and the store
several times per email. When either dependency is down, its breaker makes
every further call fail immediately so in-flight emails settle as failures
instead of each waiting out its own timeout.
"""

import asyncio
import enum
import functools
import logging
import random
import threading
import time
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """A call was refused because the dependency's breaker is open."""

    def __init__(self, service_name: str) -> None:
        self.service_name = service_name
        super().__init__(f"{service_name} is unavailable (circuit open)")


class CircuitBreaker:
    """Consecutive-failure breaker shared by every caller of one dependency.

    ``failure_threshold`` consecutive failures open the breaker. Once
    ``recovery_timeout`` seconds have passed since the last failure, one trial
    is let through (half-open): success closes the breaker, failure reopens it.
    State lives behind a thread lock because store calls run in worker threads.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ) -> None:
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._lock = threading.Lock()

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        # Caller holds the lock.
        if new_state is self._state:
            return
        logger.warning(
            "BREAKER: %s %s -> %s (%s)",
            self.service_name,
            self._state.value,
            new_state.value,
            reason,
            extra={"service": self.service_name, "failures": self._failures},
        )
        self._state = new_state

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if (
                self._state is CircuitState.OPEN
                and self._opened_at is not None
                and time.monotonic() - self._opened_at >= self.recovery_timeout
            ):
                self._transition(CircuitState.HALF_OPEN, "trial call")
            return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def check(self) -> None:
        """Raise CircuitBreakerOpen unless a call may go through."""
        if self.state is CircuitState.OPEN:
            raise CircuitBreakerOpen(self.service_name)

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None
            self._transition(CircuitState.CLOSED, "call succeeded")

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            trial = self._state is CircuitState.HALF_OPEN
            if trial or self._failures >= self.failure_threshold:
                self._opened_at = time.monotonic()
                self._transition(
                    CircuitState.OPEN,
                    "trial call failed" if trial else f"{self._failures} consecutive failures",
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None

    async def call(self, func: Callable[..., Awaitable[T]], *args: object, **kwargs: object) -> T:
        """Await ``func`` if the breaker allows it and record the outcome."""
        self.check()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


# ---------------------------------------------------------------------------
# Shared breakers
# ---------------------------------------------------------------------------

model_api_circuit_breaker = CircuitBreaker("model_api", failure_threshold=5, recovery_timeout=60.0)
supabase_circuit_breaker = CircuitBreaker("supabase", failure_threshold=10, recovery_timeout=30.0)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

# Network-level failures worth another attempt. Analyzer-level retryable
# errors are added by the analyzers themselves.
RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionError,
)


def backoff_delay(attempt: int, base_delay: float, backoff_factor: float, max_delay: float) -> float:
    """Full-jitter delay before retry number ``attempt + 1``, never above ``max_delay``."""
    ceiling = min(base_delay * backoff_factor**attempt, max_delay)
    return random.uniform(0, ceiling)  # noqa: S311


def retry(
    max_retries: int = 3,
    backoff_factor: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
    max_delay: float = 30.0,
    base_delay: float = 1.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Wrap an async callable so ``retry_on`` errors are retried up to ``max_retries`` times.

    The last error is re-raised once retries run out. Anything not listed in
    ``retry_on`` propagates on the first occurrence.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        name = getattr(func, "__qualname__", repr(func))

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if attempt == max_retries:
                        logger.error("RETRY: giving up on %s after %d attempts: %s", name, attempt + 1, exc)
                        raise
                    delay = backoff_delay(attempt, base_delay, backoff_factor, max_delay)
                    attempt += 1
                    logger.info(
                        "RETRY: %s raised %s, attempt %d/%d in %.2fs",
                        name,
                        type(exc).__name__,
                        attempt,
                        max_retries,
                        delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator

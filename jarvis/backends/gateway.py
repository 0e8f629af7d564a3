"""
AI client gateway: retry with exponential backoff plus a circuit breaker.

Wraps a backend so a flaky upstream looks reliable to callers:
- Transient failures are retried up to max_retries times, sleeping
  retry_delay * 2^(attempt-1) between attempts.
- After max_failures consecutive failures the circuit opens and every call
  fails fast with ServiceUnavailable, without touching the network.
- Once the cooldown has elapsed one trial call is let through (half-open).
  Success closes the circuit; failure re-opens it for another cooldown.
- A background probe pings the upstream every health_check_interval.

Non-retried errors:
- UpstreamCallFailure with retryable=False (400, 401, 403): counted as a
  failure, propagated at once.
- InvalidInputError / NotFoundError: caller bugs, propagated untouched.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from jarvis.backends.base import BaseBackend
from jarvis.errors import (
    InvalidInputError,
    NotFoundError,
    ServiceUnavailable,
    UpstreamCallFailure,
)
from jarvis.periodic import PeriodicTask

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STRUCTURAL_ERRORS = (InvalidInputError, NotFoundError)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class ClientHealth:
    is_healthy: bool = True
    consecutive_failures: int = 0
    circuit_reset_at: float | None = None
    last_check: str | None = None
    last_error: str = ""
    total_attempts: int = 0
    total_failures: int = 0


class AIClientGateway:
    """Reliability wrapper around one upstream backend."""

    def __init__(
        self,
        backend: BaseBackend,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_failures: int = 3,
        cooldown: float = 60.0,
        health_check_interval: float = 300.0,
        attempt_timeout: float | None = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_failures = max_failures
        self.cooldown = cooldown
        self.attempt_timeout = attempt_timeout
        self._clock = clock
        self._sleep = sleep
        self._health = ClientHealth()
        self._trial = False
        self._prober = PeriodicTask("upstream-health-probe", health_check_interval, self.probe)

    @classmethod
    def from_config(cls, backend: BaseBackend, cfg, **kwargs) -> "AIClientGateway":
        """Build from a GatewayConfig."""
        return cls(
            backend,
            max_retries=cfg.max_retries,
            retry_delay=cfg.retry_delay,
            max_failures=cfg.max_failures,
            cooldown=cfg.cooldown,
            health_check_interval=cfg.health_check_interval,
            attempt_timeout=cfg.attempt_timeout,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Circuit state
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        if self._trial:
            return CircuitState.HALF_OPEN
        return CircuitState.CLOSED if self._health.is_healthy else CircuitState.OPEN

    @property
    def is_healthy(self) -> bool:
        return self._health.is_healthy

    def check_available(self) -> None:
        """Raise ServiceUnavailable if a call made now would fail fast."""
        if self._health.is_healthy:
            return

        now = self._clock()
        reset_at = self._health.circuit_reset_at
        if not self._trial and reset_at is not None and now > reset_at:
            return

        retry_after = math.ceil(reset_at - now) if reset_at is not None else math.ceil(self.cooldown)
        raise ServiceUnavailable(
            "AI service is currently unavailable (circuit breaker open)",
            retry_after=max(1, retry_after),
        )

    def get_client(self) -> BaseBackend:
        """
        Return the backend, or raise ServiceUnavailable while the circuit is
        open. The first call after the cooldown becomes the half-open trial.
        """
        self.check_available()
        if not self._health.is_healthy:
            logger.info("Circuit breaker cooldown elapsed, attempting recovery")
            self._trial = True
        return self.backend

    def _record_success(self, label: str) -> None:
        h = self._health
        if h.consecutive_failures > 0 or not h.is_healthy:
            logger.info("AI service recovered (%s)", label)
        h.consecutive_failures = 0
        h.is_healthy = True
        h.circuit_reset_at = None
        self._trial = False

    def _record_failure(self, failure: UpstreamCallFailure) -> None:
        h = self._health
        h.consecutive_failures += 1
        h.total_failures += 1
        h.last_error = failure.message

        if h.consecutive_failures >= self.max_failures or self._trial:
            was_healthy = h.is_healthy
            h.is_healthy = False
            h.circuit_reset_at = self._clock() + self.cooldown
            if was_healthy or self._trial:
                logger.error(
                    "Circuit breaker opened after %d consecutive failures (cooldown %.0fs)",
                    h.consecutive_failures, self.cooldown,
                )

    def _as_failure(self, error: Exception, label: str) -> UpstreamCallFailure:
        if isinstance(error, UpstreamCallFailure):
            return error
        if isinstance(error, asyncio.TimeoutError):
            return UpstreamCallFailure(f"{label} timed out after {self.attempt_timeout}s")
        return UpstreamCallFailure(f"{label} failed: {error}")

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        if self.attempt_timeout:
            return await asyncio.wait_for(awaitable, self.attempt_timeout)
        return await awaitable

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def execute_with_retry(
        self,
        operation: Callable[[BaseBackend], Awaitable[T]],
        label: str = "AI operation",
    ) -> T:
        """Run `operation(backend)` with retries, backoff and circuit breaking."""
        client = self.get_client()
        try:
            for attempt in range(1, self.max_retries + 1):
                self._health.total_attempts += 1
                try:
                    result = await self._bounded(operation(client))
                except _STRUCTURAL_ERRORS:
                    raise
                except Exception as e:
                    failure = self._as_failure(e, label)
                    self._record_failure(failure)
                    logger.warning(
                        "%s failed (attempt %d/%d): %s",
                        label, attempt, self.max_retries, failure.message,
                    )
                    if attempt == self.max_retries or not failure.retryable:
                        if failure is e:
                            raise
                        raise failure from e
                    delay = self.retry_delay * 2 ** (attempt - 1)
                    logger.debug("Retrying %s in %.1fs", label, delay)
                    await self._sleep(delay)
                else:
                    if attempt > 1:
                        logger.info("%s succeeded on attempt %d", label, attempt)
                    self._record_success(label)
                    return result
        finally:
            self._trial = False
        raise UpstreamCallFailure(f"{label} failed after {self.max_retries} attempts")

    async def stream_with_retry(
        self,
        messages: list[dict],
        label: str = "chat stream",
        **params,
    ) -> AsyncIterator[str]:
        """
        Stream chat chunks. Connection failures before the first chunk are
        retried like execute_with_retry; once output has started a failure
        propagates (the partial reply cannot be taken back).
        """
        client = self.get_client()
        try:
            for attempt in range(1, self.max_retries + 1):
                self._health.total_attempts += 1
                started = False
                try:
                    iterator = client.chat_stream(messages, **params).__aiter__()
                    while True:
                        try:
                            chunk = await self._bounded(iterator.__anext__())
                        except StopAsyncIteration:
                            break
                        started = True
                        yield chunk
                except _STRUCTURAL_ERRORS:
                    raise
                except Exception as e:
                    failure = self._as_failure(e, label)
                    self._record_failure(failure)
                    logger.warning(
                        "%s failed (attempt %d/%d, started=%s): %s",
                        label, attempt, self.max_retries, started, failure.message,
                    )
                    if started or attempt == self.max_retries or not failure.retryable:
                        if failure is e:
                            raise
                        raise failure from e
                    await self._sleep(self.retry_delay * 2 ** (attempt - 1))
                else:
                    self._record_success(label)
                    return
        finally:
            self._trial = False

    async def probe(self) -> bool:
        """Minimal chat call to check the upstream, independent of traffic."""
        self._health.last_check = datetime.now(timezone.utc).isoformat()
        try:
            await self._bounded(
                self.backend.chat(
                    [{"role": "user", "content": "ping"}],
                    max_tokens=5,
                    temperature=0,
                )
            )
        except Exception as e:
            failure = self._as_failure(e, "health check")
            logger.warning("Health check failed: %s", failure.message)
            self._record_failure(failure)
            return False
        self._record_success("health check")
        return True

    def start(self) -> None:
        self._prober.start()

    async def stop(self) -> None:
        await self._prober.stop()

    def health(self) -> dict:
        """Snapshot of circuit state; safe to serialize."""
        data = asdict(self._health)
        data["state"] = self.state.value
        data["backend"] = self.backend.name
        return data

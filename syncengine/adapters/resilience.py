"""
Resilience policy for outbound platform calls.

Retry with exponential backoff for transient failures (timeouts, transport
errors, 5xx, 429) honouring Retry-After, and a circuit breaker per
(tenant, platform) that fails fast while the remote is down.
"""
from __future__ import annotations

import asyncio
import enum
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional

import httpx

from syncengine.config import settings
from syncengine.errors import ErrorKind, OperationError, Result
from syncengine.logging_config import get_logger
from syncengine.metrics import track_circuit_transition


class CircuitState(str, enum.Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing fast
    HALF_OPEN = "half_open"  # One trial call allowed through


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Opens after `failure_threshold` consecutive failures, rejects calls for
    `cooldown_seconds`, then lets a single trial call through. A successful trial
    closes it; a failed or abandoned trial re-opens it for another cooldown.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False

    def allow_request(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            if self._clock() - self.opened_at >= self.cooldown_seconds:
                self.state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                return True
            return False
        # HALF_OPEN
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self):
        was_open = self.state != CircuitState.CLOSED
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False
        if was_open:
            track_circuit_transition(self.platform, opened=False)

    def record_failure(self):
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self._trip()

    def _trip(self):
        if self.state == CircuitState.CLOSED:
            track_circuit_transition(self.platform, opened=True)
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        self._trial_in_flight = False
        get_logger(breaker=self.name).warning("circuit_opened", failures=self.failure_count)

    def abandon_trial(self):
        """A trial call that never reported back re-opens the breaker for another cooldown."""
        if self.state == CircuitState.HALF_OPEN and self._trial_in_flight:
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()
            self._trial_in_flight = False

    @property
    def platform(self) -> str:
        return self.name.rsplit(":", 1)[-1]

    @property
    def retry_in(self) -> float:
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self.opened_at))


class CircuitBreakerRegistry:
    """Breakers keyed by (tenant_id, platform); one tenant's outage never trips another's."""

    def __init__(
        self,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold or settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD
        self.cooldown_seconds = cooldown_seconds or settings.CIRCUIT_BREAKER_COOLDOWN_SECONDS
        self._clock = clock
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}

    def get(self, tenant_id: str, platform: str) -> CircuitBreaker:
        key = (tenant_id, platform)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                f"{tenant_id}:{platform}",
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
                clock=self._clock,
            )
            self._breakers[key] = breaker
        return breaker


# Process-wide registry used by the worker
breakers = CircuitBreakerRegistry()


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def classify_status(response: httpx.Response) -> OperationError:
    """Map a non-2xx response to an error kind."""
    code = response.status_code
    if is_transient_status(code):
        return OperationError(ErrorKind.TRANSIENT, f"http_{code}", response.reason_phrase, code)
    if code in (401, 403):
        return OperationError(ErrorKind.INVALID_CREDENTIALS, f"http_{code}", "credentials rejected", code)
    if code == 404:
        return OperationError(ErrorKind.NOT_FOUND, "http_404", "resource not found", code)
    return OperationError(ErrorKind.VALIDATION, f"http_{code}", _short_body(response), code)


def _short_body(response: httpx.Response) -> str:
    try:
        text = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
    return text[:500]


class ResiliencePolicy:
    """
    Executes one logical request with retries inside a circuit breaker.

    Backoff waits on `stop_event`, so setting it cancels pending retries.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        max_backoff: float | None = None,
        stop_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.breaker = breaker
        self.max_attempts = max_attempts or settings.ADAPTER_MAX_ATTEMPTS
        self.backoff_base = settings.ADAPTER_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.max_backoff = max_backoff or settings.ADAPTER_MAX_BACKOFF_SECONDS
        self.stop_event = stop_event
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base ** attempt, self.max_backoff)

    async def execute(self, operation: Callable[[], Awaitable[httpx.Response]]) -> Result:
        """
        Run `operation` until it succeeds, fails permanently, or attempts run out.

        Returns:
            Result with the httpx.Response on success, or the last error
        """
        last_error: OperationError | None = None

        for attempt in range(1, self.max_attempts + 1):
            if self._cancelled():
                return Result.failure(ErrorKind.CANCELLED, "cancelled", "stop requested")

            if not self.breaker.allow_request():
                return Result.failure(
                    ErrorKind.CIRCUIT_OPEN,
                    "circuit_open",
                    f"circuit open for {self.breaker.name}, retry in {self.breaker.retry_in:.0f}s",
                )

            delay = self.backoff(attempt)
            try:
                response = await operation()
            except httpx.TimeoutException as exc:
                self.breaker.record_failure()
                last_error = OperationError(ErrorKind.TRANSIENT, "timeout", str(exc) or "request timed out")
            except httpx.TransportError as exc:
                self.breaker.record_failure()
                last_error = OperationError(ErrorKind.TRANSIENT, "transport_error", str(exc) or type(exc).__name__)
            except httpx.HTTPError as exc:
                # Decoding errors, redirect loops: the remote answered with something unusable
                self.breaker.record_failure()
                return Result.failure(ErrorKind.PERMANENT, "request_error", str(exc) or type(exc).__name__)
            except httpx.InvalidURL as exc:
                self.breaker.abandon_trial()
                return Result.failure(ErrorKind.VALIDATION, "invalid_url", str(exc))
            except BaseException:
                self.breaker.abandon_trial()
                raise
            else:
                if response.is_success:
                    self.breaker.record_success()
                    return Result.success(response)

                error = classify_status(response)
                if not error.retryable:
                    # The remote answered; a 4xx says nothing about its health.
                    self.breaker.record_success()
                    return Result.from_error(error)

                self.breaker.record_failure()
                last_error = error
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None:
                    delay = min(retry_after, self.max_backoff)

            if attempt == self.max_attempts:
                break
            if await self._wait(delay):
                return Result.failure(ErrorKind.CANCELLED, "cancelled", "stop requested during backoff")

        return Result.from_error(last_error)

    def _cancelled(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    async def _wait(self, delay: float) -> bool:
        """Wait out a backoff. Returns True if the stop event fired first."""
        if self.stop_event is None:
            await self._sleep(delay)
            return False
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

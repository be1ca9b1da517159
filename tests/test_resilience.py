"""
Resilience policy tests.

Retries with backoff for transient failures, Retry-After, no retries for
4xx, and the per (tenant, platform) circuit breaker.
"""
import asyncio

import httpx
import pytest

from syncengine.adapters.resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    ResiliencePolicy,
    parse_retry_after,
)
from syncengine.errors import ErrorKind


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_policy(breaker, fake_sleep, max_attempts=3, stop_event=None):
    return ResiliencePolicy(
        breaker,
        max_attempts=max_attempts,
        backoff_base=2.0,
        max_backoff=60.0,
        stop_event=stop_event,
        sleep=fake_sleep,
    )


async def run(policy, transport):
    async with httpx.AsyncClient(transport=transport) as client:
        return await policy.execute(lambda: client.get("https://platform.test/orders.json"))


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_exponential_backoff(recorder, fake_sleep):
    handler, transport = recorder(httpx.Response(503), httpx.Response(502), httpx.Response(200, json={"ok": True}))
    breaker = CircuitBreaker("t1:shopify", failure_threshold=5)

    result = await run(make_policy(breaker, fake_sleep), transport)

    assert result.ok
    assert result.value.json() == {"ok": True}
    assert len(handler.requests) == 3
    assert fake_sleep.calls == [2.0, 4.0]
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_retry_after_header_overrides_backoff(recorder, fake_sleep):
    handler, transport = recorder(
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(200),
    )
    breaker = CircuitBreaker("t1:shopify")

    result = await run(make_policy(breaker, fake_sleep), transport)

    assert result.ok
    assert fake_sleep.calls == [7.0]


@pytest.mark.asyncio
async def test_attempts_exhausted_returns_last_transient_error(recorder, fake_sleep):
    handler, transport = recorder(default=httpx.Response(500))
    breaker = CircuitBreaker("t1:delhivery", failure_threshold=10)

    result = await run(make_policy(breaker, fake_sleep), transport)

    assert not result.ok
    assert result.error.kind == ErrorKind.TRANSIENT
    assert result.error.code == "http_500"
    assert len(handler.requests) == 3
    # No wait after the final attempt
    assert fake_sleep.calls == [2.0, 4.0]


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(recorder, fake_sleep):
    handler, transport = recorder(httpx.Response(422, text="bad sku"))
    breaker = CircuitBreaker("t1:shopify")

    result = await run(make_policy(breaker, fake_sleep), transport)

    assert result.error.kind == ErrorKind.VALIDATION
    assert result.error.status_code == 422
    assert len(handler.requests) == 1
    assert fake_sleep.calls == []
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_rejected_credentials_are_classified(recorder, fake_sleep):
    handler, transport = recorder(httpx.Response(401))

    result = await run(make_policy(CircuitBreaker("t1:shopify"), fake_sleep), transport)

    assert result.error.kind == ErrorKind.INVALID_CREDENTIALS
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_transport_errors_are_transient(recorder, fake_sleep):
    handler, transport = recorder(httpx.ConnectError("connection refused"), httpx.Response(200))

    result = await run(make_policy(CircuitBreaker("t1:shopify"), fake_sleep), transport)

    assert result.ok
    assert len(handler.requests) == 2


@pytest.mark.asyncio
async def test_breaker_opens_and_fails_fast(recorder, fake_sleep):
    clock = FakeClock()
    breaker = CircuitBreaker("t1:shopify", failure_threshold=2, cooldown_seconds=30, clock=clock)
    handler, transport = recorder(default=httpx.Response(503))

    result = await run(make_policy(breaker, fake_sleep), transport)

    assert result.error.kind == ErrorKind.CIRCUIT_OPEN
    assert breaker.state == CircuitState.OPEN
    assert len(handler.requests) == 2

    again = await run(make_policy(breaker, fake_sleep), transport)
    assert again.error.kind == ErrorKind.CIRCUIT_OPEN
    assert len(handler.requests) == 2


@pytest.mark.asyncio
async def test_half_open_trial_closes_breaker_on_success(recorder, fake_sleep):
    clock = FakeClock()
    breaker = CircuitBreaker("t1:shopify", failure_threshold=1, cooldown_seconds=30, clock=clock)
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN

    clock.now += 30
    handler, transport = recorder(httpx.Response(200))
    result = await run(make_policy(breaker, fake_sleep, max_attempts=1), transport)

    assert result.ok
    assert breaker.state == CircuitState.CLOSED


def test_half_open_allows_a_single_trial_and_reopens_on_failure():
    clock = FakeClock()
    breaker = CircuitBreaker("t1:delhivery", failure_threshold=1, cooldown_seconds=10, clock=clock)
    breaker.record_failure()

    assert not breaker.allow_request()
    clock.now += 10
    assert breaker.allow_request()
    assert breaker.state == CircuitState.HALF_OPEN
    assert not breaker.allow_request()

    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert breaker.retry_in == 10


@pytest.mark.asyncio
async def test_cancelled_half_open_trial_reopens_the_breaker(fake_sleep):
    clock = FakeClock()
    breaker = CircuitBreaker("t1:shopify", failure_threshold=1, cooldown_seconds=30, clock=clock)
    breaker.record_failure()
    clock.now += 30
    policy = make_policy(breaker, fake_sleep, max_attempts=1)
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.Event().wait()

    trial = asyncio.create_task(policy.execute(hang))
    await started.wait()
    trial.cancel()
    with pytest.raises(asyncio.CancelledError):
        await trial

    assert breaker.state == CircuitState.OPEN
    assert not breaker.allow_request()

    clock.now += 10_000

    async def healthy():
        return httpx.Response(200)

    result = await policy.execute(healthy)

    assert result.ok
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_unexpected_httpx_errors_come_back_as_results(fake_sleep):
    clock = FakeClock()
    breaker = CircuitBreaker("t1:shopify", failure_threshold=1, cooldown_seconds=30, clock=clock)
    breaker.record_failure()
    clock.now += 30
    policy = make_policy(breaker, fake_sleep)

    async def bad_url():
        raise httpx.InvalidURL("Invalid port: ':1'")

    async def undecodable():
        raise httpx.DecodingError("garbled gzip")

    invalid = await policy.execute(bad_url)

    assert invalid.error.kind == ErrorKind.VALIDATION
    assert invalid.error.code == "invalid_url"
    assert breaker.state == CircuitState.OPEN

    clock.now += 30
    garbled = await policy.execute(undecodable)

    assert garbled.error.kind == ErrorKind.PERMANENT
    assert garbled.error.code == "request_error"
    assert breaker.state == CircuitState.OPEN
    assert fake_sleep.calls == []


def test_registry_keeps_tenants_apart():
    registry = CircuitBreakerRegistry(failure_threshold=1, cooldown_seconds=60)
    registry.get("tenant-a", "shopify").record_failure()

    assert registry.get("tenant-a", "shopify").state == CircuitState.OPEN
    assert registry.get("tenant-b", "shopify").state == CircuitState.CLOSED
    assert registry.get("tenant-a", "delhivery").state == CircuitState.CLOSED
    assert registry.get("tenant-a", "shopify") is registry.get("tenant-a", "shopify")


@pytest.mark.asyncio
async def test_stop_event_cancels_before_the_request(recorder, fake_sleep):
    handler, transport = recorder(httpx.Response(200))
    stop_event = asyncio.Event()
    stop_event.set()

    result = await run(make_policy(CircuitBreaker("t1:shopify"), fake_sleep, stop_event=stop_event), transport)

    assert result.error.kind == ErrorKind.CANCELLED
    assert handler.requests == []


@pytest.mark.asyncio
async def test_stop_event_interrupts_backoff(recorder):
    handler, transport = recorder(default=httpx.Response(503))
    stop_event = asyncio.Event()
    policy = ResiliencePolicy(
        CircuitBreaker("t1:shopify", failure_threshold=10),
        max_attempts=3,
        backoff_base=30.0,
        max_backoff=60.0,
        stop_event=stop_event,
    )

    async def stop_soon():
        await asyncio.sleep(0.05)
        stop_event.set()

    stopper = asyncio.create_task(stop_soon())
    result = await asyncio.wait_for(run(policy, transport), timeout=5)
    await stopper

    assert result.error.kind == ErrorKind.CANCELLED
    assert len(handler.requests) == 1


def test_parse_retry_after():
    assert parse_retry_after("12") == 12.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0

"""
Tests for the AI client gateway: retry/backoff and circuit breaker.
Run with: pytest tests/test_gateway.py
"""

import asyncio

import pytest

from jarvis.backends.gateway import AIClientGateway, CircuitState
from jarvis.errors import NotFoundError, ServiceUnavailable, UpstreamCallFailure


def _gateway(backend, clock, sleeps, **kwargs):
    return AIClientGateway(backend, clock=clock, sleep=sleeps, **kwargs)


async def _chat(client):
    return await client.chat([{"role": "user", "content": "hi"}])


# ---------------------------------------------------------------------------
# Retry with backoff
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_success_passes_through(backend, clock, sleeps):
    """A healthy call runs once with no backoff."""
    gw = _gateway(backend, clock, sleeps)
    result = await gw.execute_with_retry(_chat, "chat")
    assert result.content == "At your service."
    assert len(backend.calls) == 1
    assert sleeps.delays == []
    assert gw.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_retries_with_exponential_backoff(make_backend, clock, sleeps):
    """Transient failures are retried with doubling delays."""
    backend = make_backend(fail_next=2)
    gw = _gateway(backend, clock, sleeps, max_retries=3, retry_delay=1.0, max_failures=5)

    result = await gw.execute_with_retry(_chat, "chat")
    assert result.content == "At your service."
    assert len(backend.calls) == 3
    assert sleeps.delays == [1.0, 2.0]
    assert gw.health()["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_exhausted_retries_propagate(make_backend, clock, sleeps):
    """The last failure propagates after max_retries attempts."""
    backend = make_backend(fail_next=10)
    gw = _gateway(backend, clock, sleeps, max_retries=3, retry_delay=0.5)

    with pytest.raises(UpstreamCallFailure):
        await gw.execute_with_retry(_chat, "chat")
    assert len(backend.calls) == 3
    assert sleeps.delays == [0.5, 1.0]
    assert gw.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_non_retryable_error_stops_early(make_backend, clock, sleeps):
    """Permanent upstream errors are not retried but still counted."""
    backend = make_backend(
        fail_next=10,
        error=UpstreamCallFailure("HTTP 401", retryable=False, upstream_status=401),
    )
    gw = _gateway(backend, clock, sleeps, max_retries=3)

    with pytest.raises(UpstreamCallFailure) as exc_info:
        await gw.execute_with_retry(_chat, "chat")
    assert exc_info.value.upstream_status == 401
    assert len(backend.calls) == 1
    assert sleeps.delays == []
    assert gw.health()["consecutive_failures"] == 1


@pytest.mark.asyncio
async def test_structural_errors_are_not_retried(backend, clock, sleeps):
    """Caller errors pass through without touching health."""
    gw = _gateway(backend, clock, sleeps)
    calls = []

    async def operation(client):
        calls.append(1)
        raise NotFoundError("Conversation conv_x not found")

    with pytest.raises(NotFoundError):
        await gw.execute_with_retry(operation, "chat")
    assert len(calls) == 1
    assert gw.health()["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_unexpected_errors_are_wrapped(backend, clock, sleeps):
    """Other exceptions surface as UpstreamCallFailure with the cause chained."""
    gw = _gateway(backend, clock, sleeps, max_retries=1)

    async def operation(client):
        raise ConnectionResetError("peer reset")

    with pytest.raises(UpstreamCallFailure) as exc_info:
        await gw.execute_with_retry(operation, "chat")
    assert isinstance(exc_info.value.__cause__, ConnectionResetError)
    assert "peer reset" in gw.health()["last_error"]


@pytest.mark.asyncio
async def test_attempt_timeout_counts_as_failure(backend, clock, sleeps):
    """A hung attempt times out and is retried."""
    gw = _gateway(backend, clock, sleeps, max_retries=2, attempt_timeout=0.01)

    async def hang(client):
        await asyncio.sleep(5)

    with pytest.raises(UpstreamCallFailure, match="timed out"):
        await gw.execute_with_retry(hang, "chat")
    assert gw.health()["consecutive_failures"] == 2
    assert sleeps.delays == [1.0]


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_circuit_opens_and_self_heals(make_backend, clock, sleeps):
    """The circuit fails fast while open and heals after the cooldown."""
    backend = make_backend(fail_next=3)
    gw = _gateway(backend, clock, sleeps, max_retries=1, max_failures=3, cooldown=60)

    for _ in range(3):
        with pytest.raises(UpstreamCallFailure):
            await gw.execute_with_retry(_chat, "chat")
    assert gw.state is CircuitState.OPEN

    with pytest.raises(ServiceUnavailable) as exc_info:
        await gw.execute_with_retry(_chat, "chat")
    assert exc_info.value.retry_after == 60
    assert len(backend.calls) == 3  # fail fast: no upstream call

    clock.advance(61)
    result = await gw.execute_with_retry(_chat, "chat")
    assert result.content == "At your service."
    assert len(backend.calls) == 4
    assert gw.state is CircuitState.CLOSED
    assert gw.is_healthy


@pytest.mark.asyncio
async def test_failed_trial_reopens_circuit(make_backend, clock, sleeps):
    """A failed half-open trial re-opens the circuit at once."""
    backend = make_backend(fail_next=4)
    gw = _gateway(backend, clock, sleeps, max_retries=1, max_failures=3, cooldown=60)

    for _ in range(3):
        with pytest.raises(UpstreamCallFailure):
            await gw.execute_with_retry(_chat, "chat")

    clock.advance(61)
    with pytest.raises(UpstreamCallFailure):
        await gw.execute_with_retry(_chat, "chat")
    assert gw.state is CircuitState.OPEN

    with pytest.raises(ServiceUnavailable):
        await gw.execute_with_retry(_chat, "chat")
    assert len(backend.calls) == 4


@pytest.mark.asyncio
async def test_cooldown_boundary_is_exclusive(make_backend, clock, sleeps):
    """Calls are let through only strictly after the cooldown."""
    backend = make_backend(fail_next=1)
    gw = _gateway(backend, clock, sleeps, max_retries=1, max_failures=1, cooldown=60)

    with pytest.raises(UpstreamCallFailure):
        await gw.execute_with_retry(_chat, "chat")

    clock.advance(60)
    with pytest.raises(ServiceUnavailable):
        gw.check_available()
    clock.advance(0.001)
    gw.check_available()


@pytest.mark.asyncio
async def test_success_resets_failure_count(make_backend, clock, sleeps):
    """One success zeroes the consecutive failure count."""
    backend = make_backend(fail_next=2)
    gw = _gateway(backend, clock, sleeps, max_retries=1, max_failures=3)

    for _ in range(2):
        with pytest.raises(UpstreamCallFailure):
            await gw.execute_with_retry(_chat, "chat")
    assert gw.health()["consecutive_failures"] == 2

    await gw.execute_with_retry(_chat, "chat")
    assert gw.health()["consecutive_failures"] == 0


# ---------------------------------------------------------------------------
# Health probe
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_probe_success_heals(make_backend, clock, sleeps):
    """The ping probe closes an open circuit when it succeeds."""
    backend = make_backend(fail_next=3)
    gw = _gateway(backend, clock, sleeps, max_failures=3)

    for _ in range(3):
        assert await gw.probe() is False
    assert gw.state is CircuitState.OPEN

    assert await gw.probe() is True
    assert gw.state is CircuitState.CLOSED
    assert backend.calls[-1]["params"] == {"max_tokens": 5, "temperature": 0}
    assert gw.health()["last_check"] is not None


@pytest.mark.asyncio
async def test_probe_task_start_stop(backend, clock, sleeps):
    """The gateway owns its probe task."""
    gw = _gateway(backend, clock, sleeps)
    gw.start()
    assert gw._prober.running
    await gw.stop()
    assert not gw._prober.running


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_retries_before_first_chunk(make_backend, clock, sleeps):
    """A stream that fails before output is retried."""
    backend = make_backend(fail_next=1, chunks=["a", "b"])
    gw = _gateway(backend, clock, sleeps)

    chunks = [c async for c in gw.stream_with_retry([{"role": "user", "content": "hi"}])]
    assert chunks == ["a", "b"]
    assert backend.stream_calls == 2
    assert sleeps.delays == [1.0]
    assert gw.health()["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_stream_failure_after_output_propagates(make_backend, clock, sleeps):
    """A stream that fails mid-reply is not retried."""
    class BrokenStream(make_backend):
        async def chat_stream(self, messages, **params):
            self.stream_calls += 1
            yield "partial"
            raise UpstreamCallFailure("connection dropped")

    backend = BrokenStream()
    gw = _gateway(backend, clock, sleeps)

    received = []
    with pytest.raises(UpstreamCallFailure):
        async for chunk in gw.stream_with_retry([{"role": "user", "content": "hi"}]):
            received.append(chunk)
    assert received == ["partial"]
    assert backend.stream_calls == 1


@pytest.mark.asyncio
async def test_stream_fails_fast_when_open(make_backend, clock, sleeps):
    """Streaming honours the open circuit."""
    backend = make_backend(fail_next=1)
    gw = _gateway(backend, clock, sleeps, max_retries=1, max_failures=1)

    with pytest.raises(UpstreamCallFailure):
        await gw.execute_with_retry(_chat, "chat")

    with pytest.raises(ServiceUnavailable):
        async for _ in gw.stream_with_retry([{"role": "user", "content": "hi"}]):
            pass
    assert backend.stream_calls == 0


def test_health_snapshot(backend, clock, sleeps):
    """health() is a plain dict with the circuit state."""
    gw = _gateway(backend, clock, sleeps)
    health = gw.health()
    assert health["state"] == "closed"
    assert health["backend"] == "fake"
    assert health["is_healthy"] is True
    assert health["total_attempts"] == 0


def test_from_config(backend):
    """Retry and breaker settings come from GatewayConfig."""
    from jarvis.config import GatewayConfig

    gw = AIClientGateway.from_config(backend, GatewayConfig(max_retries=5, cooldown=10))
    assert gw.max_retries == 5
    assert gw.cooldown == 10
    assert gw.max_failures == 3

"""
Tests for the sliding-window rate limiter.
Run with: pytest tests/test_rate_limiter.py
"""

import asyncio

import pytest

from jarvis.periodic import PeriodicTask
from jarvis.rate_limiter import RateLimitDecision, RateLimiter


def _limiter(clock, **kwargs):
    params = {"window": 1.0, "max_requests": 3, "block_duration": 300.0}
    params.update(kwargs)
    return RateLimiter(clock=clock, **params)


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

def test_allows_up_to_max_then_denies(clock):
    """The request past the quota is denied and starts the block."""
    rl = _limiter(clock)
    for _ in range(3):
        assert rl.check("x").allowed
        clock.advance(0.1)

    denied = rl.check("x")
    assert not denied.allowed
    assert denied.retry_after == 300


def test_window_slides(clock):
    """Requests older than the window no longer count."""
    rl = _limiter(clock)
    for _ in range(3):
        assert rl.check("x").allowed

    clock.advance(1.01)
    assert rl.check("x").allowed


def test_remaining_and_reset(clock):
    """Allowed decisions report what is left of the quota."""
    rl = _limiter(clock)
    first = rl.check("x")
    assert first.remaining == 2
    assert first.limit == 3
    assert first.reset_at == clock.now + 1.0

    assert rl.check("x").remaining == 1
    assert rl.check("x").remaining == 0


def test_block_outlasts_window(clock):
    """A blocked identifier stays denied after its window has passed."""
    rl = _limiter(clock, block_duration=10.0)
    for _ in range(3):
        rl.check("x")
    assert not rl.check("x").allowed

    clock.advance(4.5)
    still_blocked = rl.check("x")
    assert not still_blocked.allowed
    assert still_blocked.retry_after == 6  # ceil(5.5)


def test_block_expires_and_clears_history(clock):
    """After the block lapses the identifier starts with an empty window."""
    rl = _limiter(clock, block_duration=10.0)
    for _ in range(3):
        rl.check("x")
    rl.check("x")

    clock.advance(10.5)
    decision = rl.check("x")
    assert decision.allowed
    assert decision.remaining == 2


def test_identifiers_are_independent(clock):
    """One client's block does not affect another."""
    rl = _limiter(clock)
    for _ in range(3):
        rl.check("ip:1.1.1.1")
    assert not rl.check("ip:1.1.1.1").allowed
    assert rl.check("ip:2.2.2.2").allowed


# ---------------------------------------------------------------------------
# Sweep and stats
# ---------------------------------------------------------------------------

def test_sweep_drops_idle_entries(clock):
    """Idle entries go, active and blocked ones stay."""
    rl = _limiter(clock, block_duration=10.0)
    rl.check("idle")
    for _ in range(4):
        rl.check("blocked")
    clock.advance(0.5)
    rl.check("active")

    clock.advance(0.7)
    assert rl.sweep() == 1
    stats = rl.stats()
    assert stats["tracked"] == 2
    assert stats["blocked"] == 1


def test_sweep_collects_lapsed_blocks(clock):
    """Clients whose block ran out and never came back are collected."""
    rl = _limiter(clock, block_duration=10.0)
    for i in range(100):
        for _ in range(4):
            rl.check(f"ip:10.0.0.{i}")
    assert rl.stats()["blocked"] == 100

    clock.advance(3600)
    assert rl.stats()["blocked"] == 0
    assert rl.sweep() == 100
    assert rl.stats()["tracked"] == 0


def test_stats_ignore_lapsed_blocks(clock):
    """A lapsed block is not reported as blocked even before a sweep."""
    rl = _limiter(clock, block_duration=10.0)
    for _ in range(4):
        rl.check("x")
    clock.advance(5)
    assert rl.stats()["blocked"] == 1
    clock.advance(5)
    assert rl.stats()["blocked"] == 0


# ---------------------------------------------------------------------------
# Decisions as HTTP headers
# ---------------------------------------------------------------------------

def test_headers_report_wall_clock_reset(clock):
    """X-RateLimit-Reset is a wall-clock epoch, not a monotonic reading."""
    rl = _limiter(clock, window=60.0, wall_clock=lambda: 1_700_000_000.4)
    headers = rl.check("x").headers()
    assert headers == {
        "X-RateLimit-Limit": "3",
        "X-RateLimit-Remaining": "2",
        "X-RateLimit-Reset": "1700000061",
    }


def test_headers_on_deny():
    """A deny only carries Retry-After."""
    denied = RateLimitDecision(allowed=False, limit=30, retry_after=300)
    assert denied.headers() == {"Retry-After": "300"}


def test_from_config():
    """Per-endpoint limits come from RateLimitsConfig."""
    from jarvis.config import RateLimitsConfig

    cfg = RateLimitsConfig()
    chat = RateLimiter.from_config(cfg.chat, name="chat")
    transcribe = RateLimiter.from_config(cfg.transcribe, name="transcribe")
    assert (chat.max_requests, chat.window) == (30, 60.0)
    assert (transcribe.max_requests, transcribe.window) == (20, 60.0)
    assert chat.block_duration == 300.0


# ---------------------------------------------------------------------------
# Background sweep
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_periodic_task_runs_until_stopped():
    """The callback repeats until stop(), then never again."""
    calls = []

    async def fast_sleep(_):
        await asyncio.sleep(0)

    task = PeriodicTask("test", 60, lambda: calls.append(1), sleep=fast_sleep)
    task.start()
    for _ in range(10):
        await asyncio.sleep(0)
    await task.stop()

    assert calls
    assert not task.running
    count = len(calls)
    for _ in range(5):
        await asyncio.sleep(0)
    assert len(calls) == count


@pytest.mark.asyncio
async def test_periodic_task_survives_callback_errors():
    """A failing callback is logged and the loop keeps going."""
    calls = []

    async def fast_sleep(_):
        await asyncio.sleep(0)

    def flaky():
        calls.append(1)
        raise RuntimeError("sweep failed")

    task = PeriodicTask("flaky", 60, flaky, sleep=fast_sleep)
    task.start()
    for _ in range(10):
        await asyncio.sleep(0)
    await task.stop()

    assert len(calls) > 1


@pytest.mark.asyncio
async def test_limiter_sweep_task_start_stop(clock):
    """The limiter owns its sweep task."""
    rl = _limiter(clock)
    rl.start()
    assert rl._sweeper.running
    await rl.stop()
    assert not rl._sweeper.running

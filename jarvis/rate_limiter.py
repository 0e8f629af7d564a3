"""
Sliding-window rate limiter.

Each identifier (an IP or user id) keeps the timestamps of its requests in
the trailing window. Exceeding the quota blocks the identifier for
`block_duration` seconds. A denial is returned as a RateLimitDecision with
allowed=False; the HTTP layer turns it into a 429 with Retry-After.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from jarvis.periodic import PeriodicTask

logger = logging.getLogger(__name__)


@dataclass
class RateLimitEntry:
    requests: list[float] = field(default_factory=list)
    blocked: bool = False
    blocked_until: float | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check."""
    allowed: bool
    limit: int
    remaining: int = 0
    reset_at: float | None = None   # clock value at which the window resets
    retry_after: int = 0            # whole seconds, set on deny
    reset_epoch: int | None = None  # wall-clock seconds at which the window resets

    def headers(self) -> dict[str, str]:
        """HTTP headers describing this decision."""
        if not self.allowed:
            return {"Retry-After": str(self.retry_after)}
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_epoch or 0),
        }


class RateLimiter:
    """Per-identifier sliding-window admission control."""

    def __init__(
        self,
        window: float = 60.0,
        max_requests: int = 60,
        block_duration: float = 300.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.window = window
        self.max_requests = max_requests
        self.block_duration = block_duration
        self.name = name
        self._clock = clock
        self._wall_clock = wall_clock
        self._limits: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._sweeper = PeriodicTask(f"rate-limit-sweep:{name}", window, self.sweep)

    @classmethod
    def from_config(cls, cfg, name: str = "default", **kwargs) -> "RateLimiter":
        """Build from a RateLimitConfig."""
        return cls(
            window=cfg.window,
            max_requests=cfg.max_requests,
            block_duration=cfg.block_duration,
            name=name,
            **kwargs,
        )

    def check(self, identifier: str) -> RateLimitDecision:
        """Admit or deny one request from `identifier`."""
        now = self._clock()
        with self._lock:
            entry = self._limits.get(identifier)
            if entry is None:
                entry = self._limits[identifier] = RateLimitEntry()

            if self._is_blocked(entry, now):
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    retry_after=math.ceil(entry.blocked_until - now),
                )
            self._release_expired_block(entry, now)

            entry.requests = [t for t in entry.requests if now - t < self.window]

            if len(entry.requests) >= self.max_requests:
                entry.blocked = True
                entry.blocked_until = now + self.block_duration
                logger.warning(
                    "Rate limit '%s' exceeded by %s (%d requests), blocked for %.0fs",
                    self.name, identifier, len(entry.requests), self.block_duration,
                )
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    retry_after=math.ceil(self.block_duration),
                )

            entry.requests.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - len(entry.requests),
                reset_at=now + self.window,
                reset_epoch=math.ceil(self._wall_clock() + self.window),
            )

    def sweep(self) -> int:
        """Drop identifiers with nothing in-window that are not blocked."""
        now = self._clock()
        removed = 0
        with self._lock:
            for identifier in list(self._limits):
                entry = self._limits[identifier]
                self._release_expired_block(entry, now)
                entry.requests = [t for t in entry.requests if now - t < self.window]
                if not entry.requests and not entry.blocked:
                    del self._limits[identifier]
                    removed += 1
        if removed:
            logger.debug("Rate limit '%s' swept %d idle entries", self.name, removed)
        return removed

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            blocked = sum(1 for e in self._limits.values() if self._is_blocked(e, now))
            return {
                "tracked": len(self._limits),
                "blocked": blocked,
                "max_requests": self.max_requests,
                "window": self.window,
            }

    @staticmethod
    def _is_blocked(entry: RateLimitEntry, now: float) -> bool:
        return entry.blocked and entry.blocked_until is not None and now < entry.blocked_until

    @staticmethod
    def _release_expired_block(entry: RateLimitEntry, now: float) -> None:
        # A lapsed block starts over with an empty window
        if entry.blocked and not RateLimiter._is_blocked(entry, now):
            entry.blocked = False
            entry.blocked_until = None
            entry.requests = []

"""
Shared fakes: a controllable clock, a recording sleep and an in-memory
backend, so nothing in the suite waits on wall-clock time or the network.
"""

import pytest

from jarvis.backends.base import BaseBackend, ChatResult
from jarvis.errors import UpstreamCallFailure


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class SleepRecorder:
    """Stands in for asyncio.sleep; remembers the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class FakeBackend(BaseBackend):
    """
    Scripted upstream. `fail_next` failures are raised before replies start
    flowing; `error` overrides the exception raised.
    """

    def __init__(self, replies=None, chunks=None, fail_next: int = 0, error: Exception | None = None):
        super().__init__("fake", "http://fake")
        self.replies = list(replies or [])
        self.chunks = list(chunks) if chunks is not None else ["Hello", ", ", "sir."]
        self.fail_next = fail_next
        self.error = error
        self.calls: list[dict] = []
        self.stream_calls = 0
        self.transcriptions: list[tuple[bytes, str]] = []

    def _maybe_fail(self):
        if self.fail_next > 0:
            self.fail_next -= 1
            raise self.error or UpstreamCallFailure("upstream down")

    async def chat(self, messages, **params):
        self.calls.append({"messages": messages, "params": params})
        self._maybe_fail()
        content = self.replies.pop(0) if self.replies else "At your service."
        return ChatResult(
            content=content,
            model="fake-model",
            usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        )

    async def chat_stream(self, messages, **params):
        self.stream_calls += 1
        self._maybe_fail()
        for chunk in self.chunks:
            yield chunk

    async def transcribe(self, audio, filename="audio.wav", model=None):
        self._maybe_fail()
        self.transcriptions.append((audio, filename))
        return "what time is it"

    async def health_check(self):
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_backend():
    """Factory for backends with a custom script."""
    return FakeBackend

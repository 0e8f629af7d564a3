"""
Base backend abstraction.
The gateway treats every upstream AI client through this interface, so the
hosted API can be swapped (or faked in tests) without touching the core.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

logger = logging.getLogger(__name__)


@dataclass
class ChatResult:
    """Standardized chat completion result from any backend."""
    content: str
    model: str = ""
    usage: dict = field(default_factory=lambda: {
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
    })
    latency_ms: float = 0.0


class BaseBackend(abc.ABC):
    """
    Abstract base for upstream AI clients.
    Implementations raise UpstreamCallFailure on any failed call.
    """

    def __init__(self, name: str, url: str, timeout: float = 30.0):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    async def chat(self, messages: list[dict], **params) -> ChatResult:
        """
        Non-streaming chat completion.
        `messages` is OpenAI format: [{"role": ..., "content": ...}, ...].
        """
        ...

    @abc.abstractmethod
    def chat_stream(self, messages: list[dict], **params) -> AsyncIterator[str]:
        """Streaming chat completion. Yields incremental text chunks."""
        ...

    @abc.abstractmethod
    async def transcribe(self, audio: bytes, filename: str = "audio.wav", model: str | None = None) -> str:
        """Speech-to-text. Returns the transcript."""
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Check if the upstream is reachable (no completion spent)."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"

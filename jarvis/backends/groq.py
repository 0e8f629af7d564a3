"""
Groq backend (OpenAI-compatible hosted API).

Talks to any endpoint speaking the OpenAI wire format under a base URL:
  POST {url}/chat/completions        (JSON or SSE stream)
  POST {url}/audio/transcriptions    (multipart, Whisper)
  GET  {url}/models                  (reachability)

Every failure is raised as UpstreamCallFailure; retry policy lives in the
gateway, not here.
"""

from __future__ import annotations

import json
import logging
import time

import httpx

from jarvis.backends.base import BaseBackend, ChatResult
from jarvis.errors import UpstreamCallFailure

logger = logging.getLogger(__name__)

# Transient statuses: timeout, conflict, rate limited, server errors
RETRYABLE_STATUSES = (408, 409, 429, 500, 502, 503, 504)


class GroqBackend(BaseBackend):
    """Chat, streaming chat and transcription against the Groq API."""

    def __init__(
        self,
        name: str = "groq",
        url: str = "https://api.groq.com/openai/v1",
        api_key: str = "",
        model: str = "llama-3.3-70b-versatile",
        transcription_model: str = "whisper-large-v3",
        timeout: float = 30.0,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ):
        super().__init__(name, url, timeout)
        self.api_key = api_key
        self.model = model
        self.transcription_model = transcription_model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, cfg) -> "GroqBackend":
        """Build from a BackendConfig."""
        return cls(
            name=cfg.name,
            url=cfg.url,
            api_key=cfg.api_key,
            model=cfg.model,
            transcription_model=cfg.transcription_model,
            timeout=cfg.timeout,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
        )

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _chat_body(self, messages: list[dict], stream: bool, params: dict) -> dict:
        return {
            "model": params.get("model") or self.model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "temperature": params.get("temperature", self.temperature),
            "max_tokens": params.get("max_tokens", self.max_tokens),
            "stream": stream,
        }

    def _failure(self, status_code: int, text: str) -> UpstreamCallFailure:
        return UpstreamCallFailure(
            f"{self.name} returned HTTP {status_code}: {text[:200]}",
            retryable=status_code in RETRYABLE_STATUSES,
            upstream_status=status_code,
        )

    async def chat(self, messages: list[dict], **params) -> ChatResult:
        """Forward a non-streaming chat completion."""
        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/chat/completions",
                    json=self._chat_body(messages, False, params),
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise UpstreamCallFailure(f"{self.name} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamCallFailure(f"{self.name} request failed: {e}") from e

        latency = (time.monotonic() - t0) * 1000
        if resp.status_code >= 400:
            raise self._failure(resp.status_code, resp.text)

        data = resp.json()
        choices = data.get("choices") or []
        if not choices or "message" not in choices[0]:
            raise UpstreamCallFailure(f"No response from {self.name}")

        usage = data.get("usage") or {}
        logger.debug("%s chat completed in %.0fms", self.name, latency)
        return ChatResult(
            content=choices[0]["message"].get("content") or "",
            model=data.get("model", self.model),
            usage={
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "total_tokens": usage.get("total_tokens", 0),
            },
            latency_ms=latency,
        )

    async def chat_stream(self, messages: list[dict], **params):
        """Forward a streaming chat completion, yielding content deltas."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/chat/completions",
                    json=self._chat_body(messages, True, params),
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise self._failure(resp.status_code, resp.text)
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        payload = line[5:].strip()
                        if payload == "[DONE]":
                            return
                        try:
                            chunk = json.loads(payload)
                        except json.JSONDecodeError:
                            logger.debug("%s sent a malformed SSE line: %s", self.name, payload[:100])
                            continue
                        choices = chunk.get("choices") or [{}]
                        content = choices[0].get("delta", {}).get("content")
                        if content:
                            yield content
        except httpx.TimeoutException as e:
            raise UpstreamCallFailure(f"{self.name} stream timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamCallFailure(f"{self.name} stream failed: {e}") from e

    async def transcribe(self, audio: bytes, filename: str = "audio.wav", model: str | None = None) -> str:
        """Transcribe audio with Whisper. Returns plain text."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/audio/transcriptions",
                    files={"file": (filename, audio)},
                    data={
                        "model": model or self.transcription_model,
                        "response_format": "text",
                    },
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise UpstreamCallFailure(f"{self.name} transcription timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamCallFailure(f"{self.name} transcription failed: {e}") from e

        if resp.status_code >= 400:
            raise self._failure(resp.status_code, resp.text)
        return resp.text.strip()

    async def health_check(self) -> bool:
        """Check the API is reachable and the key is accepted."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/models", headers=self._headers())
                return resp.status_code == 200
        except httpx.HTTPError:
            return False

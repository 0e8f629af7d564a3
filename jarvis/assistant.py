"""
Assistant: the request path through the core.

    raw text → sanitize → store user turn → gateway (chat) → store reply

Both front-ends (HTTP API and CLI REPL) go through this class; neither
talks to the store or the gateway on its own for a chat turn.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from jarvis.backends.gateway import AIClientGateway
from jarvis.conversation import ConversationStore
from jarvis.sanitizer import MAX_PROMPT_LENGTH, sanitize_history, sanitize_prompt

logger = logging.getLogger(__name__)


@dataclass
class Reply:
    conversation_id: str
    content: str
    model: str = ""
    usage: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "message": self.content,
            "model": self.model,
            "usage": self.usage,
        }


class Assistant:
    """Ties sanitization, conversation context and upstream access together."""

    def __init__(
        self,
        store: ConversationStore,
        gateway: AIClientGateway,
        system_prompt: str | None = None,
        max_length: int = MAX_PROMPT_LENGTH,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.system_prompt = system_prompt
        self.max_length = max_length
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _params(self) -> dict:
        params = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens
        return params

    def start_conversation(self, history: list[dict] | None = None) -> str:
        """New conversation with the system prompt, optionally pre-seeded."""
        conv_id = self.store.create(self.system_prompt)
        for item in sanitize_history(history or [], self.max_length):
            self.store.add_message(conv_id, item["role"], item["content"])
        return conv_id

    def _prepare(self, text: str, conversation_id: str | None, history: list[dict] | None) -> tuple[str, list[dict]]:
        message = sanitize_prompt(text, self.max_length)
        if conversation_id is None:
            conversation_id = self.start_conversation(history)
        self.store.add_message(conversation_id, "user", message)
        context = [m.to_openai_format() for m in self.store.get_messages(conversation_id)]
        return conversation_id, context

    async def ask(
        self,
        text: str,
        conversation_id: str | None = None,
        history: list[dict] | None = None,
    ) -> Reply:
        """One full chat turn. Unknown conversation ids raise NotFoundError."""
        conversation_id, context = self._prepare(text, conversation_id, history)
        params = self._params()

        result = await self.gateway.execute_with_retry(
            lambda client: client.chat(context, **params),
            "chat completion",
        )

        self.store.add_message(conversation_id, "assistant", result.content)
        logger.debug("Reply for %s: %d chars", conversation_id, len(result.content))
        return Reply(
            conversation_id=conversation_id,
            content=result.content,
            model=result.model,
            usage=result.usage,
        )

    async def ask_stream(
        self,
        text: str,
        conversation_id: str | None = None,
        history: list[dict] | None = None,
    ) -> tuple[str, AsyncIterator[str]]:
        """
        Streaming chat turn. Returns the conversation id and an iterator of
        chunks; the complete reply is stored once the stream finishes.
        Raises ServiceUnavailable up front if the circuit is open.
        """
        self.gateway.check_available()
        conversation_id, context = self._prepare(text, conversation_id, history)
        return conversation_id, self._stream(conversation_id, context)

    async def _stream(self, conversation_id: str, context: list[dict]) -> AsyncIterator[str]:
        parts: list[str] = []
        async for chunk in self.gateway.stream_with_retry(context, **self._params()):
            parts.append(chunk)
            yield chunk
        # Stored even when empty so user and assistant turns keep alternating
        if self.store.exists(conversation_id):
            self.store.add_message(conversation_id, "assistant", "".join(parts))

    async def transcribe(self, audio: bytes, filename: str = "audio.wav") -> str:
        """Speech-to-text through the gateway."""
        return await self.gateway.execute_with_retry(
            lambda client: client.transcribe(audio, filename),
            "transcription",
        )

"""
Conversation store — in-memory multi-turn context.

Owns every active conversation. Keeps each one under a token budget by
dropping the oldest non-system turns, caps how many conversations are held
(least recently updated go first) and expires idle ones on a timer.

Token counts are estimates (~4 characters per token); they only need to be
good enough to stay clear of the model's context limit.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from jarvis.errors import InvalidInputError, NotFoundError
from jarvis.periodic import PeriodicTask

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant")

MAX_CONTEXT_TOKENS = 8000
MAX_CONVERSATIONS = 100
CONVERSATION_TTL = 3600.0
SWEEP_INTERVAL = 300.0


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token for English text."""
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class Message:
    """A single turn. Immutable once stored."""
    role: str
    content: str
    token_estimate: int
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_openai_format(self) -> dict:
        """The shape chat completion APIs expect."""
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "tokens": self.token_estimate,
        }


@dataclass
class Conversation:
    id: str
    created_at: float
    updated_at: float
    messages: list[Message] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return sum(m.token_estimate for m in self.messages)


def _new_id() -> str:
    return f"conv_{uuid4().hex}"


class ConversationStore:
    """
    Conversation id → ordered messages.
    Thread-safe: one store-wide lock around every read-modify-write.
    """

    def __init__(
        self,
        max_context_tokens: int = MAX_CONTEXT_TOKENS,
        max_conversations: int = MAX_CONVERSATIONS,
        ttl: float = CONVERSATION_TTL,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = _new_id,
    ):
        self.max_context_tokens = max_context_tokens
        self.max_conversations = max_conversations
        self.ttl = ttl
        self._clock = clock
        self._id_factory = id_factory
        self._conversations: dict[str, Conversation] = {}
        self._lock = threading.Lock()
        self._sweeper = PeriodicTask("conversation-expiry", sweep_interval, self.expire)

    @classmethod
    def from_config(cls, cfg, **kwargs) -> "ConversationStore":
        """Build from a ConversationConfig."""
        return cls(
            max_context_tokens=cfg.max_context_tokens,
            max_conversations=cfg.max_conversations,
            ttl=cfg.ttl,
            sweep_interval=cfg.sweep_interval,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(self, system_prompt: str | None = None) -> str:
        """Start a conversation, optionally seeded with a system message."""
        now = self._clock()
        with self._lock:
            conv_id = self._id_factory()
            while conv_id in self._conversations:
                conv_id = self._id_factory()
            conversation = Conversation(id=conv_id, created_at=now, updated_at=now)
            if system_prompt:
                conversation.messages.append(
                    Message("system", system_prompt, estimate_tokens(system_prompt))
                )
            self._conversations[conv_id] = conversation
            self._enforce_max_conversations()

        logger.debug("Conversation created: %s", conv_id)
        return conv_id

    def add_message(self, conversation_id: str, role: str, content: str) -> Message:
        """Append a turn, then trim the conversation to the token budget."""
        if role not in ROLES:
            raise InvalidInputError(f"Unknown role: {role!r}", {"allowed": list(ROLES)})
        if not isinstance(content, str):
            raise InvalidInputError("Message content must be a string")

        message = Message(role, content, estimate_tokens(content))
        with self._lock:
            conversation = self._get(conversation_id)
            conversation.messages.append(message)
            conversation.updated_at = self._clock()
            self._trim(conversation)
        return message

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Copy of the conversation's messages, oldest first."""
        with self._lock:
            return list(self._get(conversation_id).messages)

    def exists(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._conversations

    def reset(self, conversation_id: str) -> None:
        """Forget every turn but keep the system prompt."""
        with self._lock:
            conversation = self._get(conversation_id)
            conversation.messages = [m for m in conversation.messages if m.role == "system"]
            conversation.updated_at = self._clock()

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            return self._conversations.pop(conversation_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._conversations.clear()
        logger.info("All conversations cleared")

    def expire(self) -> int:
        """Remove conversations idle for longer than the TTL."""
        now = self._clock()
        with self._lock:
            expired = [
                cid for cid, conv in self._conversations.items()
                if now - conv.updated_at > self.ttl
            ]
            for cid in expired:
                del self._conversations[cid]
        if expired:
            logger.info("Cleaned up %d expired conversations", len(expired))
        return len(expired)

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()

    def stats(self) -> dict:
        with self._lock:
            return {
                "total_conversations": len(self._conversations),
                "max_conversations": self.max_conversations,
                "max_context_tokens": self.max_context_tokens,
                "ttl": self.ttl,
            }

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: str) -> bool:
        return self.exists(conversation_id)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _get(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def _trim(self, conversation: Conversation) -> None:
        system = [m for m in conversation.messages if m.role == "system"]
        others = [m for m in conversation.messages if m.role != "system"]
        total = sum(m.token_estimate for m in system) + sum(m.token_estimate for m in others)

        dropped = 0
        # The newest exchange always survives, even over budget.
        while total > self.max_context_tokens and len(others) > 2:
            removed = others.pop(0)
            total -= removed.token_estimate
            dropped += 1

        if dropped:
            logger.debug(
                "Trimmed %d messages from %s (%d remain, ~%d tokens)",
                dropped, conversation.id, len(others), total,
            )
        conversation.messages = system + others

    def _enforce_max_conversations(self) -> None:
        excess = len(self._conversations) - self.max_conversations
        if excess <= 0:
            return
        oldest = sorted(self._conversations.values(), key=lambda c: c.updated_at)[:excess]
        for conv in oldest:
            del self._conversations[conv.id]
            logger.debug("Evicted conversation %s (population cap)", conv.id)

"""
Input sanitization for text headed to the LLM.

Runs at the boundary (HTTP routes, CLI) before anything reaches the
conversation store: strips control characters and caps length. This is
hygiene, not injection detection.
"""

from __future__ import annotations

import re

from jarvis.errors import InvalidInputError

MAX_PROMPT_LENGTH = 10000

# C0 controls except \t and \n, DEL, and C1 controls
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")


def sanitize_prompt(text, max_length: int = MAX_PROMPT_LENGTH) -> str:
    """Clean one user message. Raises InvalidInputError if nothing usable remains."""
    if not isinstance(text, str):
        raise InvalidInputError("Message must be a string")

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = text[:max_length].strip()

    if not text:
        raise InvalidInputError("Message is empty")
    return text


def sanitize_history(items: list[dict], max_length: int = MAX_PROMPT_LENGTH) -> list[dict]:
    """
    Clean a client-supplied history. Anything that is not an assistant turn
    becomes a user turn; clients never get to inject system messages.
    Unusable entries are dropped.
    """
    cleaned = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        role = "assistant" if item.get("role") == "assistant" else "user"
        try:
            content = sanitize_prompt(item.get("content"), max_length)
        except InvalidInputError:
            continue
        cleaned.append({"role": role, "content": content})
    return cleaned

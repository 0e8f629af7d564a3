"""
Upstream AI access for JARVIS.
A backend speaks to the hosted API; the gateway makes it reliable.
"""
from jarvis.backends.base import BaseBackend, ChatResult
from jarvis.backends.gateway import AIClientGateway, CircuitState, ClientHealth
from jarvis.backends.groq import GroqBackend

__all__ = [
    "AIClientGateway",
    "BaseBackend",
    "ChatResult",
    "CircuitState",
    "ClientHealth",
    "GroqBackend",
]

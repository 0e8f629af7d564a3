"""
JARVIS — voice-driven chat core.

Conversation context with token-budget trimming, retry/circuit-breaker
wrapped access to the hosted LLM API, and sliding-window rate limiting.
The HTTP API (jarvis.main) and the CLI (jarvis.cli) sit on top.
"""

__version__ = "2.0.0"

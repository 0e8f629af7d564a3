#!/usr/bin/env python3
"""
JARVIS CLI.

Every command has a primary name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the JARVIS HTTP API
    chat            talk, repl      Interactive text chat in the terminal
    ping            status, health  Ping a running instance
    config          info            Show the effective configuration
    banner                          Print the JARVIS banner
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from jarvis import __version__

BANNER = r"""
       ╔════════════════════════════════════════════╗
       ║       ╦╔═╗╦═╗╦  ╦╦╔═╗                      ║
       ║       ║╠═╣╠╦╝╚╗╔╝║╚═╗                      ║
       ║      ╚╝╩ ╩╩╚═ ╚╝ ╩╚═╝   v""" + __version__ + r"""             ║
       ║                                            ║
       ║   Speak. Think. Answer.                    ║
       ╚════════════════════════════════════════════╝
"""

# Seconds to wait for a full reply before giving up on it
RESPONSE_TIMEOUT = 30.0

DEFAULT_HISTORY_FILE = "jarvis_history.json"

REPL_HELP = """
  Commands:
    exit, quit       Leave the chat
    clear            Forget the conversation (system prompt stays)
    stats            Session and circuit status
    save [path]      Save the conversation to JSON
    load [path]      Continue a saved conversation
    help             Show this help
"""


# ---------------------------------------------------------------------------
# History files
# ---------------------------------------------------------------------------

def save_history(path: str | Path, conversation_id: str, messages) -> int:
    """Write non-system messages to a JSON file. Returns how many were saved."""
    turns = [m.to_dict() for m in messages if m.role != "system"]
    data = {
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "conversation_id": conversation_id,
        "messages": turns,
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    return len(turns)


def load_history(path: str | Path) -> list[dict]:
    """Read a history file written by save_history (or a bare list of turns)."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a message list")
    return [
        {"role": m.get("role", "user"), "content": m.get("content", "")}
        for m in data
        if isinstance(m, dict)
    ]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the JARVIS HTTP API."""
    import uvicorn
    from jarvis.config import get_config

    cfg = get_config()
    host = args.host or cfg.server.host
    port = args.port or cfg.server.port

    print(BANNER)
    print(f"  Listening on {host}:{port}")
    print(f"  Backend: {cfg.backend.url}")
    print(f"  Model: {cfg.backend.model}")
    print()

    uvicorn.run(
        "jarvis.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level=cfg.logging.level.lower(),
    )


def build_assistant(cfg, backend=None):
    """Stand up the core outside the HTTP server (CLI use)."""
    from jarvis.assistant import Assistant
    from jarvis.backends.gateway import AIClientGateway
    from jarvis.backends.groq import GroqBackend
    from jarvis.conversation import ConversationStore

    backend = backend or GroqBackend.from_config(cfg.backend)
    store = ConversationStore.from_config(cfg.conversation)
    gateway = AIClientGateway.from_config(backend, cfg.gateway)
    return Assistant(
        store,
        gateway,
        system_prompt=cfg.conversation.system_prompt,
        max_length=cfg.sanitizer.max_length,
    )


async def _reply(assistant, text: str, conversation_id: str) -> str:
    _, chunks = await assistant.ask_stream(text, conversation_id)
    print("\n  jarvis> ", end="", flush=True)
    parts = []
    async for chunk in chunks:
        parts.append(chunk)
        print(chunk, end="", flush=True)
    print("\n")
    return "".join(parts)


async def chat_loop(assistant, read_line=input, timeout: float = RESPONSE_TIMEOUT):
    """REPL. `read_line` is swappable so the loop can be driven in tests."""
    from jarvis.errors import JarvisError

    loop = asyncio.get_running_loop()
    conversation_id = assistant.start_conversation()
    turns = 0
    started = datetime.now(timezone.utc)

    while True:
        try:
            line = await loop.run_in_executor(None, read_line, "  you> ")
        except EOFError:
            break
        text = line.strip()
        if not text:
            continue

        command, _, arg = text.partition(" ")
        command = command.lower()

        if command in ("exit", "quit"):
            break
        if command == "help":
            print(REPL_HELP)
            continue
        if command == "clear":
            assistant.store.reset(conversation_id)
            print("  Conversation history cleared.\n")
            continue
        if command == "stats":
            health = assistant.gateway.health()
            uptime = (datetime.now(timezone.utc) - started).total_seconds() / 60
            messages = assistant.store.get_messages(conversation_id)
            print(f"  Uptime: {uptime:.1f} min | Turns: {turns} | Messages in context: {len(messages)}")
            print(f"  Circuit: {health['state']} | Consecutive failures: {health['consecutive_failures']}\n")
            continue
        if command == "save":
            path = arg.strip() or DEFAULT_HISTORY_FILE
            count = save_history(path, conversation_id, assistant.store.get_messages(conversation_id))
            print(f"  Saved {count} messages to {path}\n")
            continue
        if command == "load":
            path = arg.strip() or DEFAULT_HISTORY_FILE
            try:
                history = load_history(path)
            except (OSError, ValueError) as e:
                print(f"  ✗ Could not load {path}: {e}\n")
                continue
            assistant.store.delete(conversation_id)
            conversation_id = assistant.start_conversation(history)
            print(f"  Loaded {len(history)} messages from {path}\n")
            continue

        try:
            await asyncio.wait_for(_reply(assistant, text, conversation_id), timeout)
            turns += 1
        except asyncio.TimeoutError:
            print(f"\n  ✗ No response within {timeout:.0f}s, try again.\n")
        except JarvisError as e:
            print(f"\n  ✗ {e.message}\n")

    print("  Goodbye!")
    return conversation_id


def cmd_chat(args):
    """Interactive text chat against the configured backend."""
    from jarvis.config import get_config
    from jarvis.main import setup_logging

    cfg = get_config()
    setup_logging(cfg)
    if not cfg.backend.api_key:
        print("  ✗ GROQ_API_KEY is not set. Add it to your environment or .env file.")
        sys.exit(1)

    print(BANNER)
    print("  Type your message, or 'help' for commands.\n")
    assistant = build_assistant(cfg)
    try:
        asyncio.run(chat_loop(assistant, timeout=args.timeout))
    except KeyboardInterrupt:
        print("\n  Goodbye!")


def cmd_ping(args):
    """Ping a running JARVIS instance."""
    import httpx
    from jarvis.config import get_config

    url = (args.url or "http://localhost:8080").rstrip("/")
    key = args.key or get_config().server.api_key
    headers = {"Authorization": f"Bearer {key}"} if key else {}
    try:
        resp = httpx.get(f"{url}/health", params={"deep": "true"}, timeout=10)
        if resp.status_code != 200:
            print(f"  ✗  No answer, got HTTP {resp.status_code}")
            return
        health = resp.json()
        print(f"  ✓  {url} is UP (v{health.get('version', '?')}, circuit {health.get('circuit', '?')})")
        print(f"  Upstream API: {health.get('upstream', '?')}")

        resp = httpx.get(f"{url}/api/stats", headers=headers, timeout=5)
        if resp.status_code == 401:
            print("  ✗  Stats need an API key (--key or JARVIS_API_KEY)")
            return
        stats = resp.json()
        conv = stats.get("conversations", {})
        gw = stats.get("gateway", {})
        print(f"  Conversations: {conv.get('total_conversations', 0)}/{conv.get('max_conversations', '?')}")
        for name, rl in stats.get("rate_limits", {}).items():
            print(f"  Rate limit {name}: {rl.get('tracked', 0)} clients, {rl.get('blocked', 0)} blocked")
        print(f"  Upstream: {gw.get('total_attempts', 0)} attempts, {gw.get('total_failures', 0)} failures")
        if gw.get("last_error"):
            print(f"  Last error: {gw['last_error']}")
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")


def cmd_config(args):
    """Show the effective configuration (secrets redacted)."""
    import yaml
    from jarvis.config import get_config, redacted

    print(yaml.safe_dump(redacted(get_config()), sort_keys=False, allow_unicode=True))


def cmd_banner(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jarvis",
        description="JARVIS — voice-driven chat assistant.",
        epilog="Run 'jarvis <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"jarvis {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"],
                 "Start the JARVIS HTTP API", cmd_serve, setup_serve)

    def setup_chat(p):
        p.add_argument("--timeout", "-t", type=float, default=RESPONSE_TIMEOUT,
                       help="Seconds to wait for each reply")

    _add_command(sub, ["chat", "talk", "repl"],
                 "Interactive text chat in the terminal", cmd_chat, setup_chat)

    def setup_ping(p):
        p.add_argument("--url", "-u", default=None, help="JARVIS URL (default: http://localhost:8080)")
        p.add_argument("--key", "-k", default=None, help="API key for /api routes (default: server.api_key)")

    _add_command(sub, ["ping", "status", "health"],
                 "Ping a running JARVIS instance", cmd_ping, setup_ping)

    _add_command(sub, ["config", "info"],
                 "Show the effective configuration", cmd_config)

    _add_command(sub, ["banner"], "Print the JARVIS banner", cmd_banner)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        cmd_banner(args)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()

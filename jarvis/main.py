"""
FastAPI application — the JARVIS HTTP API and composition root.

The lifespan builds every core component from config, hangs them on
app.state and owns their background tasks (conversation expiry, rate-limit
sweeps, upstream health probe). Routes only translate HTTP to core calls
and core outcomes back to HTTP:

    rate-limit deny       → 429 + Retry-After
    Unauthorized          → 401 (only when server.api_key is set)
    InvalidInputError     → 400
    NotFoundError         → 404
    UpstreamCallFailure   → 502
    ServiceUnavailable    → 503 + Retry-After
"""

import json
import logging
import os
import secrets
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from jarvis import __version__
from jarvis.assistant import Assistant
from jarvis.backends.base import BaseBackend
from jarvis.backends.gateway import AIClientGateway
from jarvis.backends.groq import GroqBackend
from jarvis.config import Config, get_config
from jarvis.conversation import ConversationStore
from jarvis.errors import (
    InvalidInputError,
    JarvisError,
    NotFoundError,
    ServiceUnavailable,
    Unauthorized,
)
from jarvis.rate_limiter import RateLimitDecision, RateLimiter

logger = logging.getLogger(__name__)

# Whisper upload limit on the hosted API
MAX_AUDIO_BYTES = 25 * 1024 * 1024


def setup_logging(cfg: Config):
    level = getattr(logging, cfg.logging.level.upper(), logging.INFO)
    log_file = cfg.logging.file

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    cfg = app.state.config or get_config()
    setup_logging(cfg)

    backend = app.state.backend
    if backend is None:
        backend = GroqBackend.from_config(cfg.backend)
        if not cfg.backend.api_key:
            logger.warning("GROQ_API_KEY is not set; upstream calls will be rejected")

    store = ConversationStore.from_config(cfg.conversation)
    gateway = AIClientGateway.from_config(backend, cfg.gateway)
    limiters = {
        "chat": RateLimiter.from_config(cfg.rate_limits.chat, name="chat"),
        "transcribe": RateLimiter.from_config(cfg.rate_limits.transcribe, name="transcribe"),
    }
    assistant = Assistant(
        store,
        gateway,
        system_prompt=cfg.conversation.system_prompt,
        max_length=cfg.sanitizer.max_length,
    )

    app.state.config = cfg
    app.state.store = store
    app.state.gateway = gateway
    app.state.limiters = limiters
    app.state.assistant = assistant

    components = [store, gateway, *limiters.values()]
    for component in components:
        component.start()

    if not cfg.server.api_key:
        logger.warning("No API key configured, /api routes are unauthenticated")

    logger.info(
        "JARVIS %s started: model %s via %s, rate limiting %s",
        __version__,
        cfg.backend.model,
        backend.name,
        "on" if cfg.rate_limits.enabled else "off",
    )

    yield

    for component in components:
        await component.stop()
    logger.info("JARVIS shutting down")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def client_identifier(request: Request) -> str:
    """Rate-limit key: first X-Forwarded-For hop, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return f"ip:{real_ip.strip()}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def _check_rate_limit(request: Request, name: str) -> RateLimitDecision | None:
    if not request.app.state.config.rate_limits.enabled:
        return None
    return request.app.state.limiters[name].check(client_identifier(request))


def _rate_limited(decision: RateLimitDecision) -> JSONResponse:
    return JSONResponse(
        {"error": "Too many requests", "kind": "rate_limited", "retry_after": decision.retry_after},
        status_code=429,
        headers=decision.headers(),
    )


async def _sse(conversation_id: str, chunks):
    """Frame reply chunks as server-sent events."""
    try:
        async for chunk in chunks:
            yield f"data: {json.dumps({'chunk': chunk})}\n\n"
    except JarvisError as e:
        logger.warning("Stream for %s aborted: %s", conversation_id, e.message)
        yield f"data: {json.dumps(e.to_dict())}\n\n"
    yield f"data: {json.dumps({'done': True, 'conversation_id': conversation_id})}\n\n"


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidInputError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise InvalidInputError("Request body must be a JSON object")
    return body


def _bearer_token(header: str) -> str | None:
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_api_key(request: Request) -> None:
    """Bearer-key check for /api routes. No key configured means open access."""
    expected = request.app.state.config.server.api_key
    if not expected:
        return
    token = _bearer_token(request.headers.get("authorization", ""))
    if token is None:
        raise Unauthorized("Authorization header is required")
    if not secrets.compare_digest(token.encode(), expected.encode()):
        logger.warning("Rejected API key from %s", client_identifier(request))
        raise Unauthorized("Invalid API key")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter()
api = APIRouter(dependencies=[Depends(require_api_key)])


@router.get("/health")
async def health(request: Request, deep: bool = False):
    """Liveness. With ?deep=true the upstream API is contacted as well."""
    gateway: AIClientGateway = request.app.state.gateway
    body = {
        "status": "ok" if gateway.is_healthy else "degraded",
        "version": __version__,
        "circuit": gateway.state.value,
    }
    if deep:
        reachable = await gateway.backend.health_check()
        body["upstream"] = "reachable" if reachable else "unreachable"
        if not reachable:
            body["status"] = "degraded"
    return JSONResponse(body)


@api.post("/api/chat")
async def chat(request: Request):
    """
    Send a message and get the reply.
    Body: {"message": str, "conversation_id"?: str, "history"?: [...], "stream"?: bool}
    """
    decision = _check_rate_limit(request, "chat")
    if decision and not decision.allowed:
        return _rate_limited(decision)
    headers = decision.headers() if decision else {}

    body = await _json_body(request)
    message = body.get("message")
    if not isinstance(message, str) or not message:
        raise InvalidInputError("Message is required and must be a string")
    conversation_id = body.get("conversation_id") or None
    history = body.get("history") if isinstance(body.get("history"), list) else None

    assistant: Assistant = request.app.state.assistant
    if body.get("stream", False):
        conversation_id, chunks = await assistant.ask_stream(message, conversation_id, history)
        return StreamingResponse(
            _sse(conversation_id, chunks),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
                **headers,
            },
        )

    reply = await assistant.ask(message, conversation_id, history)
    return JSONResponse(reply.to_dict(), headers=headers)


@api.get("/api/chat/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request):
    """Conversation history, system prompt excluded."""
    store: ConversationStore = request.app.state.store
    messages = store.get_messages(conversation_id)
    return JSONResponse({
        "conversation_id": conversation_id,
        "messages": [m.to_dict() for m in messages if m.role != "system"],
    })


@api.delete("/api/chat/{conversation_id}")
async def delete_conversation(conversation_id: str, request: Request):
    store: ConversationStore = request.app.state.store
    if not store.delete(conversation_id):
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return JSONResponse({"conversation_id": conversation_id, "message": "Conversation cleared"})


@api.post("/api/transcribe")
async def transcribe(request: Request):
    """Raw audio in the body; optional X-Filename header names the format."""
    decision = _check_rate_limit(request, "transcribe")
    if decision and not decision.allowed:
        return _rate_limited(decision)
    headers = decision.headers() if decision else {}

    audio = await request.body()
    if not audio:
        raise InvalidInputError("No audio provided")
    if len(audio) > MAX_AUDIO_BYTES:
        raise InvalidInputError(
            "Audio too large",
            {"max_bytes": MAX_AUDIO_BYTES, "bytes": len(audio)},
        )
    filename = os.path.basename(request.headers.get("x-filename", "")) or "audio.wav"

    assistant: Assistant = request.app.state.assistant
    text = await assistant.transcribe(audio, filename)
    return JSONResponse({"text": text}, headers=headers)


@api.get("/api/stats")
async def stats(request: Request):
    state = request.app.state
    return JSONResponse({
        "conversations": state.store.stats(),
        "rate_limits": {name: rl.stats() for name, rl in state.limiters.items()},
        "gateway": state.gateway.health(),
    })


async def jarvis_error_handler(request: Request, exc: JarvisError):
    headers = {}
    if isinstance(exc, ServiceUnavailable):
        headers["Retry-After"] = str(exc.retry_after)
    elif isinstance(exc, Unauthorized):
        headers["WWW-Authenticate"] = "Bearer"
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(cfg: Config | None = None, backend: BaseBackend | None = None) -> FastAPI:
    """
    Build the app. `cfg` defaults to get_config() at startup; `backend`
    defaults to a GroqBackend from that config.
    """
    app = FastAPI(
        title="JARVIS",
        description="Voice-driven chat API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = cfg
    app.state.backend = backend
    app.include_router(router)
    app.include_router(api)
    app.add_exception_handler(JarvisError, jarvis_error_handler)
    return app


app = create_app()

"""
Config loader for JARVIS.

Configuration is a typed struct (the dataclasses below) built from an
ordered list of override sources, later sources winning:

    defaults  →  config.yaml  →  environment (.env is loaded first)

String values in config.yaml may reference ${ENV_VAR}; they are resolved
before merging. The merged result is validated once and cached; all other
modules get it from get_config() or take it as a constructor argument.
"""

from __future__ import annotations

import os
import re
from dataclasses import asdict, dataclass, field, fields, is_dataclass, replace
from pathlib import Path

import yaml
from dotenv import load_dotenv

from jarvis.errors import ConfigurationError

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

DEFAULT_SYSTEM_PROMPT = (
    "You are JARVIS, a helpful voice assistant. Keep answers short and "
    "conversational: they are read aloud."
)


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    api_key: str = ""   # bearer key for /api/*; empty disables auth


@dataclass
class BackendConfig:
    """Hosted LLM API (OpenAI-compatible)."""
    name: str = "groq"
    url: str = "https://api.groq.com/openai/v1"
    api_key: str = ""
    model: str = "llama-3.3-70b-versatile"
    transcription_model: str = "whisper-large-v3"
    temperature: float = 0.7
    max_tokens: int = 1024
    timeout: float = 30.0


@dataclass
class GatewayConfig:
    """Retry and circuit-breaker settings for upstream calls."""
    max_retries: int = 3
    retry_delay: float = 1.0
    max_failures: int = 3
    cooldown: float = 60.0
    health_check_interval: float = 300.0
    attempt_timeout: float = 30.0


@dataclass
class ConversationConfig:
    max_context_tokens: int = 8000
    max_conversations: int = 100
    ttl: float = 3600.0
    sweep_interval: float = 300.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass
class RateLimitConfig:
    window: float = 60.0
    max_requests: int = 60
    block_duration: float = 300.0


@dataclass
class RateLimitsConfig:
    enabled: bool = True
    chat: RateLimitConfig = field(default_factory=lambda: RateLimitConfig(max_requests=30))
    transcribe: RateLimitConfig = field(default_factory=lambda: RateLimitConfig(max_requests=20))


@dataclass
class SanitizerConfig:
    max_length: int = 10000


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    rate_limits: RateLimitsConfig = field(default_factory=RateLimitsConfig)
    sanitizer: SanitizerConfig = field(default_factory=SanitizerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Environment variable → (section, key)
# Later entries win when both are set (JARVIS_API_KEY over API_KEY)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GROQ_API_KEY": ("backend", "api_key"),
    "JARVIS_BACKEND_URL": ("backend", "url"),
    "API_KEY": ("server", "api_key"),
    "JARVIS_API_KEY": ("server", "api_key"),
    "JARVIS_MODEL": ("backend", "model"),
    "JARVIS_HOST": ("server", "host"),
    "JARVIS_PORT": ("server", "port"),
    "JARVIS_LOG_LEVEL": ("logging", "level"),
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

_config: Config | None = None


def _resolve_env_vars(value: str, env: dict) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        return env.get(match.group(1), "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj, env: dict):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v, env) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v, env) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj, env)
    return obj


def _coerce(current, value, key: str):
    """Convert `value` to the type of the field's current value."""
    if current is None or value is None:
        return value
    try:
        if isinstance(current, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError(value)
        if isinstance(current, int):
            if isinstance(value, bool):
                raise ValueError(value)
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, str):
            return str(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid value for '{key}': {value!r}",
            {"expected": type(current).__name__},
        ) from None
    return value


def merge_config(base, overrides: dict, _prefix: str = ""):
    """
    Apply a nested dict of overrides onto a config dataclass.
    Returns a new instance; `base` is left untouched.
    """
    if overrides is None:
        return base
    if not isinstance(overrides, dict):
        raise ConfigurationError(f"Section '{_prefix.rstrip('.') or 'root'}' must be a mapping")

    known = {f.name for f in fields(base)}
    changes = {}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigurationError(f"Unknown config key: {_prefix}{key}")
        current = getattr(base, key)
        if is_dataclass(current):
            changes[key] = merge_config(current, value, f"{_prefix}{key}.")
        else:
            changes[key] = _coerce(current, value, f"{_prefix}{key}")
    return replace(base, **changes)


def _file_overrides(path: Path, env: dict) -> dict:
    with open(path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return _walk_and_resolve(raw, env)


def _env_overrides(env: dict) -> dict:
    overrides: dict = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def validate_config(cfg: Config) -> list[str]:
    """Return a list of problems; empty means valid."""
    errors = []
    if not 0 < cfg.server.port < 65536:
        errors.append(f"server.port out of range: {cfg.server.port}")
    if not cfg.backend.url:
        errors.append("backend.url is required")
    if not cfg.backend.model:
        errors.append("backend.model is required")
    if cfg.backend.timeout <= 0:
        errors.append("backend.timeout must be positive")
    if cfg.gateway.max_retries < 1:
        errors.append("gateway.max_retries must be at least 1")
    if cfg.gateway.retry_delay < 0:
        errors.append("gateway.retry_delay must not be negative")
    if cfg.gateway.max_failures < 1:
        errors.append("gateway.max_failures must be at least 1")
    for name in ("cooldown", "health_check_interval", "attempt_timeout"):
        if getattr(cfg.gateway, name) <= 0:
            errors.append(f"gateway.{name} must be positive")
    if cfg.conversation.max_context_tokens < 1:
        errors.append("conversation.max_context_tokens must be positive")
    if cfg.conversation.max_conversations < 1:
        errors.append("conversation.max_conversations must be at least 1")
    if cfg.conversation.ttl <= 0 or cfg.conversation.sweep_interval <= 0:
        errors.append("conversation.ttl and sweep_interval must be positive")
    for name in ("chat", "transcribe"):
        rl = getattr(cfg.rate_limits, name)
        if rl.window <= 0 or rl.max_requests < 1 or rl.block_duration < 0:
            errors.append(f"rate_limits.{name} has invalid window/max_requests/block_duration")
    if cfg.sanitizer.max_length < 1:
        errors.append("sanitizer.max_length must be positive")
    if cfg.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        errors.append(f"logging.level is not a valid level: {cfg.logging.level}")
    return errors


def load_config(path: Path | str | None = None, env: dict | None = None) -> Config:
    """
    Build, validate and cache the config.

    An explicit `path` must exist; the default config.yaml is optional.
    `env` defaults to os.environ.
    """
    global _config

    env = dict(os.environ) if env is None else env
    cfg = Config()

    config_path = Path(path) if path else _CONFIG_PATH
    if config_path.exists():
        cfg = merge_config(cfg, _file_overrides(config_path, env))
    elif path:
        raise ConfigurationError(f"Config not found: {config_path}")

    cfg = merge_config(cfg, _env_overrides(env))

    errors = validate_config(cfg)
    if errors:
        raise ConfigurationError("Invalid configuration", {"errors": errors})

    _config = cfg
    return cfg


def get_config() -> Config:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def redacted(cfg: Config) -> dict:
    """Config as a plain dict, safe to print or serve."""
    data = asdict(cfg)
    for section in ("backend", "server"):
        if data[section].get("api_key"):
            data[section]["api_key"] = "***redacted***"
    return data

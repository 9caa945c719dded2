"""
Configuration loader for the WhatsRelay system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class StoreConfig:
    backend: str = "memory"                  # "supabase" | "memory"
    url: str = ""
    service_key: str = ""
    storage_bucket: str = "whatsapp-media"
    status_rpc: str = "set_whatsapp_status"


@dataclass
class ChannelConfig:
    base_url: str = ""                       # WhatsApp bridge; empty → mock sends
    token: str = ""
    session_path: str = "./session"


@dataclass
class DispatchConfig:
    batch_size: int = 5
    max_attempts: int = 5                    # attempt_count ceiling → "failed"
    idle_interval: float = 1.5               # seconds to sleep on an empty poll
    error_interval: float = 3.0              # seconds to sleep when the store is down


@dataclass
class ReconcileConfig:
    idle_interval: float = 5.0               # empty local queue
    cycle_interval: float = 2.0              # between drain passes


@dataclass
class BackoffConfig:
    attempts: int = 5
    base_delay: float = 0.5


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class Settings:
    app_name: str = "WhatsRelay"
    debug: bool = False
    log_level: str = "INFO"
    instance_id: str = ""
    http_timeout: float = 15.0
    local_queue_path: str = "./local_queue.json"
    store: StoreConfig = field(default_factory=StoreConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


class ConfigError(Exception):
    """Raised when the loaded configuration cannot run the relay."""


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], default):
    """Build a section dataclass from a raw dict, keeping defaults for missing keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    merged = {name: getattr(default, name) for name in cls.__dataclass_fields__}
    merged.update(known)
    return cls(**merged)


def _apply_env_overrides(settings: Settings) -> None:
    env = os.environ
    settings.store.url = env.get("SUPABASE_URL", settings.store.url)
    settings.store.service_key = env.get("SUPABASE_SERVICE_ROLE_KEY", settings.store.service_key)
    settings.store.storage_bucket = env.get("SUPABASE_STORAGE_BUCKET", settings.store.storage_bucket)
    settings.channel.base_url = env.get("BRIDGE_URL", settings.channel.base_url)
    settings.channel.session_path = env.get("SESSION_PATH", settings.channel.session_path)
    settings.instance_id = env.get("INSTANCE_ID", settings.instance_id)
    if env.get("PORT"):
        settings.server.port = int(env["PORT"])


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "WHATSRELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = raw.get("log_level", settings.log_level)
        settings.instance_id = raw.get("instance_id", settings.instance_id)
        settings.http_timeout = float(raw.get("http_timeout", settings.http_timeout))
        settings.local_queue_path = raw.get("local_queue_path", settings.local_queue_path)

        settings.store = _section(StoreConfig, raw.get("store"), settings.store)
        settings.channel = _section(ChannelConfig, raw.get("channel"), settings.channel)
        settings.dispatch = _section(DispatchConfig, raw.get("dispatch"), settings.dispatch)
        settings.reconcile = _section(ReconcileConfig, raw.get("reconcile"), settings.reconcile)
        settings.backoff = _section(BackoffConfig, raw.get("backoff"), settings.backoff)
        settings.server = _section(ServerConfig, raw.get("server"), settings.server)

    _apply_env_overrides(settings)
    if not settings.instance_id:
        settings.instance_id = f"instance-{uuid.uuid4().hex[:6]}"

    _settings = settings
    return settings


def validate_settings(settings: Settings) -> None:
    """Fail fast on configurations that cannot reach the remote store or the bridge."""
    if settings.store.backend == "supabase":
        if not settings.store.url or not settings.store.service_key:
            raise ConfigError("supabase store requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        if not settings.channel.base_url:
            raise ConfigError("supabase store requires a WhatsApp bridge (channel.base_url or BRIDGE_URL)")
    elif settings.store.backend != "memory":
        raise ConfigError(f"unknown store backend: {settings.store.backend}")
    if settings.dispatch.max_attempts < 1:
        raise ConfigError("dispatch.max_attempts must be at least 1")


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None

"""
Configuration loader for the delivery queue service.
Reads settings from a YAML file with ${VAR} substitution, then applies
environment variable overrides for the options operators set most often.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class GatewayConfig:
    base_url: str = "https://api.z-api.io"
    instance_id: str = ""
    token: str = ""
    client_token: str = ""                  # sent as Client-Token header when set
    timeout_seconds: float = 30.0
    rate_per_second: float = 20.0           # 0 disables rate limiting
    burst: int = 20


@dataclass
class DispatcherConfig:
    worker_pool_size: int = 4
    max_retries: int = 5
    default_priority: int = 5
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    backoff_jitter_ratio: float = 0.2
    claim_timeout_seconds: float = 120.0    # processing rows older than this are reclaimed
    poll_interval_seconds: float = 0.5
    max_poll_interval_seconds: float = 5.0  # ceiling for empty-poll backoff
    store_error_backoff_seconds: float = 5.0
    starvation_window_seconds: float = 300.0
    serialize_correlation: bool = False     # one processing row per correlation id


@dataclass
class EngineConfig:
    url: str = ""                           # conversation engine endpoint
    token: str = ""
    timeout_seconds: float = 30.0


@dataclass
class WebhookConfig:
    inbound_mode: str = "queue"             # "queue" | "direct"
    inbound_priority: int = 1
    default_contact_name: str = "Customer"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./zapi_dispatch.db"   # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"               # "sql" | "memory"
    echo: bool = False


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "zapi-dispatch"
    debug: bool = False
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> list[str]:
        """Return configuration problems; an empty list means usable."""
        problems = []
        if not self.gateway.instance_id:
            problems.append("gateway.instance_id (ZAPI_INSTANCE) is required")
        if not self.gateway.token:
            problems.append("gateway.token (ZAPI_TOKEN) is required")
        if self.dispatcher.worker_pool_size < 1:
            problems.append("dispatcher.worker_pool_size must be >= 1")
        if self.dispatcher.max_retries < 0:
            problems.append("dispatcher.max_retries must be >= 0")
        if self.dispatcher.backoff_base_seconds > self.dispatcher.backoff_max_seconds:
            problems.append("dispatcher.backoff_base_seconds exceeds backoff_max_seconds")
        if self.webhook.inbound_mode not in ("queue", "direct"):
            problems.append(f"webhook.inbound_mode must be queue|direct, got {self.webhook.inbound_mode!r}")
        if self.webhook.inbound_mode == "direct" and not self.engine.url:
            problems.append("engine.url (ENGINE_URL) is required for direct inbound mode")
        if self.database.store_backend not in ("memory", "sql"):
            problems.append(f"database.store_backend must be memory|sql, got {self.database.store_backend!r}")
        return problems


_settings: Optional[Settings] = None

# env var → (section, attribute)
_ENV_OVERRIDES = {
    "ZAPI_URL": ("gateway", "base_url"),
    "ZAPI_INSTANCE": ("gateway", "instance_id"),
    "ZAPI_TOKEN": ("gateway", "token"),
    "ZAPI_CLIENT_TOKEN": ("gateway", "client_token"),
    "MAX_RETRIES": ("dispatcher", "max_retries"),
    "BACKOFF_BASE_SECONDS": ("dispatcher", "backoff_base_seconds"),
    "BACKOFF_MAX_SECONDS": ("dispatcher", "backoff_max_seconds"),
    "WORKER_POOL_SIZE": ("dispatcher", "worker_pool_size"),
    "CLAIM_TIMEOUT_SECONDS": ("dispatcher", "claim_timeout_seconds"),
    "ENGINE_URL": ("engine", "url"),
    "ENGINE_TOKEN": ("engine", "token"),
    "INBOUND_MODE": ("webhook", "inbound_mode"),
    "DATABASE_URL": ("database", "url"),
    "STORE_BACKEND": ("database", "store_backend"),
    "LOG_LEVEL": ("logging", "level"),
}


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')

    def replacer(match):
        return os.environ.get(match.group(1), match.group(0))
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


def _coerce(current: Any, raw: Any) -> Any:
    """Convert a YAML/env value to the type of the dataclass default."""
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw if raw is not None else current


def _apply_section(section: Any, raw: dict[str, Any]) -> None:
    known = {f.name for f in fields(section)}
    for key, value in raw.items():
        if key in known:
            setattr(section, key, _coerce(getattr(section, key), value))


def apply_env_overrides(settings: Settings, environ: dict[str, str] = None) -> Settings:
    environ = os.environ if environ is None else environ
    for var, (section_name, attr) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        section = getattr(settings, section_name)
        setattr(section, attr, _coerce(getattr(section, attr), value))
    return settings


def load_settings(config_path: str = None, environ: dict[str, str] = None) -> Settings:
    """Load settings from YAML file, then environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ZAPI_DISPATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = bool(raw.get("debug", settings.debug))

        for section_name in ("gateway", "dispatcher", "engine", "webhook", "database", "logging"):
            if isinstance(raw.get(section_name), dict):
                _apply_section(getattr(settings, section_name), raw[section_name])

    apply_env_overrides(settings, environ)

    _settings = settings
    return settings


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

"""
Configuration loader for the dunning engine.

Settings come from a YAML file (``DUNNING_CONFIG``, default
``config/settings.yaml``) with ``${VAR}`` placeholders filled from the
environment. A missing file means all defaults: in-memory store,
America/Santiago, log-only guardrails.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

POLICIES = ("log", "block")


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./dunning_engine.db"       # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                     # "sql" | "memory"
    echo: bool = False


@dataclass
class EngineConfig:
    timezone: str = "America/Santiago"
    send_hour: int = 9                    # local hour actions are scheduled at
    evaluation_batch_limit: int = 1000    # max debts per evaluation pass
    dispatch_batch_limit: int = 100       # max due actions per dispatch pass
    evaluation_concurrency: int = 1       # >1 evaluates debts concurrently
    adapter_timeout_seconds: float = 30.0
    cron_secret: str = ""
    webhook_rate_limit_per_hour: int = 100   # per client IP, 0 disables


@dataclass
class GuardrailSettings:
    dispatch_policy: str = "log"          # "log" | "block"
    retry_policy: str = "log"             # "log" | "block"
    defaults: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrySettings:
    max_attempts: dict[str, int] = field(
        default_factory=lambda: {"email": 3, "sms": 3, "call": 2}
    )
    backoff_base_seconds: int = 60
    backoff_cap_seconds: int = 1800
    retry_permanent_failures: bool = True


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "DunningEngine"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    guardrails: GuardrailSettings = field(default_factory=GuardrailSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None

_ENV_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


def _expand_env(value: Any) -> Any:
    """Fill ${VAR} in every string of a parsed YAML tree. Unset variables stay as written."""
    if isinstance(value, str):
        return _ENV_PLACEHOLDER.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _policy(section: dict[str, Any], name: str) -> str:
    value = section.get(name, "log")
    if value not in POLICIES:
        raise ValueError(f"guardrails.{name} must be 'log' or 'block', got {value!r}")
    return value


def _database(raw: dict[str, Any]) -> DatabaseConfig:
    d = DatabaseConfig()
    return DatabaseConfig(
        url=raw.get("url") or d.url,
        store_backend=raw.get("store_backend", d.store_backend),
        echo=bool(raw.get("echo", d.echo)),
    )


def _engine(raw: dict[str, Any]) -> EngineConfig:
    d = EngineConfig()
    return EngineConfig(
        timezone=raw.get("timezone", d.timezone),
        send_hour=int(raw.get("send_hour", d.send_hour)),
        evaluation_batch_limit=int(raw.get("evaluation_batch_limit", d.evaluation_batch_limit)),
        dispatch_batch_limit=int(raw.get("dispatch_batch_limit", d.dispatch_batch_limit)),
        evaluation_concurrency=int(raw.get("evaluation_concurrency", d.evaluation_concurrency)),
        adapter_timeout_seconds=float(raw.get("adapter_timeout_seconds", d.adapter_timeout_seconds)),
        cron_secret=str(raw.get("cron_secret") or ""),
        webhook_rate_limit_per_hour=int(raw.get("webhook_rate_limit_per_hour", d.webhook_rate_limit_per_hour)),
    )


def _guardrails(raw: dict[str, Any]) -> GuardrailSettings:
    return GuardrailSettings(
        dispatch_policy=_policy(raw, "dispatch_policy"),
        retry_policy=_policy(raw, "retry_policy"),
        defaults=dict(raw.get("defaults") or {}),
    )


def _retry(raw: dict[str, Any]) -> RetrySettings:
    d = RetrySettings()
    # Per-channel overrides merge onto the defaults
    max_attempts = {**d.max_attempts, **{k: int(v) for k, v in (raw.get("max_attempts") or {}).items()}}
    return RetrySettings(
        max_attempts=max_attempts,
        backoff_base_seconds=int(raw.get("backoff_base_seconds", d.backoff_base_seconds)),
        backoff_cap_seconds=int(raw.get("backoff_cap_seconds", d.backoff_cap_seconds)),
        retry_permanent_failures=bool(raw.get("retry_permanent_failures", d.retry_permanent_failures)),
    )


def load_settings(config_path: str = None) -> Settings:
    """Read settings from ``config_path`` (or DUNNING_CONFIG) and cache them."""
    global _settings

    path = Path(config_path or os.environ.get("DUNNING_CONFIG")
                or Path(__file__).parent / "settings.yaml")
    settings = Settings()

    if path.exists():
        raw = _expand_env(yaml.safe_load(path.read_text()) or {})
        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = bool(raw.get("debug", settings.debug))
        settings.database = _database(raw.get("database") or {})
        settings.engine = _engine(raw.get("engine") or {})
        settings.guardrails = _guardrails(raw.get("guardrails") or {})
        settings.retry = _retry(raw.get("retry") or {})
        settings.channels = {
            name: ChannelConfig(enabled=bool(ch.get("enabled", False)),
                                credentials=dict(ch.get("credentials") or {}))
            for name, ch in (raw.get("channels") or {}).items()
        }

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Cached settings, loaded from the default path on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings

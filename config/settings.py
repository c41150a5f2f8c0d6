"""
Configuration loader for the outbound dispatcher.
Reads settings from YAML file with environment variable substitution,
then applies the operational env toggles (ENABLE_SEND, RATE_CAP_PER_MINUTE,
RATE_DELAY_MIN_MS, RATE_DELAY_MAX_MS) on top.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./dispatch.db"              # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class DispatchConfig:
    enable_send: bool = False                          # false → dry-run
    rate_cap_per_minute: int = 0                       # 0 = unlimited
    delay_min_ms: int = 800
    delay_max_ms: int = 2200
    dedup_lookback_seconds: float = 30.0
    provider_timeout_s: float = 15.0


@dataclass
class RateLimitConfig:
    backend: str = "memory"                            # "memory" | "redis"
    redis_url: str = "redis://localhost:6379"
    scope: str = "workspace"                           # "workspace" | "global"
    window_seconds: float = 60.0


@dataclass
class ProviderConfig:
    type: str = "mock"                                 # "whatsapp_cloud" | "mock"
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "OutboundDispatcher"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)


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


def _is_truthy(value: Any) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _as_int(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _apply_env_toggles(dispatch: DispatchConfig) -> None:
    """Operational toggles win over the YAML file."""
    env = os.environ
    if "ENABLE_SEND" in env:
        dispatch.enable_send = _is_truthy(env["ENABLE_SEND"])
    if "RATE_CAP_PER_MINUTE" in env:
        dispatch.rate_cap_per_minute = _as_int(env["RATE_CAP_PER_MINUTE"], 0)
    if "RATE_DELAY_MIN_MS" in env:
        dispatch.delay_min_ms = _as_int(env["RATE_DELAY_MIN_MS"], dispatch.delay_min_ms)
    if "RATE_DELAY_MAX_MS" in env:
        dispatch.delay_max_ms = _as_int(env["RATE_DELAY_MAX_MS"], dispatch.delay_max_ms)

    # Same clamping the worker applies: min >= 0, max >= min
    dispatch.delay_min_ms = max(0, dispatch.delay_min_ms)
    dispatch.delay_max_ms = max(dispatch.delay_min_ms, dispatch.delay_max_ms)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DISPATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _is_truthy(raw.get("debug", settings.debug))
        settings.log_level = raw.get("log_level", settings.log_level)
        settings.log_json = _is_truthy(raw.get("log_json", settings.log_json))

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "dispatch" in raw:
            d = raw["dispatch"]
            defaults = DispatchConfig()
            settings.dispatch = DispatchConfig(
                enable_send=_is_truthy(d.get("enable_send", defaults.enable_send)),
                rate_cap_per_minute=_as_int(d.get("rate_cap_per_minute"), defaults.rate_cap_per_minute),
                delay_min_ms=_as_int(d.get("delay_min_ms"), defaults.delay_min_ms),
                delay_max_ms=_as_int(d.get("delay_max_ms"), defaults.delay_max_ms),
                dedup_lookback_seconds=float(d.get("dedup_lookback_seconds", defaults.dedup_lookback_seconds)),
                provider_timeout_s=float(d.get("provider_timeout_s", defaults.provider_timeout_s)),
            )

        if "rate_limit" in raw:
            rl = raw["rate_limit"]
            settings.rate_limit = RateLimitConfig(
                backend=rl.get("backend", "memory"),
                redis_url=rl.get("redis_url", "redis://localhost:6379"),
                scope=rl.get("scope", "workspace"),
                window_seconds=float(rl.get("window_seconds", 60.0)),
            )

        if "provider" in raw:
            p = raw["provider"]
            settings.provider = ProviderConfig(
                type=p.get("type", "mock"),
                credentials=p.get("credentials", {}) or {},
            )

    _apply_env_toggles(settings.dispatch)

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

"""
Configuration loader for the SignDesk worker.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(ValueError):
    """Raised when a configuration value is missing or out of range."""


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./signdesk.db"     # postgresql:// | sqlite://
    store_backend: str = "memory"             # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"                   # "memory" for dev, "redis" for shared workers
    redis_url: str = "redis://localhost:6379"
    redis_key: str = "payments:pending"
    per_batch_concurrency: int = 10           # max in-flight items inside one batch
    idle_interval_ms: int = 100               # sleep when the queue is empty
    drain_on_shutdown: bool = True


@dataclass
class ReminderSchedulerConfig:
    enabled: bool = True
    poll_interval_seconds: int = 300
    cooldown_minutes: int = 60                # min spacing between two reminders to one signer
    send_delay_ms: int = 500                  # pause between sends inside one pass


@dataclass
class EmailConfig:
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    username: str = ""
    password: str = ""
    from_email: str = "no-reply@signdesk.local"
    from_name: str = "SignDesk"
    use_tls: bool = True
    timeout_seconds: float = 30.0
    test_mode: bool = False                   # log instead of sending


@dataclass
class StripeConfig:
    webhook_secret: str = ""
    signature_tolerance_seconds: int = 300


@dataclass
class Settings:
    app_name: str = "SignDesk"
    debug: bool = False
    base_url: str = "http://localhost:8080"
    log_level: str = "INFO"
    log_format: str = "console"               # "console" | "json"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    reminders: ReminderSchedulerConfig = field(default_factory=ReminderSchedulerConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    stripe: StripeConfig = field(default_factory=StripeConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values.

    Unset variables become empty strings so the section default applies.
    """
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
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


def _pick(section: dict[str, Any], key: str, default: Any) -> Any:
    """Return section[key], falling back to default for missing or blank values."""
    value = section.get(key)
    if value is None or value == "":
        return default
    return value


def _as_bool(value: Any) -> bool:
    # env substitution leaves strings like "true" / "0"
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _validate(settings: Settings) -> None:
    if settings.database.store_backend not in ("memory", "sql"):
        raise ConfigError(f"Unknown store_backend '{settings.database.store_backend}'")
    if settings.queue.backend not in ("memory", "redis"):
        raise ConfigError(f"Unknown queue backend '{settings.queue.backend}'")
    if settings.queue.per_batch_concurrency < 1:
        raise ConfigError("queue.per_batch_concurrency must be >= 1")
    if settings.queue.idle_interval_ms <= 0:
        raise ConfigError("queue.idle_interval_ms must be > 0")
    if settings.reminders.poll_interval_seconds <= 0:
        raise ConfigError("reminders.poll_interval_seconds must be > 0")
    if settings.reminders.cooldown_minutes < 0 or settings.reminders.send_delay_ms < 0:
        raise ConfigError("reminders.cooldown_minutes and send_delay_ms must be >= 0")
    if settings.log_format not in ("console", "json"):
        raise ConfigError(f"Unknown log_format '{settings.log_format}'")


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SIGNDESK_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = _pick(raw, "app_name", settings.app_name)
        settings.debug = _as_bool(_pick(raw, "debug", settings.debug))
        settings.base_url = str(_pick(raw, "base_url", settings.base_url)).rstrip("/")
        settings.log_level = str(_pick(raw, "log_level", settings.log_level)).upper()
        settings.log_format = _pick(raw, "log_format", settings.log_format)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=_pick(db, "url", settings.database.url),
                store_backend=_pick(db, "store_backend", settings.database.store_backend),
            )

        if "queue" in raw:
            q = raw["queue"]
            settings.queue = QueueConfig(
                backend=_pick(q, "backend", "memory"),
                redis_url=_pick(q, "redis_url", "redis://localhost:6379"),
                redis_key=_pick(q, "redis_key", "payments:pending"),
                per_batch_concurrency=int(_pick(q, "per_batch_concurrency", 10)),
                idle_interval_ms=int(_pick(q, "idle_interval_ms", 100)),
                drain_on_shutdown=_as_bool(_pick(q, "drain_on_shutdown", True)),
            )

        if "reminders" in raw:
            r = raw["reminders"]
            settings.reminders = ReminderSchedulerConfig(
                enabled=_as_bool(_pick(r, "enabled", True)),
                poll_interval_seconds=int(_pick(r, "poll_interval_seconds", 300)),
                cooldown_minutes=int(_pick(r, "cooldown_minutes", 60)),
                send_delay_ms=int(_pick(r, "send_delay_ms", 500)),
            )

        if "email" in raw:
            em = raw["email"]
            settings.email = EmailConfig(
                smtp_host=_pick(em, "smtp_host", "smtp.gmail.com"),
                smtp_port=int(_pick(em, "smtp_port", 587)),
                username=_pick(em, "username", ""),
                password=_pick(em, "password", ""),
                from_email=_pick(em, "from_email", settings.email.from_email),
                from_name=_pick(em, "from_name", settings.email.from_name),
                use_tls=_as_bool(_pick(em, "use_tls", True)),
                timeout_seconds=float(_pick(em, "timeout_seconds", 30.0)),
                test_mode=_as_bool(_pick(em, "test_mode", False)),
            )

        if "stripe" in raw:
            st = raw["stripe"]
            settings.stripe = StripeConfig(
                webhook_secret=_pick(st, "webhook_secret", ""),
                signature_tolerance_seconds=int(_pick(st, "signature_tolerance_seconds", 300)),
            )

    _validate(settings)
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

"""
Configuration loader for the CRM job and delivery core.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


# Matches: "email@domain.com" or "Name <email@domain.com>"
SMTP_FROM_PATTERN = re.compile(r"^(?:[^<]+<)?[^\s@]+@[^\s@]+\.[^\s@]+>?$")


class ConfigError(ValueError):
    """Raised when a configuration value is malformed."""


@dataclass
class QueueConfig:
    backend: str = "redis"              # "redis" for production, "memory" for dev/tests
    redis_url: str = "redis://localhost:6379"
    default_attempts: int = 3           # queue-level retry budget per job
    backoff_type: str = "exponential"   # "exponential" | "fixed"
    backoff_delay_ms: int = 1000
    remove_on_complete: int = 100       # completed jobs retained for inspection
    remove_on_fail: int = 500           # failed jobs retained for inspection
    close_timeout: float = 5.0          # seconds before a forced disconnect
    block_timeout: float = 2.0          # seconds a consumer blocks waiting for a job
    lock_duration_ms: int = 30000       # a claimed job is requeued if its worker stops renewing for this long

    @property
    def broker_url(self) -> str:
        return "memory://" if self.backend == "memory" else self.redis_url


@dataclass
class SmtpConfig:
    host: str = "localhost"
    port: int = 2525
    user: str = ""
    password: str = ""
    from_address: str = "CRM <noreply@crm.local>"
    pool_size: int = 5
    max_messages: int = 100             # messages per pooled connection before recycling
    retry_attempts: int = 3             # delivery-level retry budget per send
    retry_base_delay_ms: int = 1000
    timeout: float = 30.0

    @property
    def secure(self) -> bool:
        return self.port == 465

    def validate(self):
        if not SMTP_FROM_PATTERN.match(self.from_address):
            raise ConfigError(
                'SMTP from address must be a valid email or "Name <email>" format'
            )


@dataclass
class Settings:
    app_name: str = "CRM"
    debug: bool = False
    environment: str = "development"
    frontend_url: str = "http://localhost:5174"
    queue: QueueConfig = field(default_factory=QueueConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)


_settings: Optional[Settings] = None

# Environment variables that win over values in the YAML file.
_ENV_OVERRIDES = {
    "REDIS_URL": ("queue", "redis_url", str),
    "SMTP_HOST": ("smtp", "host", str),
    "SMTP_PORT": ("smtp", "port", int),
    "SMTP_USER": ("smtp", "user", str),
    "SMTP_PASS": ("smtp", "password", str),
    "SMTP_FROM": ("smtp", "from_address", str),
}


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


def _apply_env_overrides(settings: Settings):
    for env_name, (group, attr, cast) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            setattr(getattr(settings, group), attr, cast(raw))
        except ValueError as e:
            raise ConfigError(f"{env_name} is not a valid {cast.__name__}: {raw!r}") from e


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    load_dotenv()

    if config_path is None:
        config_path = os.environ.get(
            "CRM_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.environment = raw.get("environment", settings.environment)
        settings.frontend_url = raw.get("frontend_url", settings.frontend_url)

        if "queue" in raw:
            q = raw["queue"]
            defaults = QueueConfig()
            settings.queue = QueueConfig(
                backend=q.get("backend", defaults.backend),
                redis_url=q.get("redis_url", defaults.redis_url),
                default_attempts=int(q.get("default_attempts", defaults.default_attempts)),
                backoff_type=q.get("backoff_type", defaults.backoff_type),
                backoff_delay_ms=int(q.get("backoff_delay_ms", defaults.backoff_delay_ms)),
                remove_on_complete=int(q.get("remove_on_complete", defaults.remove_on_complete)),
                remove_on_fail=int(q.get("remove_on_fail", defaults.remove_on_fail)),
                close_timeout=float(q.get("close_timeout", defaults.close_timeout)),
                block_timeout=float(q.get("block_timeout", defaults.block_timeout)),
                lock_duration_ms=int(q.get("lock_duration_ms", defaults.lock_duration_ms)),
            )

        if "smtp" in raw:
            s = raw["smtp"]
            defaults = SmtpConfig()
            settings.smtp = SmtpConfig(
                host=s.get("host", defaults.host),
                port=int(s.get("port", defaults.port)),
                user=s.get("user", "") or "",
                password=s.get("password", "") or "",
                from_address=s.get("from_address", defaults.from_address),
                pool_size=int(s.get("pool_size", defaults.pool_size)),
                max_messages=int(s.get("max_messages", defaults.max_messages)),
                retry_attempts=int(s.get("retry_attempts", defaults.retry_attempts)),
                retry_base_delay_ms=int(s.get("retry_base_delay_ms", defaults.retry_base_delay_ms)),
                timeout=float(s.get("timeout", defaults.timeout)),
            )

    _apply_env_overrides(settings)
    if settings.queue.backoff_type not in ("exponential", "fixed"):
        raise ConfigError(f"Unknown backoff type: {settings.queue.backoff_type}")
    settings.smtp.validate()

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings():
    global _settings
    _settings = None

"""Server settings, read from the process environment."""

import os
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, Field, ValidationError

from packager.errors import ConfigurationError

DEFAULT_PORT = 3000
DEFAULT_RETENTION_SECONDS = 5 * 60


class Settings(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    config_file: Path = Path("config.json")
    session_retention_seconds: float = Field(default=DEFAULT_RETENTION_SECONDS, ge=0)
    poll_interval_seconds: float = Field(default=0.2, gt=0)
    http_timeout_seconds: float = Field(default=5.0, gt=0)
    log_level: str = "INFO"
    log_json: bool = False
    cors_origins: list[str] = ["*"]


_ENV_KEYS = {
    "host": "PACKAGER_HOST",
    "port": "PACKAGER_PORT",
    "config_file": "PACKAGER_CONFIG_FILE",
    "session_retention_seconds": "PACKAGER_SESSION_RETENTION",
    "poll_interval_seconds": "PACKAGER_POLL_INTERVAL",
    "http_timeout_seconds": "PACKAGER_HTTP_TIMEOUT",
    "log_level": "PACKAGER_LOG_LEVEL",
    "log_json": "PACKAGER_LOG_JSON",
    "cors_origins": "PACKAGER_CORS_ORIGINS",
}


def _normalize_empty(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from ``env`` (defaults to ``os.environ``).

    Unset or blank variables keep their defaults. Raises ConfigurationError
    naming the offending variable when a value does not validate.
    """
    if env is None:
        env = os.environ

    values: dict[str, object] = {}
    for field_name, env_key in _ENV_KEYS.items():
        raw = _normalize_empty(env.get(env_key))
        if raw is None:
            continue
        if field_name == "cors_origins":
            values[field_name] = [o.strip() for o in raw.split(",") if o.strip()]
        elif field_name == "log_json":
            values[field_name] = raw.lower() in ("1", "true", "yes", "on")
        else:
            values[field_name] = raw

    try:
        return Settings(**values)
    except ValidationError as e:
        first = e.errors()[0]
        field_name = str(first["loc"][0])
        raise ConfigurationError(
            f"Invalid {_ENV_KEYS.get(field_name, field_name)}: {first['msg']}"
        ) from e

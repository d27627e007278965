"""
Configuration management for the marketplace service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEYS = frozenset({"jwt_secret", "redis_url"})


class ConfigurationError(Exception):
    """Raised when the configuration file is missing or invalid."""


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class AuthConfig(BaseModel):
    """Bearer token verification configuration."""

    model_config = ConfigDict(extra="forbid")
    jwt_secret: str
    algorithms: list[str]

    @field_validator("jwt_secret")
    @classmethod
    def _secret_long_enough(cls, value: str) -> str:
        if len(value) < 32:
            msg = "jwt_secret must be at least 32 characters"
            raise ValueError(msg)
        return value


class CacheConfig(BaseModel):
    """Idempotency cache configuration. A null redis_url disables replay."""

    model_config = ConfigDict(extra="forbid")
    redis_url: str | None
    idempotency_ttl_seconds: int


class NegotiationConfig(BaseModel):
    """Bid negotiation thread limits."""

    model_config = ConfigDict(extra="forbid")
    rate_limit_backend: Literal["memory", "redis"]
    max_messages: int
    window_seconds: int
    max_text_length: int


class NotificationsConfig(BaseModel):
    """Notification service connection. A null base_url disables delivery."""

    model_config = ConfigDict(extra="forbid")
    base_url: str | None
    events_path: str
    timeout_seconds: int


class PaginationConfig(BaseModel):
    """List endpoint paging limits."""

    model_config = ConfigDict(extra="forbid")
    default_limit: int
    max_limit: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    auth: AuthConfig
    cache: CacheConfig
    negotiation: NegotiationConfig
    notifications: NotificationsConfig
    pagination: PaginationConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


def load_settings(path: Path) -> Settings:
    """Load and validate settings from a YAML file."""
    if not path.is_file():
        msg = f"Configuration file not found: {path}"
        raise ConfigurationError(msg)

    with path.open(encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)

    if not isinstance(raw, dict):
        msg = f"Configuration file must contain a mapping: {path}"
        raise ConfigurationError(msg)

    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        msg = f"Invalid configuration in {path}: {exc}"
        raise ConfigurationError(msg) from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings, loading them on first use."""
    return load_settings(get_config_path())


def clear_settings_cache() -> None:
    """Drop cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: (REDACTION_MARKER if key in _SENSITIVE_KEYS and item is not None else _redact(item))
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted

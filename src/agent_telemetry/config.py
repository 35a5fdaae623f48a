"""Receiver configuration.

Everything is loaded from environment variables by
:meth:`ReceiverConfig.from_env`. :meth:`ReceiverConfig.problems` reports
problems as a list so the CLI can print all of them at once.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from agent_telemetry.export.otlp import ExportProtocol, parse_headers

DEFAULT_MAX_REQUEST_SIZE = 10 * 1024 * 1024


class ConfigError(ValueError):
    """Configuration is missing or invalid."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid configuration")


def _env(environ: Mapping[str, str], mapping: Mapping[str, str]) -> dict[str, Any]:
    """Pick the non-empty variables named in ``mapping`` (field -> variable)."""
    return {
        field_name: environ[var]
        for field_name, var in mapping.items()
        if environ.get(var, "") != ""
    }


def _load(model: type[BaseModel], values: dict[str, Any]) -> Any:
    try:
        return model(**values)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ConfigError(problems) from e


class LangfuseSettings(BaseModel):
    """Langfuse connection settings."""

    public_key: str = ""
    secret_key: str = ""
    host: str = "https://cloud.langfuse.com"
    flush_at: int = 15
    flush_interval_ms: int = 10_000

    @property
    def configured(self) -> bool:
        return bool(self.public_key and self.secret_key)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> LangfuseSettings:
        env = os.environ if environ is None else environ
        return _load(cls, _env(env, {
            "public_key": "LANGFUSE_PUBLIC_KEY",
            "secret_key": "LANGFUSE_SECRET_KEY",
            "host": "LANGFUSE_HOST",
            "flush_at": "LANGFUSE_FLUSH_AT",
            "flush_interval_ms": "LANGFUSE_FLUSH_INTERVAL",
        }))


class ExportSettings(BaseModel):
    """OTLP re-export settings."""

    enabled: bool = False
    protocol: str = ExportProtocol.HTTP_JSON.value
    endpoint: str | None = None
    metrics_endpoint: str | None = None
    logs_endpoint: str | None = None
    timeout_ms: int = 5_000
    retries: int = 3
    headers: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ExportSettings:
        env = os.environ if environ is None else environ
        values = _env(env, {
            "enabled": "OTLP_EXPORT_ENABLED",
            "protocol": "OTLP_EXPORT_PROTOCOL",
            "endpoint": "OTLP_EXPORT_ENDPOINT",
            "metrics_endpoint": "OTLP_EXPORT_METRICS_ENDPOINT",
            "logs_endpoint": "OTLP_EXPORT_LOGS_ENDPOINT",
            "timeout_ms": "OTLP_EXPORT_TIMEOUT",
            "retries": "OTLP_EXPORT_RETRIES",
        })
        values["headers"] = parse_headers(env.get("OTLP_EXPORT_HEADERS"))
        return _load(cls, values)


class ReceiverConfig(BaseModel):
    """Top-level configuration for the OTLP receiver."""

    host: str = "127.0.0.1"
    port: int = 4318
    session_timeout_ms: int = 3_600_000
    cleanup_interval_ms: int = 60_000
    max_request_size: int = DEFAULT_MAX_REQUEST_SIZE
    api_key: str | None = None
    log_level: str = "info"
    retry_attempts: int = 3
    langfuse: LangfuseSettings = Field(default_factory=LangfuseSettings)
    export: ExportSettings = Field(default_factory=ExportSettings)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ReceiverConfig:
        """Load the full configuration; raises :class:`ConfigError` on bad values."""
        env = os.environ if environ is None else environ
        values = _env(env, {
            "host": "OTLP_RECEIVER_HOST",
            "port": "OTLP_RECEIVER_PORT",
            "session_timeout_ms": "SESSION_TIMEOUT",
            "cleanup_interval_ms": "SESSION_CLEANUP_INTERVAL",
            "max_request_size": "MAX_REQUEST_SIZE",
            "api_key": "API_KEY",
            "log_level": "LOG_LEVEL",
            "retry_attempts": "RETRY_ATTEMPTS",
        })
        values["langfuse"] = LangfuseSettings.from_env(env)
        values["export"] = ExportSettings.from_env(env)
        return _load(cls, values)

    def problems(self) -> list[str]:
        """Return human-readable problems; empty when the config is usable."""
        problems: list[str] = []
        if not self.langfuse.public_key:
            problems.append("LANGFUSE_PUBLIC_KEY is required")
        if not self.langfuse.secret_key:
            problems.append("LANGFUSE_SECRET_KEY is required")
        if not 1 <= self.port <= 65535:
            problems.append("OTLP_RECEIVER_PORT must be between 1 and 65535")
        if self.session_timeout_ms <= 0:
            problems.append("SESSION_TIMEOUT must be positive")
        if self.cleanup_interval_ms <= 0:
            problems.append("SESSION_CLEANUP_INTERVAL must be positive")
        if self.max_request_size <= 0:
            problems.append("MAX_REQUEST_SIZE must be positive")
        try:
            ExportProtocol.parse(self.export.protocol)
        except ValueError as e:
            problems.append(f"OTLP_EXPORT_PROTOCOL: {e}")
        if self.export.enabled and not (
            self.export.endpoint or self.export.metrics_endpoint or self.export.logs_endpoint
        ):
            problems.append("OTLP_EXPORT_ENABLED is set but no OTLP_EXPORT_ENDPOINT is configured")
        return problems

    def require_valid(self) -> ReceiverConfig:
        problems = self.problems()
        if problems:
            raise ConfigError(problems)
        return self

    def redacted(self) -> dict[str, Any]:
        """Config as a dict with secrets masked, for ``check-config``."""
        data = self.model_dump()
        if data.get("api_key"):
            data["api_key"] = "***"
        if data["langfuse"].get("secret_key"):
            data["langfuse"]["secret_key"] = "***"
        data["export"]["headers"] = {k: "***" for k in data["export"]["headers"]}
        return data

"""Tests for receiver configuration."""

import pytest

from agent_telemetry.config import (
    DEFAULT_MAX_REQUEST_SIZE,
    ConfigError,
    ExportSettings,
    LangfuseSettings,
    ReceiverConfig,
)

VALID_ENV = {
    "LANGFUSE_PUBLIC_KEY": "pk-lf-test",
    "LANGFUSE_SECRET_KEY": "sk-lf-test",
}


class TestDefaults:
    def test_receiver_defaults(self):
        config = ReceiverConfig.from_env({})
        assert config.host == "127.0.0.1"
        assert config.port == 4318
        assert config.session_timeout_ms == 3_600_000
        assert config.cleanup_interval_ms == 60_000
        assert config.max_request_size == DEFAULT_MAX_REQUEST_SIZE
        assert config.api_key is None
        assert config.retry_attempts == 3

    def test_langfuse_defaults(self):
        settings = LangfuseSettings.from_env({})
        assert settings.host == "https://cloud.langfuse.com"
        assert settings.configured is False

    def test_export_defaults(self):
        settings = ExportSettings.from_env({})
        assert settings.enabled is False
        assert settings.protocol == "http/json"
        assert settings.headers == {}
        assert settings.timeout_ms == 5000
        assert settings.retries == 3


class TestFromEnv:
    def test_reads_variables(self):
        config = ReceiverConfig.from_env({
            **VALID_ENV,
            "LANGFUSE_HOST": "http://localhost:3000",
            "OTLP_RECEIVER_HOST": "0.0.0.0",
            "OTLP_RECEIVER_PORT": "5000",
            "SESSION_TIMEOUT": "1000",
            "API_KEY": "secret",
            "RETRY_ATTEMPTS": "5",
            "OTLP_EXPORT_ENABLED": "true",
            "OTLP_EXPORT_PROTOCOL": "grpc",
            "OTLP_EXPORT_ENDPOINT": "http://collector:4317",
            "OTLP_EXPORT_HEADERS": "x-api-key=abc,authorization=Bearer t=1",
        })
        assert config.port == 5000
        assert config.host == "0.0.0.0"
        assert config.session_timeout_ms == 1000
        assert config.api_key == "secret"
        assert config.retry_attempts == 5
        assert config.langfuse.configured is True
        assert config.langfuse.host == "http://localhost:3000"
        assert config.export.enabled is True
        assert config.export.protocol == "grpc"
        assert config.export.headers == {"x-api-key": "abc", "authorization": "Bearer t=1"}

    def test_empty_variables_ignored(self):
        config = ReceiverConfig.from_env({"OTLP_RECEIVER_PORT": "", "API_KEY": ""})
        assert config.port == 4318
        assert config.api_key is None

    def test_invalid_number(self):
        with pytest.raises(ConfigError) as exc_info:
            ReceiverConfig.from_env({"OTLP_RECEIVER_PORT": "not-a-port"})
        assert any(p.startswith("port") for p in exc_info.value.problems)


class TestValidation:
    def test_valid(self):
        config = ReceiverConfig.from_env(VALID_ENV)
        assert config.problems() == []
        assert config.require_valid() is config

    def test_missing_keys(self):
        problems = ReceiverConfig().problems()
        assert "LANGFUSE_PUBLIC_KEY is required" in problems
        assert "LANGFUSE_SECRET_KEY is required" in problems

    def test_out_of_range_values(self):
        config = ReceiverConfig.from_env({
            **VALID_ENV,
            "OTLP_RECEIVER_PORT": "70000",
            "SESSION_TIMEOUT": "0",
            "MAX_REQUEST_SIZE": "-1",
        })
        problems = config.problems()
        assert len(problems) == 3

    def test_bad_protocol(self):
        config = ReceiverConfig.from_env({**VALID_ENV, "OTLP_EXPORT_PROTOCOL": "carrier-pigeon"})
        [problem] = config.problems()
        assert "Unsupported protocol: carrier-pigeon" in problem

    def test_export_without_endpoint(self):
        config = ReceiverConfig.from_env({**VALID_ENV, "OTLP_EXPORT_ENABLED": "true"})
        assert len(config.problems()) == 1

    def test_per_signal_endpoint_is_enough(self):
        config = ReceiverConfig.from_env({
            **VALID_ENV,
            "OTLP_EXPORT_ENABLED": "true",
            "OTLP_EXPORT_LOGS_ENDPOINT": "http://collector:4318/v1/logs",
        })
        assert config.problems() == []

    def test_require_valid_raises(self):
        with pytest.raises(ConfigError) as exc_info:
            ReceiverConfig().require_valid()
        assert len(exc_info.value.problems) == 2


class TestRedacted:
    def test_masks_secrets(self):
        config = ReceiverConfig.from_env({
            **VALID_ENV,
            "API_KEY": "secret",
            "OTLP_EXPORT_HEADERS": "authorization=Bearer xyz",
        })
        data = config.redacted()
        assert data["api_key"] == "***"
        assert data["langfuse"]["secret_key"] == "***"
        assert data["langfuse"]["public_key"] == "pk-lf-test"
        assert data["export"]["headers"] == {"authorization": "***"}

"""Tests for CLI."""

import json
from unittest.mock import MagicMock

import pytest

from agent_telemetry.cli.main import cli

ENV_VARS = (
    "LANGFUSE_PUBLIC_KEY",
    "LANGFUSE_SECRET_KEY",
    "LANGFUSE_HOST",
    "OTLP_RECEIVER_PORT",
    "OTLP_EXPORT_ENABLED",
    "OTLP_EXPORT_PROTOCOL",
    "OTLP_EXPORT_ENDPOINT",
    "API_KEY",
)


@pytest.fixture
def clean_env(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


@pytest.fixture
def valid_env(clean_env):
    clean_env.setenv("LANGFUSE_PUBLIC_KEY", "pk-lf-test")
    clean_env.setenv("LANGFUSE_SECRET_KEY", "sk-lf-test")
    return clean_env


class TestCLI:
    def test_version(self, capsys):
        assert cli(["version"]) == 0
        assert "agent-telemetry 0.1.0" in capsys.readouterr().out

    def test_agents(self, capsys):
        assert cli(["agents"]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["count"] == 6
        assert "claude-code" in summary["agents"]

    def test_no_args(self):
        assert cli([]) == 1


class TestCheckConfig:
    def test_missing_keys(self, clean_env, capsys):
        assert cli(["check-config"]) == 1
        err = capsys.readouterr().err
        assert "LANGFUSE_PUBLIC_KEY is required" in err

    def test_valid(self, valid_env, capsys):
        assert cli(["check-config"]) == 0
        out = capsys.readouterr().out
        assert "Configuration OK" in out
        assert "sk-lf-test" not in out

    def test_unparseable_value(self, valid_env, capsys):
        valid_env.setenv("OTLP_RECEIVER_PORT", "abc")
        assert cli(["check-config"]) == 1
        assert "config error: port" in capsys.readouterr().err


class TestServe:
    def test_invalid_config_does_not_start(self, clean_env, monkeypatch):
        run = MagicMock()
        monkeypatch.setattr("uvicorn.run", run)
        assert cli(["serve"]) == 1
        run.assert_not_called()

    def test_starts_uvicorn(self, valid_env, monkeypatch, capsys):
        run = MagicMock()
        monkeypatch.setattr("uvicorn.run", run)
        monkeypatch.setattr(
            "agent_telemetry.client.create_langfuse_client", MagicMock(return_value=MagicMock())
        )
        assert cli(["serve", "--port", "9999", "--host", "0.0.0.0"]) == 0

        kwargs = run.call_args.kwargs
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["port"] == 9999
        assert "listening on http://0.0.0.0:9999" in capsys.readouterr().out

    def test_port_override_validated(self, valid_env, monkeypatch):
        run = MagicMock()
        monkeypatch.setattr("uvicorn.run", run)
        assert cli(["serve", "--port", "70000"]) == 1
        run.assert_not_called()

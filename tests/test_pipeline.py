"""Tests for the telemetry pipeline: OTLP payloads through to session state."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_telemetry.agents import ClaudeAgent, CodexAgent
from agent_telemetry.config import ExportSettings, ReceiverConfig
from agent_telemetry.pipeline import TelemetryPipeline, fallback_session_id

NANOS = "1700000000000000000"  # 2023-11-14T22:13:20Z


def attr(key, value):
    if isinstance(value, bool):
        return {"key": key, "value": {"boolValue": value}}
    if isinstance(value, int):
        return {"key": key, "value": {"intValue": str(value)}}
    if isinstance(value, float):
        return {"key": key, "value": {"doubleValue": value}}
    return {"key": key, "value": {"stringValue": value}}


def log_record(event_name: str, **attrs) -> dict:
    return {
        "timeUnixNano": NANOS,
        "body": {"stringValue": event_name},
        "attributes": [attr(k, v) for k, v in attrs.items()],
    }


def logs_payload(*records, resource=None) -> dict:
    resource = resource or {"service.name": "claude-code", "service.version": "1.0.0"}
    return {"resourceLogs": [{
        "resource": {"attributes": [attr(k, v) for k, v in resource.items()]},
        "scopeLogs": [{"logRecords": list(records)}],
    }]}


def metrics_payload(name: str, point: dict, kind: str = "sum") -> dict:
    return {"resourceMetrics": [{
        "resource": {"attributes": []},
        "scopeMetrics": [{"metrics": [{"name": name, kind: {"dataPoints": [point]}}]}],
    }]}


# ========== Fixtures ==========


@pytest.fixture
def mock_client():
    """Mock Langfuse client."""
    client = MagicMock()
    client.trace.return_value.id = "trace-1"
    return client


@pytest.fixture
def pipeline(mock_client):
    return TelemetryPipeline(ReceiverConfig(), client=mock_client, environ={})


@pytest.fixture
def offline_pipeline():
    return TelemetryPipeline(ReceiverConfig(), environ={})


# ========== Fallback session ids ==========


class TestFallbackSessionId:
    def test_hour_bucket_from_record_time(self):
        sid = fallback_session_id({"user.id": "alice"}, CodexAgent(), NANOS)
        assert sid == "codex-alice-2023-11-14T22"

    def test_event_timestamp_wins(self):
        attrs = {"user.id": "alice", "event.timestamp": "2024-05-01T09:30:00Z"}
        assert fallback_session_id(attrs, CodexAgent(), NANOS) == "codex-alice-2024-05-01T09"

    def test_unsafe_characters_replaced(self):
        sid = fallback_session_id({"user.email": "dev@example.com"}, ClaudeAgent(), NANOS)
        assert sid == "claude-code-dev-example-com-2023-11-14T22"

    def test_user_key_priority(self):
        attrs = {"user.email": "e@x", "user.account_id": "acct"}
        assert fallback_session_id(attrs, CodexAgent(), NANOS).startswith("codex-acct-")

    def test_no_user(self):
        assert fallback_session_id({}, CodexAgent(), NANOS) is None


# ========== Logs ==========


class TestProcessLogs:
    def test_creates_session_and_traces(self, pipeline, mock_client):
        payload = logs_payload(
            log_record("claude_code.user_prompt", **{"session.id": "s1", "prompt": "hi"}),
            log_record(
                "claude_code.api_request",
                **{"session.id": "s1", "model": "claude-sonnet-4", "input_tokens": 100,
                   "output_tokens": 200, "cost_usd": 0.0015},
            ),
        )
        assert asyncio.run(pipeline.process_logs(payload)) == 2

        session = pipeline.sessions["s1"]
        assert session.source == "claude-code"
        assert session.service_version == "1.0.0"
        assert session.conversation_count == 1
        assert session.api_call_count == 1
        assert session.total_tokens == 300
        assert session.total_cost == pytest.approx(0.0015)
        mock_client.trace.assert_called_once()
        mock_client.generation.assert_called_once()

    def test_sessions_are_isolated(self, offline_pipeline):
        payload = logs_payload(
            log_record("claude_code.tool_result", **{"session.id": "a", "tool_name": "Read"}),
            log_record("codex.tool_result", **{"conversation.id": "b", "tool_name": "shell"}),
        )
        asyncio.run(offline_pipeline.process_logs(payload))
        assert offline_pipeline.sessions["a"].tool_call_count == 1
        assert offline_pipeline.sessions["b"].tool_call_count == 1
        assert offline_pipeline.sessions["b"].source == "codex"

    def test_unknown_agent_dropped(self, offline_pipeline):
        payload = logs_payload(log_record("cursor.event", **{"session.id": "s", "user.id": "u"}))
        assert asyncio.run(offline_pipeline.process_logs(payload)) == 0
        assert offline_pipeline.sessions == {}

    def test_fallback_session(self, offline_pipeline):
        payload = logs_payload(log_record("codex.tool_result", **{"user.account_id": "acct"}))
        asyncio.run(offline_pipeline.process_logs(payload))
        assert list(offline_pipeline.sessions) == ["codex-acct-2023-11-14T22"]

    def test_no_session_id_dropped(self, offline_pipeline):
        payload = logs_payload(log_record("codex.tool_result", tool_name="shell"))
        assert asyncio.run(offline_pipeline.process_logs(payload)) == 0
        assert offline_pipeline.sessions == {}

    def test_unhandled_event_creates_session_only(self, offline_pipeline):
        payload = logs_payload(log_record("gemini_cli.slash_command", **{"session.id": "g"}))
        assert asyncio.run(offline_pipeline.process_logs(payload)) == 0
        assert "g" in offline_pipeline.sessions

    def test_non_object_entries_skipped(self, offline_pipeline):
        good = log_record("claude_code.tool_result", **{"session.id": "s1"})
        payload = {"resourceLogs": [
            None,
            "junk",
            {"resource": [], "scopeLogs": [None, {"logRecords": [7, good]}]},
        ]}
        assert asyncio.run(offline_pipeline.process_logs(payload)) == 1
        assert offline_pipeline.sessions["s1"].tool_call_count == 1

    def test_out_of_range_time_uses_now(self, offline_pipeline):
        bad = log_record("claude_code.tool_result", **{"session.id": "s0"})
        bad["timeUnixNano"] = "99999999999999999999999"
        good = log_record("claude_code.tool_result", **{"session.id": "s1"})
        assert asyncio.run(offline_pipeline.process_logs(logs_payload(bad, good))) == 2
        assert offline_pipeline.sessions["s1"].tool_call_count == 1

    def test_failing_record_does_not_drop_the_rest(self, offline_pipeline, monkeypatch):
        translate = offline_pipeline.registry.translate

        def flaky(record, attrs, session):
            if session.session_id == "bad":
                raise RuntimeError("boom")
            return translate(record, attrs, session)

        monkeypatch.setattr(offline_pipeline.registry, "translate", flaky)
        payload = logs_payload(
            log_record("claude_code.tool_result", **{"session.id": "bad"}),
            log_record("claude_code.tool_result", **{"session.id": "s1"}),
        )
        assert asyncio.run(offline_pipeline.process_logs(payload)) == 1
        assert offline_pipeline.sessions["s1"].tool_call_count == 1

    def test_empty_payload(self, offline_pipeline):
        assert asyncio.run(offline_pipeline.process_logs({})) == 0
        assert asyncio.run(offline_pipeline.process_logs({"resourceLogs": [{}]})) == 0


# ========== Metrics ==========


class TestProcessMetrics:
    def test_cost_metric(self, offline_pipeline):
        point = {"asDouble": 0.25, "attributes": [attr("session.id", "s1")]}
        payload = metrics_payload("claude_code.cost.usage", point)
        assert asyncio.run(offline_pipeline.process_metrics(payload)) == 1
        assert offline_pipeline.sessions["s1"].total_cost == pytest.approx(0.25)

    def test_gauge_metric(self, offline_pipeline):
        point = {"asInt": "5", "attributes": [attr("session.id", "s1"), attr("type", "added")]}
        payload = metrics_payload("claude_code.lines_of_code.count", point, kind="gauge")
        asyncio.run(offline_pipeline.process_metrics(payload))
        assert offline_pipeline.sessions["s1"].lines_added == 5

    def test_malformed_entries_skipped(self, offline_pipeline):
        point = {"asDouble": 0.25, "attributes": [attr("session.id", "s1")]}
        payload = {"resourceMetrics": [None, {"scopeMetrics": [
            {"metrics": [None, {"name": "claude_code.cost.usage",
                                "sum": {"dataPoints": ["x", point]}}]},
        ]}]}
        assert asyncio.run(offline_pipeline.process_metrics(payload)) == 1
        assert offline_pipeline.sessions["s1"].total_cost == pytest.approx(0.25)

    def test_point_without_session_skipped(self, offline_pipeline):
        payload = metrics_payload("claude_code.cost.usage", {"asDouble": 1.0})
        assert asyncio.run(offline_pipeline.process_metrics(payload)) == 0
        assert offline_pipeline.sessions == {}


# ========== Session lifecycle ==========


class TestCleanup:
    def test_expired_sessions_finalized(self, pipeline, mock_client):
        pipeline.get_or_create_session("old", {})
        pipeline.get_or_create_session("fresh", {})
        pipeline.sessions["old"].last_activity = 0.0

        expired = asyncio.run(pipeline.cleanup_sessions())
        assert expired == ["old"]
        assert list(pipeline.sessions) == ["fresh"]
        assert mock_client.trace.call_args.kwargs["name"] == "session-summary"

    def test_cleanup_uses_timeout(self, offline_pipeline):
        session = offline_pipeline.get_or_create_session("s", {})
        now = session.last_activity + 3599
        assert asyncio.run(offline_pipeline.cleanup_sessions(now=now)) == []
        assert asyncio.run(offline_pipeline.cleanup_sessions(now=now + 2)) == ["s"]

    def test_same_id_returns_same_session(self, offline_pipeline):
        first = offline_pipeline.get_or_create_session("s", {})
        assert offline_pipeline.get_or_create_session("s", {}) is first

    def test_duplicate_creation_last_insert_wins(self, offline_pipeline):
        # known race: both callers miss the lookup before either inserts
        class MissingOnLookup(dict):
            def get(self, key, default=None):
                return default

        offline_pipeline.sessions = MissingOnLookup()
        first = offline_pipeline.get_or_create_session("s", {})
        second = offline_pipeline.get_or_create_session("s", {})

        assert first is not second
        assert offline_pipeline.sessions["s"] is second
        assert len(offline_pipeline.sessions) == 1
        assert asyncio.run(offline_pipeline.finalize_all()) == 1
        assert first.is_active
        assert not second.is_active

    def test_session_uses_retry_attempts(self):
        pipeline = TelemetryPipeline(ReceiverConfig(retry_attempts=7), environ={})
        assert pipeline.get_or_create_session("s", {}).flush_attempts == 7

    def test_finalize_all(self, pipeline, mock_client):
        for sid in ("a", "b", "c"):
            pipeline.get_or_create_session(sid, {})
        assert asyncio.run(pipeline.finalize_all()) == 3
        assert pipeline.sessions == {}
        assert mock_client.trace.call_count == 3


class TestHealthAndShutdown:
    def test_health(self, pipeline):
        pipeline.get_or_create_session("s", {})
        pipeline.request_count = 4
        health = pipeline.health()
        assert health["status"] == "healthy"
        assert health["sessions"] == 1
        assert health["requestCount"] == 4
        assert health["langfuse"] == "connected"
        assert health["agents"]["count"] == 6

    def test_offline_health(self, offline_pipeline):
        assert offline_pipeline.health()["langfuse"] == "disabled"

    def test_shutdown(self, pipeline, mock_client):
        pipeline.get_or_create_session("s", {})
        asyncio.run(pipeline.shutdown())
        assert pipeline.sessions == {}
        mock_client.flush.assert_called()
        mock_client.shutdown.assert_called_once()

    def test_shutdown_survives_client_errors(self, pipeline, mock_client):
        mock_client.shutdown.side_effect = RuntimeError("boom")
        asyncio.run(pipeline.shutdown())


class TestExportScheduling:
    def test_payload_forwarded_when_enabled(self):
        exporter = MagicMock()
        exporter.is_enabled = True
        exporter.export_logs = AsyncMock(return_value=True)
        exporter.aclose = AsyncMock()
        config = ReceiverConfig(export=ExportSettings(enabled=True, endpoint="http://c:4318"))
        pipeline = TelemetryPipeline(config, exporter=exporter, environ={})

        payload = logs_payload(log_record("claude_code.user_prompt", **{"session.id": "s"}))

        async def run():
            await pipeline.process_logs(payload)
            await pipeline.shutdown()

        asyncio.run(run())
        exporter.export_logs.assert_awaited_once_with(payload)
        exporter.aclose.assert_awaited_once()

    def test_nothing_scheduled_when_disabled(self, offline_pipeline):
        payload = logs_payload(log_record("claude_code.user_prompt", **{"session.id": "s"}))
        asyncio.run(offline_pipeline.process_logs(payload))
        assert offline_pipeline._export_tasks == set()

"""Tests for the OTLP/HTTP receiver API."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from agent_telemetry.api import create_app
from agent_telemetry.config import ReceiverConfig
from agent_telemetry.pipeline import TelemetryPipeline


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _attrs(**values):
    out = []
    for key, value in values.items():
        if isinstance(value, float):
            out.append({"key": key, "value": {"doubleValue": value}})
        elif isinstance(value, int):
            out.append({"key": key, "value": {"intValue": str(value)}})
        else:
            out.append({"key": key, "value": {"stringValue": value}})
    return out


def _logs(*records):
    return {"resourceLogs": [{
        "resource": {"attributes": _attrs(**{"service.name": "claude-code"})},
        "scopeLogs": [{"logRecords": list(records)}],
    }]}


def _record(event_name, **attrs):
    return {
        "timeUnixNano": "1700000000000000000",
        "body": {"stringValue": event_name},
        "attributes": _attrs(**attrs),
    }


@pytest.fixture()
def mock_client():
    client = MagicMock()
    client.trace.return_value.id = "trace-1"
    return client


@pytest.fixture()
def pipeline(mock_client):
    return TelemetryPipeline(ReceiverConfig(), client=mock_client, environ={})


@pytest.fixture()
def client(pipeline):
    return TestClient(create_app(ReceiverConfig(), pipeline=pipeline))


def _make_client(pipeline=None, **config):
    cfg = ReceiverConfig(**config)
    return TestClient(create_app(cfg, pipeline=pipeline or TelemetryPipeline(cfg, environ={})))


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class TestLogs:
    def test_conversation_flow(self, client, pipeline):
        payload = _logs(
            _record("claude_code.user_prompt", **{"session.id": "s1", "prompt": "hello"}),
            _record(
                "claude_code.api_request",
                **{"session.id": "s1", "model": "claude-sonnet-4", "input_tokens": 100,
                   "output_tokens": 200, "cost_usd": 0.0015},
            ),
        )
        resp = client.post("/v1/logs", json=payload)
        assert resp.status_code == 200
        assert resp.json() == {"partialSuccess": {}}

        session = pipeline.sessions["s1"]
        assert session.conversation_count == 1
        assert session.api_call_count == 1
        assert session.total_tokens == 300
        assert session.total_cost == pytest.approx(0.0015)

    def test_unrecognized_payload_accepted(self, client, pipeline):
        resp = client.post("/v1/logs", json={"resourceLogs": []})
        assert resp.status_code == 200
        assert pipeline.sessions == {}

    def test_non_object_json_accepted(self, client):
        assert client.post("/v1/logs", json=[1, 2, 3]).status_code == 200

    def test_malformed_structure_accepted(self, client, pipeline):
        payload = {"resourceLogs": [None]}
        payload["resourceLogs"].extend(
            _logs(_record("claude_code.user_prompt", **{"session.id": "s1"}))["resourceLogs"]
        )
        resp = client.post("/v1/logs", json=payload)
        assert resp.status_code == 200
        assert "s1" in pipeline.sessions
        assert pipeline.error_count == 0

    def test_invalid_json(self, client):
        resp = client.post(
            "/v1/logs", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid JSON"}

    def test_processing_error(self, client, pipeline):
        pipeline.process_logs = AsyncMock(side_effect=RuntimeError("boom"))
        resp = client.post("/v1/logs", json={"resourceLogs": []})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error"}
        assert pipeline.error_count == 1


class TestMetricsAndTraces:
    def test_metrics(self, client, pipeline):
        payload = {"resourceMetrics": [{"scopeMetrics": [{"metrics": [{
            "name": "claude_code.cost.usage",
            "sum": {"dataPoints": [
                {"asDouble": 0.5, "attributes": _attrs(**{"session.id": "m1"})},
            ]},
        }]}]}]}
        assert client.post("/v1/metrics", json=payload).status_code == 200
        assert pipeline.sessions["m1"].total_cost == pytest.approx(0.5)

    def test_traces_accepted_not_processed(self, client, pipeline):
        resp = client.post("/v1/traces", json={"resourceSpans": []})
        assert resp.status_code == 200
        assert resp.json() == {"partialSuccess": {}}
        assert pipeline.sessions == {}

    def test_traces_invalid_json(self, client):
        assert client.post("/v1/traces", content=b"nope").status_code == 400


# ---------------------------------------------------------------------------
# Limits and auth
# ---------------------------------------------------------------------------

class TestAuth:
    def test_missing_token(self):
        client = _make_client(api_key="secret")
        resp = client.post("/v1/logs", json={})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

    def test_wrong_token(self):
        client = _make_client(api_key="secret")
        resp = client.post("/v1/logs", json={}, headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_valid_token(self):
        client = _make_client(api_key="secret")
        resp = client.post("/v1/logs", json={}, headers={"Authorization": "Bearer secret"})
        assert resp.status_code == 200

    def test_health_is_open(self):
        assert _make_client(api_key="secret").get("/health").status_code == 200


class TestRequestSize:
    def test_too_large(self):
        client = _make_client(max_request_size=16)
        resp = client.post("/v1/logs", content=json.dumps({"resourceLogs": ["x" * 64]}))
        assert resp.status_code == 413
        assert resp.json() == {"error": "Request entity too large"}

    def test_within_limit(self):
        client = _make_client(max_request_size=1024)
        assert client.post("/v1/logs", json={}).status_code == 200


# ---------------------------------------------------------------------------
# Health and lifecycle
# ---------------------------------------------------------------------------

class TestHealth:
    def test_health(self, client):
        client.post("/v1/logs", json=_logs(_record("codex.tool_result", **{"conversation.id": "c"})))
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["sessions"] == 1
        assert body["requestCount"] == 2
        assert body["errorCount"] == 0
        assert body["langfuse"] == "connected"
        assert body["agents"]["count"] == 6
        assert body["agents"]["agents"]["codex"]["eventPrefix"] == "codex."
        assert body["uptime"] >= 0

    def test_offline_health(self):
        assert _make_client().get("/health").json()["langfuse"] == "disabled"

    def test_app_state(self, pipeline):
        config = ReceiverConfig()
        app = create_app(config, pipeline=pipeline)
        assert app.state.config is config
        assert app.state.pipeline is pipeline

    def test_cors_for_local_origin(self, client):
        resp = client.options(
            "/v1/logs",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"

    def test_cors_rejects_remote_origin(self, client):
        resp = client.get("/health", headers={"Origin": "https://evil.example.com"})
        assert "access-control-allow-origin" not in resp.headers

    def test_shutdown_finalizes_sessions(self, pipeline, mock_client):
        app = create_app(ReceiverConfig(), pipeline=pipeline)
        with TestClient(app) as client:
            client.post(
                "/v1/logs",
                json=_logs(_record("claude_code.user_prompt", **{"session.id": "s1"})),
            )
            assert "s1" in pipeline.sessions
        assert pipeline.sessions == {}
        names = [c.kwargs["name"] for c in mock_client.trace.call_args_list]
        assert "session-summary" in names
        mock_client.shutdown.assert_called_once()

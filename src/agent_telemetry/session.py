"""Per-session aggregation state.

One :class:`Session` exists per agent session id. It accumulates
conversation, token, cost and tool counters, owns the Langfuse trace and
observation that later events attach to, and on :meth:`Session.finalize`
emits a single ``session-summary`` trace with percentile latency stats
and quality scores.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import platform
import re
import sys
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from agent_telemetry.attributes import AttributeReader, parse_float, parse_json_safe
from agent_telemetry.client import normalize_metadata
from agent_telemetry.export.otlp import retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "claude-code"
_TAG_SEPARATORS = re.compile(r"[;|,]")

FLUSH_ATTEMPTS = 3
FLUSH_BASE_DELAY_MS = 1000


class SessionState(Enum):
    """Lifecycle of a session."""
    ACTIVE = "active"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"


def _now_ms() -> float:
    return time.time() * 1000


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class LangfuseTraceConfig:
    """Trace naming/tagging overrides for one session.

    Read from OTLP resource attributes first (``langfuse.trace.name``,
    ``langfuse.tags``, ``langfuse.metadata``, ``langfuse.user.id``,
    ``langfuse.session.id``), then from the matching ``LANGFUSE_*``
    environment variables. Tags may be separated by ``,`` ``;`` or ``|``
    because OTEL_RESOURCE_ATTRIBUTES already uses commas.
    """
    trace_name: str | None = None
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] | None = None
    user_id: str | None = None
    session_id: str | None = None
    extracted_prompt: str | None = None

    @classmethod
    def from_resource(
        cls,
        resource_attributes: Mapping[str, Any] | None,
        environ: Mapping[str, str] | None = None,
    ) -> LangfuseTraceConfig:
        env = os.environ if environ is None else environ
        r = AttributeReader(resource_attributes)

        tags_value = r.string("langfuse.tags", default=env.get("LANGFUSE_TRACE_TAGS", ""))
        tags = [t.strip() for t in _TAG_SEPARATORS.split(tags_value or "") if t.strip()]

        metadata = None
        raw_metadata = r.first("langfuse.metadata") or env.get("LANGFUSE_TRACE_METADATA")
        if raw_metadata:
            parsed = parse_json_safe(raw_metadata)
            metadata = parsed if isinstance(parsed, dict) else None

        extracted_prompt = r.string("langfuse.prompt")
        if extracted_prompt is None and metadata and isinstance(metadata.get("prompt"), str):
            extracted_prompt = metadata["prompt"]

        return cls(
            trace_name=r.string("langfuse.trace.name", default=env.get("LANGFUSE_TRACE_NAME")),
            tags=tags,
            metadata=metadata,
            user_id=r.string("langfuse.user.id", default=env.get("LANGFUSE_USER_ID")),
            session_id=r.string("langfuse.session.id", default=env.get("LANGFUSE_SESSION_ID")),
            extracted_prompt=extracted_prompt,
        )


@dataclass
class ServiceInfo:
    name: str = DEFAULT_SERVICE_NAME
    version: str = "unknown"
    instance: str | None = None
    telemetry_sdk: str | None = None
    terminal_type: str | None = None

    @classmethod
    def from_resource(cls, resource_attributes: Mapping[str, Any] | None) -> ServiceInfo:
        r = AttributeReader(resource_attributes)
        return cls(
            name=r.string("service.name", default=DEFAULT_SERVICE_NAME),
            version=r.string(
                "service.version", "claude.version", "app.version", default="unknown"
            ),
            instance=r.string("service.instance.id", "host.name"),
            telemetry_sdk=r.string("telemetry.sdk.name"),
            terminal_type=r.string("terminal.type"),
        )


@dataclass
class ToolCall:
    """One entry of a conversation's tool sequence."""
    name: str
    success: bool
    duration: int
    timestamp: str
    call_id: str | None = None
    arguments: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TokenBreakdown:
    input: int = 0
    output: int = 0
    cached: int = 0
    reasoning: int = 0
    tool: int = 0

    def add(self, tokens: Any) -> None:
        self.input += tokens.input
        self.output += tokens.output
        self.cached += tokens.cached
        self.reasoning += tokens.reasoning
        self.tool += tokens.tool

    @property
    def cache_hit_rate(self) -> float:
        prompt_tokens = self.input + self.cached
        return self.cached / prompt_tokens if prompt_tokens > 0 else 0.0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class Latencies:
    """Duration samples in milliseconds. Only positive durations are kept."""
    api: list[float] = field(default_factory=list)
    tool: list[float] = field(default_factory=list)
    conversation: list[float] = field(default_factory=list)

    @staticmethod
    def record(samples: list[float], duration_ms: float | None) -> None:
        if duration_ms and duration_ms > 0:
            samples.append(duration_ms)


def percentiles(samples: list[float]) -> dict[str, float] | None:
    """count/min/max/avg/p50/p95/p99 over ``samples``; ``None`` when empty.

    Percentiles use the nearest-rank-below index ``floor(n * q)``.
    """
    if not samples:
        return None
    ordered = sorted(samples)
    n = len(ordered)

    def at(q: float) -> float:
        return ordered[min(n - 1, math.floor(n * q))]

    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": round(sum(ordered) / n),
        "p50": at(0.5),
        "p95": at(0.95),
        "p99": at(0.99),
    }


def quality_score(cache_hit_rate: float, tool_success_rate: float, avg_response_ms: float) -> int:
    """0-100 blend: cache reuse (20), tool success (40), API latency (40/20)."""
    latency_points = 40 if avg_response_ms < 1000 else 20
    return min(100, round(cache_hit_rate * 20 + tool_success_rate * 40 + latency_points))


def efficiency_score(total_tokens: int, total_cost: float) -> int | None:
    """Tokens per dollar scaled to 0-100; ``None`` when nothing was spent."""
    if total_cost <= 0:
        return None
    return min(100, round((total_tokens / total_cost) / 10))


class Session:
    """Aggregated state for one agent session.

    Args:
        session_id: Agent-provided session identifier.
        resource_attributes: Extracted OTLP resource attributes of the
            record that created the session.
        client: Langfuse client. ``None`` keeps counters only.
        log: Logger for this session's messages.
        environ: Environment used for ``LANGFUSE_*`` fallbacks and user id.
        flush_attempts: Attempts for the final Langfuse flush.
    """

    def __init__(
        self,
        session_id: str,
        resource_attributes: Mapping[str, Any] | None = None,
        client: Any | None = None,
        *,
        log: logging.Logger | None = None,
        environ: Mapping[str, str] | None = None,
        flush_attempts: int = FLUSH_ATTEMPTS,
    ) -> None:
        if not session_id:
            raise ValueError("Session requires a session_id")
        env = os.environ if environ is None else environ

        self.session_id = session_id
        self.client = client
        self.log = log or logger
        self.flush_attempts = flush_attempts
        self.state = SessionState.ACTIVE
        self.created_at = datetime.now(timezone.utc)
        self.last_activity = time.time()
        self.source: str | None = None

        # conversation cursor
        self.current_trace: Any | None = None
        self.current_span: Any | None = None
        self.conversation_start_ms: float | None = None
        self.tool_sequence: list[ToolCall] = []
        self.tool_decisions: list[dict[str, Any]] = []
        self.agent_config: dict[str, Any] | None = None
        self.default_model: str | None = None

        # counters
        self.total_cost = 0.0
        self.total_tokens = 0
        self.api_call_count = 0
        self.tool_call_count = 0
        self.conversation_count = 0
        self.lines_added = 0
        self.lines_removed = 0
        self.token_breakdown = TokenBreakdown()
        self.cache_tokens = {"read": 0, "creation": 0}
        self.commit_count = 0
        self.pull_request_count = 0
        self.active_time_seconds = 0.0
        self.latencies = Latencies()

        self.service = ServiceInfo.from_resource(resource_attributes)
        self.langfuse_config = LangfuseTraceConfig.from_resource(resource_attributes, env)
        self.user_id: str = env.get("USER_EMAIL") or env.get("USER") or "unknown"
        self.environment = env.get("ENVIRONMENT", "production")
        self.release = self.service.version

        self.log.info(
            f"Session created: {session_id} (service={self.service.name}, "
            f"version={self.service.version})"
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def service_version(self) -> str | None:
        return None if self.service.version == "unknown" else self.service.version

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def in_conversation(self) -> bool:
        """A conversation has been started, whether or not its trace exists."""
        return self.conversation_count > 0

    @property
    def trace_session_id(self) -> str:
        return self.langfuse_config.session_id or self.session_id

    def touch(self) -> None:
        self.last_activity = time.time()

    def idle_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.last_activity

    def start_conversation(self) -> int:
        """Open a new conversation; returns its 1-based index."""
        self.conversation_count += 1
        self.conversation_start_ms = _now_ms()
        self.tool_sequence = []
        return self.conversation_count

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def process_metric(
        self, name: str, data_point: Mapping[str, Any], attrs: Mapping[str, Any]
    ) -> None:
        """Fold one OTLP metric data point into the session counters."""
        self.touch()
        r = AttributeReader(attrs)
        value = parse_float(data_point.get("asDouble"), None)
        if value is None:
            value = parse_float(data_point.get("asInt"), None)

        if name == "claude_code.session.count":
            self._metric_event("session-started", {"count": value or 1})
        elif name == "claude_code.cost.usage":
            self.total_cost += value or 0.0
            self.log.debug(f"Session {self.session_id}: cost +{value} -> {self.total_cost}")
        elif name == "claude_code.token.usage":
            tokens = int(value or 0)
            token_type = r.string("type", default="unknown")
            if token_type in ("input", "output"):
                self.total_tokens += tokens
            elif token_type == "cacheRead":
                self.cache_tokens["read"] += tokens
            elif token_type == "cacheCreation":
                self.cache_tokens["creation"] += tokens
        elif name == "claude_code.lines_of_code.count":
            lines = int(value or 0)
            change = r.string("type")
            if change == "added":
                self.lines_added += lines
            elif change == "removed":
                self.lines_removed += lines
            self._metric_event("code-modification", {"lines": lines, "type": change})
        elif name == "claude_code.pull_request.count":
            count = int(value or 1)
            self.pull_request_count += count
            self._metric_event("pull-request-created", {"count": count})
        elif name == "claude_code.commit.count":
            count = int(value or 1)
            self.commit_count += count
            self._metric_event("git-commit-created", {"count": count})
        elif name == "claude_code.code_edit_tool.decision":
            self._metric_event("tool-permission-decision", {
                "tool": r.string("tool"),
                "decision": r.string("decision"),
                "language": r.string("language"),
            })
        elif name == "claude_code.active_time.total":
            self.active_time_seconds += value or 0.0
            self._metric_event("active-time-update", {"seconds": value or 0.0})
        else:
            self.log.debug(f"Session {self.session_id}: ignoring metric {name}")

    def _metric_event(self, name: str, metadata: dict[str, Any]) -> None:
        if self.client is None or self.current_trace is None:
            return
        try:
            self.client.event(
                trace_id=self.current_trace.id,
                name=name,
                metadata=normalize_metadata({**metadata, "timestamp": _iso_now()}),
                level="DEFAULT",
            )
        except Exception as e:
            self.log.warning(f"Session {self.session_id}: failed to record {name}: {e}")

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def summary(self) -> dict[str, Any]:
        """Counters and percentile blocks for the session-summary trace."""
        duration_ms = (datetime.now(timezone.utc) - self.created_at).total_seconds() * 1000
        return {
            "sessionEnd": _iso_now(),
            "sessionDuration": round(duration_ms),
            "conversationCount": self.conversation_count,
            "apiCallCount": self.api_call_count,
            "toolCallCount": self.tool_call_count,
            "totalCost": self.total_cost,
            "totalTokens": self.total_tokens,
            "tokenBreakdown": self.token_breakdown.to_dict(),
            "cacheTokens": dict(self.cache_tokens),
            "codeChanges": {
                "linesAdded": self.lines_added,
                "linesRemoved": self.lines_removed,
                "netChange": self.lines_added - self.lines_removed,
            },
            "performance": {
                "api": percentiles(self.latencies.api),
                "tool": percentiles(self.latencies.tool),
                "conversation": percentiles(self.latencies.conversation),
            },
            "additionalMetrics": {
                "activeTime": self.active_time_seconds,
                "commitCount": self.commit_count,
                "pullRequestCount": self.pull_request_count,
                "toolDecisions": list(self.tool_decisions),
            },
        }

    async def finalize(self) -> bool:
        """Close the open conversation and emit the session summary.

        Runs at most once; later calls return ``False``. Langfuse failures
        are logged and never raised.
        """
        if self.state is not SessionState.ACTIVE:
            return False
        self.state = SessionState.FINALIZING
        try:
            self._close_conversation()
            if self.client is not None:
                self._emit_summary()
                await retry_with_backoff(
                    lambda: asyncio.to_thread(self.client.flush),
                    self.flush_attempts,
                    FLUSH_BASE_DELAY_MS,
                    log=self.log,
                )
            self.log.info(
                f"Session finalized: {self.session_id} "
                f"(conversations={self.conversation_count}, cost=${self.total_cost:.4f})"
            )
        except Exception as e:
            self.log.error(f"Error finalizing session {self.session_id}: {e}")
        finally:
            self.state = SessionState.FINALIZED
        return True

    def _close_conversation(self) -> None:
        if self.current_span is not None:
            self.current_span.end(output={
                "toolCount": len(self.tool_sequence),
                "tools": ", ".join(
                    f"{t.name}:{str(t.success).lower()}" for t in self.tool_sequence
                ),
                "totalDuration": sum(t.duration for t in self.tool_sequence),
            })
            self.current_span = None

        if self.current_trace is not None:
            elapsed = _now_ms() - self.conversation_start_ms if self.conversation_start_ms else 0
            self.current_trace.update(output={
                "status": "session_ended",
                "duration": round(elapsed),
            })
            if self.conversation_start_ms:
                Latencies.record(self.latencies.conversation, elapsed)

    def _emit_summary(self) -> None:
        output = self.summary()
        config = self.langfuse_config
        metadata = {
            **(config.metadata or {}),
            "service": asdict(self.service),
            "environment": self.environment,
            "platform": sys.platform,
            "pythonVersion": platform.python_version(),
            "source": self.source,
            "toolSequence": [t.to_dict() for t in self.tool_sequence],
            "finalStatus": "completed",
        }
        options: dict[str, Any] = {
            "name": "session-summary",
            "session_id": self.trace_session_id,
            "user_id": config.user_id or self.user_id,
            "version": self.release,
            "input": {"sessionStart": self.created_at.isoformat(), "sessionId": self.session_id},
            "output": output,
            "metadata": normalize_metadata(metadata),
        }
        if config.tags:
            options["tags"] = list(config.tags)
        summary_trace = self.client.trace(**options)

        api_stats = output["performance"]["api"]
        avg_response = api_stats["avg"] if api_stats else 0
        cache_rate = self.token_breakdown.cache_hit_rate
        tool_success = (
            sum(1 for t in self.tool_sequence if t.success) / len(self.tool_sequence)
            if self.tool_sequence else 1.0
        )
        self.client.score(
            trace_id=summary_trace.id,
            name="quality",
            value=quality_score(cache_rate, tool_success, avg_response),
            comment=(
                f"Cache rate: {cache_rate:.2f}, Tool success: {tool_success:.2f}, "
                f"Avg response: {avg_response}ms"
            ),
        )
        efficiency = efficiency_score(self.total_tokens, self.total_cost)
        if efficiency is not None:
            self.client.score(
                trace_id=summary_trace.id,
                name="efficiency",
                value=efficiency,
                comment=(
                    f"{self.conversation_count} conversations, ${self.total_cost:.4f} total, "
                    f"{self.total_tokens / self.total_cost:.1f} tokens/$"
                ),
            )

    def __repr__(self) -> str:
        return f"Session(id={self.session_id!r}, state={self.state.value})"

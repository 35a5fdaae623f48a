"""Telemetry pipeline: OTLP payloads in, Langfuse traces out.

:class:`TelemetryPipeline` owns the live session map. For each log record
it resolves the owning agent and session, translates the record into a
normalized event and hands it to the :class:`~agent_telemetry.sink.LangfuseSink`.
Metric data points carrying ``session.id`` update session counters. Raw
payloads are optionally re-exported to an OTLP collector in detached
tasks that never delay ingestion.

Session creation is check-then-insert without a lock. If two first events
for the same id both pass the check, each builds a session and the later
insert overwrites the earlier one. The overwritten session is never
finalized, so the events it received are missing from the summary.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from agent_telemetry.agents.base import BaseAgent, event_name_of
from agent_telemetry.agents.registry import AgentRegistry, default_registry
from agent_telemetry.attributes import extract_attributes, format_timestamp
from agent_telemetry.config import ReceiverConfig
from agent_telemetry.export.otlp import OTLPExporter
from agent_telemetry.session import Session
from agent_telemetry.sink import LangfuseSink

logger = logging.getLogger(__name__)

FALLBACK_USER_KEYS = ("user.account_id", "user.id", "user.email", "user.account_uuid")
_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9-]")
METRIC_DATA_KINDS = ("sum", "gauge", "histogram")


def _hour_bucket(event_timestamp: Any, time_unix_nano: Any) -> str:
    """``YYYY-MM-DDTHH`` of the event time, else of the record time."""
    if isinstance(event_timestamp, str) and event_timestamp:
        try:
            moment = datetime.fromisoformat(event_timestamp.replace("Z", "+00:00"))
        except ValueError:
            moment = None
        if moment is not None:
            if moment.tzinfo is not None:
                moment = moment.astimezone(timezone.utc)
            return moment.strftime("%Y-%m-%dT%H")
    return format_timestamp(time_unix_nano)[:13]


def _mappings(value: Any) -> list[Mapping[str, Any]]:
    """Entries of an OTLP list that are objects; anything else is skipped."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, Mapping)]


def _resource_attributes(container: Mapping[str, Any]) -> Any:
    resource = container.get("resource")
    return resource.get("attributes") if isinstance(resource, Mapping) else None


def fallback_session_id(
    attrs: Mapping[str, Any],
    agent: BaseAgent | None,
    time_unix_nano: Any = None,
) -> str | None:
    """Synthesize ``{agent}-{user}-{hour}`` for records without a session id.

    Returns ``None`` when the record carries no user identifier.
    """
    user_id = next((attrs[k] for k in FALLBACK_USER_KEYS if attrs.get(k)), None)
    if not user_id:
        return None
    bucket = _hour_bucket(attrs.get("event.timestamp"), time_unix_nano)
    agent_name = agent.name if agent else "unknown"
    return _UNSAFE_ID_CHARS.sub("-", f"{agent_name}-{user_id}-{bucket}")


class TelemetryPipeline:
    """Routes OTLP logs and metrics into per-session aggregation.

    Args:
        config: Receiver configuration.
        client: Langfuse client; ``None`` keeps counters only.
        registry: Agent registry. Defaults to every built-in agent.
        sink: Normalized-event sink.
        exporter: OTLP re-exporter. Built from ``config.export`` by default.
        log: Logger shared with sessions the pipeline creates.
        environ: Environment passed to new sessions.
    """

    def __init__(
        self,
        config: ReceiverConfig | None = None,
        client: Any | None = None,
        *,
        registry: AgentRegistry | None = None,
        sink: LangfuseSink | None = None,
        exporter: OTLPExporter | None = None,
        log: logging.Logger | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config or ReceiverConfig()
        self.client = client
        self.log = log or logger
        self.registry = registry or default_registry()
        self.sink = sink or LangfuseSink(log=self.log)
        self.exporter = exporter or OTLPExporter(self.config.export, log=self.log)
        self.environ = environ
        self.sessions: dict[str, Session] = {}
        self.request_count = 0
        self.error_count = 0
        self.start_time = time.time()
        self._export_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_or_create_session(
        self,
        session_id: str,
        resource_attrs: Mapping[str, Any] | None,
        agent: BaseAgent | None = None,
    ) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            session = Session(
                session_id,
                resource_attrs,
                self.client,
                log=self.log,
                environ=self.environ,
                flush_attempts=self.config.retry_attempts,
            )
            session.source = agent.name if agent else None
            self.sessions[session_id] = session
            self.log.info(f"New session {session_id} (source={session.source or 'unknown'})")
        return session

    async def cleanup_sessions(self, now: float | None = None) -> list[str]:
        """Finalize and drop sessions idle longer than the session timeout."""
        now = time.time() if now is None else now
        timeout = self.config.session_timeout_ms / 1000
        expired = [
            sid for sid, session in self.sessions.items()
            if session.idle_seconds(now) > timeout
        ]
        for session_id in expired:
            session = self.sessions.pop(session_id, None)
            if session is None:
                continue
            try:
                await session.finalize()
            except Exception as e:
                self.log.error(f"Error finalizing session {session_id} during cleanup: {e}")
            self.log.info(f"Session {session_id} expired and cleaned up")
        if self.sessions:
            self.log.debug(f"{len(self.sessions)} active sessions")
        return expired

    async def finalize_all(self) -> int:
        """Finalize every live session in parallel; returns how many ran."""
        sessions = list(self.sessions.values())
        self.sessions.clear()
        if not sessions:
            return 0
        self.log.info(f"Finalizing {len(sessions)} sessions")
        results = await asyncio.gather(
            *(session.finalize() for session in sessions), return_exceptions=True
        )
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                self.log.error(f"Error finalizing session {session.session_id}: {result}")
        return len(sessions)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def process_logs(self, payload: Mapping[str, Any]) -> int:
        """Process an OTLP/JSON logs payload; returns records translated."""
        self._schedule_export(self.exporter.export_logs, payload)
        translated = 0
        for resource_logs in _mappings(payload.get("resourceLogs")):
            resource_attrs = extract_attributes(_resource_attributes(resource_logs))
            for scope_logs in _mappings(resource_logs.get("scopeLogs")):
                for record in _mappings(scope_logs.get("logRecords")):
                    try:
                        if self.process_log_record(record, resource_attrs):
                            translated += 1
                    except Exception as e:
                        self.log.error(f"Skipping log record {event_name_of(record)!r}: {e}")
        return translated

    def process_log_record(self, record: Mapping[str, Any], resource_attrs: Mapping[str, Any]) -> bool:
        event_name = event_name_of(record)
        attrs = extract_attributes(record.get("attributes"))
        session_id, agent = self.registry.extract_session_id(attrs, event_name)
        if agent is None:
            self.log.debug(f"No agent claims event {event_name!r}")
            return False
        if not session_id:
            session_id = fallback_session_id(attrs, agent, record.get("timeUnixNano"))
        if not session_id:
            self.log.debug(f"Log without session identifier: {event_name}")
            return False

        session = self.get_or_create_session(session_id, resource_attrs, agent)
        event, owner = self.registry.translate(record, attrs, session)
        if event is None:
            return False
        self.sink.apply(event, session, owner)
        return True

    async def process_metrics(self, payload: Mapping[str, Any]) -> int:
        """Process an OTLP/JSON metrics payload; returns data points applied."""
        self._schedule_export(self.exporter.export_metrics, payload)
        applied = 0
        for resource_metrics in _mappings(payload.get("resourceMetrics")):
            resource_attrs = extract_attributes(_resource_attributes(resource_metrics))
            for scope_metrics in _mappings(resource_metrics.get("scopeMetrics")):
                for metric in _mappings(scope_metrics.get("metrics")):
                    name = metric.get("name", "")
                    points = next(
                        (_mappings(metric[kind].get("dataPoints")) for kind in METRIC_DATA_KINDS
                         if isinstance(metric.get(kind), Mapping)),
                        [],
                    )
                    self.log.debug(f"Processing metric {name} ({len(points)} data points)")
                    for point in points:
                        try:
                            if self.process_data_point(name, point, resource_attrs):
                                applied += 1
                        except Exception as e:
                            self.log.error(f"Skipping data point of metric {name!r}: {e}")
        return applied

    def process_data_point(
        self, name: str, point: Mapping[str, Any], resource_attrs: Mapping[str, Any]
    ) -> bool:
        attrs = extract_attributes(point.get("attributes"))
        session_id = attrs.get("session.id")
        if session_id is None or session_id == "":
            return False
        session = self.get_or_create_session(str(session_id), resource_attrs)
        session.process_metric(name, point, attrs)
        return True

    def _schedule_export(self, export: Any, payload: Mapping[str, Any]) -> None:
        if not self.exporter.is_enabled:
            return
        task = asyncio.get_running_loop().create_task(export(payload))
        self._export_tasks.add(task)
        task.add_done_callback(self._export_tasks.discard)

    # ------------------------------------------------------------------
    # Status / shutdown
    # ------------------------------------------------------------------

    def uptime_ms(self) -> int:
        return round((time.time() - self.start_time) * 1000)

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "uptime": self.uptime_ms(),
            "sessions": len(self.sessions),
            "requestCount": self.request_count,
            "errorCount": self.error_count,
            "langfuse": "connected" if self.client is not None else "disabled",
            "agents": self.registry.summary(),
        }

    async def shutdown(self) -> None:
        """Finalize sessions, drain exports, then flush and close Langfuse."""
        self.log.info("Shutting down telemetry pipeline")
        await self.finalize_all()
        if self._export_tasks:
            await asyncio.gather(*self._export_tasks, return_exceptions=True)
        if self.client is not None:
            try:
                await asyncio.to_thread(self.client.flush)
                await asyncio.to_thread(self.client.shutdown)
            except Exception as e:
                self.log.error(f"Error during Langfuse shutdown: {e}")
        await self.exporter.aclose()
        self.log.info("Shutdown complete")

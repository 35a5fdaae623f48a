"""Normalized-event sink: session bookkeeping plus Langfuse calls.

:meth:`LangfuseSink.apply` is the single entry point. It updates the
session's counters for every event and, when the session has a Langfuse
client, records the matching trace / generation / event. Langfuse
failures are logged with the session id and never raised.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from agent_telemetry.agents.events import (
    AgentLifecycle,
    ApiError,
    ApiRequest,
    ConversationStart,
    FileOperation,
    Generation,
    Lifecycle,
    ToolDecision,
    ToolResult,
    UserPrompt,
)
from agent_telemetry.client import Level, normalize_metadata
from agent_telemetry.session import Latencies, ToolCall

if TYPE_CHECKING:
    from agent_telemetry.agents.base import BaseAgent
    from agent_telemetry.agents.events import NormalizedEvent
    from agent_telemetry.session import Session

logger = logging.getLogger(__name__)

HIDDEN_PROMPT = "[Prompt hidden]"
UNCAPTURED_PROMPT = "[No user prompt captured - non-interactive mode]"
LIGHTWEIGHT_MODEL_MARKERS = ("haiku", "mini")


def model_type(model: str | None) -> str:
    """``routing`` for lightweight models, ``generation`` otherwise."""
    name = (model or "").lower()
    if any(marker in name for marker in LIGHTWEIGHT_MODEL_MARKERS):
        return "routing"
    return "generation"


def _parse_timestamp(value: str | None) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def build_trace_options(
    event: NormalizedEvent,
    session: Session,
    agent: BaseAgent | None,
    *,
    name: str | None = None,
    input: Any = None,
) -> dict[str, Any]:
    """Keyword arguments for ``client.trace`` for a conversation trace."""
    config = session.langfuse_config
    raw_metadata = {
        **(config.metadata or {}),
        "conversationIndex": session.conversation_count,
        "agent": agent.name if agent else None,
        "provider": agent.provider if agent else None,
        **event.metadata,
    }
    user_id = config.user_id or getattr(event, "user_id", None) or session.user_id
    options: dict[str, Any] = {
        "name": name or f"{agent.name if agent else 'ai'}-trace",
        "session_id": session.trace_session_id,
        "user_id": user_id,
        "input": input,
        "metadata": normalize_metadata(raw_metadata),
        "version": session.service_version or event.metadata.get("appVersion"),
    }
    tags = list(config.tags)
    if agent is not None:
        tags.append(agent.name)
    if tags:
        options["tags"] = tags
    return options


class LangfuseSink:
    """Applies normalized events to a session and its Langfuse client."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger
        self._handlers = {
            ConversationStart: self._conversation_start,
            UserPrompt: self._user_prompt,
            ApiRequest: self._api_request,
            ApiError: self._api_error,
            Generation: self._generation,
            ToolDecision: self._tool_decision,
            ToolResult: self._tool_result,
            FileOperation: self._file_operation,
            AgentLifecycle: self._agent_lifecycle,
        }

    def apply(
        self,
        event: NormalizedEvent | None,
        session: Session | None,
        agent: BaseAgent | None = None,
    ) -> None:
        if event is None or session is None:
            return
        if not session.is_active:
            self.log.debug(f"Dropping {event.type.value} for finalized session {session.session_id}")
            return
        session.touch()
        if session.source is None and agent is not None:
            session.source = agent.name

        handler = self._handlers.get(type(event))
        if handler is None:
            self.log.debug(f"Unknown normalized event type {type(event).__name__}")
            return
        handler(event, session, agent)

    # ------------------------------------------------------------------
    # Langfuse call wrappers
    # ------------------------------------------------------------------

    def _call(self, session: Session, method: str, **kwargs: Any) -> Any:
        if session.client is None:
            return None
        if "metadata" in kwargs:
            kwargs["metadata"] = normalize_metadata(kwargs["metadata"])
        try:
            return getattr(session.client, method)(**kwargs)
        except Exception as e:
            self.log.warning(f"Langfuse {method} failed for session {session.session_id}: {e}")
            return None

    def _event(self, session: Session, **kwargs: Any) -> None:
        if session.current_trace is None:
            return
        self._call(session, "event", trace_id=session.current_trace.id, **kwargs)

    def _open_trace(
        self,
        event: NormalizedEvent,
        session: Session,
        agent: BaseAgent | None,
        input: Any,
        *,
        new_conversation: bool = True,
    ) -> None:
        """Start a conversation (unless one is already counted) and its trace."""
        index = session.start_conversation() if new_conversation else session.conversation_count
        name = session.langfuse_config.trace_name or (
            f"{agent.name if agent else 'ai'}-conversation-{index}"
        )
        options = build_trace_options(event, session, agent, name=name, input=input)
        session.current_trace = self._call(session, "trace", **options)
        session.current_span = None

    def _ensure_trace(
        self, event: NormalizedEvent, session: Session, agent: BaseAgent | None, input: Any
    ) -> None:
        if session.current_trace is not None or session.client is None:
            return
        # a failed trace call leaves the conversation counted; only the trace is retried
        self._open_trace(
            event, session, agent, input, new_conversation=not session.in_conversation
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _conversation_start(
        self, event: ConversationStart, session: Session, agent: BaseAgent | None
    ) -> None:
        session.agent_config = event.config.to_dict()
        if event.config.model:
            session.default_model = event.config.model
        self._open_trace(event, session, agent, input={
            "provider": event.config.provider,
            "model": event.config.model,
            "config": session.agent_config,
        })
        self.log.debug(f"Conversation {session.conversation_count} started for {session.session_id}")

    def _user_prompt(self, event: UserPrompt, session: Session, agent: BaseAgent | None) -> None:
        prompt_input = {
            "prompt": event.prompt or HIDDEN_PROMPT,
            "length": event.prompt_length,
        }
        if session.current_trace is None:
            self._ensure_trace(event, session, agent, prompt_input)
        else:
            try:
                session.current_trace.update(input=prompt_input)
            except Exception as e:
                self.log.warning(f"Langfuse trace update failed for {session.session_id}: {e}")
        self.log.info(
            f"User prompt for session {session.session_id} "
            f"(length={event.prompt_length}, source={agent.name if agent else 'unknown'})"
        )

    def _api_request(self, event: ApiRequest, session: Session, agent: BaseAgent | None) -> None:
        session.api_call_count += 1
        Latencies.record(session.latencies.api, event.duration_ms)
        self._event(
            session,
            name="api-request",
            input={"model": event.model, "attempt": event.attempt},
            output={
                "statusCode": event.status_code,
                "durationMs": event.duration_ms,
                "success": event.success,
            },
            metadata=event.metadata,
            level=(Level.DEFAULT if event.success else Level.WARNING).value,
        )

    def _api_error(self, event: ApiError, session: Session, agent: BaseAgent | None) -> None:
        self.log.warning(
            f"API error in session {session.session_id}: "
            f"{event.status_code} {event.error_message} (model={event.model})"
        )
        self._event(
            session,
            name="api-error",
            input={"model": event.model, "attempt": event.attempt},
            output={"error": event.error_message, "statusCode": event.status_code},
            metadata=event.metadata,
            level=Level.ERROR.value,
        )

    def _generation(self, event: Generation, session: Session, agent: BaseAgent | None) -> None:
        tokens = event.tokens
        session.total_tokens += tokens.total
        session.total_cost += event.cost
        session.api_call_count += 1
        session.token_breakdown.add(tokens)
        Latencies.record(session.latencies.api, event.duration_ms)

        extracted = session.langfuse_config.extracted_prompt
        self._ensure_trace(event, session, agent, input={
            "prompt": extracted or UNCAPTURED_PROMPT,
            "promptSource": "metadata" if extracted else "unavailable",
            "length": len(extracted) if extracted else 0,
            "model": event.model,
            "firstApiCall": True,
        })

        if session.current_trace is not None:
            kind = model_type(event.model)
            end_time = datetime.now(timezone.utc)
            start_time = end_time - timedelta(milliseconds=max(event.duration_ms, 0))
            span = self._call(
                session,
                "generation",
                trace_id=session.current_trace.id,
                name=f"{kind}-{event.model}",
                start_time=start_time,
                end_time=end_time,
                model=event.model,
                input=event.input or f"[{kind} request]",
                output=event.output or f"[{kind} response]",
                usage={
                    "input": tokens.input,
                    "output": tokens.output + tokens.reasoning,
                    "total": tokens.total,
                    "unit": "TOKENS",
                },
                metadata={
                    "cost": event.cost,
                    "requestId": event.request_id,
                    "tokens": tokens.to_dict(),
                    "performance": {
                        "durationMs": event.duration_ms,
                        "tokensPerSecond": (
                            tokens.output / event.duration_ms * 1000 if event.duration_ms > 0 else 0
                        ),
                    },
                    "model": {
                        "name": event.model,
                        "type": kind,
                        "provider": event.metadata.get("provider")
                        or (agent.provider if agent else None),
                    },
                    **event.metadata,
                },
                level=(Level.DEFAULT if kind == "generation" else Level.DEBUG).value,
                status_message=f"{kind} completed",
            )
            if span is not None:
                session.current_span = span

        self.log.info(
            f"Generation for session {session.session_id}: model={event.model} "
            f"tokens={tokens.total} cost={event.cost} duration={event.duration_ms}ms"
        )

    def _tool_decision(
        self, event: ToolDecision, session: Session, agent: BaseAgent | None
    ) -> None:
        session.tool_decisions.append({
            "tool": event.tool_name,
            "callId": event.call_id,
            "decision": event.decision,
            "source": event.source,
            "timestamp": event.timestamp,
        })
        self._event(
            session,
            name="tool-decision",
            parent_observation_id=getattr(session.current_span, "id", None),
            input={"toolName": event.tool_name, "callId": event.call_id, "source": event.source},
            output={"decision": event.decision, "approved": event.is_approved},
            metadata=event.metadata,
            level=(Level.DEFAULT if event.is_approved else Level.WARNING).value,
        )

    def _tool_result(self, event: ToolResult, session: Session, agent: BaseAgent | None) -> None:
        session.tool_call_count += 1
        session.tool_sequence.append(ToolCall(
            name=event.tool_name,
            call_id=event.call_id,
            success=event.success,
            duration=event.duration_ms,
            timestamp=event.timestamp,
            arguments=event.arguments,
            error=event.error,
        ))
        Latencies.record(session.latencies.tool, event.duration_ms)

        finished = _parse_timestamp(event.timestamp)
        self._event(
            session,
            name=f"tool-{event.tool_name}",
            parent_observation_id=getattr(session.current_span, "id", None),
            start_time=finished - timedelta(milliseconds=max(event.duration_ms, 0)),
            input={
                "toolName": event.tool_name,
                "callId": event.call_id,
                "arguments": event.arguments,
            },
            output={
                "success": event.success,
                "durationMs": event.duration_ms,
                "output": event.output,
                "error": event.error,
            },
            metadata={
                "toolIndex": session.tool_call_count,
                "performance": {"durationMs": event.duration_ms},
                **event.metadata,
            },
            level=(Level.DEFAULT if event.success else Level.WARNING).value,
        )

    def _file_operation(
        self, event: FileOperation, session: Session, agent: BaseAgent | None
    ) -> None:
        if event.operation == "create":
            session.lines_added += event.lines
        self._event(
            session,
            name=f"file-{event.operation}",
            parent_observation_id=getattr(session.current_span, "id", None),
            input={"toolName": event.tool_name, "extension": event.extension},
            output={"lines": event.lines},
            metadata={
                "mimetype": event.mimetype,
                "programmingLanguage": event.programming_language,
                **event.metadata,
            },
            level=Level.DEFAULT.value,
        )

    def _agent_lifecycle(
        self, event: AgentLifecycle, session: Session, agent: BaseAgent | None
    ) -> None:
        finished = event.lifecycle is Lifecycle.FINISH
        failed = finished and event.termination_reason not in (None, "completed")
        self._event(
            session,
            name=f"agent-{event.lifecycle.value}",
            input={"agentName": event.agent_name},
            output={
                "durationMs": event.duration_ms,
                "turns": event.turns,
                "terminationReason": event.termination_reason,
            } if finished else None,
            metadata=event.metadata,
            level=(Level.WARNING if failed else Level.DEFAULT).value,
        )

"""Agent Client Protocol telemetry (``acp.*``, ``llm.*``, ``tool.*`` events).

ACP is protocol-level rather than vendor-level: any ACP-speaking agent
(Zed, custom agents) can emit these, so the provider tag stays generic.
W3C trace context carried in the JSON-RPC ``_meta`` block is kept as
metadata so traces can be joined downstream.
"""

from __future__ import annotations

import logging
from typing import Any

from agent_telemetry.agents.base import BaseAgent, EventContext
from agent_telemetry.agents.events import (
    AgentLifecycle,
    ApiError,
    ApiRequest,
    ConversationConfig,
    ConversationStart,
    Generation,
    Lifecycle,
    TokenUsage,
    ToolResult,
    UserPrompt,
)
from agent_telemetry.attributes import AttributeReader

logger = logging.getLogger(__name__)

COMPLETION_LIMIT = 2000
TOOL_OUTPUT_LIMIT = 500
DEFAULT_AGENT_NAME = "acp-agent"


def _not_false(reader: AttributeReader, key: str) -> bool:
    value = reader.raw(key)
    return value != "false" and value is not False


class ACPAgent(BaseAgent):
    """Agent Client Protocol agents."""

    name = "acp"
    event_prefix = "acp."
    alternate_prefixes = ("llm.", "tool.")
    provider = "acp"
    session_id_keys = ("acp.session_id", "session.id", "acp.request_id")
    handlers = {
        "initialize": "_initialize",
        "session.create": "_session_create",
        "session.resume": "_session_resume",
        "session.end": "_session_end",
        "message.handle": "_message_handle",
        "request": "_request",
        "response": "_response",
        "error": "_error",
        "llm.generate": "_llm_generate",
        "llm.completion": "_llm_generate",
        "llm.chat": "_llm_generate",
        "tool.call": "_tool_call",
        "tool.execute": "_tool_call",
    }

    def resolve_handler(self, event_name: str, suffix: str):
        # llm.* and tool.* events match on the full name only
        if not event_name.startswith(self.event_prefix):
            method = self.handlers.get(event_name)
            return getattr(self, method) if method else None
        return super().resolve_handler(event_name, suffix)

    def extra_metadata(self, reader: AttributeReader) -> dict[str, Any]:
        return {
            "acpSessionId": reader.string("acp.session_id"),
            "acpRequestId": reader.string("acp.request_id"),
            "agentName": reader.string("agent.name"),
            "clientName": reader.string("client.name"),
            "traceparent": reader.string("_meta.traceparent", "traceparent"),
            "tracestate": reader.string("_meta.tracestate", "tracestate"),
            "baggage": reader.string("_meta.baggage", "baggage"),
        }

    def _agent_name(self, ctx: EventContext) -> str:
        return ctx.reader.string("agent.name", default=DEFAULT_AGENT_NAME)

    def _initialize(self, ctx: EventContext) -> AgentLifecycle:
        r = ctx.reader
        agent_name = self._agent_name(ctx)
        logger.info(f"ACP agent {agent_name} initialized for session {ctx.session_id}")
        return AgentLifecycle(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                agentVersion=r.string("agent.version"),
                clientName=r.string("client.name"),
                protocolVersion=r.string("protocol.version", default="1.0"),
                eventType="initialize",
            ),
            agent_name=agent_name,
            lifecycle=Lifecycle.START,
        )

    def _session_create(self, ctx: EventContext) -> ConversationStart:
        r = ctx.reader
        return ConversationStart(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            user_id=r.string("user.id", default=ctx.session_user_id),
            config=ConversationConfig(
                provider=self.provider,
                model=r.string("model", default="unknown"),
                extra={
                    "acpSessionId": r.string("acp.session_id"),
                    "agentName": self._agent_name(ctx),
                    "capabilities": r.json("capabilities"),
                },
            ),
        )

    def _session_resume(self, ctx: EventContext) -> AgentLifecycle:
        return AgentLifecycle(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(eventType="resume"),
            agent_name=self._agent_name(ctx),
            lifecycle=Lifecycle.START,
        )

    def _session_end(self, ctx: EventContext) -> AgentLifecycle:
        r = ctx.reader
        return AgentLifecycle(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            agent_name=self._agent_name(ctx),
            lifecycle=Lifecycle.FINISH,
            duration_ms=r.integer("duration_ms"),
            termination_reason=r.string("termination_reason", default="completed"),
        )

    def _message_handle(self, ctx: EventContext) -> ApiRequest:
        r = ctx.reader
        success = _not_false(r, "success")
        return ApiRequest(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(method=r.string("method", default="unknown")),
            model=r.string("model", default="acp"),
            duration_ms=r.integer("duration_ms"),
            status_code=200 if success else r.integer("status_code", default=500),
            success=success,
            request_id=r.string("acp.request_id"),
        )

    def _request(self, ctx: EventContext) -> UserPrompt:
        r = ctx.reader
        params = r.json("params")
        prompt = r.string("prompt")
        if prompt is None and isinstance(params, dict):
            prompt = params.get("prompt") or params.get("message")
        prompt = prompt if isinstance(prompt, str) else ("" if prompt is None else str(prompt))
        return UserPrompt(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                method=r.string("method", default="unknown"),
                requestId=r.string("acp.request_id"),
            ),
            user_id=r.string("user.id", default=ctx.session_user_id),
            prompt=prompt,
            prompt_length=r.integer("prompt_length", default=len(prompt)),
        )

    def _response(self, ctx: EventContext) -> ApiRequest:
        r = ctx.reader
        return ApiRequest(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                method=r.string("method", default="unknown"),
                hasResult=bool(r.json("result")),
            ),
            model=r.string("model", default="acp"),
            duration_ms=r.integer("duration_ms"),
            status_code=200,
            success=True,
            request_id=r.string("acp.request_id"),
        )

    def _error(self, ctx: EventContext) -> ApiError:
        r = ctx.reader
        event = ApiError(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(method=r.string("method", default="unknown")),
            model=r.string("model", default="acp"),
            error_message=r.string("error_message", "error", default="Unknown error"),
            status_code=r.integer("error_code", "code"),
            duration_ms=r.integer("duration_ms"),
            request_id=r.string("acp.request_id"),
        )
        logger.warning(f"ACP error in session {ctx.session_id}: {event.error_message}")
        return event

    def _llm_generate(self, ctx: EventContext) -> Generation:
        r = ctx.reader
        return Generation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                finishReason=r.string("finish_reason", "llm.finish_reason"),
            ),
            model=r.string("model", "llm.model", default="unknown"),
            duration_ms=r.integer("duration_ms"),
            tokens=TokenUsage(
                input=r.integer("input_tokens", "llm.input_tokens", "gen_ai.usage.input_tokens"),
                output=r.integer(
                    "output_tokens", "llm.output_tokens", "gen_ai.usage.output_tokens"
                ),
                cached=r.integer("cached_tokens"),
                reasoning=r.integer("reasoning_tokens", "thinking_tokens"),
            ),
            cost=r.number("cost_usd", "cost"),
            input=r.string("prompt", "llm.prompt", "gen_ai.prompt"),
            output=r.text(
                "completion", "llm.completion", "gen_ai.completion", limit=COMPLETION_LIMIT
            ),
        )

    def _tool_call(self, ctx: EventContext) -> ToolResult:
        r = ctx.reader
        return ToolResult(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            tool_name=r.string("tool_name", "tool.name", "name", default="unknown"),
            success=_not_false(r, "success"),
            duration_ms=r.integer("duration_ms"),
            arguments=r.json("tool_args", "tool.args", "arguments"),
            output=r.text("output", limit=TOOL_OUTPUT_LIMIT),
            error=r.string("error"),
        )

"""Claude Code telemetry (``claude_code.*`` log events)."""

from __future__ import annotations

import logging
from typing import Any

from agent_telemetry.agents.base import BaseAgent, EventContext
from agent_telemetry.agents.events import (
    ApiError,
    Generation,
    TokenUsage,
    ToolDecision,
    ToolResult,
    UserPrompt,
)
from agent_telemetry.attributes import AttributeReader

logger = logging.getLogger(__name__)


class ClaudeAgent(BaseAgent):
    """Anthropic Claude Code CLI."""

    name = "claude-code"
    event_prefix = "claude_code."
    provider = "anthropic"
    session_id_keys = ("session.id", "claude.session.id")
    handlers = {
        "user_prompt": "_user_prompt",
        "api_request": "_api_request",
        "api_error": "_api_error",
        "tool_result": "_tool_result",
        "tool_decision": "_tool_decision",
    }

    def extra_metadata(self, reader: AttributeReader) -> dict[str, Any]:
        return {
            "organizationId": reader.string("organization.id"),
            "userAccountUuid": reader.string("user.account_uuid"),
            "userEmail": reader.string("user.email"),
        }

    def _user_prompt(self, ctx: EventContext) -> UserPrompt:
        r = ctx.reader
        prompt_length = r.integer("prompt_length", "prompt.length")
        logger.info(f"User prompt received for session {ctx.session_id} ({prompt_length} chars)")
        return UserPrompt(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            user_id=r.string("user.email", default=ctx.session_user_id),
            prompt=r.string("prompt", "user.prompt", default=""),
            prompt_length=prompt_length,
        )

    def _api_request(self, ctx: EventContext) -> Generation:
        r = ctx.reader
        cache_read = r.integer("cache_read_tokens", "cache.read_tokens")
        cache_creation = r.integer("cache_creation_tokens", "cache.creation_tokens")
        event = Generation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(cacheRead=cache_read, cacheCreation=cache_creation),
            model=r.string("model", "model.name", default="unknown"),
            duration_ms=r.integer("duration_ms", "duration"),
            tokens=TokenUsage(
                input=r.integer("input_tokens", "tokens.input"),
                output=r.integer("output_tokens", "tokens.output"),
                cached=cache_read + cache_creation,
            ),
            # cost is reported by Claude Code itself
            cost=r.number("cost_usd", "cost", "cost.usd"),
            request_id=r.string("request_id", "request.id"),
        )
        logger.info(
            f"API request for session {ctx.session_id}: model={event.model} "
            f"tokens={event.tokens.input + event.tokens.output} cost={event.cost}"
        )
        return event

    def _api_error(self, ctx: EventContext) -> ApiError:
        r = ctx.reader
        event = ApiError(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            model=r.string("model", default="unknown"),
            error_message=r.string("error_message", "error", "message", default="Unknown error"),
            status_code=r.integer("status_code", "status"),
            duration_ms=r.integer("duration_ms", "duration"),
            request_id=r.string("request_id", "request.id"),
        )
        logger.warning(
            f"API error for session {ctx.session_id}: {event.status_code} {event.error_message}"
        )
        return event

    def _tool_result(self, ctx: EventContext) -> ToolResult:
        r = ctx.reader
        return ToolResult(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            tool_name=r.string("tool_name", "tool", "name", default="unknown"),
            success=r.flag("success"),
            duration_ms=r.integer("duration_ms", "duration"),
            arguments=r.json("tool_parameters"),
            error=r.string("error"),
        )

    def _tool_decision(self, ctx: EventContext) -> ToolDecision:
        r = ctx.reader
        return ToolDecision(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            tool_name=r.string("tool_name", "tool", default="unknown"),
            decision=r.string("decision", default="unknown"),
            source=r.string("source", default="unknown"),
        )

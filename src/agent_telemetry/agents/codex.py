"""OpenAI Codex CLI telemetry (``codex.*`` log events).

Codex reports token counts on its SSE completion events but no cost, so
cost is derived from :mod:`agent_telemetry.pricing` unless the record
happens to carry one.
"""

from __future__ import annotations

import logging
from typing import Any

from agent_telemetry.agents.base import BaseAgent, EventContext
from agent_telemetry.agents.events import (
    ApiError,
    ApiRequest,
    ConversationConfig,
    ConversationStart,
    Generation,
    TokenUsage,
    ToolDecision,
    ToolResult,
    UserPrompt,
)
from agent_telemetry.attributes import AttributeReader, parse_float
from agent_telemetry.pricing import calculate_cost

logger = logging.getLogger(__name__)

TOOL_OUTPUT_LIMIT = 500


class CodexAgent(BaseAgent):
    """OpenAI Codex CLI."""

    name = "codex"
    event_prefix = "codex."
    provider = "openai"
    session_id_keys = ("conversation.id", "codex.conversation.id")
    handlers = {
        "conversation_starts": "_conversation_starts",
        "user_prompt": "_user_prompt",
        "api_request": "_api_request",
        "sse_event": "_sse_event",
        "tool_decision": "_tool_decision",
        "tool_result": "_tool_result",
    }

    def extra_metadata(self, reader: AttributeReader) -> dict[str, Any]:
        return {
            "conversationId": reader.string("conversation.id"),
            "userAccountId": reader.string("user.account_id"),
            "authMode": reader.string("auth_mode"),
            "environment": reader.string("env", default="dev"),
            "slug": reader.string("slug"),
        }

    def _model(self, ctx: EventContext, fallback: str) -> str:
        return ctx.reader.string("model", default=ctx.default_model or fallback)

    def _conversation_starts(self, ctx: EventContext) -> ConversationStart:
        r = ctx.reader
        config = ConversationConfig(
            provider=r.string("provider_name", default="openai"),
            model=r.string("model"),
            approval_policy=r.string("approval_policy", default="suggest"),
            sandbox_policy=r.string("sandbox_policy", default="none"),
            context_window=r.integer("context_window"),
            max_output_tokens=r.integer("max_output_tokens"),
            extra={
                "autoCompactTokenLimit": r.integer("auto_compact_token_limit"),
                "reasoningEffort": r.string("reasoning_effort"),
                "reasoningSummary": r.string("reasoning_summary"),
                "mcpServers": r.items("mcp_servers"),
                "activeProfile": r.string("active_profile"),
            },
        )
        logger.info(
            f"Codex conversation started for session {ctx.session_id} "
            f"(provider={config.provider}, model={config.model})"
        )
        return ConversationStart(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            user_id=r.string("user.account_id", default=ctx.session_user_id),
            config=config,
        )

    def _user_prompt(self, ctx: EventContext) -> UserPrompt:
        r = ctx.reader
        return UserPrompt(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            user_id=r.string("user.account_id", default=ctx.session_user_id),
            prompt=r.string("prompt", default=""),
            prompt_length=r.integer("prompt_length"),
        )

    def _api_request(self, ctx: EventContext) -> ApiRequest | ApiError:
        r = ctx.reader
        attempt = r.integer("attempt", default=1)
        duration_ms = r.integer("duration_ms")
        status_code = r.integer("http.response.status_code")
        error_message = r.string("error.message")
        model = self._model(ctx, "unknown")
        success = not error_message and 200 <= status_code < 300

        if error_message:
            return ApiError(
                session_id=ctx.session_id,
                timestamp=ctx.timestamp,
                metadata=ctx.metadata,
                model=model,
                error_message=error_message,
                status_code=status_code,
                duration_ms=duration_ms,
                attempt=attempt,
            )
        return ApiRequest(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            model=model,
            duration_ms=duration_ms,
            status_code=status_code,
            attempt=attempt,
            success=success,
        )

    def _sse_event(self, ctx: EventContext) -> Generation | ApiError:
        r = ctx.reader
        event_kind = r.string("event.kind", default="response")
        duration_ms = r.integer("duration_ms")
        error_message = r.string("error.message")
        model = self._model(ctx, "gpt-4o")
        metadata = ctx.with_metadata(eventKind=event_kind)

        if error_message:
            return ApiError(
                session_id=ctx.session_id,
                timestamp=ctx.timestamp,
                metadata=metadata,
                model=model,
                error_message=error_message,
                duration_ms=duration_ms,
            )

        tokens = TokenUsage(
            input=r.integer("input_token_count"),
            output=r.integer("output_token_count"),
            cached=r.integer("cached_token_count"),
            reasoning=r.integer("reasoning_token_count"),
            tool=r.integer("tool_token_count"),
        )
        reported = parse_float(r.first_set("cost_usd", "cost"), None)
        if reported is not None:
            cost = reported
        else:
            cost = calculate_cost(
                model, tokens.input, tokens.output, tokens.cached, tokens.reasoning
            )
        logger.debug(
            f"Codex {event_kind} for session {ctx.session_id}: "
            f"{tokens.total} tokens, ${cost:.6f}"
        )
        return Generation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=metadata,
            model=model,
            duration_ms=duration_ms,
            tokens=tokens,
            cost=cost,
        )

    def _tool_decision(self, ctx: EventContext) -> ToolDecision:
        r = ctx.reader
        return ToolDecision(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            tool_name=r.string("tool_name", default="unknown"),
            call_id=r.string("call_id"),
            decision=r.string("decision", default="unknown"),
            source=r.string("source", default="unknown"),
        )

    def _tool_result(self, ctx: EventContext) -> ToolResult:
        r = ctx.reader
        return ToolResult(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            tool_name=r.string("tool_name", default="unknown"),
            call_id=r.string("call_id"),
            success=r.flag("success"),
            duration_ms=r.integer("duration_ms"),
            arguments=r.raw("arguments"),
            output=r.text("output", limit=TOOL_OUTPUT_LIMIT),
        )

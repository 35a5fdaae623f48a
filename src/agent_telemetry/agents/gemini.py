"""Google Gemini CLI telemetry (``gemini_cli.*`` plus the OTEL gen_ai event)."""

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
    FileOperation,
    Generation,
    Lifecycle,
    TokenUsage,
    ToolResult,
    UserPrompt,
)
from agent_telemetry.attributes import AttributeReader

logger = logging.getLogger(__name__)

GEN_AI_DETAILS_EVENT = "gen_ai.client.inference.operation.details"

# Recognized but carry nothing the sink records.
INFORMATIONAL_EVENTS = frozenset({
    "slash_command",
    "model_routing",
    "chat_compression",
    "conversation_finished",
})


class GeminiAgent(BaseAgent):
    """Google Gemini CLI."""

    name = "gemini"
    event_prefix = "gemini_cli."
    provider = "google"
    session_id_keys = ("session.id", "installation.id", "gemini.session.id")
    handlers = {
        "config": "_config",
        "user_prompt": "_user_prompt",
        "api_request": "_api_request",
        "api_response": "_api_response",
        "api_error": "_api_error",
        "tool_call": "_tool_call",
        "file_operation": "_file_operation",
        "agent.start": "_agent_start",
        "agent.finish": "_agent_finish",
        GEN_AI_DETAILS_EVENT: "_gen_ai_details",
    }

    def can_handle(self, event_name: str | None) -> bool:
        return event_name == GEN_AI_DETAILS_EVENT or super().can_handle(event_name)

    def resolve_handler(self, event_name: str, suffix: str):
        handler = super().resolve_handler(event_name, suffix)
        if handler is None and suffix in INFORMATIONAL_EVENTS:
            logger.debug(f"gemini: informational event {event_name} not forwarded")
        return handler

    def extra_metadata(self, reader: AttributeReader) -> dict[str, Any]:
        return {
            "installationId": reader.string("installation.id"),
            "userEmail": reader.string("user.email"),
            "authType": reader.string("auth_type"),
            "promptId": reader.string("prompt_id"),
        }

    def _user_id(self, ctx: EventContext) -> str | None:
        return ctx.reader.string("user.email", default=ctx.session_user_id)

    def _model(self, ctx: EventContext, *keys: str) -> str:
        return ctx.reader.string("model", *keys, default=ctx.default_model or "unknown")

    def _config(self, ctx: EventContext) -> ConversationStart:
        r = ctx.reader
        sandbox_enabled = r.flag("sandbox_enabled")
        config = ConversationConfig(
            provider=self.provider,
            model=r.string("model"),
            approval_policy=r.string("approval_mode", default="suggest"),
            sandbox_policy="enabled" if sandbox_enabled else "disabled",
            extra={
                "mcpServers": r.items("mcp_servers"),
                "extensions": r.items("extensions"),
                "outputFormat": r.string("output_format", default="default"),
            },
        )
        logger.info(f"Gemini CLI session {ctx.session_id} configured (model={config.model})")
        return ConversationStart(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            user_id=self._user_id(ctx),
            config=config,
        )

    def _user_prompt(self, ctx: EventContext) -> UserPrompt:
        r = ctx.reader
        return UserPrompt(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            user_id=self._user_id(ctx),
            prompt=r.string("prompt", default=""),
            prompt_length=r.integer("prompt_length"),
        )

    def _api_request(self, ctx: EventContext) -> ApiRequest:
        r = ctx.reader
        return ApiRequest(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(requestText=r.string("request_text")),
            model=self._model(ctx),
            request_id=r.string("prompt_id"),
        )

    def _api_response(self, ctx: EventContext) -> Generation:
        r = ctx.reader
        tokens = TokenUsage(
            input=r.integer("input_token_count", "input_tokens"),
            output=r.integer("output_token_count", "output_tokens"),
            cached=r.integer("cached_content_token_count", "cached_tokens"),
            reasoning=r.integer("thoughts_token_count"),
            tool=r.integer("tool_token_count"),
        )
        return Generation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                statusCode=r.integer("status_code", default=200),
                finishReasons=r.raw("finish_reasons"),
                totalTokens=r.integer("total_token_count", default=tokens.total),
            ),
            model=self._model(ctx),
            duration_ms=r.integer("duration_ms"),
            tokens=tokens,
            cost=r.number("cost_usd", "cost"),
        )

    def _api_error(self, ctx: EventContext) -> ApiError:
        r = ctx.reader
        event = ApiError(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(errorType=r.string("error_type", default="unknown")),
            model=self._model(ctx),
            error_message=r.string("error", "error_message", default="Unknown error"),
            status_code=r.integer("status_code"),
            duration_ms=r.integer("duration_ms"),
        )
        logger.warning(f"Gemini API error for session {ctx.session_id}: {event.error_message}")
        return event

    def _tool_call(self, ctx: EventContext) -> ToolResult:
        # Gemini reports the call together with its outcome
        r = ctx.reader
        return ToolResult(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                decision=r.string("decision", default="auto_accept"),
                toolType=r.string("tool_type", default="native"),
                mcpServerName=r.string("mcp_server_name"),
                extensionName=r.string("extension_name"),
                contentLength=r.integer("content_length"),
            ),
            tool_name=r.string("function_name", "tool_name", default="unknown"),
            success=r.flag("success"),
            duration_ms=r.integer("duration_ms"),
            arguments=r.json("function_args"),
            error=r.string("error"),
        )

    def _file_operation(self, ctx: EventContext) -> FileOperation:
        r = ctx.reader
        return FileOperation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            tool_name=r.string("tool_name", default="file"),
            operation=r.string("operation", default="unknown"),
            lines=r.integer("lines"),
            mimetype=r.string("mimetype"),
            extension=r.string("extension"),
            programming_language=r.string("programming_language"),
        )

    def _agent_start(self, ctx: EventContext) -> AgentLifecycle:
        return AgentLifecycle(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            agent_name=ctx.reader.string("agent_name", default="default"),
            lifecycle=Lifecycle.START,
        )

    def _agent_finish(self, ctx: EventContext) -> AgentLifecycle:
        r = ctx.reader
        return AgentLifecycle(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            agent_name=r.string("agent_name", default="default"),
            lifecycle=Lifecycle.FINISH,
            duration_ms=r.integer("duration_ms", "duration"),
            turns=r.integer("turns"),
            termination_reason=r.string("termination_reason", default="completed"),
        )

    def _gen_ai_details(self, ctx: EventContext) -> Generation:
        r = ctx.reader
        return Generation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                temperature=r.number("temperature", "gen_ai.temperature"),
                finishReason=r.string("finish_reason", "gen_ai.finish_reason"),
                otelGenAi=True,
            ),
            model=self._model(ctx, "gen_ai.model"),
            tokens=TokenUsage(
                input=r.integer("input_token_count", "gen_ai.input_tokens"),
                output=r.integer("output_token_count", "gen_ai.output_tokens"),
            ),
        )

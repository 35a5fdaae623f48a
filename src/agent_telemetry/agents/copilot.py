"""GitHub Copilot CLI telemetry (``copilot_cli.*`` and ``copilot.*`` events).

Copilot CLI has no native OTLP output; these events come from a bridge
wrapper that runs the CLI and reports each invocation (``run``) and the
``/usage`` summary, optionally with Langfuse-compatible ``gen_ai.*``
attributes.
"""

from __future__ import annotations

import logging

from agent_telemetry.agents.base import BaseAgent, EventContext
from agent_telemetry.agents.events import (
    AgentLifecycle,
    ApiError,
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

TOOL_OUTPUT_LIMIT = 500


def _seconds_to_ms(seconds: float) -> int:
    return int(round(seconds * 1000))


class CopilotAgent(BaseAgent):
    """GitHub Copilot CLI (via bridge wrapper)."""

    name = "copilot"
    event_prefix = "copilot_cli."
    alternate_prefixes = ("copilot.",)
    provider = "github"
    session_id_keys = ("session.id", "copilot.session.id", "conversation.id")
    handlers = {
        "run": "_run",
        "user_prompt": "_user_prompt",
        "generation": "_generation",
        "api_error": "_api_error",
        "tool_call": "_tool_call",
        "usage": "_usage",
        "session.start": "_session_start",
        "session.end": "_session_end",
    }

    def _run(self, ctx: EventContext) -> Generation:
        r = ctx.reader
        exit_code = r.integer("exit_code")
        if r.first("duration_s") is not None:
            duration_ms = _seconds_to_ms(r.number("duration_s"))
        else:
            duration_ms = r.integer("duration_ms")
        if exit_code != 0:
            logger.warning(f"Copilot run in session {ctx.session_id} exited with {exit_code}")
        return Generation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                agent=r.string("agent"),
                exitCode=exit_code,
                success=exit_code == 0,
                stderr=r.string("stderr"),
                source="bridge-wrapper",
                langfuseTraceName=r.string("langfuse.trace.name"),
                langfuseObservationType=r.string("langfuse.observation.type"),
            ),
            model=r.string("model", default="copilot"),
            duration_ms=duration_ms,
            tokens=TokenUsage(
                input=r.integer("input_tokens", "gen_ai.usage.input_tokens"),
                output=r.integer("output_tokens", "gen_ai.usage.output_tokens"),
            ),
            cost=r.number("cost_usd", "cost"),
            input=r.string("prompt", "gen_ai.prompt"),
            output=r.string("output", "gen_ai.completion"),
        )

    def _user_prompt(self, ctx: EventContext) -> UserPrompt:
        r = ctx.reader
        prompt = r.string("prompt", "gen_ai.prompt", default="")
        return UserPrompt(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(agent=r.string("agent")),
            user_id=r.string("user.id", default=ctx.session_user_id),
            prompt=prompt,
            prompt_length=r.integer("prompt_length", default=len(prompt)),
        )

    def _generation(self, ctx: EventContext) -> Generation:
        r = ctx.reader
        return Generation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(finishReason=r.string("finish_reason")),
            model=r.string("model", default=ctx.default_model or "copilot"),
            duration_ms=r.integer("duration_ms"),
            tokens=TokenUsage(
                input=r.integer("input_tokens", "gen_ai.usage.input_tokens"),
                output=r.integer("output_tokens", "gen_ai.usage.output_tokens"),
                cached=r.integer("cached_tokens"),
            ),
            cost=r.number("cost_usd", "cost"),
            input=r.string("prompt", "gen_ai.prompt"),
            output=r.string("response_text", "gen_ai.completion", "completion"),
        )

    def _api_error(self, ctx: EventContext) -> ApiError:
        r = ctx.reader
        return ApiError(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(errorType=r.string("error_type", default="unknown")),
            model=r.string("model", default=ctx.default_model or "copilot"),
            error_message=r.string("error", "error_message", default="Unknown error"),
            status_code=r.integer("status_code"),
            duration_ms=r.integer("duration_ms"),
        )

    def _tool_call(self, ctx: EventContext) -> ToolResult:
        r = ctx.reader
        return ToolResult(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            tool_name=r.string("tool_name", "function_name", "name", default="unknown"),
            call_id=r.string("call_id"),
            success=r.flag("success"),
            duration_ms=r.integer("duration_ms"),
            arguments=r.json("tool_args", "function_args"),
            output=r.text("output", limit=TOOL_OUTPUT_LIMIT),
            error=r.string("error"),
        )

    def _usage(self, ctx: EventContext) -> Generation:
        """Session totals reported by the ``/usage`` command."""
        r = ctx.reader
        breakdown = r.json("token_breakdown", default={})
        if not isinstance(breakdown, dict):
            breakdown = {}
        breakdown_reader = AttributeReader(breakdown)
        return Generation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                premiumRequests=r.integer("premium_requests"),
                linesEdited=r.integer("lines_edited"),
                source="usage-command",
            ),
            model="copilot",
            duration_ms=_seconds_to_ms(r.number("session_duration_s")),
            tokens=TokenUsage(
                input=breakdown_reader.integer("input"),
                output=breakdown_reader.integer("output"),
                cached=breakdown_reader.integer("cached"),
            ),
            cost=r.number("cost_usd", "cost"),
        )

    def _session_start(self, ctx: EventContext) -> ConversationStart:
        r = ctx.reader
        return ConversationStart(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.metadata,
            user_id=r.string("user.id", default=ctx.session_user_id),
            config=ConversationConfig(
                provider=self.provider,
                model=r.string("model"),
                extra={"agent": r.string("agent")},
            ),
        )

    def _session_end(self, ctx: EventContext) -> AgentLifecycle:
        r = ctx.reader
        return AgentLifecycle(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(premiumRequests=r.integer("premium_requests")),
            agent_name=r.string("agent", default=self.name),
            lifecycle=Lifecycle.FINISH,
            duration_ms=r.integer("duration_ms"),
            turns=r.integer("turns"),
            termination_reason=r.string("termination_reason", default="completed"),
        )

"""JetBrains Junie CLI telemetry (``junie_cli.*`` log events)."""

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


class JunieAgent(BaseAgent):
    """JetBrains Junie CLI."""

    name = "junie"
    event_prefix = "junie_cli."
    provider = "jetbrains"
    session_id_keys = ("session.id", "junie.session.id", "task.id")
    handlers = {
        "config": "_config",
        "user_prompt": "_user_prompt",
        "api_request": "_api_request",
        "api_response": "_api_response",
        "api_error": "_api_error",
        "tool_call": "_tool_call",
        "file_operation": "_file_operation",
        "agent.start": "_task_start",
        "task.start": "_task_start",
        "agent.finish": "_task_finish",
        "task.finish": "_task_finish",
        "plan.start": "_workflow",
        "plan.finish": "_workflow",
        "review.start": "_workflow",
        "review.finish": "_workflow",
    }

    def extra_metadata(self, reader: AttributeReader) -> dict[str, Any]:
        return {
            "taskId": reader.string("task.id"),
            "projectId": reader.string("project.id"),
            "workspaceId": reader.string("workspace.id"),
            "ideVersion": reader.string("ide.version"),
            "junieVersion": reader.string("junie.version"),
        }

    def _user_id(self, ctx: EventContext) -> str | None:
        return ctx.reader.string("user.id", default=ctx.session_user_id)

    def _model(self, ctx: EventContext) -> str:
        return ctx.reader.string("model", default=ctx.default_model or "unknown")

    def _config(self, ctx: EventContext) -> ConversationStart:
        r = ctx.reader
        config = ConversationConfig(
            provider=self.provider,
            model=r.string("model"),
            approval_policy="auto" if r.flag("auto_approve") else "manual",
            sandbox_policy=r.string("sandbox_mode", default="disabled"),
            extra={
                "projectContext": r.flag("project_context"),
                "extensions": r.items("extensions"),
                "maxIterations": r.integer("max_iterations"),
            },
        )
        logger.info(f"Junie session {ctx.session_id} configured (model={config.model})")
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
            metadata=ctx.with_metadata(
                promptId=r.string("prompt_id"),
                taskDescription=r.string("task_description"),
            ),
            user_id=self._user_id(ctx),
            prompt=r.string("prompt", "task_description", default=""),
            prompt_length=r.integer("prompt_length"),
        )

    def _api_request(self, ctx: EventContext) -> ApiRequest:
        r = ctx.reader
        prompt_id = r.string("prompt_id")
        return ApiRequest(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                promptId=prompt_id,
                requestType=r.string("request_type", default="completion"),
            ),
            model=self._model(ctx),
            request_id=prompt_id,
        )

    def _api_response(self, ctx: EventContext) -> Generation:
        r = ctx.reader
        tokens = TokenUsage(
            input=r.integer("input_tokens", "input_token_count"),
            output=r.integer("output_tokens", "output_token_count"),
            cached=r.integer("cached_tokens", "cached_token_count"),
            reasoning=r.integer("reasoning_tokens", "thinking_tokens"),
        )
        return Generation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                statusCode=r.integer("status_code", default=200),
                totalTokens=r.integer("total_tokens", default=tokens.total),
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
        logger.warning(f"Junie API error for session {ctx.session_id}: {event.error_message}")
        return event

    def _tool_call(self, ctx: EventContext) -> ToolResult:
        r = ctx.reader
        return ToolResult(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                decision=r.string("decision", default="auto_accept"),
                toolType=r.string("tool_type", default="native"),
                pluginName=r.string("plugin_name"),
            ),
            tool_name=r.string("tool_name", "function_name", default="unknown"),
            success=r.flag("success"),
            duration_ms=r.integer("duration_ms"),
            arguments=r.json("tool_args", "function_args"),
            error=r.string("error"),
        )

    def _file_operation(self, ctx: EventContext) -> FileOperation:
        r = ctx.reader
        return FileOperation(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(filePath=r.string("file_path")),
            tool_name=r.string("tool_name", default="file"),
            operation=r.string("operation", default="unknown"),
            lines=r.integer("lines"),
            extension=r.string("extension"),
            programming_language=r.string("language", "programming_language"),
        )

    def _task_start(self, ctx: EventContext) -> AgentLifecycle:
        r = ctx.reader
        return AgentLifecycle(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(taskId=r.string("task_id")),
            agent_name=r.string("agent_name", "task_name", default="default"),
            lifecycle=Lifecycle.START,
        )

    def _task_finish(self, ctx: EventContext) -> AgentLifecycle:
        r = ctx.reader
        success = r.flag("success")
        return AgentLifecycle(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(taskId=r.string("task_id"), success=success),
            agent_name=r.string("agent_name", "task_name", default="default"),
            lifecycle=Lifecycle.FINISH,
            duration_ms=r.integer("duration_ms", "duration"),
            turns=r.integer("iterations", "turns"),
            termination_reason=r.string(
                "termination_reason", default="completed" if success else "failed"
            ),
        )

    def _workflow(self, ctx: EventContext) -> AgentLifecycle:
        """``plan.*`` / ``review.*`` phases inside a Junie task."""
        r = ctx.reader
        workflow, _, stage = ctx.suffix.partition(".")
        lifecycle = Lifecycle(stage)
        finished = lifecycle is Lifecycle.FINISH
        success = r.flag("success")
        return AgentLifecycle(
            session_id=ctx.session_id,
            timestamp=ctx.timestamp,
            metadata=ctx.with_metadata(
                workflowType=workflow,
                success=success if finished else None,
            ),
            agent_name=r.string("workflow_name", default=workflow),
            lifecycle=lifecycle,
            duration_ms=r.integer("duration_ms") if finished else 0,
            termination_reason=("completed" if success else "failed") if finished else None,
        )

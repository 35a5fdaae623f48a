"""Agent definitions for each supported coding CLI."""

from agent_telemetry.agents.acp import ACPAgent
from agent_telemetry.agents.base import BaseAgent, EventContext, event_name_of
from agent_telemetry.agents.claude import ClaudeAgent
from agent_telemetry.agents.codex import CodexAgent
from agent_telemetry.agents.copilot import CopilotAgent
from agent_telemetry.agents.events import (
    AgentLifecycle,
    ApiError,
    ApiRequest,
    ConversationConfig,
    ConversationStart,
    EventType,
    FileOperation,
    Generation,
    Lifecycle,
    NormalizedEvent,
    TokenUsage,
    ToolDecision,
    ToolResult,
    UserPrompt,
)
from agent_telemetry.agents.gemini import GeminiAgent
from agent_telemetry.agents.junie import JunieAgent
from agent_telemetry.agents.registry import DEFAULT_AGENTS, AgentRegistry, default_registry

__all__ = [
    "ACPAgent",
    "AgentLifecycle",
    "AgentRegistry",
    "ApiError",
    "ApiRequest",
    "BaseAgent",
    "ClaudeAgent",
    "CodexAgent",
    "ConversationConfig",
    "ConversationStart",
    "CopilotAgent",
    "DEFAULT_AGENTS",
    "EventContext",
    "EventType",
    "FileOperation",
    "GeminiAgent",
    "Generation",
    "JunieAgent",
    "Lifecycle",
    "NormalizedEvent",
    "TokenUsage",
    "ToolDecision",
    "ToolResult",
    "UserPrompt",
    "default_registry",
    "event_name_of",
]

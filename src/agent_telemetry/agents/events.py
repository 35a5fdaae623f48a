"""Normalized event model.

Every agent translates its own telemetry dialect into one of the
variants below. The Langfuse sink only ever sees these.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Union

_APPROVED_DECISIONS = frozenset({"approved", "approved_for_session", "accept"})


class EventType(Enum):
    """Normalized event variant."""
    CONVERSATION_START = "conversation_start"
    USER_PROMPT = "user_prompt"
    API_REQUEST = "api_request"
    API_ERROR = "api_error"
    GENERATION = "generation"
    TOOL_DECISION = "tool_decision"
    TOOL_RESULT = "tool_result"
    FILE_OPERATION = "file_operation"
    AGENT_LIFECYCLE = "agent_lifecycle"


class Lifecycle(Enum):
    START = "start"
    FINISH = "finish"


@dataclass
class _BaseEvent:
    session_id: str
    timestamp: str
    metadata: dict[str, Any] = field(default_factory=dict)

    type: EventType = field(init=False, default=EventType.GENERATION)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data


@dataclass
class ConversationConfig:
    """Conversation settings announced at conversation start."""
    provider: str = "unknown"
    model: str | None = None
    approval_policy: str | None = None
    sandbox_policy: str | None = None
    context_window: int | None = None
    max_output_tokens: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "provider": self.provider,
            "model": self.model,
            "approvalPolicy": self.approval_policy,
            "sandboxPolicy": self.sandbox_policy,
            "contextWindow": self.context_window,
            "maxOutputTokens": self.max_output_tokens,
        }
        data.update(self.extra)
        return data


@dataclass
class TokenUsage:
    """Token counts for one generation. ``total`` is always derived."""
    input: int = 0
    output: int = 0
    cached: int = 0
    reasoning: int = 0
    tool: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cached + self.reasoning + self.tool

    def to_dict(self) -> dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "cached": self.cached,
            "reasoning": self.reasoning,
            "tool": self.tool,
            "total": self.total,
        }


@dataclass
class ConversationStart(_BaseEvent):
    user_id: str | None = None
    config: ConversationConfig = field(default_factory=ConversationConfig)

    def __post_init__(self) -> None:
        self.type = EventType.CONVERSATION_START

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["config"] = self.config.to_dict()
        return data


@dataclass
class UserPrompt(_BaseEvent):
    user_id: str | None = None
    prompt: str | None = None
    prompt_length: int = 0

    def __post_init__(self) -> None:
        self.type = EventType.USER_PROMPT


@dataclass
class ApiRequest(_BaseEvent):
    model: str = "unknown"
    duration_ms: int = 0
    status_code: int | None = None
    attempt: int = 1
    success: bool = True
    request_id: str | None = None

    def __post_init__(self) -> None:
        self.type = EventType.API_REQUEST


@dataclass
class ApiError(_BaseEvent):
    model: str = "unknown"
    error_message: str = "Unknown error"
    status_code: int = 0
    duration_ms: int = 0
    attempt: int = 1
    request_id: str | None = None

    def __post_init__(self) -> None:
        self.type = EventType.API_ERROR


@dataclass
class Generation(_BaseEvent):
    model: str = "unknown"
    duration_ms: int = 0
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    input: Any = None
    output: Any = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        self.type = EventType.GENERATION

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["tokens"] = self.tokens.to_dict()
        return data


@dataclass
class ToolDecision(_BaseEvent):
    tool_name: str = "unknown"
    call_id: str | None = None
    decision: str | None = None
    source: str | None = None

    def __post_init__(self) -> None:
        self.type = EventType.TOOL_DECISION

    @property
    def is_approved(self) -> bool:
        return self.decision in _APPROVED_DECISIONS

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["is_approved"] = self.is_approved
        return data


@dataclass
class ToolResult(_BaseEvent):
    tool_name: str = "unknown"
    call_id: str | None = None
    success: bool = True
    duration_ms: int = 0
    arguments: Any = None
    output: Any = None
    error: str | None = None

    def __post_init__(self) -> None:
        self.type = EventType.TOOL_RESULT


@dataclass
class FileOperation(_BaseEvent):
    tool_name: str = "file"
    operation: str = "unknown"
    lines: int = 0
    mimetype: str | None = None
    extension: str | None = None
    programming_language: str | None = None

    def __post_init__(self) -> None:
        self.type = EventType.FILE_OPERATION


@dataclass
class AgentLifecycle(_BaseEvent):
    agent_name: str = "default"
    lifecycle: Lifecycle = Lifecycle.START
    duration_ms: int = 0
    turns: int = 0
    termination_reason: str | None = None

    def __post_init__(self) -> None:
        self.type = EventType.AGENT_LIFECYCLE


NormalizedEvent = Union[
    ConversationStart,
    UserPrompt,
    ApiRequest,
    ApiError,
    Generation,
    ToolDecision,
    ToolResult,
    FileOperation,
    AgentLifecycle,
]

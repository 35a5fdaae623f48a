"""Agent Telemetry: OTLP receiver for AI coding assistants.

agent-telemetry accepts the OpenTelemetry logs and metrics that AI coding
CLIs emit and turns them into Langfuse traces:

Core concepts
-------------
* **Agent**: one CLI's telemetry dialect (event-name prefix, session-id
  attributes, translation rules). Built-in agents cover Claude Code,
  Codex, Gemini CLI, Junie, GitHub Copilot and ACP-speaking tools, in
  ``agent_telemetry.agents``.

* **Normalized event**: the small closed set of event types every agent
  translates into (user prompt, generation, tool result, ...).

* **Session**: per-session aggregation of conversations, tokens, cost
  and tool calls, finalized into one ``session-summary`` trace with
  quality scores.

Quick start::

    from agent_telemetry import ReceiverConfig, TelemetryPipeline

    pipeline = TelemetryPipeline(ReceiverConfig(), client=langfuse)
    await pipeline.process_logs(otlp_json_payload)

or run the HTTP receiver with ``agent-telemetry serve``.
"""

from agent_telemetry.agents.registry import AgentRegistry, default_registry
from agent_telemetry.config import ConfigError, ReceiverConfig
from agent_telemetry.pipeline import TelemetryPipeline
from agent_telemetry.session import Session
from agent_telemetry.sink import LangfuseSink

__all__ = [
    "AgentRegistry",
    "ConfigError",
    "LangfuseSink",
    "ReceiverConfig",
    "Session",
    "TelemetryPipeline",
    "default_registry",
]

__version__ = "0.1.0"

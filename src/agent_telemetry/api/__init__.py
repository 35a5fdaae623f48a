"""HTTP surface of the receiver."""

from agent_telemetry.api.server import create_app

__all__ = ["create_app"]

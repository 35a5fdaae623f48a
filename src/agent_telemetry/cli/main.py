"""
agent-telemetry CLI: run and inspect the OTLP receiver.

Usage:
    agent-telemetry serve [--host HOST] [--port PORT] [--log-level LEVEL]
    agent-telemetry agents
    agent-telemetry check-config
    agent-telemetry version
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from agent_telemetry import __version__
from agent_telemetry.agents.registry import default_registry
from agent_telemetry.config import ConfigError, ReceiverConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _banner(config: ReceiverConfig) -> str:
    export = config.export
    export_line = (
        f"OTLP export: {export.endpoint or 'per-signal endpoints'} ({export.protocol})"
        if export.enabled else "OTLP export: disabled"
    )
    base = f"http://{config.host}:{config.port}"
    return "\n".join([
        f"agent-telemetry {__version__} listening on {base}",
        f"Health:   {base}/health",
        f"Langfuse: {config.langfuse.host}",
        export_line,
        "",
        "Point a CLI at it with:",
        "  export OTEL_LOGS_EXPORTER=otlp",
        "  export OTEL_METRICS_EXPORTER=otlp",
        "  export OTEL_EXPORTER_OTLP_PROTOCOL=http/json",
        f"  export OTEL_EXPORTER_OTLP_ENDPOINT={base}",
    ])


def _load_config() -> ReceiverConfig:
    try:
        return ReceiverConfig.from_env()
    except ConfigError as e:
        for problem in e.problems:
            print(f"config error: {problem}", file=sys.stderr)
        raise


def _serve(parsed: argparse.Namespace) -> int:
    import uvicorn

    from agent_telemetry.api.server import create_app
    from agent_telemetry.client import create_langfuse_client

    try:
        config = _load_config()
    except ConfigError:
        return 1

    overrides = {
        key: value for key, value in (
            ("host", parsed.host), ("port", parsed.port), ("log_level", parsed.log_level),
        ) if value is not None
    }
    if overrides:
        config = config.model_copy(update=overrides)

    problems = config.problems()
    if problems:
        for problem in problems:
            print(f"config error: {problem}", file=sys.stderr)
        return 1

    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)
    app = create_app(config, client=create_langfuse_client(config.langfuse))
    print(_banner(config))
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
    return 0


def cli(args: Optional[List[str]] = None) -> int:
    """Main CLI entry point. Returns exit code."""
    parser = argparse.ArgumentParser(
        prog="agent-telemetry",
        description="OTLP receiver forwarding AI coding assistant telemetry to Langfuse",
    )
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the OTLP receiver")
    serve_parser.add_argument("--host", help="Bind address (OTLP_RECEIVER_HOST)")
    serve_parser.add_argument("--port", type=int, help="Listen port (OTLP_RECEIVER_PORT)")
    serve_parser.add_argument("--log-level", help="Log level (LOG_LEVEL)")

    subparsers.add_parser("agents", help="List supported agents")
    subparsers.add_parser("check-config", help="Validate configuration from the environment")
    subparsers.add_parser("version", help="Show version")

    parsed = parser.parse_args(args)

    if parsed.command == "version":
        print(f"agent-telemetry {__version__}")
        return 0

    if parsed.command == "agents":
        print(json.dumps(default_registry().summary(), indent=2))
        return 0

    if parsed.command == "check-config":
        try:
            config = _load_config()
        except ConfigError:
            return 1
        problems = config.problems()
        if problems:
            for problem in problems:
                print(f"config error: {problem}", file=sys.stderr)
            return 1
        print(json.dumps(config.redacted(), indent=2))
        print("Configuration OK")
        return 0

    if parsed.command == "serve":
        return _serve(parsed)

    parser.print_help()
    return 1


def main() -> None:
    sys.exit(cli())


if __name__ == "__main__":
    main()

"""OTLP re-export to an OpenTelemetry Collector."""

from agent_telemetry.export.otlp import (
    CONTENT_TYPES,
    DEFAULT_PORTS,
    ExportProtocol,
    OTLPExporter,
    OTLPExportError,
    Signal,
    normalize_endpoint,
    parse_headers,
    retry_with_backoff,
)
from agent_telemetry.export.protobuf import SerializationError, serialize_logs, serialize_metrics

__all__ = [
    "CONTENT_TYPES",
    "DEFAULT_PORTS",
    "ExportProtocol",
    "OTLPExportError",
    "OTLPExporter",
    "SerializationError",
    "Signal",
    "normalize_endpoint",
    "parse_headers",
    "retry_with_backoff",
    "serialize_logs",
    "serialize_metrics",
]

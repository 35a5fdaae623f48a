"""OTLP JSON to protobuf serialization for http/protobuf and gRPC export."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from typing import Any

from google.protobuf import json_format
from opentelemetry.proto.collector.logs.v1.logs_service_pb2 import ExportLogsServiceRequest
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2 import (
    ExportMetricsServiceRequest,
)

# OTLP/JSON encodes these bytes fields as hex; protobuf JSON expects base64.
HEX_ID_FIELDS = frozenset({"traceId", "spanId", "parentSpanId"})


class SerializationError(ValueError):
    """Payload could not be converted to the OTLP protobuf schema."""


def _hex_to_base64(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        # already base64 (or garbage that the parser will reject)
        return value
    return base64.b64encode(raw).decode("ascii")


def to_protobuf_json(data: Any) -> Any:
    """Copy of ``data`` with OTLP hex ids rewritten for ``json_format``."""
    if isinstance(data, Mapping):
        return {
            key: _hex_to_base64(value) if key in HEX_ID_FIELDS else to_protobuf_json(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [to_protobuf_json(item) for item in data]
    return data


def _serialize(data: Mapping[str, Any], message: Any, kind: str) -> bytes:
    try:
        json_format.ParseDict(to_protobuf_json(data), message, ignore_unknown_fields=True)
    except (json_format.ParseError, binascii.Error, TypeError) as e:
        raise SerializationError(f"Invalid {kind} data: {e}") from e
    return message.SerializeToString()


def serialize_metrics(data: Mapping[str, Any]) -> bytes:
    """Encode an OTLP/JSON ``resourceMetrics`` payload as protobuf bytes."""
    return _serialize(data, ExportMetricsServiceRequest(), "metrics")


def serialize_logs(data: Mapping[str, Any]) -> bytes:
    """Encode an OTLP/JSON ``resourceLogs`` payload as protobuf bytes."""
    return _serialize(data, ExportLogsServiceRequest(), "logs")

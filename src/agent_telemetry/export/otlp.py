"""OTLP egress: forward received telemetry to an OpenTelemetry Collector.

Three transports are supported:

- ``http/json``: POST the OTLP/JSON payload unchanged.
- ``http/protobuf``: POST the payload re-encoded as OTLP protobuf.
- ``grpc``: unary call to the collector's ``Export`` method with the same
  protobuf bytes, over a channel cached per (endpoint, signal).

Export runs detached from ingestion. Failures are retried with
exponential backoff and then logged and dropped; they never reach the
caller of :meth:`OTLPExporter.export_metrics` / :meth:`export_logs`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import urlsplit

import grpc
import httpx

from agent_telemetry.export.protobuf import serialize_logs, serialize_metrics

if TYPE_CHECKING:
    from agent_telemetry.config import ExportSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BACKOFF_MS = 10_000


class ExportProtocol(str, Enum):
    """Wire protocol used to reach the collector."""
    HTTP_JSON = "http/json"
    HTTP_PROTOBUF = "http/protobuf"
    GRPC = "grpc"

    @classmethod
    def parse(cls, value: str | ExportProtocol) -> ExportProtocol:
        try:
            return cls(value)
        except ValueError:
            supported = ", ".join(p.value for p in cls)
            raise ValueError(f"Unsupported protocol: {value}. Supported: {supported}") from None


class Signal(str, Enum):
    METRICS = "metrics"
    LOGS = "logs"

    @property
    def path(self) -> str:
        return f"/v1/{self.value}"


DEFAULT_PORTS = {
    ExportProtocol.HTTP_JSON: 4318,
    ExportProtocol.HTTP_PROTOBUF: 4318,
    ExportProtocol.GRPC: 4317,
}

CONTENT_TYPES = {
    ExportProtocol.HTTP_JSON: "application/json",
    ExportProtocol.HTTP_PROTOBUF: "application/x-protobuf",
}

GRPC_METHODS = {
    Signal.METRICS: "/opentelemetry.proto.collector.metrics.v1.MetricsService/Export",
    Signal.LOGS: "/opentelemetry.proto.collector.logs.v1.LogsService/Export",
}


class OTLPExportError(RuntimeError):
    """A single export attempt failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def parse_headers(value: str | Mapping[str, str] | None) -> dict[str, str]:
    """Parse ``key1=value1,key2=value2``; values may themselves contain ``=``."""
    if not value:
        return {}
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items()}
    headers: dict[str, str] = {}
    for pair in value.split(","):
        key, sep, rest = pair.partition("=")
        if key.strip() and sep:
            headers[key.strip()] = rest.strip()
    return headers


def normalize_endpoint(
    endpoint: str | None,
    signal: Signal | str,
    protocol: ExportProtocol | str = ExportProtocol.HTTP_JSON,
    override: str | None = None,
) -> str | None:
    """Resolve the URL (or gRPC target) a signal is exported to.

    A per-signal ``override`` wins verbatim. Otherwise HTTP endpoints get
    ``/v1/<signal>`` appended unless already present, and gRPC endpoints
    are returned without a trailing slash and no path.
    """
    if override:
        return override
    if not endpoint:
        return None
    base = endpoint.rstrip("/")
    if ExportProtocol(protocol) is ExportProtocol.GRPC:
        return base
    path = Signal(signal).path
    return base if base.endswith(path) else f"{base}{path}"


def grpc_target(endpoint: str) -> tuple[str, bool]:
    """``host:port`` for a gRPC endpoint and whether it needs TLS."""
    url = urlsplit(endpoint if "://" in endpoint else f"http://{endpoint}")
    port = url.port or DEFAULT_PORTS[ExportProtocol.GRPC]
    return f"{url.hostname}:{port}", url.scheme == "https"


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1000,
    log: logging.Logger | None = None,
) -> T:
    """Await ``fn()`` up to ``max_retries`` times.

    The delay after the k-th failure is ``min(base_delay * 2**(k-1), 10000)``
    milliseconds. The last failure is re-raised.
    """
    log = log or logger
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt == attempts:
                raise
            delay = min(base_delay * 2 ** (attempt - 1), MAX_BACKOFF_MS)
            log.debug(f"Attempt {attempt}/{attempts} failed ({e}), retrying in {delay}ms")
            await asyncio.sleep(delay / 1000)
    raise AssertionError("unreachable")


class OTLPExporter:
    """Forwards OTLP payloads to a collector according to ``settings``.

    Args:
        settings: Export configuration. Nothing is sent unless
            ``settings.enabled`` is true.
        http_client: Client used for the HTTP transports. One is created
            (and closed by :meth:`aclose`) when omitted.
        log: Logger for export messages.
    """

    def __init__(
        self,
        settings: ExportSettings,
        http_client: httpx.AsyncClient | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.log = log or logger
        self.headers = parse_headers(settings.headers)
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._grpc_channels: dict[tuple[str, Signal], Any] = {}
        self._grpc_calls: dict[tuple[str, Signal], Any] = {}

    @property
    def is_enabled(self) -> bool:
        return bool(self.settings.enabled)

    @property
    def protocol(self) -> ExportProtocol:
        return ExportProtocol.parse(self.settings.protocol)

    @property
    def timeout(self) -> float:
        return self.settings.timeout_ms / 1000

    def endpoint_for(self, signal: Signal) -> str | None:
        override = (
            self.settings.metrics_endpoint if signal is Signal.METRICS
            else self.settings.logs_endpoint
        )
        return normalize_endpoint(self.settings.endpoint, signal, self.protocol, override)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def export_metrics(self, data: Mapping[str, Any] | bytes) -> bool:
        return await self._export(Signal.METRICS, data)

    async def export_logs(self, data: Mapping[str, Any] | bytes) -> bool:
        return await self._export(Signal.LOGS, data)

    async def aclose(self) -> None:
        """Close cached gRPC channels and the owned HTTP client."""
        for key, channel in list(self._grpc_channels.items()):
            try:
                await channel.close()
                self.log.debug(f"Closed gRPC channel {key[0]} ({key[1].value})")
            except Exception as e:
                self.log.warning(f"Error closing gRPC channel {key[0]}: {e}")
        self._grpc_channels.clear()
        self._grpc_calls.clear()
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _export(self, signal: Signal, data: Mapping[str, Any] | bytes) -> bool:
        if not self.is_enabled:
            return False
        protocol = self.protocol
        endpoint = self.endpoint_for(signal)
        if not endpoint:
            self.log.warning("OTLP export enabled but no endpoint configured")
            return False

        try:
            body = self._encode(signal, protocol, data)
            await retry_with_backoff(
                lambda: self._send(signal, protocol, endpoint, body),
                self.settings.retries,
                log=self.log,
            )
        except Exception as e:
            self.log.error(
                f"Failed to export {signal.value} to OTLP collector "
                f"(endpoint={endpoint}, protocol={protocol.value}): {e}"
            )
            return False

        self.log.info(f"Exported {signal.value} to OTLP collector {endpoint} ({protocol.value})")
        return True

    @staticmethod
    def _encode(
        signal: Signal, protocol: ExportProtocol, data: Mapping[str, Any] | bytes
    ) -> bytes:
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        if protocol is ExportProtocol.HTTP_JSON:
            return json.dumps(data).encode("utf-8")
        if signal is Signal.METRICS:
            return serialize_metrics(data)
        return serialize_logs(data)

    async def _send(
        self, signal: Signal, protocol: ExportProtocol, endpoint: str, body: bytes
    ) -> None:
        if protocol is ExportProtocol.GRPC:
            await self._send_grpc(signal, endpoint, body)
        else:
            await self._send_http(protocol, endpoint, body)

    async def _send_http(self, protocol: ExportProtocol, endpoint: str, body: bytes) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        headers = {"Content-Type": CONTENT_TYPES[protocol], **self.headers}
        try:
            response = await self._http_client.post(
                endpoint, content=body, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise OTLPExportError(f"OTLP export timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise OTLPExportError(f"OTLP export failed: {e}") from e

        if not response.is_success:
            raise OTLPExportError(
                f"OTLP export failed: {response.status_code} "
                f"{response.reason_phrase} - {response.text}",
                status_code=response.status_code,
            )
        self.log.debug(f"OTLP export to {endpoint} returned {response.status_code}")

    def _grpc_call(self, signal: Signal, endpoint: str) -> Any:
        key = (endpoint, signal)
        call = self._grpc_calls.get(key)
        if call is not None:
            return call

        target, secure = grpc_target(endpoint)
        if secure:
            channel = grpc.aio.secure_channel(target, grpc.ssl_channel_credentials())
        else:
            channel = grpc.aio.insecure_channel(target)
        # no serializers: request and response stay raw bytes
        call = channel.unary_unary(GRPC_METHODS[signal])
        self._grpc_channels[key] = channel
        self._grpc_calls[key] = call
        self.log.info(f"Created gRPC channel to {target} for {signal.value}")
        return call

    async def _send_grpc(self, signal: Signal, endpoint: str, body: bytes) -> None:
        call = self._grpc_call(signal, endpoint)
        metadata = tuple((k.lower(), v) for k, v in self.headers.items())
        try:
            await call(body, metadata=metadata or None, timeout=self.timeout)
        except grpc.aio.AioRpcError as e:
            raise OTLPExportError(
                f"gRPC export failed: {e.details()} (code: {e.code().name})"
            ) from e
        self.log.debug(f"gRPC export to {endpoint} ({signal.value}) succeeded")

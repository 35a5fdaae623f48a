"""FastAPI OTLP/HTTP receiver.

Accepts OTLP/JSON on the standard collector paths, so any CLI configured
with ``OTEL_EXPORTER_OTLP_ENDPOINT=http://127.0.0.1:4318`` and the
``http/json`` protocol can point straight at it.

Run with::

    agent-telemetry serve
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_telemetry import __version__
from agent_telemetry.api.models import ErrorResponse, ExportResponse, HealthResponse
from agent_telemetry.config import ReceiverConfig
from agent_telemetry.pipeline import TelemetryPipeline

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

# localhost / 127.0.0.1 on any port, http or https
LOCAL_ORIGIN_REGEX = r"https?://(localhost|127\.0\.0\.1)(:\d+)?"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


async def _cleanup_loop(pipeline: TelemetryPipeline, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            await pipeline.cleanup_sessions()
        except Exception as e:
            logger.error(f"Error during session cleanup: {e}")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    config: ReceiverConfig | None = None,
    client: Any | None = None,
    pipeline: TelemetryPipeline | None = None,
) -> FastAPI:
    """Create the receiver application.

    Args:
        config: Receiver configuration. Loaded from the environment when
            omitted.
        client: Langfuse client for a pipeline built here.
        pipeline: Pre-built pipeline; takes precedence over ``client``.
    """
    config = config or ReceiverConfig.from_env()
    pipeline = pipeline or TelemetryPipeline(config, client)

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        cleanup = asyncio.create_task(
            _cleanup_loop(pipeline, config.cleanup_interval_ms / 1000)
        )
        logger.info(f"OTLP receiver ready on http://{config.host}:{config.port}")
        try:
            yield
        finally:
            cleanup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup
            await pipeline.shutdown()

    application = FastAPI(
        title="Agent Telemetry Receiver",
        description="OTLP receiver forwarding AI coding assistant telemetry to Langfuse",
        version=__version__,
        lifespan=_lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origin_regex=LOCAL_ORIGIN_REGEX,
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    application.state.config = config
    application.state.pipeline = pipeline

    @application.middleware("http")
    async def count_requests(request: Request, call_next: Callable[[Request], Awaitable[Any]]) -> Any:
        pipeline.request_count += 1
        return await call_next(request)

    async def ingest(
        request: Request, process: Callable[[dict[str, Any]], Awaitable[Any]] | None
    ) -> JSONResponse:
        if config.api_key and request.headers.get("authorization") != f"Bearer {config.api_key}":
            return _error(401, "Unauthorized")

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > config.max_request_size:
            return _error(413, "Request entity too large")
        body = await request.body()
        if len(body) > config.max_request_size:
            return _error(413, "Request entity too large")

        try:
            payload = json.loads(body)
        except ValueError:
            logger.warning(f"Invalid JSON on {request.url.path} ({len(body)} bytes)")
            return _error(400, "Invalid JSON")

        if process is not None and isinstance(payload, dict):
            try:
                await process(payload)
            except Exception as e:
                pipeline.error_count += 1
                logger.error(f"Error handling {request.url.path}: {e}", exc_info=True)
                return _error(500, "Internal server error")
        return JSONResponse(content=ExportResponse().model_dump())

    # =====================================================================
    # OTLP ingestion
    # =====================================================================

    @application.post("/v1/logs", tags=["otlp"])
    async def receive_logs(request: Request) -> JSONResponse:
        """OTLP logs: the event stream every agent emits."""
        return await ingest(request, pipeline.process_logs)

    @application.post("/v1/metrics", tags=["otlp"])
    async def receive_metrics(request: Request) -> JSONResponse:
        return await ingest(request, pipeline.process_metrics)

    @application.post("/v1/traces", tags=["otlp"])
    async def receive_traces(request: Request) -> JSONResponse:
        """Accepted and validated, not processed: no agent emits spans yet."""
        return await ingest(request, None)

    # =====================================================================
    # Health
    # =====================================================================

    @application.get("/health", tags=["health"], response_model=HealthResponse)
    def health_check() -> dict[str, Any]:
        return pipeline.health()

    return application

"""Pydantic response models for the OTLP receiver HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ExportResponse(BaseModel):
    """OTLP/HTTP success body."""

    partialSuccess: dict[str, Any] = Field(default_factory=dict)  # noqa: N815


class ErrorResponse(BaseModel):
    error: str


class AgentSummary(BaseModel):
    provider: str
    eventPrefix: str  # noqa: N815


class AgentsSummary(BaseModel):
    count: int
    agents: dict[str, AgentSummary] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Receiver status returned by ``GET /health``."""

    status: str = "healthy"
    uptime: int = Field(..., ge=0, description="Milliseconds since start")
    sessions: int = 0
    requestCount: int = 0  # noqa: N815
    errorCount: int = 0  # noqa: N815
    langfuse: str = "disabled"
    agents: AgentsSummary

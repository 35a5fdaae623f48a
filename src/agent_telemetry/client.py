"""Langfuse client boundary.

The receiver talks to Langfuse through the v2 Python SDK's low-level
API (``trace`` / ``generation`` / ``event`` / ``score`` / ``flush``).
:class:`LangfuseClient` captures exactly that surface so tests can pass a
``MagicMock`` and production can pass ``langfuse.Langfuse``.

Langfuse only accepts string metadata values, so every payload goes
through :func:`normalize_metadata` first.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from agent_telemetry.config import LangfuseSettings

logger = logging.getLogger(__name__)

METADATA_VALUE_LIMIT = 200


class Level(str, Enum):
    """Langfuse observation severity."""
    DEBUG = "DEBUG"
    DEFAULT = "DEFAULT"
    WARNING = "WARNING"
    ERROR = "ERROR"


@runtime_checkable
class LangfuseClient(Protocol):
    """Protocol matching the Langfuse Python SDK (v2) client interface."""

    def trace(self, **kwargs: Any) -> Any: ...

    def generation(self, **kwargs: Any) -> Any: ...

    def event(self, **kwargs: Any) -> Any: ...

    def score(
        self,
        *,
        trace_id: str,
        name: str,
        value: float,
        comment: str | None = None,
        **kwargs: Any,
    ) -> Any: ...

    def flush(self) -> None: ...

    def shutdown(self) -> None: ...


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return json.dumps(value, default=str)
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def normalize_metadata(metadata: Mapping[str, Any] | None, prefix: str = "") -> dict[str, str]:
    """Flatten ``metadata`` into Langfuse-safe string values.

    Nested mappings become dot-joined keys, ``None`` values are dropped,
    scalars (and lists) are stringified and anything longer than 200
    characters is cut to 197 plus ``...``.

    >>> normalize_metadata({"a": {"b": 1}, "c": None})
    {'a.b': '1'}
    """
    if not isinstance(metadata, Mapping):
        return {}
    normalized: dict[str, str] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        full_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            normalized.update(normalize_metadata(value, full_key))
            continue
        text = _stringify(value)
        if len(text) > METADATA_VALUE_LIMIT:
            text = text[:METADATA_VALUE_LIMIT - 3] + "..."
        normalized[full_key] = text
    return normalized


def create_langfuse_client(settings: LangfuseSettings) -> Any:
    """Build a live ``langfuse.Langfuse`` client from settings."""
    from langfuse import Langfuse

    logger.info(f"Connecting to Langfuse at {settings.host}")
    return Langfuse(
        public_key=settings.public_key,
        secret_key=settings.secret_key,
        host=settings.host,
        flush_at=settings.flush_at,
        flush_interval=settings.flush_interval_ms / 1000,
    )

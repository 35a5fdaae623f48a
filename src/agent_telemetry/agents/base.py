"""Agent definition contract.

An agent is one coding CLI's telemetry dialect: an event-name namespace,
the attribute keys it uses for session correlation, and the rules that
turn its log records into normalized events.

Adding a CLI means subclassing :class:`BaseAgent`, filling in the class
attributes and ``handlers`` table, and appending the agent to
:func:`agent_telemetry.agents.registry.default_registry`::

    class MyAgent(BaseAgent):
        name = "my-agent"
        event_prefix = "my_agent."
        provider = "acme"
        session_id_keys = ("session.id",)
        handlers = {"user_prompt": "_user_prompt"}

        def _user_prompt(self, ctx):
            return UserPrompt(session_id=ctx.session_id, timestamp=ctx.timestamp,
                              metadata=ctx.metadata, prompt=ctx.reader.string("prompt"))
"""

from __future__ import annotations

import logging
from abc import ABC
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from agent_telemetry.attributes import AttributeReader, format_timestamp

if TYPE_CHECKING:
    from agent_telemetry.agents.events import NormalizedEvent
    from agent_telemetry.session import Session

logger = logging.getLogger(__name__)


def event_name_of(record: Mapping[str, Any]) -> str | None:
    """Event name carried in a log record body."""
    body = record.get("body")
    if isinstance(body, Mapping):
        name = body.get("stringValue")
        if isinstance(name, str) and name:
            return name
    return None


@dataclass
class EventContext:
    """Everything a translation handler needs for one log record."""
    event_name: str
    suffix: str
    record: Mapping[str, Any]
    reader: AttributeReader
    session: Session | None
    session_id: str
    timestamp: str
    metadata: dict[str, Any]

    @property
    def default_model(self) -> str | None:
        return self.session.default_model if self.session is not None else None

    @property
    def session_user_id(self) -> str | None:
        return self.session.user_id if self.session is not None else None

    def with_metadata(self, **extra: Any) -> dict[str, Any]:
        """Standard metadata plus ``extra`` (``None`` values skipped)."""
        merged = dict(self.metadata)
        merged.update({k: v for k, v in extra.items() if v is not None})
        return merged


class BaseAgent(ABC):
    """Base class for every supported coding CLI."""

    name: ClassVar[str] = ""
    event_prefix: ClassVar[str] = ""
    provider: ClassVar[str] = "unknown"
    alternate_prefixes: ClassVar[tuple[str, ...]] = ()
    session_id_keys: ClassVar[tuple[str, ...]] = ("session.id",)
    # event suffix (or full event name) -> handler method name
    handlers: ClassVar[dict[str, str]] = {}

    @property
    def prefixes(self) -> tuple[str, ...]:
        return (self.event_prefix, *self.alternate_prefixes)

    def can_handle(self, event_name: str | None) -> bool:
        if not event_name:
            return False
        return any(event_name.startswith(prefix) for prefix in self.prefixes if prefix)

    def extract_session_id(self, attrs: Mapping[str, Any] | None) -> str | None:
        """First present candidate key, in priority order."""
        reader = AttributeReader(attrs)
        value = reader.first_set(*self.session_id_keys)
        return None if value is None else str(value)

    def extra_metadata(self, reader: AttributeReader) -> dict[str, Any]:
        """Agent-specific identity fields added to every event."""
        return {}

    def standard_metadata(
        self, reader: AttributeReader, session: Session | None, session_id: str
    ) -> dict[str, Any]:
        service_version = session.service_version if session is not None else None
        metadata: dict[str, Any] = {
            "agent": self.name,
            "provider": self.provider,
            "sessionId": session_id,
            "appVersion": reader.string("app.version", default=service_version),
            "terminalType": reader.string("terminal.type"),
        }
        metadata.update(self.extra_metadata(reader))
        return {k: v for k, v in metadata.items() if v is not None}

    def event_suffix(self, event_name: str) -> str:
        for prefix in self.prefixes:
            if prefix and event_name.startswith(prefix):
                return event_name[len(prefix):]
        return event_name

    def resolve_handler(
        self, event_name: str, suffix: str
    ) -> Callable[[EventContext], NormalizedEvent | None] | None:
        method = self.handlers.get(suffix) or self.handlers.get(event_name)
        return getattr(self, method) if method else None

    def translate(
        self,
        record: Mapping[str, Any],
        attrs: Mapping[str, Any],
        session: Session | None = None,
    ) -> NormalizedEvent | None:
        """Translate one log record, or return ``None`` for unknown events."""
        event_name = event_name_of(record)
        if not event_name or not self.can_handle(event_name):
            return None

        suffix = self.event_suffix(event_name)
        handler = self.resolve_handler(event_name, suffix)
        if handler is None:
            logger.debug(f"{self.name}: ignoring unhandled event {event_name}")
            return None

        reader = AttributeReader(attrs)
        session_id = (
            session.session_id if session is not None
            else self.extract_session_id(attrs) or "unknown"
        )
        ctx = EventContext(
            event_name=event_name,
            suffix=suffix,
            record=record,
            reader=reader,
            session=session,
            session_id=session_id,
            timestamp=format_timestamp(record.get("timeUnixNano")),
            metadata=self.standard_metadata(reader, session, session_id),
        )
        return handler(ctx)

    def summary(self) -> dict[str, str]:
        return {"provider": self.provider, "eventPrefix": self.event_prefix}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

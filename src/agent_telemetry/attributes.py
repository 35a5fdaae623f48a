"""OTLP attribute extraction and typed attribute access.

OTLP JSON encodes attributes as an ordered list of ``{key, value}`` pairs
where ``value`` is a tagged union (``stringValue``, ``intValue``,
``doubleValue``, ``boolValue``, ``arrayValue``, ``kvlistValue``).
:func:`extract_attributes` flattens that into a plain dict of native
Python values. :class:`AttributeReader` then gives agents one place to
express each field's fallback chain and default.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")
_FLOAT_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def extract_attribute_value(value: Any) -> Any:
    """Resolve one OTLP ``AnyValue`` to a native value (``None`` if unknown)."""
    if not isinstance(value, Mapping):
        return None
    if "stringValue" in value:
        return value["stringValue"]
    if "intValue" in value:
        # int64 is carried as a JSON string
        return parse_int(value["intValue"], None)
    if "doubleValue" in value:
        return parse_float(value["doubleValue"], None)
    if "boolValue" in value:
        return bool(value["boolValue"])
    if "arrayValue" in value:
        items = _values(value["arrayValue"])
        return [extract_attribute_value(v) for v in items] if isinstance(items, list) else []
    if "kvlistValue" in value:
        return extract_attributes(_values(value["kvlistValue"]))
    return None


def _values(container: Any) -> Any:
    return container.get("values") if isinstance(container, Mapping) else None


def extract_attributes(attributes: Iterable[Any] | None) -> dict[str, Any]:
    """Convert an OTLP attribute list into a ``key -> value`` dict.

    Entries without a string key are dropped. Never raises.
    """
    result: dict[str, Any] = {}
    if not isinstance(attributes, (list, tuple)):
        return result
    for item in attributes:
        if not isinstance(item, Mapping):
            continue
        key = item.get("key")
        if not isinstance(key, str) or not key:
            continue
        result[key] = extract_attribute_value(item.get("value"))
    return result


def parse_int(value: Any, default: int | None = 0) -> int | None:
    """Lenient integer parsing: ``"42abc" -> 42``, ``"2.9" -> 2``."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return default
        return int(value)
    if isinstance(value, str):
        match = _INT_PREFIX.match(value)
        if match:
            return int(match.group(1))
    return default


def parse_float(value: Any, default: float | None = 0.0) -> float | None:
    """Lenient float parsing with a default on failure."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _FLOAT_PREFIX.match(value)
        if match:
            return float(match.group(1))
    return default


def parse_json_safe(value: Any) -> Any:
    """Parse stringified JSON, returning the raw value when it isn't JSON."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def truncate(value: Any, limit: int) -> Any:
    """Clip a string to ``limit`` characters; non-strings pass through."""
    if isinstance(value, str) and len(value) > limit:
        return value[:limit]
    return value


def split_list(value: Any, separator: str = ",") -> list[str]:
    """Split a comma list attribute, dropping blanks. Lists pass through."""
    if isinstance(value, list):
        return [str(v) for v in value if v not in (None, "")]
    if not isinstance(value, str) or not value:
        return []
    return [part.strip() for part in value.split(separator) if part.strip()]


def format_timestamp(time_unix_nano: Any = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision.

    Uses ``time_unix_nano`` when it parses to a representable time, the
    current time otherwise.
    """
    nanos = parse_int(time_unix_nano, None) if time_unix_nano not in (None, "", 0, "0") else None
    moment = None
    if nanos:
        try:
            moment = datetime.fromtimestamp(nanos / 1e9, tz=timezone.utc)
        except (OverflowError, ValueError, OSError):
            moment = None
    if moment is None:
        moment = datetime.now(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _is_present(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (int, float)):
        return value != 0
    return True


class AttributeReader:
    """Typed accessor over an attribute dict.

    Every getter takes an ordered list of candidate keys and returns the
    first *present* value (``None``, ``False``, ``""`` and ``0`` count as
    absent), coerced to the requested type, or the explicit default.

    Example::

        reader = AttributeReader(attrs)
        name = reader.string("tool_name", "function_name", "name", default="unknown")
        tokens = reader.integer("input_tokens", "tokens.input")
    """

    def __init__(self, attrs: Mapping[str, Any] | None) -> None:
        self._attrs: Mapping[str, Any] = attrs or {}

    @property
    def attrs(self) -> Mapping[str, Any]:
        return self._attrs

    def __contains__(self, key: str) -> bool:
        return key in self._attrs

    def raw(self, key: str) -> Any:
        """Value for exactly ``key``, present or not."""
        return self._attrs.get(key)

    def first(self, *keys: str, default: Any = None) -> Any:
        for key in keys:
            value = self._attrs.get(key)
            if _is_present(value):
                return value
        return default

    def first_set(self, *keys: str, default: Any = None) -> Any:
        """Like :meth:`first`, but ``0`` and ``False`` count as set."""
        for key in keys:
            value = self._attrs.get(key)
            if value is not None and value != "":
                return value
        return default

    def string(self, *keys: str, default: str | None = None) -> str | None:
        value = self.first(*keys)
        if value is None:
            return default
        return value if isinstance(value, str) else str(value)

    def integer(self, *keys: str, default: int = 0) -> int:
        value = self.first(*keys)
        parsed = parse_int(value, None) if value is not None else None
        return default if parsed is None else parsed

    def optional_integer(self, *keys: str) -> int | None:
        value = self.first(*keys)
        return parse_int(value, None) if value is not None else None

    def number(self, *keys: str, default: float = 0.0) -> float:
        value = self.first(*keys)
        parsed = parse_float(value, None) if value is not None else None
        return default if parsed is None else parsed

    def flag(self, key: str) -> bool:
        """True for boolean ``True`` or the string ``"true"``."""
        value = self._attrs.get(key)
        return value is True or value == "true"

    def json(self, *keys: str, default: Any = None) -> Any:
        value = self.first(*keys)
        if value is None:
            return default
        return parse_json_safe(value)

    def text(self, *keys: str, limit: int, default: str | None = None) -> str | None:
        value = self.string(*keys, default=default)
        return truncate(value, limit)

    def items(self, *keys: str) -> list[str]:
        return split_list(self.first(*keys))

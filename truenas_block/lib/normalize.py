"""
Normalization of value shapes returned by the TrueNAS API.

Size and identity fields arrive either as bare scalars (``1073741824``,
``"16K"``) or as property objects such as
``{"parsed": 1073741824, "rawvalue": "1073741824", "value": "1G"}``.
Everything is decoded here, once, at the API boundary.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ValueKind(str, Enum):
    """Shape of a decoded API value."""

    STRUCTURED = "structured"
    SCALAR = "scalar"
    ABSENT = "absent"


@dataclass(frozen=True)
class NormalizedValue:
    """Tagged representation of an API value."""

    kind: ValueKind
    parsed: Any = None
    raw: Optional[str] = None

    def as_int(self, default: int = 0) -> int:
        for candidate in (self.parsed, self.raw):
            number = _to_int(candidate)
            if number is not None:
                return number
        return default

    def as_str(self, default: str = "") -> str:
        if self.parsed is not None:
            return str(self.parsed)
        if self.raw is not None:
            return str(self.raw)
        return default


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        try:
            return int(float(text))
        except ValueError:
            return None


def decode_value(value: Any) -> NormalizedValue:
    """Decode a raw API value into a :class:`NormalizedValue`."""
    if value is None:
        return NormalizedValue(ValueKind.ABSENT)
    if isinstance(value, NormalizedValue):
        return value
    if isinstance(value, dict):
        raw = value.get("rawvalue", value.get("raw"))
        parsed = value.get("parsed")
        if parsed is None and raw is None and "value" in value:
            raw = value.get("value")
        return NormalizedValue(
            ValueKind.STRUCTURED,
            parsed=parsed,
            raw=str(raw) if raw is not None else None,
        )
    return NormalizedValue(ValueKind.SCALAR, parsed=value)


def normalize_value(value: Any) -> int:
    """Return the integer carried by any API value shape (0 when absent)."""
    return decode_value(value).as_int(0)


def normalize_str(value: Any, default: str = "") -> str:
    """Return the string carried by any API value shape."""
    return decode_value(value).as_str(default)


def decode_timestamp(value: Any) -> Optional[int]:
    """
    Decode a creation time property into epoch seconds.

    Handles ``{"$date": <ms>}`` objects, property objects whose ``parsed``
    field is such an object, and raw epoch values. Returns None when no
    timestamp can be found.
    """
    if value is None:
        return None
    if isinstance(value, dict):
        date = value.get("parsed") if isinstance(value.get("parsed"), dict) else value
        if "$date" in date:
            return int(date["$date"]) // 1000
    return normalize_value(value) or None

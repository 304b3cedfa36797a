"""Timestamp decoding for server payloads.

The backend and the document store send expiry times in several shapes.
Each shape is a tagged parse attempt; attempts run in order and the first
one that accepts the value wins. When none does, callers fall back to
``DEFAULT_EXPIRY_WINDOW`` from now, which is the product's redemption window.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_WINDOW = timedelta(minutes=15)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Get the current time in UTC."""
    return datetime.now(timezone.utc)


class TimestampFormat(str, Enum):
    """Recognised timestamp encodings."""

    DATETIME = "datetime"
    ISO_FRACTIONAL = "iso8601_fractional"
    ISO_PLAIN = "iso8601"
    EPOCH_SECONDS = "epoch_seconds"
    EPOCH_STRING = "epoch_string"
    STORE_TIMESTAMP = "store_timestamp"
    DEFAULT = "default"


@dataclass(frozen=True)
class ParsedTimestamp:
    """Decoded timestamp and the encoding it came from."""

    value: datetime
    source: TimestampFormat


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_datetime(raw: Any) -> datetime | None:
    return _as_utc(raw) if isinstance(raw, datetime) else None


def _from_iso(raw: Any, fractional: bool) -> datetime | None:
    if not isinstance(raw, str) or raw.strip()[4:5] != "-":
        return None
    if ("." in raw) != fractional:
        return None
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def _from_iso_fractional(raw: Any) -> datetime | None:
    return _from_iso(raw, fractional=True)


def _from_iso_plain(raw: Any) -> datetime | None:
    return _from_iso(raw, fractional=False)


def _from_epoch(seconds: float) -> datetime | None:
    try:
        return datetime.fromtimestamp(seconds, timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _from_epoch_seconds(raw: Any) -> datetime | None:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    return _from_epoch(float(raw))


def _from_epoch_string(raw: Any) -> datetime | None:
    if not isinstance(raw, str):
        return None
    try:
        seconds = float(raw.strip())
    except ValueError:
        return None
    return _from_epoch(seconds)


def _from_store_timestamp(raw: Any) -> datetime | None:
    # Serialized store timestamps: {"seconds": s, "nanoseconds": n} or "_seconds"
    if not isinstance(raw, dict):
        return None
    seconds = raw.get("seconds", raw.get("_seconds"))
    nanos = raw.get("nanoseconds", raw.get("_nanoseconds", 0)) or 0
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        return None
    return _from_epoch(float(seconds) + float(nanos) / 1e9)


PARSE_ATTEMPTS: tuple[tuple[TimestampFormat, Callable[[Any], datetime | None]], ...] = (
    (TimestampFormat.DATETIME, _from_datetime),
    (TimestampFormat.ISO_FRACTIONAL, _from_iso_fractional),
    (TimestampFormat.ISO_PLAIN, _from_iso_plain),
    (TimestampFormat.EPOCH_SECONDS, _from_epoch_seconds),
    (TimestampFormat.EPOCH_STRING, _from_epoch_string),
    (TimestampFormat.STORE_TIMESTAMP, _from_store_timestamp),
)


def parse_timestamp(raw: Any) -> ParsedTimestamp | None:
    """Try every known encoding in order.

    Args:
        raw: Value taken from a payload

    Returns:
        Parsed timestamp, or None if no encoding matched
    """
    if raw is None:
        return None

    for source, attempt in PARSE_ATTEMPTS:
        value = attempt(raw)
        if value is not None:
            return ParsedTimestamp(value=value, source=source)

    return None


def parse_expiry(raw: Any, now: datetime) -> ParsedTimestamp:
    """Parse an expiry, defaulting to the standard window from ``now``."""
    parsed = parse_timestamp(raw)
    if parsed is not None:
        return parsed

    logger.warning(f"Unrecognised expiry value {raw!r}, using default window")
    return ParsedTimestamp(
        value=_as_utc(now) + DEFAULT_EXPIRY_WINDOW, source=TimestampFormat.DEFAULT
    )

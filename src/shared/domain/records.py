"""Normalisation helpers for persisted JSON-like fields and timestamps.

Snapshots and audit events reach this service either as already-structured
data or as encoded text, depending on which writer produced them. Everything
passes through these functions once, at the storage boundary, so downstream
code only ever sees a dict (or None) and timezone-aware datetimes.
"""
import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


def parse_record(value: Any) -> Optional[Dict[str, Any]]:
    """Parse-or-passthrough a key/value payload. Never raises."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        if not value.strip():
            return None
        try:
            parsed = json.loads(value)
        except ValueError:
            logger.debug(f"Discarding unparsable record payload: {value[:80]!r}")
            return None
        return dict(parsed) if isinstance(parsed, dict) else None
    if isinstance(value, Mapping):
        return dict(value)
    return None


def dump_record(value: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Encode a record for text storage."""
    if value is None:
        return None
    return json.dumps(dict(value), default=str, sort_keys=True)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce an ISO string or datetime to an aware UTC datetime.

    Naive datetimes are taken to be UTC (SQLite drops the offset).
    Unparsable input yields None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Discarding unparsable timestamp {value!r}")
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return parse_timestamp(value).isoformat().replace("+00:00", "Z")


def round_half_up(value: float) -> int:
    # .5 rounds up, unlike round().
    return int(math.floor(value + 0.5))


def minutes_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Whole minutes from start to end, or None if either is missing or end < start."""
    if start is None or end is None:
        return None
    delta = (parse_timestamp(end) - parse_timestamp(start)).total_seconds()
    if delta < 0:
        return None
    return round_half_up(delta / 60)


EPOCH_MIN = datetime(1970, 1, 1, tzinfo=timezone.utc)

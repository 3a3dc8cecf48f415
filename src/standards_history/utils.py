"""Shared helpers: clock and timezone resolution."""

import logging
import time
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_ASSUMED_TIMEZONE = "UTC"


def wall_clock_ms() -> int:
    """Current instant in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def normalize_timezone_name(value: Any) -> str | None:
    """Normalize timezone preference and verify it's a valid IANA name."""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.upper() == "UTC":
        return "UTC"
    try:
        ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        return None
    return raw


def resolve_timezone_name(value: Any) -> str:
    """Return a usable IANA timezone, falling back to UTC for bad input."""
    normalized = normalize_timezone_name(value)
    if normalized:
        return normalized
    if value:
        logger.warning(
            "Unknown timezone %r; using %s for period boundaries",
            value,
            DEFAULT_ASSUMED_TIMEZONE,
        )
    return DEFAULT_ASSUMED_TIMEZONE

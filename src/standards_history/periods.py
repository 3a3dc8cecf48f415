"""Period window calculation for recurring standards.

A window is the half-open interval ``[start_ms, end_ms)`` of the cadence
period containing a reference instant. Boundaries are placed on local
wall-clock midnights in the standard's IANA timezone, so a window spanning a
DST change is 23 or 25 hours long per affected day. All inputs and outputs
are absolute epoch milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

from .models import (
    CADENCE_UNITS,
    DEFAULT_PERIOD_START_PREFERENCE,
    MAX_SUPPORTED_MS,
    MIN_SUPPORTED_MS,
    Cadence,
    PeriodStartPreference,
    PeriodStatus,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

DAY_KEY_FORMAT = "%Y-%m-%d"
MONTH_KEY_FORMAT = "%Y-%m"
DAY_LABEL_FORMAT = "%m/%d/%Y"
MONTH_LABEL_FORMAT = "%m/%Y"


@dataclass(frozen=True)
class PeriodWindow:
    start_ms: int
    end_ms: int
    label: str
    period_key: str

    def contains(self, instant_ms: int) -> bool:
        return self.start_ms <= instant_ms < self.end_ms


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // _ONE_MS


def from_epoch_ms(value_ms: int, tz: ZoneInfo | timezone = timezone.utc) -> datetime:
    return (_EPOCH + timedelta(milliseconds=value_ms)).astimezone(tz)


def _load_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Invalid timezone provided: {timezone_name!r}") from exc


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0, fold=0)


def _day_window(start: datetime, interval: int) -> PeriodWindow:
    end = start + timedelta(days=interval)
    inclusive_end = end - timedelta(days=1)
    if interval == 1:
        label = start.strftime(DAY_LABEL_FORMAT)
    else:
        label = f"{start.strftime(DAY_LABEL_FORMAT)} - {inclusive_end.strftime(DAY_LABEL_FORMAT)}"
    return PeriodWindow(
        start_ms=to_epoch_ms(start),
        end_ms=to_epoch_ms(end),
        label=label,
        period_key=start.strftime(DAY_KEY_FORMAT),
    )


def _week_window(start: datetime, interval: int) -> PeriodWindow:
    end = start + timedelta(weeks=interval)
    inclusive_end = end - timedelta(days=1)
    return PeriodWindow(
        start_ms=to_epoch_ms(start),
        end_ms=to_epoch_ms(end),
        label=f"{start.strftime(DAY_LABEL_FORMAT)} - {inclusive_end.strftime(DAY_LABEL_FORMAT)}",
        period_key=start.strftime(DAY_KEY_FORMAT),
    )


def _month_window(start: datetime, interval: int) -> PeriodWindow:
    end = start + relativedelta(months=interval)
    inclusive_end = end - timedelta(days=1)
    if interval == 1:
        label = start.strftime(MONTH_LABEL_FORMAT)
    else:
        label = f"{start.strftime(MONTH_LABEL_FORMAT)} - {inclusive_end.strftime(MONTH_LABEL_FORMAT)}"
    return PeriodWindow(
        start_ms=to_epoch_ms(start),
        end_ms=to_epoch_ms(end),
        label=label,
        period_key=start.strftime(MONTH_KEY_FORMAT),
    )


def calculate_period_window(
    reference_ms: int,
    cadence: Cadence,
    timezone_name: str,
    period_start_preference: PeriodStartPreference | None = None,
) -> PeriodWindow:
    """Return the window of ``cadence`` that contains ``reference_ms``.

    Weekly windows start on Monday unless the preference is ``weekDay``, in
    which case they start on the most recent ``week_start_day`` (ISO weekday,
    Monday = 1) at or before the reference. References outside the supported
    calendar range are clamped to its nearest edge.
    """
    if cadence.unit not in CADENCE_UNITS:
        raise ValueError(f"Unsupported cadence unit: {cadence.unit}")
    zone = _load_zone(timezone_name)
    preference = period_start_preference or DEFAULT_PERIOD_START_PREFERENCE

    reference_ms = min(max(int(reference_ms), MIN_SUPPORTED_MS), MAX_SUPPORTED_MS)
    zoned = from_epoch_ms(reference_ms, zone)
    day_start = _start_of_day(zoned)

    if cadence.unit == "day":
        return _day_window(day_start, cadence.interval)

    if cadence.unit == "week":
        if preference.mode == "weekDay" and preference.week_start_day is not None:
            offset = (day_start.isoweekday() - preference.week_start_day) % 7
        else:
            offset = day_start.weekday()
        return _week_window(day_start - timedelta(days=offset), cadence.interval)

    return _month_window(day_start.replace(day=1), cadence.interval)


def next_boundary_ms(
    reference_ms: int,
    cadence: Cadence,
    timezone_name: str,
    period_start_preference: PeriodStartPreference | None = None,
) -> int:
    """Instant at which the period containing ``reference_ms`` completes."""
    return calculate_period_window(
        reference_ms, cadence, timezone_name, period_start_preference
    ).end_ms


def derive_period_status(
    period_total: float,
    minimum: float,
    now_ms: int,
    period_end_ms: int,
) -> PeriodStatus:
    if period_total >= minimum:
        return "Met"
    if now_ms >= period_end_ms:
        return "Missed"
    return "In Progress"

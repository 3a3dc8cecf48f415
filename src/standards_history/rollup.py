"""Rollup computation: aggregate one period's logs against a standard."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from .models import ActivityLog, PeriodStatus, Standard, StandardSnapshot
from .periods import derive_period_status
from .summary import format_standard_summary


@dataclass(frozen=True)
class RollupFigures:
    total: float
    current_sessions: int
    target_sessions: int
    status: PeriodStatus
    progress_percent: float


def progress_percent(total: float, minimum: float) -> float:
    """Share of the minimum reached, capped at 100, two decimals.

    A zero or negative minimum cannot be under-shot and reports 100.
    """
    safe_minimum = max(minimum, 0)
    ratio = 1.0 if safe_minimum == 0 else min(total / safe_minimum, 1.0)
    if not math.isfinite(ratio):
        return 0.0
    return round(ratio * 100, 2)


def compute_rollup(
    logs: Iterable[ActivityLog],
    standard: Standard,
    window_end_ms: int,
    now_ms: int,
) -> RollupFigures:
    """Sum the live logs given for one window.

    The caller scopes ``logs`` to the window; soft-deleted entries are ignored
    here as well so a stale query result can never inflate a rollup.
    """
    live = [log for log in logs if log.is_live]
    total = sum(log.value for log in live)
    return RollupFigures(
        total=total,
        current_sessions=len(live),
        target_sessions=standard.session_config.sessions_per_cadence,
        status=derive_period_status(total, standard.minimum, now_ms, window_end_ms),
        progress_percent=progress_percent(total, standard.minimum),
    )


def build_standard_snapshot(standard: Standard) -> StandardSnapshot:
    summary = standard.summary or format_standard_summary(
        standard.minimum, standard.unit, standard.cadence, standard.session_config
    )
    return StandardSnapshot(
        minimum=standard.minimum,
        unit=standard.unit,
        cadence=standard.cadence.model_copy(),
        session_config=standard.session_config.model_copy(),
        summary=summary,
        period_start_preference=(
            standard.period_start_preference.model_copy()
            if standard.period_start_preference is not None
            else None
        ),
    )

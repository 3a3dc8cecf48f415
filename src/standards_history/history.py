"""Activity history documents: deterministic ids, merge writes, tolerant reads.

The document id ``{activityId}__{standardId}__{periodStartMs}`` is the only
deduplication mechanism. Writers never check for an existing document: the
upsert merges, and every write carries the full rollup shape.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .models import (
    ActivityHistoryDoc,
    ActivityLog,
    HistorySource,
    PeriodStatus,
    Standard,
    StandardSnapshot,
)
from .periods import PeriodWindow, calculate_period_window
from .retry import retry_with_backoff
from .rollup import RollupFigures, build_standard_snapshot, compute_rollup
from .store import HistoryStore
from .summary import format_standard_summary

logger = logging.getLogger(__name__)

# Legacy documents may lack periodEndMs; it is re-derived from the snapshot
# cadence in UTC only when nothing better is available.
_FALLBACK_TIMEZONE = "UTC"

# Bounds the backward walk of compute_standard_history.
MAX_HISTORY_PERIODS = 1000


def build_activity_history_doc_id(
    activity_id: str, standard_id: str, period_start_ms: int
) -> str:
    return f"{activity_id}__{standard_id}__{period_start_ms}"


async def read_period_logs(
    store: HistoryStore,
    user_id: str,
    standard_id: str,
    window: PeriodWindow,
    *,
    max_attempts: int = 3,
) -> list[ActivityLog]:
    """Live logs of ``standard_id`` with ``occurredAtMs`` in the window."""
    rows = await retry_with_backoff(
        lambda: store.query_logs(user_id, standard_id, window.start_ms, window.end_ms),
        max_attempts=max_attempts,
    )
    logs: list[ActivityLog] = []
    for row in rows:
        if row.get("deleted_at_ms") is not None or row.get("deletedAtMs") is not None:
            continue
        try:
            log = ActivityLog.model_validate(row)
        except ValidationError:
            logger.warning(
                "Skipping malformed activity log %s for standard %s",
                row.get("id", "?"),
                standard_id,
            )
            continue
        logs.append(log)
    return logs


def build_activity_history_doc(
    *,
    activity_id: str,
    standard_id: str,
    window: PeriodWindow,
    standard_snapshot: StandardSnapshot,
    rollup: RollupFigures,
    source: HistorySource,
    generated_at_ms: int,
) -> ActivityHistoryDoc:
    return ActivityHistoryDoc(
        id=build_activity_history_doc_id(activity_id, standard_id, window.start_ms),
        activity_id=activity_id,
        standard_id=standard_id,
        period_start_ms=window.start_ms,
        period_end_ms=window.end_ms,
        period_label=window.label,
        period_key=window.period_key,
        standard_snapshot=standard_snapshot,
        total=rollup.total,
        current_sessions=rollup.current_sessions,
        target_sessions=rollup.target_sessions,
        status=rollup.status,
        progress_percent=rollup.progress_percent,
        generated_at_ms=generated_at_ms,
        source=source,
    )


async def write_activity_history_period(
    store: HistoryStore,
    *,
    user_id: str,
    activity_id: str,
    standard_id: str,
    window: PeriodWindow,
    standard_snapshot: StandardSnapshot,
    rollup: RollupFigures,
    source: HistorySource,
    generated_at_ms: int,
    max_attempts: int = 3,
) -> ActivityHistoryDoc:
    doc = build_activity_history_doc(
        activity_id=activity_id,
        standard_id=standard_id,
        window=window,
        standard_snapshot=standard_snapshot,
        rollup=rollup,
        source=source,
        generated_at_ms=generated_at_ms,
    )
    document = doc.to_document()
    # periodStartPreference is optional in the snapshot but the merge must
    # not keep a stale one from an earlier write.
    document["standardSnapshot"].setdefault("periodStartPreference", None)
    await retry_with_backoff(
        lambda: store.upsert_history(user_id, doc.id, document),
        max_attempts=max_attempts,
    )
    logger.debug(
        "Wrote activity history %s (total=%s, status=%s, source=%s)",
        doc.id,
        doc.total,
        doc.status,
        source,
    )
    return doc


def parse_activity_history_doc(
    doc_id: str, data: dict[str, Any] | None
) -> ActivityHistoryDoc | None:
    """Validate a stored document; ``None`` when required fields are missing."""
    if not isinstance(data, dict):
        return None

    payload = {**data, "id": doc_id}
    if "periodStartMs" not in payload and isinstance(
        payload.get("referenceTimestampMs"), (int, float)
    ):
        payload["periodStartMs"] = int(payload["referenceTimestampMs"])

    if "periodEndMs" not in payload:
        payload.update(_rederive_period_fields(payload))

    try:
        return ActivityHistoryDoc.model_validate(payload)
    except ValidationError as exc:
        logger.warning(
            "Ignoring malformed activity history document %s (%d validation errors)",
            doc_id,
            exc.error_count(),
        )
        return None


def _rederive_period_fields(payload: dict[str, Any]) -> dict[str, Any]:
    start_ms = payload.get("periodStartMs")
    snapshot = payload.get("standardSnapshot")
    if not isinstance(start_ms, (int, float)) or not isinstance(snapshot, dict):
        return {}
    try:
        parsed = StandardSnapshot.model_validate(snapshot)
    except ValidationError:
        return {}
    window = calculate_period_window(
        int(start_ms),
        parsed.cadence,
        _FALLBACK_TIMEZONE,
        parsed.period_start_preference,
    )
    if window.start_ms != int(start_ms):
        return {}
    return {
        "periodEndMs": window.end_ms,
        "periodLabel": payload.get("periodLabel", window.label),
        "periodKey": payload.get("periodKey", window.period_key),
    }


async def get_latest_history_for_standard(
    store: HistoryStore,
    user_id: str,
    standard_id: str,
    *,
    max_attempts: int = 3,
) -> ActivityHistoryDoc | None:
    if not user_id:
        raise ValueError("user_id is required")
    if not standard_id:
        raise ValueError("standard_id is required")

    result = await retry_with_backoff(
        lambda: store.get_latest_history(user_id, standard_id),
        max_attempts=max_attempts,
    )
    if result is None:
        return None
    doc_id, data = result
    return parse_activity_history_doc(doc_id, data)


async def list_history_for_activity(
    store: HistoryStore,
    user_id: str,
    activity_id: str,
    *,
    max_attempts: int = 3,
) -> list[ActivityHistoryDoc]:
    """All valid history documents of an activity, newest period first."""
    rows = await retry_with_backoff(
        lambda: store.list_history_for_activity(user_id, activity_id),
        max_attempts=max_attempts,
    )
    docs = [parse_activity_history_doc(doc_id, data) for doc_id, data in rows]
    return [doc for doc in docs if doc is not None]


@dataclass(frozen=True)
class HistoryRow:
    """One period of an activity's history as shown to the user."""

    standard_id: str
    period_start_ms: int
    period_end_ms: int
    period_label: str
    period_key: str
    standard_snapshot: StandardSnapshot
    total: float
    current_sessions: int
    target_sessions: int
    status: PeriodStatus
    progress_percent: float
    is_current_period: bool


@dataclass(frozen=True)
class PeriodHistoryEntry:
    period_label: str
    total: float
    target: float
    target_summary: str
    status: PeriodStatus
    progress_percent: float
    period_start_ms: int
    period_end_ms: int
    current_sessions: int
    target_sessions: int


def _row_key(standard_id: str, period_start_ms: int) -> str:
    return f"{standard_id}__{period_start_ms}"


def compute_synthetic_current_rows(
    standards: Iterable[Standard],
    activity_id: str,
    logs: Iterable[ActivityLog],
    timezone_name: str,
    now_ms: int,
) -> list[HistoryRow]:
    """Rows for the still-open period of every active standard of the activity.

    Open periods are never persisted, so these are computed on read from the
    logs that occurred between the window start and ``now_ms``.
    """
    logs = [log for log in logs if log.is_live]
    rows: list[HistoryRow] = []
    for standard in standards:
        if standard.activity_id != activity_id or not standard.is_active:
            continue
        window = calculate_period_window(
            now_ms, standard.cadence, timezone_name, standard.period_start_preference
        )
        period_logs = [
            log
            for log in logs
            if log.standard_id == standard.id
            and window.start_ms <= log.occurred_at_ms < now_ms
        ]
        rollup = compute_rollup(period_logs, standard, window.end_ms, now_ms)
        rows.append(
            HistoryRow(
                standard_id=standard.id,
                period_start_ms=window.start_ms,
                period_end_ms=window.end_ms,
                period_label=window.label,
                period_key=window.period_key,
                standard_snapshot=build_standard_snapshot(standard),
                total=rollup.total,
                current_sessions=rollup.current_sessions,
                target_sessions=rollup.target_sessions,
                status=rollup.status,
                progress_percent=rollup.progress_percent,
                is_current_period=True,
            )
        )
    return rows


def recalculate_historical_boundaries(
    doc: ActivityHistoryDoc, timezone_name: str
) -> PeriodWindow:
    """Window of a stored rollup, recomputed in the viewer's timezone."""
    snapshot = doc.standard_snapshot
    return calculate_period_window(
        doc.period_start_ms,
        snapshot.cadence,
        timezone_name,
        snapshot.period_start_preference,
    )


def merge_activity_history_rows(
    persisted: Iterable[ActivityHistoryDoc],
    synthetic: Iterable[HistoryRow],
    timezone_name: str,
) -> list[HistoryRow]:
    """Synthetic rows win over persisted rows of the same period; newest first."""
    seen: set[str] = set()
    merged: list[HistoryRow] = []
    for row in synthetic:
        key = _row_key(row.standard_id, row.period_start_ms)
        if key in seen:
            continue
        seen.add(key)
        merged.append(row)

    for doc in persisted:
        window = recalculate_historical_boundaries(doc, timezone_name)
        key = _row_key(doc.standard_id, window.start_ms)
        if key in seen:
            continue
        seen.add(key)
        merged.append(
            HistoryRow(
                standard_id=doc.standard_id,
                period_start_ms=window.start_ms,
                period_end_ms=window.end_ms,
                period_label=window.label,
                period_key=window.period_key or f"{doc.standard_id}_{window.start_ms}",
                standard_snapshot=doc.standard_snapshot,
                total=doc.total,
                current_sessions=doc.current_sessions,
                target_sessions=doc.target_sessions,
                status=doc.status,
                progress_percent=doc.progress_percent,
                is_current_period=False,
            )
        )

    merged.sort(key=lambda row: row.period_end_ms, reverse=True)
    return merged


async def load_activity_history(
    store: HistoryStore,
    user_id: str,
    activity_id: str,
    standards: Iterable[Standard],
    timezone_name: str,
    now_ms: int,
    *,
    max_attempts: int = 3,
) -> list[HistoryRow]:
    standards = [
        standard
        for standard in standards
        if standard.activity_id == activity_id and standard.is_active
    ]
    persisted = await list_history_for_activity(
        store, user_id, activity_id, max_attempts=max_attempts
    )
    logs: list[ActivityLog] = []
    for standard in standards:
        window = calculate_period_window(
            now_ms, standard.cadence, timezone_name, standard.period_start_preference
        )
        logs.extend(
            await read_period_logs(
                store, user_id, standard.id, window, max_attempts=max_attempts
            )
        )
    synthetic = compute_synthetic_current_rows(
        standards, activity_id, logs, timezone_name, now_ms
    )
    return merge_activity_history_rows(persisted, synthetic, timezone_name)


def compute_standard_history(
    standard: Standard,
    logs: Iterable[ActivityLog],
    timezone_name: str,
    now_ms: int,
) -> list[PeriodHistoryEntry]:
    """Walk back from ``now_ms`` and summarize every period that has logs.

    The walk stops at the period holding the earliest log, or after
    ``MAX_HISTORY_PERIODS`` windows.
    """
    own = [log for log in logs if log.standard_id == standard.id and log.is_live]
    if not own:
        return []

    earliest_ms = min(log.occurred_at_ms for log in own)
    target_summary = format_standard_summary(
        standard.minimum, standard.unit, standard.cadence, standard.session_config
    )
    entries: list[PeriodHistoryEntry] = []
    seen_keys: set[str] = set()
    reference_ms = now_ms
    for _ in range(MAX_HISTORY_PERIODS):
        window = calculate_period_window(
            reference_ms,
            standard.cadence,
            timezone_name,
            standard.period_start_preference,
        )
        if window.end_ms <= earliest_ms or window.period_key in seen_keys:
            break
        seen_keys.add(window.period_key)

        period_logs = [log for log in own if window.contains(log.occurred_at_ms)]
        if period_logs:
            rollup = compute_rollup(period_logs, standard, window.end_ms, now_ms)
            entries.append(
                PeriodHistoryEntry(
                    period_label=window.label,
                    total=rollup.total,
                    target=max(standard.minimum, 0),
                    target_summary=target_summary,
                    status=rollup.status,
                    progress_percent=rollup.progress_percent,
                    period_start_ms=window.start_ms,
                    period_end_ms=window.end_ms,
                    current_sessions=rollup.current_sessions,
                    target_sessions=rollup.target_sessions,
                )
            )
        reference_ms = window.start_ms - 1
    return entries

"""Targeted single-period recompute after a log mutation.

Unlike catch-up this touches exactly one window: the one containing the
mutated log's occurrence. Elapsed windows are always rewritten, overwriting
any rollup catch-up wrote; both writers derive the same figures from the same
logs, so the last write wins. Open windows are rewritten only when a rollup
for them already exists.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .errors import (
    NotAuthenticatedError,
    StandardArchivedError,
    StandardNotFoundError,
)
from .events import LogMutationBus, Unsubscribe
from .history import (
    build_activity_history_doc_id,
    read_period_logs,
    write_activity_history_period,
)
from .metrics import record_recompute, record_rollup_written
from .models import ActivityHistoryDoc, ActivityLogMutation, HistorySource, Standard
from .periods import calculate_period_window
from .retry import retry_with_backoff
from .rollup import build_standard_snapshot, compute_rollup
from .store import HistoryStore
from .utils import wall_clock_ms

logger = logging.getLogger(__name__)


async def recompute_activity_history_period(
    store: HistoryStore,
    *,
    user_id: str,
    standard: Standard,
    occurred_at_ms: int,
    timezone_name: str,
    now_ms: int,
    source: HistorySource = "log-edit",
    max_attempts: int = 3,
) -> ActivityHistoryDoc | None:
    """Rewrite the rollup of the window containing ``occurred_at_ms``.

    Open windows only get a rollup from catch-up once they elapse, so a
    mutation inside an open window without a stored rollup writes nothing and
    returns ``None``.
    """
    if not user_id:
        raise NotAuthenticatedError()

    window = calculate_period_window(
        occurred_at_ms,
        standard.cadence,
        timezone_name,
        standard.period_start_preference,
    )
    if window.end_ms > now_ms:
        doc_id = build_activity_history_doc_id(
            standard.activity_id, standard.id, window.start_ms
        )
        existing = await retry_with_backoff(
            lambda: store.get_history(user_id, doc_id),
            max_attempts=max_attempts,
        )
        if existing is None:
            logger.debug(
                "Period %s of standard=%s is still open; no rollup to recompute",
                window.label,
                standard.id,
            )
            return None

    logs = await read_period_logs(
        store, user_id, standard.id, window, max_attempts=max_attempts
    )
    rollup = compute_rollup(logs, standard, window.end_ms, now_ms)
    doc = await write_activity_history_period(
        store,
        user_id=user_id,
        activity_id=standard.activity_id,
        standard_id=standard.id,
        window=window,
        standard_snapshot=build_standard_snapshot(standard),
        rollup=rollup,
        source=source,
        generated_at_ms=now_ms,
        max_attempts=max_attempts,
    )
    record_recompute()
    record_rollup_written(source)
    logger.info(
        "Recomputed activity history %s for standard=%s (total=%s, sessions=%d, status=%s)",
        window.label,
        standard.id,
        rollup.total,
        rollup.current_sessions,
        rollup.status,
    )
    return doc


class MutationRecomputeListener:
    """Recomputes the affected period whenever a log is mutated."""

    def __init__(
        self,
        store: HistoryStore,
        bus: LogMutationBus,
        current_user_id: Callable[[], str | None],
        timezone_name: str,
        clock: Callable[[], int] = wall_clock_ms,
        max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.bus = bus
        self.current_user_id = current_user_id
        self.timezone_name = timezone_name
        self.clock = clock
        self.max_attempts = max_attempts
        self._unsubscribe: Unsubscribe | None = None

    @property
    def attached(self) -> bool:
        return self._unsubscribe is not None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(self.handle_mutation)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def handle_mutation(
        self, mutation: ActivityLogMutation
    ) -> ActivityHistoryDoc | None:
        user_id = self.current_user_id()
        if not user_id:
            raise NotAuthenticatedError()

        raw = await retry_with_backoff(
            lambda: self.store.get_standard(user_id, mutation.standard_id),
            max_attempts=self.max_attempts,
        )
        if raw is None:
            raise StandardNotFoundError(mutation.standard_id)
        standard = Standard.model_validate(raw)
        if not standard.is_active:
            raise StandardArchivedError(standard.id)

        logger.debug(
            "Log mutation %s (log=%s) → recomputing standard=%s at %d",
            mutation.type,
            mutation.log_entry_id or "?",
            standard.id,
            mutation.occurred_at_ms,
        )
        return await recompute_activity_history_period(
            self.store,
            user_id=user_id,
            standard=standard,
            occurred_at_ms=mutation.occurred_at_ms,
            timezone_name=self.timezone_name,
            now_ms=self.clock(),
            max_attempts=self.max_attempts,
        )

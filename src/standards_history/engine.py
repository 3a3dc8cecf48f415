"""Catch-up scheduler for activity history.

One ``ActivityHistoryEngine`` is owned by each signed-in user session. It
walks every active standard forward from its latest rollup through all fully
elapsed periods, writes one rollup per period, and arms a single timer for
the earliest upcoming period boundary across all standards.

Runs are guarded by a plain flag: the engine lives on one event loop and the
only suspension points are persistence awaits, so a second trigger that
arrives mid-run sees the flag and returns without doing any I/O. Dropped
triggers are not queued; the next boundary or resume trigger picks up where
the last run stopped because every walk restarts from the latest stored
rollup.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .history import (
    get_latest_history_for_standard,
    read_period_logs,
    write_activity_history_period,
)
from .metrics import (
    record_catch_up_run,
    record_catch_up_skipped,
    record_rollup_written,
    record_standard_walk_failure,
)
from .models import (
    DEFAULT_PERIOD_START_PREFERENCE,
    ActivityHistoryDoc,
    CatchUpSource,
    Standard,
)
from .periods import PeriodWindow, calculate_period_window, next_boundary_ms
from .retry import retry_with_backoff
from .rollup import build_standard_snapshot, compute_rollup
from .store import HistoryStore
from .utils import wall_clock_ms

logger = logging.getLogger(__name__)

# Guards against a cadence configuration that would never reach "now".
MAX_CATCH_UP_ITERATIONS = 1000

APP_STATE_ACTIVE = "active"


class CatchUpLimitExceeded(RuntimeError):
    def __init__(self, standard_id: str, iterations: int) -> None:
        super().__init__(
            f"Catch-up for standard {standard_id!r} exceeded {iterations} periods"
        )
        self.standard_id = standard_id
        self.iterations = iterations


@dataclass
class CatchUpResult:
    source: CatchUpSource
    skipped: bool = False
    written: dict[str, int] = field(default_factory=dict)
    failed: list[str] = field(default_factory=list)

    @property
    def total_written(self) -> int:
        return sum(self.written.values())


def _same_period_rule(latest: ActivityHistoryDoc, standard: Standard) -> bool:
    snapshot = latest.standard_snapshot
    if snapshot.cadence != standard.cadence:
        return False
    if standard.cadence.unit != "week":
        return True
    before = snapshot.period_start_preference or DEFAULT_PERIOD_START_PREFERENCE
    after = standard.period_start_preference or DEFAULT_PERIOD_START_PREFERENCE
    return before == after


class ActivityHistoryEngine:
    def __init__(
        self,
        store: HistoryStore,
        current_user_id: Callable[[], str | None],
        timezone_name: str = "UTC",
        clock: Callable[[], int] = wall_clock_ms,
        max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.current_user_id = current_user_id
        self.timezone_name = timezone_name
        self.clock = clock
        self.max_attempts = max_attempts
        self.next_boundary_ms: int | None = None
        self._standards: list[Standard] = []
        self._running = False
        self._closed = False
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def active_standards(self) -> list[Standard]:
        return [standard for standard in self._standards if standard.is_active]

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def window_for(self, standard: Standard, reference_ms: int) -> PeriodWindow:
        return calculate_period_window(
            reference_ms,
            standard.cadence,
            self.timezone_name,
            standard.period_start_preference,
        )

    async def start(self) -> None:
        """Load standards, run the initial catch-up and arm the boundary timer."""
        self._closed = False
        await self.refresh_standards()
        logger.info(
            "Activity history engine started (standards=%d, timezone=%s)",
            len(self.active_standards),
            self.timezone_name,
        )

    async def refresh_standards(self) -> list[Standard]:
        user_id = self.current_user_id()
        if not user_id:
            await self.set_standards([])
            return []

        rows = await retry_with_backoff(
            lambda: self.store.list_standards(user_id),
            max_attempts=self.max_attempts,
        )
        standards: list[Standard] = []
        for row in rows:
            try:
                standards.append(Standard.model_validate(row))
            except ValidationError:
                logger.warning(
                    "Skipping malformed standard %s", (row or {}).get("id", "?")
                )
        await self.set_standards(standards)
        return standards

    async def set_standards(self, standards: Iterable[Standard]) -> None:
        """Replace the standard set; catch up when it goes from empty to non-empty."""
        had_active = bool(self.active_standards)
        self._standards = list(standards)
        if not had_active and self.active_standards:
            logger.info(
                "Triggering initial catch-up for %d standards", len(self.active_standards)
            )
            await self.run_catch_up("boundary")
        self.schedule_next_boundary()

    async def resume(self) -> CatchUpResult:
        """Host came back to the foreground: catch up, then re-arm."""
        return await self._run_cycle("resume")

    async def handle_app_state_change(self, state: str) -> CatchUpResult | None:
        if state != APP_STATE_ACTIVE or not self.current_user_id():
            return None
        return await self.resume()

    async def close(self) -> None:
        """Tear down: cancel the timer and any in-flight background cycle."""
        self._closed = True
        self._cancel_timer()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.next_boundary_ms = None
        logger.info("Activity history engine closed")

    async def run_catch_up(self, source: CatchUpSource) -> CatchUpResult:
        user_id = self.current_user_id()
        standards = self.active_standards
        if not user_id or not standards:
            logger.debug("Skipping catch-up (%s): no user or no active standards", source)
            return CatchUpResult(source=source, skipped=True)

        if self._running:
            logger.info("Catch-up (%s) already running, skipping", source)
            record_catch_up_skipped()
            return CatchUpResult(source=source, skipped=True)

        self._running = True
        now_ms = self.clock()
        t0 = time.monotonic()
        result = CatchUpResult(source=source)
        logger.info("Starting catch-up (%s) for %d standards", source, len(standards))
        try:
            for standard in standards:
                try:
                    result.written[standard.id] = await self._catch_up_standard(
                        user_id, standard, source, now_ms
                    )
                except Exception:
                    record_standard_walk_failure()
                    result.failed.append(standard.id)
                    logger.exception(
                        "Catch-up (%s) failed for standard=%s activity=%s",
                        source,
                        standard.id,
                        standard.activity_id,
                    )
        finally:
            self._running = False

        duration_ms = (time.monotonic() - t0) * 1000
        record_catch_up_run(duration_ms)
        logger.info(
            "Catch-up (%s) finished: %d rollups written, %d standards failed (%.1fms)",
            source,
            result.total_written,
            len(result.failed),
            duration_ms,
            extra={"history_source": source, "history_duration_ms": duration_ms},
        )
        return result

    async def _catch_up_standard(
        self,
        user_id: str,
        standard: Standard,
        source: CatchUpSource,
        now_ms: int,
    ) -> int:
        latest = await get_latest_history_for_standard(
            self.store, user_id, standard.id, max_attempts=self.max_attempts
        )
        if latest is not None and _same_period_rule(latest, standard):
            if latest.generated_at_ms < latest.period_end_ms:
                # Written before its window closed; walk it again to finalize.
                reference_ms = latest.period_start_ms
            else:
                reference_ms = latest.period_end_ms
        else:
            if latest is not None:
                logger.info(
                    "Standard %s changed its period rule since %s; starting a new baseline",
                    standard.id,
                    latest.period_label,
                )
            reference_ms = self.window_for(standard, now_ms).start_ms

        snapshot = build_standard_snapshot(standard)
        written = 0
        for _ in range(MAX_CATCH_UP_ITERATIONS):
            window = self.window_for(standard, reference_ms)
            if window.contains(now_ms):
                return written
            if window.end_ms > now_ms:
                # Window lies entirely in the future; only reachable if the
                # clock moved backwards since the latest rollup was written.
                logger.warning(
                    "Standard %s latest period %s is ahead of now; stopping",
                    standard.id,
                    window.label,
                )
                return written

            logs = await read_period_logs(
                self.store, user_id, standard.id, window, max_attempts=self.max_attempts
            )
            rollup = compute_rollup(logs, standard, window.end_ms, now_ms)
            await write_activity_history_period(
                self.store,
                user_id=user_id,
                activity_id=standard.activity_id,
                standard_id=standard.id,
                window=window,
                standard_snapshot=snapshot,
                rollup=rollup,
                source=source,
                generated_at_ms=now_ms,
                max_attempts=self.max_attempts,
            )
            record_rollup_written(source)
            written += 1
            logger.debug(
                "Standard %s period %s: total=%s status=%s",
                standard.id,
                window.label,
                rollup.total,
                rollup.status,
            )
            reference_ms = window.end_ms

        raise CatchUpLimitExceeded(standard.id, MAX_CATCH_UP_ITERATIONS)

    def compute_next_boundary_ms(self, now_ms: int) -> int | None:
        boundaries = [
            next_boundary_ms(
                now_ms,
                standard.cadence,
                self.timezone_name,
                standard.period_start_preference,
            )
            for standard in self.active_standards
        ]
        return min(boundaries) if boundaries else None

    def schedule_next_boundary(self) -> int | None:
        """Arm the single boundary timer; returns the boundary instant (ms)."""
        self._cancel_timer()
        if self._closed:
            return None

        now_ms = self.clock()
        next_boundary = self.compute_next_boundary_ms(now_ms)
        self.next_boundary_ms = next_boundary
        if next_boundary is None:
            logger.debug("No active standards; boundary timer not armed")
            return None

        if next_boundary <= now_ms:
            logger.info("Boundary already passed; running catch-up immediately")
            self._spawn(self._run_cycle("boundary"))
            return next_boundary

        delay_seconds = (next_boundary - now_ms) / 1000
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay_seconds, self._on_boundary_timer)
        logger.info(
            "Next boundary in %.1fs (at %d ms)",
            delay_seconds,
            next_boundary,
        )
        return next_boundary

    def _on_boundary_timer(self) -> None:
        self._timer = None
        logger.info("Boundary timer fired, running catch-up")
        self._spawn(self._run_cycle("boundary"))

    async def _run_cycle(self, source: CatchUpSource) -> CatchUpResult:
        try:
            return await self.run_catch_up(source)
        except Exception:
            logger.exception("Catch-up cycle (%s) failed", source)
            return CatchUpResult(source=source, skipped=True)
        finally:
            if not self._closed:
                self.schedule_next_boundary()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

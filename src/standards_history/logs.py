"""Activity log mutations (create, edit, soft-delete, restore).

Each operation writes the log first and then publishes an
``ActivityLogMutation`` on the bus, so the affected period's history is
recomputed synchronously and any failure surfaces to the caller.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from .errors import (
    LogEntryNotFoundError,
    NotAuthenticatedError,
    StandardArchivedError,
    StandardNotFoundError,
)
from .events import LogMutationBus
from .models import ActivityLog, ActivityLogMutation, MutationType, Standard
from .retry import retry_with_backoff
from .store import HistoryStore
from .utils import wall_clock_ms

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class ActivityLogService:
    def __init__(
        self,
        store: HistoryStore,
        bus: LogMutationBus,
        current_user_id: Callable[[], str | None],
        clock: Callable[[], int] = wall_clock_ms,
        max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.bus = bus
        self.current_user_id = current_user_id
        self.clock = clock
        self.max_attempts = max_attempts

    def _require_user(self) -> str:
        user_id = self.current_user_id()
        if not user_id:
            raise NotAuthenticatedError()
        return user_id

    async def _load_loggable_standard(self, user_id: str, standard_id: str) -> Standard:
        raw = await retry_with_backoff(
            lambda: self.store.get_standard(user_id, standard_id),
            max_attempts=self.max_attempts,
        )
        if raw is None:
            raise StandardNotFoundError(standard_id)
        standard = Standard.model_validate(raw)
        if not standard.is_active:
            raise StandardArchivedError(standard_id)
        return standard

    async def _load_log(self, user_id: str, log_entry_id: str) -> ActivityLog:
        raw = await retry_with_backoff(
            lambda: self.store.get_log(user_id, log_entry_id),
            max_attempts=self.max_attempts,
        )
        if raw is None:
            raise LogEntryNotFoundError(log_entry_id)
        return ActivityLog.model_validate(raw)

    async def _emit(
        self,
        mutation_type: MutationType,
        standard: Standard,
        log_entry_id: str,
        occurred_at_ms: int,
    ) -> None:
        await self.bus.publish(
            ActivityLogMutation(
                type=mutation_type,
                standard_id=standard.id,
                activity_id=standard.activity_id,
                occurred_at_ms=occurred_at_ms,
                log_entry_id=log_entry_id,
            )
        )

    async def create_log(
        self,
        standard_id: str,
        value: float,
        occurred_at_ms: int,
        note: str | None = None,
    ) -> ActivityLog:
        user_id = self._require_user()
        standard = await self._load_loggable_standard(user_id, standard_id)
        log = ActivityLog(
            id=str(uuid.uuid4()),
            standard_id=standard.id,
            value=value,
            occurred_at_ms=occurred_at_ms,
            note=(note or "").strip() or None,
        )
        row = log.model_dump(exclude_none=True)
        now_ms = self.clock()
        # insert_log ignores an existing id, so retries are idempotent.
        await retry_with_backoff(
            lambda: self.store.insert_log(user_id, row, now_ms),
            max_attempts=self.max_attempts,
        )
        logger.info("Created activity log %s for standard=%s", log.id, standard.id)
        await self._emit("create", standard, log.id, log.occurred_at_ms)
        return log

    async def update_log(
        self,
        log_entry_id: str,
        *,
        value: float | None = None,
        occurred_at_ms: int | None = None,
        note: str | None = _UNSET,
    ) -> ActivityLog:
        user_id = self._require_user()
        existing = await self._load_log(user_id, log_entry_id)
        standard = await self._load_loggable_standard(user_id, existing.standard_id)

        now_ms = self.clock()
        fields: dict[str, Any] = {"edited_at_ms": now_ms}
        if value is not None:
            fields["value"] = value
        if occurred_at_ms is not None:
            fields["occurred_at_ms"] = occurred_at_ms
        if note is not _UNSET:
            fields["note"] = (note or "").strip() or None

        updated = ActivityLog.model_validate({**existing.model_dump(), **fields})
        await retry_with_backoff(
            lambda: self.store.update_log(user_id, log_entry_id, fields, now_ms),
            max_attempts=self.max_attempts,
        )
        logger.info("Updated activity log %s for standard=%s", log_entry_id, standard.id)

        await self._emit("update", standard, log_entry_id, updated.occurred_at_ms)
        if updated.occurred_at_ms != existing.occurred_at_ms:
            # The log may have left its old period; that window needs a recompute too.
            await self._emit("update", standard, log_entry_id, existing.occurred_at_ms)
        return updated

    async def delete_log(self, log_entry_id: str) -> ActivityLog:
        return await self._set_deleted(log_entry_id, deleted=True)

    async def restore_log(self, log_entry_id: str) -> ActivityLog:
        return await self._set_deleted(log_entry_id, deleted=False)

    async def _set_deleted(self, log_entry_id: str, *, deleted: bool) -> ActivityLog:
        user_id = self._require_user()
        existing = await self._load_log(user_id, log_entry_id)
        standard = await self._load_loggable_standard(user_id, existing.standard_id)

        now_ms = self.clock()
        deleted_at_ms = now_ms if deleted else None
        await retry_with_backoff(
            lambda: self.store.set_log_deleted(user_id, log_entry_id, deleted_at_ms, now_ms),
            max_attempts=self.max_attempts,
        )
        mutation_type: MutationType = "delete" if deleted else "restore"
        logger.info(
            "Activity log %s %sd for standard=%s", log_entry_id, mutation_type, standard.id
        )
        await self._emit(mutation_type, standard, log_entry_id, existing.occurred_at_ms)
        return existing.model_copy(update={"deleted_at_ms": deleted_at_ms})

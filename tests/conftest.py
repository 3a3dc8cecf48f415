"""Shared fixtures: an in-memory store and a controllable clock."""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any

import pytest

from standards_history.errors import PersistenceError
from standards_history.metrics import reset_metrics
from standards_history.models import Standard

USER_ID = "user-1"


def utc_ms(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> int:
    return int(datetime(year, month, day, hour, minute, tzinfo=timezone.utc).timestamp() * 1000)


def make_standard(**overrides: Any) -> Standard:
    data: dict[str, Any] = {
        "id": "std-1",
        "activityId": "act-1",
        "minimum": 50,
        "unit": "minutes",
        "cadence": {"interval": 1, "unit": "week"},
        "state": "active",
        "createdAtMs": 0,
        "updatedAtMs": 0,
    }
    data.update(overrides)
    return Standard.model_validate(data)


class FakeClock:
    def __init__(self, now_ms: int) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


class FakeHistoryStore:
    """Dict-backed stand-in for PostgresHistoryStore.

    History upserts merge at the top level, like jsonb ``||``.
    """

    def __init__(self) -> None:
        self.standards: dict[tuple[str, str], dict[str, Any]] = {}
        self.logs: dict[tuple[str, str], dict[str, Any]] = {}
        self.history: dict[tuple[str, str], dict[str, Any]] = {}
        self.upserts: list[str] = []
        self.failing_standard_ids: set[str] = set()
        self.query_gate: asyncio.Event | None = None
        self.query_entered = asyncio.Event()
        self.insert_errors: list[Exception] = []

    # Seeding helpers

    def add_standard(self, standard: Standard, user_id: str = USER_ID) -> Standard:
        self.standards[(user_id, standard.id)] = standard.to_document()
        return standard

    def add_log(
        self,
        log_id: str,
        standard_id: str,
        value: float,
        occurred_at_ms: int,
        *,
        deleted_at_ms: int | None = None,
        user_id: str = USER_ID,
    ) -> None:
        self.logs[(user_id, log_id)] = {
            "id": log_id,
            "standard_id": standard_id,
            "value": value,
            "occurred_at_ms": occurred_at_ms,
            "note": None,
            "edited_at_ms": None,
            "deleted_at_ms": deleted_at_ms,
        }

    def history_for(self, standard_id: str, user_id: str = USER_ID) -> list[dict[str, Any]]:
        docs = [
            data
            for (uid, _), data in self.history.items()
            if uid == user_id and data["standardId"] == standard_id
        ]
        return sorted(docs, key=lambda doc: doc["periodStartMs"])

    # HistoryStore protocol

    async def list_standards(self, user_id: str) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(data)
            for (uid, _), data in sorted(self.standards.items())
            if uid == user_id
        ]

    async def get_standard(self, user_id: str, standard_id: str) -> dict[str, Any] | None:
        data = self.standards.get((user_id, standard_id))
        return copy.deepcopy(data) if data is not None else None

    async def query_logs(
        self, user_id: str, standard_id: str, start_ms: int, end_ms: int
    ) -> list[dict[str, Any]]:
        if self.query_gate is not None:
            self.query_entered.set()
            await self.query_gate.wait()
        rows = [
            dict(row)
            for (uid, _), row in self.logs.items()
            if uid == user_id
            and row["standard_id"] == standard_id
            and start_ms <= row["occurred_at_ms"] < end_ms
        ]
        return sorted(rows, key=lambda row: row["occurred_at_ms"])

    async def get_log(self, user_id: str, log_entry_id: str) -> dict[str, Any] | None:
        row = self.logs.get((user_id, log_entry_id))
        return dict(row) if row is not None else None

    async def insert_log(self, user_id: str, log: dict[str, Any], now_ms: int) -> None:
        if self.insert_errors:
            raise self.insert_errors.pop(0)
        row = {"note": None, "edited_at_ms": None, "deleted_at_ms": None, **log}
        self.logs.setdefault((user_id, log["id"]), row)

    async def update_log(
        self, user_id: str, log_entry_id: str, fields: dict[str, Any], now_ms: int
    ) -> None:
        self.logs[(user_id, log_entry_id)].update(fields)

    async def set_log_deleted(
        self, user_id: str, log_entry_id: str, deleted_at_ms: int | None, now_ms: int
    ) -> None:
        self.logs[(user_id, log_entry_id)]["deleted_at_ms"] = deleted_at_ms

    async def get_history(self, user_id: str, doc_id: str) -> dict[str, Any] | None:
        data = self.history.get((user_id, doc_id))
        return copy.deepcopy(data) if data is not None else None

    async def get_latest_history(
        self, user_id: str, standard_id: str
    ) -> tuple[str, dict[str, Any]] | None:
        if standard_id in self.failing_standard_ids:
            raise PersistenceError("permission-denied", "history read denied")
        candidates = [
            (doc_id, data)
            for (uid, doc_id), data in self.history.items()
            if uid == user_id and data.get("standardId") == standard_id
        ]
        if not candidates:
            return None
        doc_id, data = max(candidates, key=lambda item: item[1]["periodStartMs"])
        return doc_id, copy.deepcopy(data)

    async def list_history_for_activity(
        self, user_id: str, activity_id: str
    ) -> list[tuple[str, dict[str, Any]]]:
        rows = [
            (doc_id, copy.deepcopy(data))
            for (uid, doc_id), data in self.history.items()
            if uid == user_id and data.get("activityId") == activity_id
        ]
        return sorted(rows, key=lambda item: item[1]["periodStartMs"], reverse=True)

    async def upsert_history(
        self, user_id: str, doc_id: str, document: dict[str, Any]
    ) -> None:
        self.upserts.append(doc_id)
        existing = self.history.setdefault((user_id, doc_id), {})
        existing.update(copy.deepcopy(document))


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def store() -> FakeHistoryStore:
    return FakeHistoryStore()

"""Tests for the host worker's notification handling."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from psycopg import sql

from standards_history.config import Config
from standards_history.worker import HistoryWorker, listen_statement


def _worker():
    worker = HistoryWorker(Config(database_url="postgresql://localhost/history", user_id="u1"))
    worker.session = MagicMock()
    worker.session.bus.publish = AsyncMock(return_value=1)
    worker.session.engine.refresh_standards = AsyncMock()
    return worker


class TestHandleNotification:
    @pytest.mark.asyncio
    async def test_publishes_json_payload(self):
        worker = _worker()
        payload = {"type": "create", "standardId": "std-1", "occurredAtMs": 5}

        delivered = await worker.handle_notification(json.dumps(payload))

        assert delivered == 1
        worker.session.bus.publish.assert_awaited_once_with(payload)

    @pytest.mark.asyncio
    async def test_ignores_non_json(self):
        worker = _worker()

        assert await worker.handle_notification("not json") == 0
        worker.session.bus.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_stop_worker(self):
        worker = _worker()
        worker.session.bus.publish.side_effect = RuntimeError("recompute failed")

        assert await worker.handle_notification('{"type": "create"}') == 0

    @pytest.mark.asyncio
    async def test_no_session_yet(self):
        worker = HistoryWorker(Config(database_url="postgresql://localhost/history"))
        assert await worker.handle_notification("{}") == 0


class TestRefreshStandards:
    @pytest.mark.asyncio
    async def test_refresh_errors_are_logged(self):
        worker = _worker()
        worker.session.engine.refresh_standards.side_effect = RuntimeError("db down")

        await worker.refresh_standards()

        worker.session.engine.refresh_standards.assert_awaited_once()


class TestListenStatement:
    def test_channel_is_quoted_as_identifier(self):
        statement = listen_statement('history"; DROP TABLE activity_logs; --')

        assert isinstance(statement, sql.Composed)
        assert sql.Identifier('history"; DROP TABLE activity_logs; --') in statement.seq
        assert sql.SQL("LISTEN ") in statement.seq

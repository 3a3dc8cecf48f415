"""Tests for the persistence error taxonomy and retry helper."""

from unittest.mock import AsyncMock

import psycopg
import pytest
from psycopg import errors as pg_errors

from standards_history.errors import (
    PERSISTENCE_ERROR_TAXONOMY,
    PersistenceError,
    StandardArchivedError,
    classify_persistence_error,
)
from standards_history.retry import backoff_delay, retry_with_backoff


class TestClassify:
    @pytest.mark.parametrize(
        ("exc", "code"),
        [
            (psycopg.OperationalError("connection lost"), "unavailable"),
            (pg_errors.SerializationFailure("conflict"), "aborted"),
            (pg_errors.QueryCanceled("timeout"), "deadline-exceeded"),
            (pg_errors.InsufficientPrivilege("denied"), "permission-denied"),
            (pg_errors.UniqueViolation("dup"), "already-exists"),
            (TimeoutError(), "deadline-exceeded"),
            (ValueError("bad"), "unknown"),
            (None, "unknown"),
        ],
    )
    def test_codes(self, exc, code):
        assert classify_persistence_error(exc) == code

    def test_persistence_error_keeps_code(self):
        error = PersistenceError.from_exception(psycopg.OperationalError("down"))
        assert error.code == "unavailable"
        assert error.is_retryable()
        assert isinstance(error.__cause__, psycopg.OperationalError)

    def test_permission_error(self):
        assert PersistenceError("permission-denied").is_permission_error()
        assert not PersistenceError("permission-denied").is_retryable()

    def test_taxonomy_is_disjoint(self):
        assert not set(PERSISTENCE_ERROR_TAXONOMY["retryable"]) & set(
            PERSISTENCE_ERROR_TAXONOMY["permanent"]
        )


class TestBackoffDelay:
    def test_exponential_then_capped(self):
        assert [backoff_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        sleep = AsyncMock()
        operation = AsyncMock(
            side_effect=[psycopg.OperationalError("a"), psycopg.OperationalError("b"), "ok"]
        )

        result = await retry_with_backoff(operation, sleep=sleep)

        assert result == "ok"
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=PersistenceError("unavailable"))

        with pytest.raises(PersistenceError) as exc_info:
            await retry_with_backoff(operation, max_attempts=2, sleep=sleep)

        assert exc_info.value.code == "unavailable"
        assert operation.await_count == 2
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=pg_errors.InsufficientPrivilege("denied"))

        with pytest.raises(PersistenceError) as exc_info:
            await retry_with_backoff(operation, sleep=sleep)

        assert exc_info.value.code == "permission-denied"
        assert operation.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_engine_errors_pass_through(self):
        operation = AsyncMock(side_effect=StandardArchivedError("std-1"))
        with pytest.raises(StandardArchivedError):
            await retry_with_backoff(operation, sleep=AsyncMock())

    @pytest.mark.asyncio
    async def test_unknown_errors_keep_their_type(self):
        operation = AsyncMock(side_effect=KeyError("missing"))
        with pytest.raises(KeyError):
            await retry_with_backoff(operation, sleep=AsyncMock())
        assert operation.await_count == 1

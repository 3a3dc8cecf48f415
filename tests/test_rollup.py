"""Tests for rollup figures, snapshots and summaries."""

import pytest

from standards_history.models import ActivityLog, Cadence, SessionConfig
from standards_history.rollup import build_standard_snapshot, compute_rollup, progress_percent
from standards_history.summary import format_standard_summary

from .conftest import make_standard


def _log(log_id: str, value: float, deleted_at_ms: int | None = None) -> ActivityLog:
    return ActivityLog(
        id=log_id,
        standard_id="std-1",
        value=value,
        occurred_at_ms=1_000,
        deleted_at_ms=deleted_at_ms,
    )


class TestProgressPercent:
    def test_partial(self):
        assert progress_percent(30, 50) == 60.0

    def test_rounds_to_two_decimals(self):
        assert progress_percent(1, 3) == 33.33

    def test_capped_at_100(self):
        assert progress_percent(120, 50) == 100.0

    @pytest.mark.parametrize("minimum", [0, -5])
    def test_non_positive_minimum_is_complete(self, minimum):
        assert progress_percent(0, minimum) == 100.0


class TestComputeRollup:
    def test_sums_live_logs_only(self):
        standard = make_standard(minimum=50)
        logs = [_log("a", 10), _log("b", 20), _log("c", 40, deleted_at_ms=5)]

        rollup = compute_rollup(logs, standard, window_end_ms=100, now_ms=200)

        assert rollup.total == 30
        assert rollup.current_sessions == 2
        assert rollup.status == "Missed"
        assert rollup.progress_percent == 60.0

    def test_target_sessions_from_session_config(self):
        standard = make_standard(
            sessionConfig={"sessionLabel": "session", "sessionsPerCadence": 5, "volumePerSession": 10}
        )
        rollup = compute_rollup([], standard, window_end_ms=100, now_ms=50)
        assert rollup.target_sessions == 5
        assert rollup.status == "In Progress"

    def test_met_exactly_at_minimum(self):
        rollup = compute_rollup([_log("a", 50)], make_standard(minimum=50), 100, 50)
        assert rollup.status == "Met"
        assert rollup.progress_percent == 100.0

    def test_zero_minimum_met_with_no_logs(self):
        rollup = compute_rollup([], make_standard(minimum=0), 100, 500)
        assert rollup.status == "Met"
        assert rollup.progress_percent == 100.0


class TestSnapshot:
    def test_uses_stored_summary(self):
        snapshot = build_standard_snapshot(make_standard(summary="Custom text"))
        assert snapshot.summary == "Custom text"

    def test_formats_summary_when_missing(self):
        snapshot = build_standard_snapshot(make_standard(minimum=1000, unit="Calls"))
        assert snapshot.summary == "1000 calls / week"
        assert snapshot.period_start_preference is None

    def test_keeps_period_start_preference(self):
        standard = make_standard(periodStartPreference={"mode": "weekDay", "weekStartDay": 7})
        document = build_standard_snapshot(standard).to_document()
        assert document["periodStartPreference"] == {"mode": "weekDay", "weekStartDay": 7}


class TestFormatSummary:
    def test_simple(self):
        assert format_standard_summary(1000, "calls", Cadence(interval=1, unit="week")) == "1000 calls / week"

    def test_plural_cadence(self):
        assert format_standard_summary(3.5, "km", Cadence(interval=2, unit="week")) == "3.5 km / 2 weeks"

    def test_sessions(self):
        summary = format_standard_summary(
            75,
            "minutes",
            Cadence(interval=1, unit="week"),
            SessionConfig(session_label="session", sessions_per_cadence=5, volume_per_session=15),
        )
        assert summary == "5 sessions × 15 minutes = 75 minutes / week"

    def test_single_session_is_not_spelled_out(self):
        summary = format_standard_summary(
            20, "pages", Cadence(interval=1, unit="day"), SessionConfig(volume_per_session=20)
        )
        assert summary == "20 pages / day"

    def test_blank_unit_rejected(self):
        with pytest.raises(ValueError):
            format_standard_summary(1, "  ", Cadence(interval=1, unit="day"))

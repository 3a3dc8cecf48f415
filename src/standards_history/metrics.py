"""In-memory engine metrics.

Asyncio is single-threaded, so plain dicts need no locking.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "catch_up_runs": 0,
    "catch_up_skipped": 0,
    "standard_walk_failures": 0,
    "recomputes": 0,
    "rollups_written": {},
    "last_catch_up_duration_ms": None,
}


def record_catch_up_run(duration_ms: float) -> None:
    _metrics["catch_up_runs"] += 1
    _metrics["last_catch_up_duration_ms"] = round(duration_ms, 1)


def record_catch_up_skipped() -> None:
    _metrics["catch_up_skipped"] += 1


def record_standard_walk_failure() -> None:
    _metrics["standard_walk_failures"] += 1


def record_recompute() -> None:
    _metrics["recomputes"] += 1


def record_rollup_written(source: str) -> None:
    written = _metrics["rollups_written"]
    written[source] = written.get(source, 0) + 1


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "catch_up_runs": _metrics["catch_up_runs"],
        "catch_up_skipped": _metrics["catch_up_skipped"],
        "standard_walk_failures": _metrics["standard_walk_failures"],
        "recomputes": _metrics["recomputes"],
        "rollups_written": dict(_metrics["rollups_written"]),
        "last_catch_up_duration_ms": _metrics["last_catch_up_duration_ms"],
    }


def reset_metrics() -> None:
    _metrics["catch_up_runs"] = 0
    _metrics["catch_up_skipped"] = 0
    _metrics["standard_walk_failures"] = 0
    _metrics["recomputes"] = 0
    _metrics["rollups_written"] = {}
    _metrics["last_catch_up_duration_ms"] = None

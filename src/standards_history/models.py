"""Document contracts for standards, activity logs and activity history.

Stored documents use camelCase field names; Python code uses snake_case
attributes. Every model accepts either form on input and dumps camelCase
via ``to_document()``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

CadenceUnit = Literal["day", "week", "month"]
StandardState = Literal["active", "archived"]
PeriodStatus = Literal["Met", "In Progress", "Missed"]
HistorySource = Literal["boundary", "resume", "log-edit"]
CatchUpSource = Literal["boundary", "resume"]
MutationType = Literal["create", "update", "delete", "restore"]

CADENCE_UNITS: tuple[str, ...] = ("day", "week", "month")
MUTATION_TYPES: tuple[str, ...] = ("create", "update", "delete", "restore")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

# Instants outside these bounds cannot be placed in a calendar window with a
# margin for timezone offsets and the longest supported cadence.
MIN_SUPPORTED_MS = (datetime(2, 1, 1, tzinfo=timezone.utc) - _EPOCH) // _ONE_MS
MAX_SUPPORTED_MS = (datetime(9000, 1, 1, tzinfo=timezone.utc) - _EPOCH) // _ONE_MS
MAX_CADENCE_INTERVAL = 1000


def _check_supported_instant(value: int) -> int:
    if not MIN_SUPPORTED_MS <= value <= MAX_SUPPORTED_MS:
        raise ValueError(f"occurredAtMs {value} is outside the supported range")
    return value


class DocumentModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Cadence(DocumentModel):
    interval: int
    unit: CadenceUnit

    @field_validator("interval")
    @classmethod
    def interval_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("cadence interval must be >= 1")
        if value > MAX_CADENCE_INTERVAL:
            raise ValueError(f"cadence interval must be <= {MAX_CADENCE_INTERVAL}")
        return value


class PeriodStartPreference(DocumentModel):
    mode: Literal["default", "weekDay"] = "default"
    week_start_day: int | None = None

    @model_validator(mode="after")
    def validate_week_start_day(self) -> "PeriodStartPreference":
        if self.mode == "weekDay":
            if self.week_start_day is None:
                raise ValueError("weekStartDay is required when mode is 'weekDay'")
            if not 1 <= self.week_start_day <= 7:
                raise ValueError("weekStartDay must be between 1 (Monday) and 7 (Sunday)")
        return self


DEFAULT_PERIOD_START_PREFERENCE = PeriodStartPreference(mode="default")


class SessionConfig(DocumentModel):
    session_label: str = "session"
    sessions_per_cadence: int = 1
    volume_per_session: float = 0

    @field_validator("sessions_per_cadence")
    @classmethod
    def sessions_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("sessionsPerCadence must be >= 1")
        return value


class Standard(DocumentModel):
    id: str
    activity_id: str
    minimum: float
    unit: str
    cadence: Cadence
    period_start_preference: PeriodStartPreference | None = None
    state: StandardState = "active"
    archived_at_ms: int | None = None
    session_config: SessionConfig = Field(default_factory=SessionConfig)
    summary: str | None = None
    created_at_ms: int = 0
    updated_at_ms: int = 0
    deleted_at_ms: int | None = None

    @property
    def is_active(self) -> bool:
        return (
            self.state == "active"
            and self.archived_at_ms is None
            and self.deleted_at_ms is None
        )


class ActivityLog(DocumentModel):
    id: str
    standard_id: str
    value: float
    occurred_at_ms: int
    note: str | None = None
    edited_at_ms: int | None = None
    deleted_at_ms: int | None = None

    @field_validator("occurred_at_ms")
    @classmethod
    def occurred_in_range(cls, value: int) -> int:
        return _check_supported_instant(value)

    @property
    def is_live(self) -> bool:
        return self.deleted_at_ms is None


class StandardSnapshot(DocumentModel):
    """Standard configuration frozen at rollup generation time."""

    minimum: float
    unit: str
    cadence: Cadence
    session_config: SessionConfig
    summary: str
    period_start_preference: PeriodStartPreference | None = None


class ActivityHistoryDoc(DocumentModel):
    id: str
    activity_id: str
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
    generated_at_ms: int
    source: HistorySource = "boundary"


class ActivityLogMutation(DocumentModel):
    type: MutationType
    standard_id: str
    activity_id: str | None = None
    occurred_at_ms: int
    log_entry_id: str | None = None

    @field_validator("standard_id")
    @classmethod
    def standard_id_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("standardId must not be empty")
        return value

    @field_validator("occurred_at_ms")
    @classmethod
    def occurred_in_range(cls, value: int) -> int:
        return _check_supported_instant(value)

"""Human-readable standard summaries ("1000 calls / week")."""

from __future__ import annotations

from .models import Cadence, SessionConfig


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def format_cadence(cadence: Cadence) -> str:
    if cadence.interval == 1:
        return cadence.unit
    return f"{cadence.interval} {cadence.unit}s"


def format_standard_summary(
    minimum: float,
    unit: str,
    cadence: Cadence,
    session_config: SessionConfig | None = None,
) -> str:
    """Format a standard's summary.

    Examples:
        >>> format_standard_summary(1000, "calls", Cadence(interval=1, unit="week"))
        '1000 calls / week'
        >>> format_standard_summary(
        ...     75, "minutes", Cadence(interval=1, unit="week"),
        ...     SessionConfig(session_label="session", sessions_per_cadence=5, volume_per_session=15),
        ... )
        '5 sessions × 15 minutes = 75 minutes / week'
    """
    normalized_unit = unit.strip().lower()
    if not normalized_unit:
        raise ValueError("unit must not be blank")
    cadence_str = format_cadence(cadence)

    if session_config is not None and session_config.sessions_per_cadence > 1:
        return (
            f"{session_config.sessions_per_cadence} {session_config.session_label}s"
            f" × {_format_number(session_config.volume_per_session)} {normalized_unit}"
            f" = {_format_number(minimum)} {normalized_unit} / {cadence_str}"
        )

    return f"{_format_number(minimum)} {normalized_unit} / {cadence_str}"

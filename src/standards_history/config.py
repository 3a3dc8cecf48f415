import os
from dataclasses import dataclass

from .utils import resolve_timezone_name


@dataclass(frozen=True)
class Config:
    database_url: str
    user_id: str | None = None
    timezone: str = "UTC"
    mutation_channel: str = "activity_log_mutations"
    poll_interval_seconds: float = 30.0
    retry_max_attempts: int = 3
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            user_id=os.environ.get("HISTORY_USER_ID", "").strip() or None,
            timezone=resolve_timezone_name(os.environ.get("HISTORY_TIMEZONE")),
            mutation_channel=os.environ.get(
                "HISTORY_MUTATION_CHANNEL", "activity_log_mutations"
            ),
            poll_interval_seconds=float(os.environ.get("HISTORY_POLL_INTERVAL", "30.0")),
            retry_max_attempts=int(os.environ.get("HISTORY_RETRY_MAX_ATTEMPTS", "3")),
            log_format=os.environ.get("HISTORY_LOG_FORMAT", "json"),
        )

"""Per-user wiring of the history components.

Built when a user signs in and closed when they sign out, so no timer,
subscription or in-flight catch-up outlives the user it belongs to.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .engine import ActivityHistoryEngine
from .errors import NotAuthenticatedError
from .events import LogMutationBus
from .history import HistoryRow, load_activity_history
from .logs import ActivityLogService
from .recompute import MutationRecomputeListener
from .store import HistoryStore
from .utils import wall_clock_ms

logger = logging.getLogger(__name__)


class HistorySession:
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
        self.max_attempts = max_attempts
        self.bus = LogMutationBus()
        self.engine = ActivityHistoryEngine(
            store,
            current_user_id,
            timezone_name=timezone_name,
            clock=clock,
            max_attempts=max_attempts,
        )
        self.recompute = MutationRecomputeListener(
            store,
            self.bus,
            current_user_id,
            timezone_name,
            clock=clock,
            max_attempts=max_attempts,
        )
        self.logs = ActivityLogService(
            store,
            self.bus,
            current_user_id,
            clock=clock,
            max_attempts=max_attempts,
        )

    async def start(self) -> None:
        self.recompute.attach()
        await self.engine.start()

    async def close(self) -> None:
        self.recompute.detach()
        await self.engine.close()
        logger.info("History session closed")

    async def activity_history(self, activity_id: str) -> list[HistoryRow]:
        """Stored rollups of the activity plus its open periods, newest first."""
        user_id = self.current_user_id()
        if not user_id:
            raise NotAuthenticatedError()
        return await load_activity_history(
            self.store,
            user_id,
            activity_id,
            self.engine.active_standards,
            self.engine.timezone_name,
            self.engine.clock(),
            max_attempts=self.max_attempts,
        )

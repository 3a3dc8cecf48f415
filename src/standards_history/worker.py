import asyncio
import json
import logging
import signal
from typing import Any

import psycopg
from psycopg import sql

from .config import Config
from .metrics import get_metrics
from .session import HistorySession
from .store import PostgresHistoryStore, ensure_schema

logger = logging.getLogger(__name__)


def listen_statement(channel: str) -> sql.Composed:
    return sql.SQL("LISTEN {}").format(sql.Identifier(channel))


class HistoryWorker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self.session: HistorySession | None = None
        self._shutdown = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()

    async def run(self) -> None:
        """Main entry point: run listen + poll loops until shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)
        loop.add_signal_handler(signal.SIGUSR1, self._request_resume)

        logger.info(
            "History worker starting (user=%s, timezone=%s, poll_interval=%.1fs)",
            self.config.user_id or "-",
            self.config.timezone,
            self.config.poll_interval_seconds,
        )

        async with await psycopg.AsyncConnection.connect(
            self.config.database_url, autocommit=True
        ) as conn:
            await ensure_schema(conn)
            self.session = HistorySession(
                PostgresHistoryStore(conn),
                lambda: self.config.user_id,
                timezone_name=self.config.timezone,
                max_attempts=self.config.retry_max_attempts,
            )
            await self.session.start()
            try:
                async with asyncio.TaskGroup() as tg:
                    tg.create_task(self._listen_loop())
                    tg.create_task(self._poll_loop())
            finally:
                await self.session.close()
                logger.info("Final metrics: %s", get_metrics())

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    def _request_resume(self) -> None:
        if self.session is None:
            return
        logger.info("Resume requested")
        task = asyncio.get_running_loop().create_task(self.session.engine.resume())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _listen_loop(self) -> None:
        """LISTEN on the mutation channel and publish each payload on the bus."""
        channel = self.config.mutation_channel
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.database_url, autocommit=True
                ) as conn:
                    await conn.execute(listen_statement(channel))
                    logger.info("Listening on %s channel", channel)

                    # Keep connection alive across timeouts; only reconnect
                    # on actual connection loss (OperationalError).
                    while not self._shutdown.is_set():
                        gen = conn.notifies(timeout=self.config.poll_interval_seconds)
                        async for notify in gen:
                            await self.handle_notification(notify.payload)
                            if self._shutdown.is_set():
                                break
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning("LISTEN connection lost, reconnecting in 5s")
                await asyncio.sleep(5)

        logger.info("Listen loop stopped")

    async def handle_notification(self, payload: str) -> int:
        """Publish one NOTIFY payload; returns the number of listeners reached."""
        if self.session is None:
            return 0
        logger.debug("NOTIFY received: %s", payload)
        try:
            mutation = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON mutation payload: %r", payload)
            return 0
        try:
            return await self.session.bus.publish(mutation)
        except Exception:
            logger.exception("Recompute failed for mutation payload %r", payload)
            return 0

    async def _poll_loop(self) -> None:
        """Refresh the standard set so new or archived standards take effect."""
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
                break  # shutdown was set
            except TimeoutError:
                pass

            await self.refresh_standards()

        logger.info("Poll loop stopped")

    async def refresh_standards(self) -> None:
        if self.session is None:
            return
        try:
            await self.session.engine.refresh_standards()
        except Exception:
            logger.exception("Error refreshing standards")

"""Standards history: background rollup of activity logs per period."""

import asyncio
import logging

from .config import Config
from .logging import setup_logging
from .worker import HistoryWorker


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger = logging.getLogger(__name__)
    logger.info("Standards history worker starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("Mutation channel: %s", config.mutation_channel)
    if not config.user_id:
        logger.warning("HISTORY_USER_ID not set; engine stays idle")

    asyncio.run(HistoryWorker(config).run())


if __name__ == "__main__":
    main()

"""
Cron entry point for calendar sync and bot scheduling.

    meetbot-cron --action sync       # refresh scheduled bots from calendars
    meetbot-cron --action schedule   # create bots for meetings about to start
    meetbot-cron --action all        # both, in that order
"""
import argparse
import asyncio
import sys

from meetbot.config import settings
from meetbot.db import create_tables, close_db
from meetbot.logging_config import setup_logging, get_logger
from meetbot.services.scheduler import BotScheduler

logger = get_logger(__name__)


async def main(action: str) -> dict:
    """Run one scheduler action and return its statistics."""
    logger.info("cron_job_started", action=action)
    try:
        await create_tables()
        stats = await BotScheduler().run(action)
        logger.info("cron_job_completed", action=action, stats=stats)
        return stats
    except Exception as e:
        logger.error("cron_job_failed", action=action, error=str(e), exc_info=True)
        raise
    finally:
        await close_db()


def run() -> None:
    parser = argparse.ArgumentParser(description="Calendar sync and meeting bot scheduler")
    parser.add_argument(
        "--action",
        choices=["sync", "schedule", "all"],
        default="all",
        help="Which pass to run (default: all)"
    )
    args = parser.parse_args()

    setup_logging(debug=settings.debug)
    try:
        asyncio.run(main(args.action))
    except Exception:
        sys.exit(1)


if __name__ == "__main__":
    run()

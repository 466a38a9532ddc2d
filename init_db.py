#!/usr/bin/env python3
"""
Database initialization script for the meeting bot service.
Run this to create the required database tables.
"""
import asyncio
import sys

from meetbot.db import create_tables, drop_tables, close_db
from meetbot.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

TABLES = ["calendar_connections", "scheduled_bots", "bot_sessions", "processing_logs"]


async def init_db():
    """Initialize database tables."""
    logger.info("creating_tables")
    try:
        await create_tables()
        logger.info("tables_created", tables=TABLES)
    except Exception as e:
        logger.error("table_creation_failed", error=str(e))
        raise
    finally:
        await close_db()


async def reset_db():
    """Drop and recreate all tables. WARNING: This deletes all data!"""
    response = input("This will DELETE ALL DATA. Continue? (yes/no): ")

    if response.lower() != "yes":
        logger.info("reset_cancelled")
        return

    try:
        await drop_tables()
        logger.info("tables_dropped")
        await create_tables()
        logger.info("database_reset", tables=TABLES)
    except Exception as e:
        logger.error("database_reset_failed", error=str(e))
        raise
    finally:
        await close_db()


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "--reset":
        asyncio.run(reset_db())
    else:
        asyncio.run(init_db())

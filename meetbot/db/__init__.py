"""
Database package - engine and session management.
"""
from meetbot.db.engine import engine
from meetbot.db.session import (
    async_session_maker,
    get_db_session,
    create_tables,
    drop_tables,
    close_db
)

__all__ = [
    'engine',
    'async_session_maker',
    'get_db_session',
    'create_tables',
    'drop_tables',
    'close_db'
]

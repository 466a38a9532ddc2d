"""
Database engine configuration.
"""
from sqlalchemy.ext.asyncio import create_async_engine

from meetbot.config import settings

# SQLite (local runs, tests) does not accept queue pool sizing
_pool_options = {} if settings.database_url.startswith("sqlite") else {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_pre_ping": True,
    "pool_recycle": 3600,
}

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_pool_options,
)

"""
Meeting bot service - Application Entry Point

Initializes the FastAPI app, configures middleware, starts the background
workers and includes the router. Run with: python main.py
"""
import asyncio
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

from meetbot import __version__
from meetbot.config import settings
from meetbot.db import create_tables, close_db
from meetbot.logging_config import setup_logging, get_logger
from meetbot.api import router
from meetbot.services.dispatch import dispatch_registry, evaluation_dispatcher
from meetbot.services.scheduler import scheduler_loop
from meetbot.services.transcript_buffer import transcript_buffer

setup_logging(debug=settings.debug)
logger = get_logger(__name__)


# ============================================
# LIFESPAN CONTEXT MANAGER
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    # Startup
    await create_tables()
    await evaluation_dispatcher.start()

    background = [
        asyncio.create_task(transcript_buffer.run_sweeper(), name="transcript-sweeper"),
        asyncio.create_task(dispatch_registry.run_sweeper(), name="dispatch-sweeper"),
    ]
    if settings.enable_internal_scheduler:
        background.append(asyncio.create_task(scheduler_loop.run_forever(), name="internal-scheduler"))

    logger.info(
        "server_started",
        version=__version__,
        environment="development" if settings.debug else "production",
        recall_configured=settings.is_recall_configured,
        internal_scheduler=settings.enable_internal_scheduler,
        cors_origins=settings.cors_origins_list,
    )

    yield

    # Shutdown
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    await evaluation_dispatcher.stop()
    await close_db()
    logger.info("server_stopped")


# ============================================
# CREATE FASTAPI APP
# ============================================

app = FastAPI(
    title="Meeting Bot Service",
    description="Calendar-driven meeting bots with live transcripts",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)


# ============================================
# MIDDLEWARE CONFIGURATION
# ============================================

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

# Session middleware
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie="meetbot_session",
    max_age=3600 * 24 * 7,
    same_site="lax",
    https_only=not settings.debug,
)


# ============================================
# INCLUDE ROUTERS
# ============================================

app.include_router(router)


# ============================================
# RUN APPLICATION
# ============================================

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )

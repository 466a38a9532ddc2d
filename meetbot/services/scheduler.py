"""
Calendar sync and bot scheduler.

sync() mirrors upcoming calendar events with a meeting link into
scheduled_bots. schedule() requests bots for meetings about to start and
reclaims bots that never joined. Both are safe to run repeatedly.
"""
import asyncio
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from meetbot.config import settings
from meetbot.db import get_db_session
from meetbot.logging_config import get_logger, LogContext
from meetbot.models import (
    CalendarConnection,
    ConnectionStatus,
    ProcessingLog,
    ScheduledBot,
    ScheduledBotStatus,
)
from meetbot.monitoring import (
    bots_timed_out_total,
    record_error,
    scheduler_run_duration,
    scheduler_runs_total,
)
from meetbot.schemas import CalendarEvent
from meetbot.services.bot_provider import RecallClient, recall_client
from meetbot.services.calendar_service import CalendarService, calendar_service
from meetbot.services.webhook_service import get_or_create_bot_session
from meetbot.utils import format_duration, utcnow

logger = get_logger(__name__)

TIMED_OUT_MESSAGE = "Bot timed out (never joined)"


def _run_status(errors: int, successes: int) -> str:
    if errors == 0:
        return "success"
    return "partial" if successes > 0 else "failed"


class BotScheduler:
    """Runs the sync and schedule passes."""

    def __init__(self, calendar: CalendarService = None, provider: RecallClient = None):
        self.calendar = calendar or calendar_service
        self.provider = provider or recall_client

    # ============================================
    # SYNC
    # ============================================

    async def _sync_events(self, connection: CalendarConnection, events: List[CalendarEvent]) -> int:
        """Upsert events of one user. Bot lifecycle fields are left alone."""
        created = 0
        async with get_db_session() as session:
            for event in events:
                attendees = [a.model_dump() for a in event.attendees]
                result = await session.execute(
                    select(ScheduledBot).where(
                        ScheduledBot.user_id == connection.user_id,
                        ScheduledBot.external_event_id == event.id
                    )
                )
                existing = result.scalar_one_or_none()

                if existing:
                    existing.event_title = event.title
                    existing.event_start = event.start
                    existing.event_end = event.end
                    existing.meeting_url = event.meeting_url
                    existing.attendees = attendees
                    existing.updated_at = utcnow()
                else:
                    session.add(ScheduledBot(
                        user_id=connection.user_id,
                        calendar_connection_id=connection.id,
                        external_event_id=event.id,
                        event_title=event.title,
                        event_start=event.start,
                        event_end=event.end,
                        meeting_url=event.meeting_url,
                        attendees=attendees,
                        bot_enabled=True,
                        bot_status=ScheduledBotStatus.PENDING,
                    ))
                    created += 1
        return created

    async def sync(self) -> Dict[str, Any]:
        """
        Refresh scheduled bots from every active, auto-recording calendar.

        Returns:
            Pass statistics
        """
        started = time.time()
        stats = {
            "connections_processed": 0,
            "connections_skipped": 0,
            "events_synced": 0,
            "bots_created": 0,
            "errors_count": 0,
            "errors": [],
        }

        async with get_db_session() as session:
            result = await session.execute(
                select(CalendarConnection).where(
                    CalendarConnection.status == ConnectionStatus.ACTIVE,
                    CalendarConnection.auto_record_enabled.is_(True)
                )
            )
            connections = result.scalars().all()

        logger.info("calendar_sync_started", connections=len(connections))

        for connection in connections:
            with LogContext(user_id=connection.user_id):
                try:
                    events = await self.calendar.fetch_upcoming_meeting_events(
                        connection.user_id, settings.sync_days_ahead
                    )
                    if events is None:
                        stats["connections_skipped"] += 1
                        continue

                    stats["bots_created"] += await self._sync_events(connection, events)
                    stats["events_synced"] += len(events)
                    stats["connections_processed"] += 1
                except Exception as e:
                    stats["errors_count"] += 1
                    stats["errors"].append(f"{connection.user_id}: {str(e)}")
                    record_error(type(e).__name__, "scheduler_sync")
                    logger.error("calendar_sync_failed", error=str(e))

        stats["status"] = _run_status(stats["errors_count"], stats["connections_processed"])
        await self._finish("sync", stats, started)
        return stats

    # ============================================
    # SCHEDULE
    # ============================================

    async def _create_bot(self, scheduled: ScheduledBot) -> bool:
        """Request a bot for one scheduled meeting and record the outcome."""
        try:
            bot_id = await self.provider.create_bot(scheduled.meeting_url)
        except Exception as e:
            record_error(type(e).__name__, "scheduler_schedule")
            logger.error("bot_creation_failed", scheduled_bot_id=scheduled.id, error=str(e))
            async with get_db_session() as session:
                await session.execute(
                    update(ScheduledBot)
                    .where(ScheduledBot.id == scheduled.id)
                    .values(
                        bot_status=ScheduledBotStatus.ERROR,
                        error_message=str(e)[:1000],
                        updated_at=utcnow()
                    )
                )
            return False

        # The bot id is stored first so a failed session write never leads to a second bot
        async with get_db_session() as session:
            await session.execute(
                update(ScheduledBot)
                .where(ScheduledBot.id == scheduled.id)
                .values(
                    bot_id=bot_id,
                    bot_status=ScheduledBotStatus.SCHEDULED,
                    error_message=None,
                    updated_at=utcnow()
                )
            )

        async with get_db_session() as session:
            await get_or_create_bot_session(
                session,
                bot_id,
                user_id=scheduled.user_id,
                scheduled_bot_id=scheduled.id,
                meeting_url=scheduled.meeting_url,
            )

        logger.info("bot_scheduled", scheduled_bot_id=scheduled.id, bot_id=bot_id, event_start=str(scheduled.event_start))
        return True

    async def reclaim_stuck(self, now=None) -> int:
        """Fail scheduled bots whose meeting started too long ago without a join."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.stuck_timeout_minutes)
        async with get_db_session() as session:
            result = await session.execute(
                update(ScheduledBot)
                .where(
                    ScheduledBot.bot_status == ScheduledBotStatus.SCHEDULED,
                    ScheduledBot.event_start < cutoff
                )
                .values(
                    bot_status=ScheduledBotStatus.ERROR,
                    error_message=TIMED_OUT_MESSAGE,
                    updated_at=utcnow()
                )
            )
            timed_out = result.rowcount or 0

        if timed_out:
            bots_timed_out_total.inc(timed_out)
            logger.warning("scheduled_bots_timed_out", count=timed_out)
        return timed_out

    async def schedule(self, now=None) -> Dict[str, Any]:
        """
        Create bots for enabled, pending meetings starting within the window.

        Returns:
            Pass statistics
        """
        started = time.time()
        now = now or utcnow()
        window_end = now + timedelta(minutes=settings.schedule_window_minutes)
        stats = {
            "candidates": 0,
            "bots_scheduled": 0,
            "skipped": 0,
            "bots_timed_out": 0,
            "errors_count": 0,
            "errors": [],
        }

        async with get_db_session() as session:
            result = await session.execute(
                select(ScheduledBot)
                .where(
                    ScheduledBot.bot_enabled.is_(True),
                    ScheduledBot.bot_status == ScheduledBotStatus.PENDING,
                    ScheduledBot.event_start >= now,
                    ScheduledBot.event_start <= window_end
                )
                .order_by(ScheduledBot.event_start)
            )
            candidates = result.scalars().all()

            result = await session.execute(
                select(CalendarConnection).where(
                    CalendarConnection.user_id.in_([c.user_id for c in candidates])
                )
            )
            connections = {c.user_id: c for c in result.scalars().all()}

        stats["candidates"] = len(candidates)

        for scheduled in candidates:
            with LogContext(user_id=scheduled.user_id):
                connection = connections.get(scheduled.user_id)
                if (
                    connection is None
                    or connection.status != ConnectionStatus.ACTIVE
                    or not connection.auto_record_enabled
                ):
                    stats["skipped"] += 1
                    logger.info("bot_creation_skipped", scheduled_bot_id=scheduled.id)
                    continue

                try:
                    created = await self._create_bot(scheduled)
                except Exception as e:
                    record_error(type(e).__name__, "scheduler_schedule")
                    logger.error("bot_record_failed", scheduled_bot_id=scheduled.id, error=str(e))
                    stats["errors_count"] += 1
                    stats["errors"].append(f"{scheduled.id}: {str(e)}")
                    continue

                if created:
                    stats["bots_scheduled"] += 1
                else:
                    stats["errors_count"] += 1
                    stats["errors"].append(f"{scheduled.id}: bot creation failed")

        stats["bots_timed_out"] = await self.reclaim_stuck(now)
        stats["status"] = _run_status(stats["errors_count"], stats["bots_scheduled"])
        await self._finish("schedule", stats, started)
        return stats

    async def run(self, action: str) -> Dict[str, Any]:
        """Run "sync", "schedule" or "all" (sync then schedule)."""
        if action == "sync":
            return await self.sync()
        if action == "schedule":
            return await self.schedule()
        if action == "all":
            return {"sync": await self.sync(), "schedule": await self.schedule()}
        raise ValueError(f"Unknown scheduler action: {action}")

    # ============================================
    # PROCESSING LOG
    # ============================================

    async def _finish(self, action: str, stats: Dict[str, Any], started: float) -> None:
        duration = time.time() - started
        stats["duration_seconds"] = round(duration, 3)

        scheduler_runs_total.labels(action=action, status=stats["status"]).inc()
        scheduler_run_duration.labels(action=action).observe(duration)

        async with get_db_session() as session:
            session.add(ProcessingLog(
                action=action,
                status=stats["status"],
                connections_processed=stats.get("connections_processed", 0),
                events_synced=stats.get("events_synced", 0),
                bots_scheduled=stats.get("bots_scheduled", 0),
                bots_timed_out=stats.get("bots_timed_out", 0),
                errors_count=stats["errors_count"],
                duration_seconds=duration,
                error_details="\n".join(stats["errors"]) or None,
            ))

        logger.info(
            "scheduler_pass_complete",
            action=action,
            status=stats["status"],
            errors=stats["errors_count"],
            duration=format_duration(duration)
        )


class SchedulerLoop:
    """
    In-process runner for the scheduler passes.

    Passes share one lock: a pass requested while another is running is
    skipped rather than queued.
    """

    def __init__(self, scheduler: BotScheduler = None):
        self.scheduler = scheduler or BotScheduler()
        self._lock = asyncio.Lock()

    async def run_pass(self, action: str) -> Optional[Dict[str, Any]]:
        """
        Run one pass unless another is in progress.

        Returns:
            Pass statistics, or None if skipped or timed out
        """
        if self._lock.locked():
            scheduler_runs_total.labels(action=action, status="skipped").inc()
            logger.info("scheduler_pass_skipped", action=action)
            return None

        async with self._lock:
            try:
                return await asyncio.wait_for(
                    self.scheduler.run(action),
                    timeout=settings.scheduler_pass_timeout_seconds
                )
            except asyncio.TimeoutError:
                scheduler_runs_total.labels(action=action, status="timeout").inc()
                logger.error("scheduler_pass_timed_out", action=action)
                return None

    async def run_forever(self) -> None:
        """Schedule every schedule interval and sync every sync interval, until cancelled."""
        last_sync = None
        logger.info(
            "internal_scheduler_started",
            schedule_interval=settings.schedule_interval_seconds,
            sync_interval=settings.sync_interval_seconds
        )
        while True:
            try:
                if last_sync is None or time.monotonic() - last_sync >= settings.sync_interval_seconds:
                    last_sync = time.monotonic()
                    await self.run_pass("sync")
                await self.run_pass("schedule")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                record_error(type(e).__name__, "internal_scheduler")
                logger.exception("internal_scheduler_pass_failed", error=str(e))
            await asyncio.sleep(settings.schedule_interval_seconds)


scheduler_loop = SchedulerLoop()

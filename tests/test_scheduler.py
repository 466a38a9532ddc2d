"""
Tests for calendar sync and bot scheduling.
"""
import asyncio
import pytest
from datetime import datetime, timedelta
from sqlalchemy import select
from unittest.mock import AsyncMock, Mock

from meetbot.config import settings
from meetbot.exceptions import BotProviderError, CalendarAPIError
from meetbot.models import BotSession, BotState, ConnectionStatus, ProcessingLog, ScheduledBot, ScheduledBotStatus
from meetbot.schemas import Attendee, CalendarEvent
from meetbot.services import scheduler as scheduler_module
from meetbot.services.scheduler import BotScheduler, SchedulerLoop, TIMED_OUT_MESSAGE


def calendar_event(event_id="evt-1", title="Pipeline review", start=None, url="https://meet.google.com/abc-defg-hij"):
    start = start or datetime(2030, 1, 7, 14, 0)
    return CalendarEvent(
        id=event_id,
        title=title,
        start=start,
        end=start + timedelta(minutes=30),
        meeting_url=url,
        attendees=[Attendee(email="ana@example.com", display_name="Ana")],
    )


@pytest.fixture
def calendar():
    calendar = Mock()
    calendar.fetch_upcoming_meeting_events = AsyncMock(return_value=[])
    return calendar


@pytest.fixture
def provider():
    provider = Mock()
    provider.create_bot = AsyncMock(return_value="bot-123")
    return provider


@pytest.fixture
def scheduler(calendar, provider):
    return BotScheduler(calendar=calendar, provider=provider)


async def all_scheduled(db):
    result = await db.execute(select(ScheduledBot).order_by(ScheduledBot.id))
    return result.scalars().all()


@pytest.mark.unit
class TestSync:
    """Test calendar sync."""

    @pytest.mark.asyncio
    async def test_sync_creates_pending_bots(self, patch_db, scheduler, calendar, make_connection):
        await make_connection()
        calendar.fetch_upcoming_meeting_events.return_value = [calendar_event("evt-1"), calendar_event("evt-2")]

        stats = await scheduler.sync()

        rows = await all_scheduled(patch_db)
        assert [r.external_event_id for r in rows] == ["evt-1", "evt-2"]
        assert all(r.bot_status == ScheduledBotStatus.PENDING and r.bot_enabled for r in rows)
        assert rows[0].attendees[0]["email"] == "ana@example.com"
        assert stats["bots_created"] == 2
        assert stats["status"] == "success"
        calendar.fetch_upcoming_meeting_events.assert_awaited_once_with("user-1", settings.sync_days_ahead)

    @pytest.mark.asyncio
    async def test_double_sync_preserves_bot_fields(self, patch_db, scheduler, calendar, make_connection):
        await make_connection()
        calendar.fetch_upcoming_meeting_events.return_value = [calendar_event(title="Old title")]
        await scheduler.sync()

        row = (await all_scheduled(patch_db))[0]
        row.bot_enabled = False
        row.bot_status = ScheduledBotStatus.SKIPPED
        await patch_db.flush()

        new_start = datetime(2030, 1, 7, 15, 0)
        calendar.fetch_upcoming_meeting_events.return_value = [
            calendar_event(title="New title", start=new_start, url="https://meet.google.com/xyz-abcd-efg")
        ]
        stats = await scheduler.sync()

        rows = await all_scheduled(patch_db)
        assert len(rows) == 1
        assert rows[0].event_title == "New title"
        assert rows[0].event_start == new_start
        assert rows[0].meeting_url == "https://meet.google.com/xyz-abcd-efg"
        assert rows[0].bot_enabled is False
        assert rows[0].bot_status == ScheduledBotStatus.SKIPPED
        assert stats["bots_created"] == 0

    @pytest.mark.asyncio
    async def test_inactive_and_disabled_connections_not_synced(self, patch_db, scheduler, calendar, make_connection):
        await make_connection(user_id="expired", status=ConnectionStatus.EXPIRED)
        await make_connection(user_id="muted", auto_record_enabled=False)

        stats = await scheduler.sync()

        calendar.fetch_upcoming_meeting_events.assert_not_awaited()
        assert stats["connections_processed"] == 0

    @pytest.mark.asyncio
    async def test_per_user_failure_does_not_abort(self, patch_db, scheduler, calendar, make_connection):
        await make_connection(user_id="user-a")
        await make_connection(user_id="user-b")
        await make_connection(user_id="user-c")

        async def fetch(user_id, days_ahead):
            if user_id == "user-a":
                raise CalendarAPIError("Graph unavailable", status_code=503)
            if user_id == "user-b":
                return None
            return [calendar_event("evt-c")]

        calendar.fetch_upcoming_meeting_events.side_effect = fetch
        stats = await scheduler.sync()

        assert stats["errors_count"] == 1
        assert stats["connections_skipped"] == 1
        assert stats["connections_processed"] == 1
        assert stats["status"] == "partial"
        assert [r.user_id for r in await all_scheduled(patch_db)] == ["user-c"]

    @pytest.mark.asyncio
    async def test_sync_writes_processing_log(self, patch_db, scheduler, make_connection):
        await make_connection()
        await scheduler.sync()

        result = await patch_db.execute(select(ProcessingLog))
        log = result.scalar_one()
        assert log.action == "sync"
        assert log.status == "success"
        assert log.connections_processed == 1


@pytest.mark.unit
class TestSchedule:
    """Test bot creation and stuck reclamation."""

    @pytest.mark.asyncio
    async def test_meeting_in_three_minutes_gets_bot(
        self, patch_db, scheduler, provider, make_connection, make_scheduled_bot
    ):
        connection = await make_connection()
        scheduled = await make_scheduled_bot(starts_in=timedelta(minutes=3), connection_id=connection.id)

        stats = await scheduler.schedule()

        provider.create_bot.assert_awaited_once_with(scheduled.meeting_url)
        assert scheduled.bot_status == ScheduledBotStatus.SCHEDULED
        assert scheduled.bot_id == "bot-123"
        assert stats["bots_scheduled"] == 1

        result = await patch_db.execute(select(BotSession).where(BotSession.bot_id == "bot-123"))
        bot_session = result.scalar_one()
        assert bot_session.status == BotState.CREATED
        assert bot_session.scheduled_bot_id == scheduled.id

    @pytest.mark.asyncio
    async def test_second_pass_does_not_create_again(
        self, patch_db, scheduler, provider, make_connection, make_scheduled_bot
    ):
        await make_connection()
        await make_scheduled_bot(starts_in=timedelta(minutes=3))

        await scheduler.schedule()
        await scheduler.schedule()

        assert provider.create_bot.await_count == 1

    @pytest.mark.asyncio
    async def test_meetings_outside_window_ignored(
        self, patch_db, scheduler, provider, make_connection, make_scheduled_bot
    ):
        await make_connection()
        later = await make_scheduled_bot(event_id="later", starts_in=timedelta(minutes=10))
        started = await make_scheduled_bot(event_id="started", starts_in=timedelta(minutes=-1))

        await scheduler.schedule()

        provider.create_bot.assert_not_awaited()
        assert later.bot_status == ScheduledBotStatus.PENDING
        assert started.bot_status == ScheduledBotStatus.PENDING

    @pytest.mark.asyncio
    async def test_disabled_bot_not_created(self, patch_db, scheduler, provider, make_connection, make_scheduled_bot):
        await make_connection()
        await make_scheduled_bot(bot_enabled=False, status=ScheduledBotStatus.PENDING)

        await scheduler.schedule()

        provider.create_bot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inactive_connection_left_pending(
        self, patch_db, scheduler, provider, make_connection, make_scheduled_bot
    ):
        await make_connection(status=ConnectionStatus.EXPIRED)
        scheduled = await make_scheduled_bot()

        stats = await scheduler.schedule()

        provider.create_bot.assert_not_awaited()
        assert scheduled.bot_status == ScheduledBotStatus.PENDING
        assert stats["skipped"] == 1

    @pytest.mark.asyncio
    async def test_auto_record_off_left_pending(
        self, patch_db, scheduler, provider, make_connection, make_scheduled_bot
    ):
        await make_connection(auto_record_enabled=False)
        scheduled = await make_scheduled_bot()

        await scheduler.schedule()

        provider.create_bot.assert_not_awaited()
        assert scheduled.bot_status == ScheduledBotStatus.PENDING

    @pytest.mark.asyncio
    async def test_provider_failure_marks_error_without_retry(
        self, patch_db, scheduler, provider, make_connection, make_scheduled_bot
    ):
        await make_connection()
        scheduled = await make_scheduled_bot()
        provider.create_bot.side_effect = BotProviderError("create_bot failed: 400 - invalid meeting", status_code=400)

        stats = await scheduler.schedule()
        await scheduler.schedule()

        assert provider.create_bot.await_count == 1
        assert scheduled.bot_status == ScheduledBotStatus.ERROR
        assert "invalid meeting" in scheduled.error_message
        assert stats["errors_count"] == 1
        assert stats["status"] == "failed"

    @pytest.mark.asyncio
    async def test_session_created_by_webhook_is_linked(
        self, patch_db, scheduler, provider, make_connection, make_scheduled_bot
    ):
        await make_connection()
        first = await make_scheduled_bot(event_id="first", starts_in=timedelta(minutes=2))
        second = await make_scheduled_bot(event_id="second", starts_in=timedelta(minutes=4))
        # The provider's first webhook arrived before the scheduler recorded the bot
        patch_db.add(BotSession(bot_id="bot-A", status=BotState.JOINING))
        await patch_db.flush()
        provider.create_bot.side_effect = ["bot-A", "bot-B"]

        stats = await scheduler.schedule()

        assert stats["bots_scheduled"] == 2
        assert stats["errors_count"] == 0
        assert (first.bot_id, first.bot_status) == ("bot-A", ScheduledBotStatus.SCHEDULED)
        assert (second.bot_id, second.bot_status) == ("bot-B", ScheduledBotStatus.SCHEDULED)

        result = await patch_db.execute(select(BotSession).where(BotSession.bot_id == "bot-A"))
        bot_session = result.scalar_one()
        assert bot_session.status == BotState.JOINING
        assert bot_session.scheduled_bot_id == first.id
        assert bot_session.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_session_write_failure_does_not_abort_pass(
        self, patch_db, scheduler, provider, make_connection, make_scheduled_bot, monkeypatch
    ):
        await make_connection()
        first = await make_scheduled_bot(event_id="first", starts_in=timedelta(minutes=2))
        second = await make_scheduled_bot(event_id="second", starts_in=timedelta(minutes=4))
        provider.create_bot.side_effect = ["bot-A", "bot-B"]
        real_get_or_create = scheduler_module.get_or_create_bot_session

        async def failing_get_or_create(session, bot_id, **fields):
            if bot_id == "bot-A":
                raise RuntimeError("database unavailable")
            return await real_get_or_create(session, bot_id, **fields)

        monkeypatch.setattr(scheduler_module, "get_or_create_bot_session", failing_get_or_create)

        stats = await scheduler.schedule()
        await scheduler.schedule()

        assert provider.create_bot.await_count == 2
        assert (first.bot_id, first.bot_status) == ("bot-A", ScheduledBotStatus.SCHEDULED)
        assert (second.bot_id, second.bot_status) == ("bot-B", ScheduledBotStatus.SCHEDULED)
        assert stats["bots_scheduled"] == 1
        assert stats["errors_count"] == 1
        assert stats["status"] == "partial"

        result = await patch_db.execute(select(ProcessingLog).where(ProcessingLog.action == "schedule"))
        assert len(result.scalars().all()) == 2

    @pytest.mark.asyncio
    async def test_bot_that_never_joined_times_out(self, patch_db, scheduler, make_scheduled_bot):
        stuck = await make_scheduled_bot(
            event_id="stuck", starts_in=timedelta(minutes=-40), status=ScheduledBotStatus.SCHEDULED, bot_id="bot-1"
        )
        recent = await make_scheduled_bot(
            event_id="recent", starts_in=timedelta(minutes=-20), status=ScheduledBotStatus.SCHEDULED, bot_id="bot-2"
        )
        joined = await make_scheduled_bot(
            event_id="joined", starts_in=timedelta(minutes=-40), status=ScheduledBotStatus.RECORDING, bot_id="bot-3"
        )

        stats = await scheduler.schedule()

        assert stuck.bot_status == ScheduledBotStatus.ERROR
        assert stuck.error_message == TIMED_OUT_MESSAGE
        assert recent.bot_status == ScheduledBotStatus.SCHEDULED
        assert joined.bot_status == ScheduledBotStatus.RECORDING
        assert stats["bots_timed_out"] == 1

    @pytest.mark.asyncio
    async def test_run_rejects_unknown_action(self, scheduler):
        with pytest.raises(ValueError):
            await scheduler.run("purge")


@pytest.mark.unit
class TestSchedulerLoop:
    """Test the in-process runner."""

    @pytest.mark.asyncio
    async def test_overlapping_pass_skipped(self):
        release = asyncio.Event()
        inner = Mock()

        async def slow_run(action):
            await release.wait()
            return {"status": "success"}

        inner.run = slow_run
        loop = SchedulerLoop(scheduler=inner)

        first = asyncio.create_task(loop.run_pass("schedule"))
        await asyncio.sleep(0)
        assert await loop.run_pass("schedule") is None

        release.set()
        assert await first == {"status": "success"}

    @pytest.mark.asyncio
    async def test_pass_bounded_by_timeout(self, monkeypatch):
        inner = Mock()

        async def hang(action):
            await asyncio.sleep(10)

        inner.run = hang
        monkeypatch.setattr(settings, "scheduler_pass_timeout_seconds", 0.05)

        assert await SchedulerLoop(scheduler=inner).run_pass("sync") is None

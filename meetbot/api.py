"""
Meeting bot service - API Routes

Provider webhooks, live transcript polling, bot status and the calendar
endpoints used to connect a calendar and control recording.
"""
import json
import secrets
from fastapi import APIRouter, Request, HTTPException, Depends, Header, Query, status
from fastapi.responses import RedirectResponse, Response
from sqlalchemy import select, text
from typing import List, Optional

from meetbot.config import settings
from meetbot.db import get_db_session
from meetbot.exceptions import ConfigurationError, MeetBotException, TokenError
from meetbot.logging_config import get_logger
from meetbot.models import ScheduledBot, ScheduledBotStatus, ConnectionStatus
from meetbot.monitoring import get_metrics, record_error, webhook_events_total
from meetbot.schemas import (
    BotStatusResponse,
    CalendarStatus,
    ConnectionResponse,
    HealthCheck,
    ScheduledBotOut,
    SchedulerRunResponse,
    ToggleAutoRecordRequest,
    ToggleAutoRecordResponse,
    ToggleBotRequest,
    ToggleBotResponse,
    TranscriptDeleteResponse,
    TranscriptResponse,
    WebhookAck,
)
from meetbot.services import connection_service
from meetbot.services.bot_provider import recall_client
from meetbot.services.calendar_service import calendar_service
from meetbot.services.scheduler import scheduler_loop
from meetbot.services.transcript_buffer import transcript_buffer
from meetbot.services.webhook_service import STATE_MAP, webhook_processor
from meetbot.utils import safe_dict_get, utcnow

logger = get_logger(__name__)


# ============================================
# CREATE API ROUTER
# ============================================

router = APIRouter()

SCHEDULER_ACTIONS = ("sync", "schedule", "all")


# ============================================
# DEPENDENCY INJECTION
# ============================================

async def get_current_user(request: Request) -> str:
    """
    Get current user ID from session.

    Raises:
        HTTPException: If user is not authenticated
    """
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated. Please visit /calendar/connect first."
        )
    return user_id


def _secret_matches(expected: Optional[str], *candidates: Optional[str]) -> bool:
    return any(c is not None and secrets.compare_digest(c, expected) for c in candidates)


# ============================================
# PROVIDER WEBHOOKS
# ============================================

@router.post("/webhooks/recall", response_model=WebhookAck)
async def recall_webhook(
    request: Request,
    token: Optional[str] = Query(None),
    x_webhook_secret: Optional[str] = Header(None),
):
    """
    Receive bot provider callbacks.

    Always acknowledged so the provider does not retry; only a wrong
    webhook secret is refused.
    """
    if settings.webhook_secret and not _secret_matches(settings.webhook_secret, x_webhook_secret, token):
        webhook_events_total.labels(kind="unknown", outcome="unauthorized").inc()
        logger.warning("webhook_secret_mismatch")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")

    try:
        payload = json.loads(await request.body())
    except ValueError:
        webhook_events_total.labels(kind="unknown", outcome="invalid_json").inc()
        logger.warning("webhook_invalid_json")
        return WebhookAck()

    try:
        await webhook_processor.process(payload)
    except Exception as e:
        webhook_events_total.labels(kind="unknown", outcome="failed").inc()
        record_error(type(e).__name__, "webhook")
        logger.exception("webhook_processing_failed", error=str(e))

    return WebhookAck()


# ============================================
# LIVE TRANSCRIPTS
# ============================================

@router.get("/transcript", response_model=TranscriptResponse)
async def get_transcript(bot_id: Optional[str] = Query(None, alias="botId"), fallback: bool = False):
    """
    Current transcript of a bot.

    With fallback=true and nothing buffered, the transcript is fetched from
    the provider and cached.
    """
    if not bot_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="botId is required")

    segments = transcript_buffer.read(bot_id)
    message = None

    if not segments and fallback:
        try:
            fetched = await recall_client.fetch_transcript(bot_id)
        except MeetBotException as e:
            logger.warning("transcript_fallback_failed", bot_id=bot_id, error=str(e))
            fetched = []
        if fetched:
            transcript_buffer.replace(bot_id, fetched)
            segments = transcript_buffer.read(bot_id)
        else:
            message = "Transcript not available yet"
    elif not segments:
        message = "No transcript data yet"

    return TranscriptResponse(
        bot_id=bot_id,
        transcript=segments,
        last_updated=transcript_buffer.last_updated(bot_id),
        total_segments=len(segments),
        message=message,
    )


@router.delete("/transcript", response_model=TranscriptDeleteResponse)
async def delete_transcript(bot_id: Optional[str] = Query(None, alias="botId")):
    """Evict a bot's live transcript."""
    if not bot_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="botId is required")
    deleted = transcript_buffer.evict(bot_id)
    return TranscriptDeleteResponse(success=True, deleted=deleted, bot_id=bot_id)


# ============================================
# BOT STATUS
# ============================================

@router.get("/bots/{bot_id}/status", response_model=BotStatusResponse)
async def bot_status(bot_id: str):
    """Provider-side status of a bot with the matching internal state."""
    try:
        bot = await recall_client.get_bot(bot_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except MeetBotException as e:
        code = getattr(e, "status_code", None)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND if code == 404 else status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )

    changes = bot.get("status_changes") or []
    latest = changes[-1] if changes else {}
    provider_status = safe_dict_get(latest, "code", default="unknown")
    # Newer API versions return the meeting as an object
    meeting_url = bot.get("meeting_url")

    return BotStatusResponse(
        bot_id=bot_id,
        status=STATE_MAP.get(provider_status, "unknown"),
        provider_status=provider_status,
        sub_code=safe_dict_get(latest, "sub_code"),
        meeting_url=meeting_url if isinstance(meeting_url, str) else None,
    )


# ============================================
# CALENDAR CONNECTION
# ============================================

@router.get("/calendar/connect")
async def calendar_connect(request: Request):
    """Start calendar consent. The user is identified by the account that signs in."""
    state = secrets.token_urlsafe(16)
    try:
        auth_url = calendar_service.build_auth_url(state)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    request.session["oauth_state"] = state
    return RedirectResponse(url=auth_url)


@router.get("/calendar/callback", response_model=ConnectionResponse)
async def calendar_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    """Exchange the authorization code and store the connection."""
    if error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Consent failed: {error}")
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing authorization code")

    expected_state = request.session.get("oauth_state")
    if not expected_state or state != expected_state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")

    try:
        connection = await calendar_service.exchange_code(code)
    except TokenError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    request.session.pop("oauth_state", None)
    request.session["user_id"] = connection.user_id

    return ConnectionResponse(
        message="Calendar connected successfully",
        user_id=connection.user_id,
        email=connection.account_email,
    )


@router.get("/calendar/status", response_model=CalendarStatus)
async def calendar_status(user_id: str = Depends(get_current_user)):
    """Calendar connection state of the current user."""
    connection = await connection_service.get_connection(user_id, active_only=False)
    if connection is None:
        return CalendarStatus(connected=False, status="not_connected")

    return CalendarStatus(
        connected=connection.status == ConnectionStatus.ACTIVE,
        email=connection.account_email,
        status=connection.status,
        auto_record_enabled=connection.auto_record_enabled,
        connected_at=connection.created_at,
    )


@router.post("/calendar/toggle-auto-record", response_model=ToggleAutoRecordResponse)
async def toggle_auto_record(body: ToggleAutoRecordRequest, user_id: str = Depends(get_current_user)):
    """Turn automatic recording on or off for the current user."""
    updated = await connection_service.set_auto_record(user_id, body.enabled)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active calendar connection")
    return ToggleAutoRecordResponse(auto_record_enabled=body.enabled)


@router.post("/calendar/toggle-bot", response_model=ToggleBotResponse)
async def toggle_bot(body: ToggleBotRequest, user_id: str = Depends(get_current_user)):
    """Enable or disable the bot of one scheduled meeting."""
    async with get_db_session() as session:
        result = await session.execute(
            select(ScheduledBot).where(
                ScheduledBot.id == body.scheduled_bot_id,
                ScheduledBot.user_id == user_id
            )
        )
        scheduled = result.scalar_one_or_none()
        if scheduled is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduled bot not found")

        if scheduled.bot_status in (ScheduledBotStatus.COMPLETED, ScheduledBotStatus.RECORDING):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Cannot change a bot that is {scheduled.bot_status}"
            )

        bot_to_remove = None
        if not body.enabled and scheduled.bot_id and scheduled.bot_status in (
            ScheduledBotStatus.SCHEDULED, ScheduledBotStatus.JOINING
        ):
            bot_to_remove = scheduled.bot_id

        scheduled.bot_enabled = body.enabled
        scheduled.bot_status = ScheduledBotStatus.PENDING if body.enabled else ScheduledBotStatus.SKIPPED
        scheduled.updated_at = utcnow()
        response = ToggleBotResponse(bot_enabled=scheduled.bot_enabled, bot_status=scheduled.bot_status)

    if bot_to_remove:
        try:
            await recall_client.leave_call(bot_to_remove)
        except MeetBotException as e:
            logger.warning("bot_leave_failed", bot_id=bot_to_remove, error=str(e))

    return response


@router.post("/calendar/disconnect")
async def calendar_disconnect(user_id: str = Depends(get_current_user)):
    """Disconnect the current user's calendar."""
    updated = await calendar_service.disconnect(user_id)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No calendar connection")
    return {"success": True, "message": "Calendar disconnected"}


@router.get("/calendar/scheduled-bots", response_model=List[ScheduledBotOut])
async def scheduled_bots(user_id: str = Depends(get_current_user)):
    """Upcoming scheduled meetings of the current user."""
    async with get_db_session() as session:
        result = await session.execute(
            select(ScheduledBot)
            .where(ScheduledBot.user_id == user_id, ScheduledBot.event_start >= utcnow())
            .order_by(ScheduledBot.event_start)
        )
        return [ScheduledBotOut.model_validate(row) for row in result.scalars().all()]


@router.post("/calendar/auto-schedule", response_model=SchedulerRunResponse)
async def auto_schedule(action: str = "all", x_cron_secret: Optional[str] = Header(None)):
    """Run a scheduler pass on behalf of an external cron."""
    if not settings.cron_secret or not _secret_matches(settings.cron_secret, x_cron_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")
    if action not in SCHEDULER_ACTIONS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown action: {action}")

    stats = await scheduler_loop.run_pass(action)
    if stats is None:
        return SchedulerRunResponse(success=False, action=action, stats={"skipped": True})
    return SchedulerRunResponse(action=action, stats=stats)


# ============================================
# OPERATIONS
# ============================================

@router.get("/health", response_model=HealthCheck)
async def health_check():
    """Health check endpoint for monitoring."""
    try:
        async with get_db_session() as session:
            await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    return HealthCheck(
        status="healthy",
        database=db_status,
        live_transcripts=len(transcript_buffer),
        timestamp=utcnow().isoformat()
    )


@router.get("/metrics")
async def metrics():
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type="text/plain; version=0.0.4")

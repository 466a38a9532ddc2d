"""
Webhook processor for bot provider callbacks.

Normalizes the provider's payload shapes into LifecycleEvent or
TranscriptEvent, advances the persisted bot state and feeds the live
transcript buffer. Evaluation dispatch happens at most once per bot.
"""
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from meetbot.db import get_db_session
from meetbot.logging_config import get_logger, LogContext
from meetbot.models import BotSession, BotState, ScheduledBot, ScheduledBotStatus
from meetbot.monitoring import bot_transitions_total, webhook_events_total, record_error
from meetbot.schemas import LifecycleEvent, TranscriptEvent, TranscriptSegment, WebhookEvent
from meetbot.services.dispatch import (
    DispatchRegistry,
    EvaluationDispatcher,
    dispatch_registry,
    evaluation_dispatcher,
)
from meetbot.services.transcript_buffer import LiveTranscriptBuffer, transcript_buffer
from meetbot.utils import safe_dict_get, utcnow

logger = get_logger(__name__)

TRANSCRIPT_FINAL = "transcript.data"
TRANSCRIPT_PARTIAL = "transcript.partial_data"
STATUS_CHANGE = "bot.status_change"

# Provider status code -> internal bot state
STATE_MAP: Dict[str, str] = {
    "ready": BotState.CREATED,
    "joining_call": BotState.JOINING,
    "in_waiting_room": BotState.JOINING,
    "in_call_not_recording": BotState.JOINING,
    "in_call_recording": BotState.RECORDING,
    "call_ended": BotState.PROCESSING,
    "done": BotState.PROCESSING,
    "analysis_done": BotState.PROCESSING,
    "fatal": BotState.ERROR,
}

# Internal bot state -> status shown on the scheduled bot
MIRROR_MAP: Dict[str, str] = {
    BotState.CREATED: ScheduledBotStatus.SCHEDULED,
    BotState.JOINING: ScheduledBotStatus.JOINING,
    BotState.RECORDING: ScheduledBotStatus.RECORDING,
    BotState.PROCESSING: ScheduledBotStatus.PROCESSING,
    BotState.COMPLETED: ScheduledBotStatus.COMPLETED,
    BotState.ERROR: ScheduledBotStatus.ERROR,
}

DISPATCH_SIGNAL = "done"
FATAL_SIGNAL = "fatal"


def next_state(current: Optional[str], signal: str) -> Optional[str]:
    """
    State a bot moves to on a provider signal.

    Only the signal decides; the current state is accepted for callers that
    want to log the transition. Unknown signals return None.
    """
    return STATE_MAP.get(signal)


async def find_bot_session(session, bot_id: str) -> Optional[BotSession]:
    result = await session.execute(
        select(BotSession)
        .where(BotSession.bot_id == bot_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_bot_session(session, bot_id: str, **fields) -> BotSession:
    """
    Session row for a bot id, inserted when missing.

    Two writers may insert the same bot id at once (a webhook and the
    scheduler, or two webhooks). The losing insert is rolled back to a
    SAVEPOINT and the winner's row is returned. ``fields`` only fill values
    the existing row leaves empty.
    """
    bot_session = await find_bot_session(session, bot_id)
    if bot_session is None:
        try:
            async with session.begin_nested():
                bot_session = BotSession(bot_id=bot_id, status=BotState.CREATED, **fields)
                session.add(bot_session)
            return bot_session
        except IntegrityError:
            logger.info("bot_session_insert_conflict", bot_id=bot_id)
            bot_session = await find_bot_session(session, bot_id)
            if bot_session is None:
                raise

    for key, value in fields.items():
        if value is not None and getattr(bot_session, key) is None:
            setattr(bot_session, key, value)
    return bot_session


def _bot_id(payload: Dict[str, Any]) -> Optional[str]:
    bot_id = (
        safe_dict_get(payload, "data", "bot", "id")
        or safe_dict_get(payload, "data", "bot_id")
        or payload.get("bot_id")
    )
    return str(bot_id) if bot_id else None


def _transcript_event(bot_id: str, event: str, payload: Dict[str, Any]) -> Optional[TranscriptEvent]:
    data = safe_dict_get(payload, "data", "data")
    if not isinstance(data, dict):
        return None

    words = data.get("words") or []
    text = " ".join(str(w.get("text", "")) for w in words if isinstance(w, dict)).strip()
    if not text:
        return None

    participant = data.get("participant") or {}
    speaker = participant.get("name")
    if not speaker:
        speaker = f"Participant {participant['id']}" if participant.get("id") is not None else "Participant"

    relative = safe_dict_get(words, 0, "start_timestamp", "relative")
    timestamp = f"{relative}s" if relative is not None else utcnow().isoformat() + "Z"

    return TranscriptEvent(
        bot_id=bot_id,
        segment=TranscriptSegment(
            speaker=speaker,
            text=text,
            timestamp=timestamp,
            is_partial=event == TRANSCRIPT_PARTIAL,
        ),
    )


def _lifecycle_event(bot_id: str, event: Optional[str], payload: Dict[str, Any]) -> Optional[LifecycleEvent]:
    code = sub_code = message = None

    status = safe_dict_get(payload, "data", "status")
    if isinstance(status, dict):
        code = status.get("code")
        sub_code = status.get("sub_code")
        message = status.get("message")
    elif isinstance(status, str):
        code = status

    if code is None and event and event.startswith("bot.") and event != STATUS_CHANGE:
        # bot.<code> family: details live under data.data
        inner = safe_dict_get(payload, "data", "data", default={})
        code = safe_dict_get(inner, "code") or event[len("bot."):]
        sub_code = safe_dict_get(inner, "sub_code")
        message = safe_dict_get(inner, "message")

    if code is None:
        top = payload.get("status")
        if isinstance(top, dict):
            code = top.get("code")
            sub_code = top.get("sub_code")
            message = top.get("message")
        elif isinstance(top, str):
            code = top

    if not code:
        return None
    return LifecycleEvent(bot_id=bot_id, code=str(code), sub_code=sub_code, message=message)


def normalize_payload(payload: Any) -> Optional[WebhookEvent]:
    """
    Normalize a raw provider callback.

    Returns:
        LifecycleEvent, TranscriptEvent, or None when the payload has no bot
        id or carries nothing this service understands
    """
    if not isinstance(payload, dict):
        return None

    bot_id = _bot_id(payload)
    if not bot_id:
        return None

    event = payload.get("event")
    if event in (TRANSCRIPT_FINAL, TRANSCRIPT_PARTIAL):
        return _transcript_event(bot_id, event, payload)
    if event is None or (isinstance(event, str) and event.startswith("bot.")):
        return _lifecycle_event(bot_id, event, payload)
    return None


class WebhookProcessor:
    """Applies normalized webhook events to persisted and in-memory state."""

    def __init__(
        self,
        buffer: LiveTranscriptBuffer = None,
        registry: DispatchRegistry = None,
        dispatcher: EvaluationDispatcher = None,
    ):
        self.buffer = buffer or transcript_buffer
        self.registry = registry or dispatch_registry
        self.dispatcher = dispatcher or evaluation_dispatcher

    async def process(self, payload: Any) -> Optional[WebhookEvent]:
        """
        Handle one callback.

        Malformed and unknown payloads are logged and ignored. Database
        errors propagate to the caller, which still acknowledges the webhook.
        """
        event = normalize_payload(payload)
        if event is None:
            webhook_events_total.labels(kind="unknown", outcome="ignored").inc()
            logger.warning(
                "webhook_ignored",
                event=payload.get("event") if isinstance(payload, dict) else None,
            )
            return None

        with LogContext(bot_id=event.bot_id):
            if isinstance(event, TranscriptEvent):
                self.buffer.apply(event.bot_id, event.segment)
                webhook_events_total.labels(kind="transcript", outcome="applied").inc()
                logger.debug(
                    "transcript_segment_applied",
                    speaker=event.segment.speaker,
                    is_partial=event.segment.is_partial,
                )
            else:
                await self.handle_lifecycle(event)
        return event

    async def handle_lifecycle(self, event: LifecycleEvent) -> Optional[str]:
        """
        Persist a lifecycle transition and dispatch evaluation on completion.

        Returns:
            The new internal state, or None if the signal is unknown
        """
        async with get_db_session() as session:
            bot_session = await find_bot_session(session, event.bot_id)
            current = bot_session.status if bot_session else None

            state = next_state(current, event.code)
            if state is None:
                webhook_events_total.labels(kind="lifecycle", outcome="unknown_signal").inc()
                logger.info("bot_signal_ignored", signal=event.code, sub_code=event.sub_code)
                return None

            error_message = None
            if event.code == FATAL_SIGNAL:
                error_message = event.message or event.sub_code or "Bot failed"

            if bot_session is None:
                bot_session = await self._create_session(session, event.bot_id)

            bot_session.status = state
            bot_session.provider_status = event.code
            bot_session.updated_at = utcnow()
            if error_message:
                bot_session.error_message = error_message
            await session.flush()

            await self._mirror(session, bot_session, state, error_message)

        bot_transitions_total.labels(state=state).inc()
        webhook_events_total.labels(kind="lifecycle", outcome="applied").inc()
        logger.info("bot_state_changed", previous=current, state=state, signal=event.code)

        if event.code == DISPATCH_SIGNAL:
            if self.registry.mark_dispatched(event.bot_id):
                self.dispatcher.enqueue(event.bot_id)
                logger.info("evaluation_dispatched")
            else:
                logger.info("evaluation_already_dispatched")
        return state

    async def _create_session(self, session, bot_id: str) -> BotSession:
        """Session row for a bot this service has not seen yet."""
        result = await session.execute(select(ScheduledBot).where(ScheduledBot.bot_id == bot_id))
        scheduled = result.scalars().first()

        bot_session = await get_or_create_bot_session(
            session,
            bot_id,
            user_id=scheduled.user_id if scheduled else None,
            scheduled_bot_id=scheduled.id if scheduled else None,
            meeting_url=scheduled.meeting_url if scheduled else None,
        )
        logger.info("bot_session_created_from_webhook", linked=scheduled is not None)
        return bot_session

    async def _mirror(self, session, bot_session: BotSession, state: str, error_message: Optional[str]) -> None:
        """Copy the state onto the linked scheduled bot; failures only log."""
        values = {"bot_status": MIRROR_MAP[state], "updated_at": utcnow()}
        if error_message:
            values["error_message"] = error_message

        try:
            async with session.begin_nested():
                query = select(ScheduledBot)
                if bot_session.scheduled_bot_id is not None:
                    query = query.where(ScheduledBot.id == bot_session.scheduled_bot_id)
                else:
                    query = query.where(ScheduledBot.bot_id == bot_session.bot_id)
                result = await session.execute(query)
                scheduled = result.scalars().first()
                if scheduled is None:
                    return
                for key, value in values.items():
                    setattr(scheduled, key, value)
        except Exception as e:
            record_error(type(e).__name__, "webhook_mirror")
            logger.warning("scheduled_bot_mirror_failed", error=str(e))


webhook_processor = WebhookProcessor()

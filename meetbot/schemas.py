"""
Pydantic models for request/response validation and normalized webhook events.
"""
from pydantic import BaseModel, Field
from typing import List, Literal, Optional, Union
from datetime import datetime


class TranscriptSegment(BaseModel):
    """One utterance in a live transcript."""
    speaker: str
    text: str
    timestamp: str
    is_partial: bool = False


class Attendee(BaseModel):
    """Calendar event attendee."""
    email: str = ""
    display_name: Optional[str] = None
    response_status: Optional[str] = None


class CalendarEvent(BaseModel):
    """Calendar event carrying a video-conferencing link."""
    id: str
    title: str
    start: datetime
    end: Optional[datetime] = None
    meeting_url: str
    attendees: List[Attendee] = Field(default_factory=list)
    organizer_email: Optional[str] = None


# ============================================
# NORMALIZED WEBHOOK EVENTS
# ============================================

class LifecycleEvent(BaseModel):
    """Bot status change reported by the provider."""
    kind: Literal["lifecycle"] = "lifecycle"
    bot_id: str
    code: str
    sub_code: Optional[str] = None
    message: Optional[str] = None


class TranscriptEvent(BaseModel):
    """Chunk of speech-to-text output for a bot."""
    kind: Literal["transcript"] = "transcript"
    bot_id: str
    segment: TranscriptSegment


WebhookEvent = Union[LifecycleEvent, TranscriptEvent]


# ============================================
# API MODELS
# ============================================

class WebhookAck(BaseModel):
    """Acknowledgment always returned to the provider."""
    success: bool = True


class TranscriptResponse(BaseModel):
    """Current ordered transcript for a bot."""
    bot_id: str
    transcript: List[TranscriptSegment]
    last_updated: Optional[float] = None
    total_segments: int = 0
    message: Optional[str] = None


class TranscriptDeleteResponse(BaseModel):
    """Result of evicting a live transcript."""
    success: bool
    deleted: bool
    bot_id: str


class BotStatusResponse(BaseModel):
    """Provider-side status of a bot."""
    bot_id: str
    status: str
    provider_status: str
    sub_code: Optional[str] = None
    meeting_url: Optional[str] = None


class CalendarStatus(BaseModel):
    """Calendar connection state for the current user."""
    connected: bool
    email: Optional[str] = None
    status: str
    auto_record_enabled: Optional[bool] = None
    connected_at: Optional[datetime] = None


class ToggleAutoRecordRequest(BaseModel):
    enabled: bool


class ToggleAutoRecordResponse(BaseModel):
    success: bool = True
    auto_record_enabled: bool


class ToggleBotRequest(BaseModel):
    scheduled_bot_id: int
    enabled: bool


class ToggleBotResponse(BaseModel):
    success: bool = True
    bot_enabled: bool
    bot_status: str


class ScheduledBotOut(BaseModel):
    """Scheduled bot as shown to the user."""
    id: int
    external_event_id: str
    event_title: Optional[str] = None
    event_start: datetime
    event_end: Optional[datetime] = None
    meeting_url: str
    attendees: List[Attendee] = Field(default_factory=list)
    bot_enabled: bool
    bot_status: str
    bot_id: Optional[str] = None
    evaluation_id: Optional[str] = None
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


class ConnectionResponse(BaseModel):
    """Response after a successful calendar connection."""
    message: str
    user_id: str
    email: Optional[str] = None


class SchedulerRunResponse(BaseModel):
    """Statistics of one scheduler pass."""
    success: bool = True
    action: str
    stats: dict


class HealthCheck(BaseModel):
    """Health check response."""
    status: str
    database: str
    live_transcripts: int
    timestamp: str

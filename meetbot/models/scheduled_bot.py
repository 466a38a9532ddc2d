"""
Scheduled bot model: the per-event decision whether a bot attends.
"""
from sqlalchemy import Column, String, Integer, Text, Boolean, DateTime, JSON, ForeignKey, UniqueConstraint
from meetbot.models.base import Base
from meetbot.utils import utcnow


class ScheduledBotStatus:
    PENDING = "pending"
    SCHEDULED = "scheduled"
    JOINING = "joining"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class ScheduledBot(Base):
    """A calendar event with a meeting link and its bot lifecycle."""

    __tablename__ = 'scheduled_bots'
    __table_args__ = (
        UniqueConstraint('user_id', 'external_event_id', name='uq_scheduled_bots_user_event'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    calendar_connection_id = Column(Integer, ForeignKey('calendar_connections.id'), nullable=True)
    external_event_id = Column(String(1024), nullable=False)

    # Event details, refreshed on every sync
    event_title = Column(String(500), nullable=True)
    event_start = Column(DateTime, nullable=False, index=True)
    event_end = Column(DateTime, nullable=True)
    meeting_url = Column(Text, nullable=False)
    attendees = Column(JSON, nullable=False, default=list)

    # Bot lifecycle, never touched by sync
    bot_enabled = Column(Boolean, nullable=False, default=True)
    bot_status = Column(String(50), nullable=False, default=ScheduledBotStatus.PENDING, index=True)
    bot_id = Column(String(255), nullable=True, index=True)
    evaluation_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<ScheduledBot(id={self.id}, event='{self.external_event_id}', status='{self.bot_status}')>"

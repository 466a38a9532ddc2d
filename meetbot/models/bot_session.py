"""
Bot session model: provider-side record driving webhook bookkeeping.
"""
from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, ForeignKey
from meetbot.models.base import Base
from meetbot.utils import utcnow


class BotState:
    CREATED = "created"
    JOINING = "joining"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class BotSession(Base):
    """Recording bot as known to the provider, keyed by provider bot id."""

    __tablename__ = 'bot_sessions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    bot_id = Column(String(255), nullable=False, unique=True, index=True)
    user_id = Column(String(255), nullable=True, index=True)
    scheduled_bot_id = Column(Integer, ForeignKey('scheduled_bots.id'), nullable=True)
    meeting_url = Column(Text, nullable=True)
    status = Column(String(50), nullable=False, default=BotState.CREATED)
    provider_status = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    evaluation_id = Column(String(255), nullable=True)
    transcript = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<BotSession(bot_id='{self.bot_id}', status='{self.status}')>"

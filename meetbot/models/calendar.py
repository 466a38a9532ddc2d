"""
Calendar connection model.
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime
from meetbot.models.base import Base
from meetbot.utils import utcnow


class ConnectionStatus:
    ACTIVE = "active"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


class CalendarConnection(Base):
    """One calendar account per user. Tokens are stored encrypted."""

    __tablename__ = 'calendar_connections'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, unique=True, index=True)
    account_email = Column(String(255), nullable=True)
    access_token = Column(String(8192), nullable=False)  # Encrypted
    refresh_token = Column(String(8192), nullable=True)  # Encrypted
    token_expires_at = Column(DateTime, nullable=False)
    calendar_id = Column(String(500), nullable=True)  # None means the default calendar
    status = Column(String(50), nullable=False, default=ConnectionStatus.ACTIVE, index=True)
    auto_record_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<CalendarConnection(user_id='{self.user_id}', status='{self.status}')>"

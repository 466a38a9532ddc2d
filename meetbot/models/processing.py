"""
Scheduler run log model.
"""
from sqlalchemy import Column, String, Integer, Text, DateTime, Float
from meetbot.models.base import Base
from meetbot.utils import utcnow


class ProcessingLog(Base):
    """Log of scheduler executions."""

    __tablename__ = 'processing_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(50), nullable=False)  # sync, schedule
    run_timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    status = Column(String(50), nullable=False)  # success, partial, failed
    connections_processed = Column(Integer, default=0)
    events_synced = Column(Integer, default=0)
    bots_scheduled = Column(Integer, default=0)
    bots_timed_out = Column(Integer, default=0)
    errors_count = Column(Integer, default=0)
    duration_seconds = Column(Float, nullable=True)
    error_details = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<ProcessingLog(id={self.id}, action='{self.action}', status='{self.status}')>"

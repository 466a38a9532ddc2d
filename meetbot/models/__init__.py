"""
Database models package.
Import all models here for easy access and Alembic auto-detection.
"""
from meetbot.models.base import Base
from meetbot.models.calendar import CalendarConnection, ConnectionStatus
from meetbot.models.scheduled_bot import ScheduledBot, ScheduledBotStatus
from meetbot.models.bot_session import BotSession, BotState
from meetbot.models.processing import ProcessingLog

__all__ = [
    'Base',
    'CalendarConnection',
    'ConnectionStatus',
    'ScheduledBot',
    'ScheduledBotStatus',
    'BotSession',
    'BotState',
    'ProcessingLog'
]

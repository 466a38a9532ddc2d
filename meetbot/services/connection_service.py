"""
Calendar connection store: encrypted token persistence per user.
"""
from datetime import datetime
from sqlalchemy import select, update
from typing import Optional, Dict

from meetbot.db import get_db_session
from meetbot.models import CalendarConnection, ConnectionStatus, ScheduledBot, ScheduledBotStatus
from meetbot.utils import token_cipher, utcnow
from meetbot.logging_config import get_logger

logger = get_logger(__name__)


async def save_connection(
    user_id: str,
    account_email: Optional[str],
    access_token: str,
    refresh_token: Optional[str],
    expires_at: datetime
) -> CalendarConnection:
    """
    Save or update the calendar connection of a user.

    Reconnecting reuses the existing row and resets it to active, so a user
    never ends up with two connections.

    Args:
        user_id: Unique user identifier
        account_email: Calendar account email
        access_token: OAuth access token
        refresh_token: OAuth refresh token (optional)
        expires_at: Token expiration (naive UTC)
    """
    async with get_db_session() as session:
        encrypted_access = token_cipher.encrypt_token(access_token)
        encrypted_refresh = token_cipher.encrypt_token(refresh_token) if refresh_token else None

        result = await session.execute(
            select(CalendarConnection).where(CalendarConnection.user_id == user_id)
        )
        connection = result.scalar_one_or_none()

        if connection:
            connection.account_email = account_email
            connection.access_token = encrypted_access
            if encrypted_refresh:
                connection.refresh_token = encrypted_refresh
            connection.token_expires_at = expires_at
            connection.status = ConnectionStatus.ACTIVE
            connection.updated_at = utcnow()
        else:
            connection = CalendarConnection(
                user_id=user_id,
                account_email=account_email,
                access_token=encrypted_access,
                refresh_token=encrypted_refresh,
                token_expires_at=expires_at,
                status=ConnectionStatus.ACTIVE,
                auto_record_enabled=True,
            )
            session.add(connection)
        await session.flush()

    logger.info("calendar_connection_saved", user_id=user_id)
    return connection


async def get_connection(user_id: str, active_only: bool = True) -> Optional[CalendarConnection]:
    """
    Load the calendar connection of a user.

    Args:
        user_id: Unique user identifier
        active_only: Only return the connection if its status is active

    Returns:
        The connection row (tokens still encrypted), or None
    """
    async with get_db_session() as session:
        query = select(CalendarConnection).where(CalendarConnection.user_id == user_id)
        if active_only:
            query = query.where(CalendarConnection.status == ConnectionStatus.ACTIVE)
        result = await session.execute(query)
        return result.scalar_one_or_none()


def decrypt_connection_tokens(connection: CalendarConnection) -> Dict[str, Optional[str]]:
    """Decrypted access/refresh tokens of a connection, for in-memory use only."""
    return {
        "access_token": token_cipher.decrypt_token(connection.access_token),
        "refresh_token": token_cipher.decrypt_token(connection.refresh_token),
    }


async def update_tokens(
    user_id: str,
    access_token: str,
    expires_at: datetime,
    refresh_token: Optional[str] = None
) -> None:
    """
    Persist a refreshed access token and mark the connection active.

    Args:
        user_id: Unique user identifier
        access_token: New access token
        expires_at: New expiration (naive UTC)
        refresh_token: Rotated refresh token (optional)
    """
    async with get_db_session() as session:
        result = await session.execute(
            select(CalendarConnection).where(CalendarConnection.user_id == user_id)
        )
        connection = result.scalar_one_or_none()

        if not connection:
            raise ValueError(f"Calendar connection for user {user_id} not found")

        connection.access_token = token_cipher.encrypt_token(access_token)
        connection.token_expires_at = expires_at
        connection.status = ConnectionStatus.ACTIVE
        connection.updated_at = utcnow()

        if refresh_token:
            connection.refresh_token = token_cipher.encrypt_token(refresh_token)


async def set_status(user_id: str, status: str) -> bool:
    """
    Set the status of a user's connection (expired, disconnected...).

    Returns:
        True if a connection was updated
    """
    async with get_db_session() as session:
        result = await session.execute(
            update(CalendarConnection)
            .where(CalendarConnection.user_id == user_id)
            .values(status=status, updated_at=utcnow())
        )
        updated = result.rowcount > 0

    if updated:
        logger.info("calendar_connection_status_changed", user_id=user_id, status=status)
    return updated


async def mark_expired(user_id: str) -> bool:
    """Force re-consent: subsequent calls short-circuit until the user reconnects."""
    return await set_status(user_id, ConnectionStatus.EXPIRED)


async def set_auto_record(user_id: str, enabled: bool) -> bool:
    """
    Toggle auto-record on the active connection.

    Disabling also skips every pending scheduled bot of the user.

    Returns:
        True if an active connection was updated
    """
    async with get_db_session() as session:
        result = await session.execute(
            update(CalendarConnection)
            .where(
                CalendarConnection.user_id == user_id,
                CalendarConnection.status == ConnectionStatus.ACTIVE
            )
            .values(auto_record_enabled=enabled, updated_at=utcnow())
        )
        if result.rowcount == 0:
            return False

        if not enabled:
            await session.execute(
                update(ScheduledBot)
                .where(
                    ScheduledBot.user_id == user_id,
                    ScheduledBot.bot_status == ScheduledBotStatus.PENDING
                )
                .values(
                    bot_enabled=False,
                    bot_status=ScheduledBotStatus.SKIPPED,
                    updated_at=utcnow()
                )
            )

    logger.info("auto_record_toggled", user_id=user_id, enabled=enabled)
    return True

"""
Utility functions for the meeting bot service.
"""
from cryptography.fernet import Fernet
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log
)
from datetime import datetime, timezone
from functools import wraps
import asyncio
import logging
from typing import Callable, Optional, TypeVar, Any
from meetbot.logging_config import get_logger
from meetbot.exceptions import APIError, RateLimitError, TokenDecryptionError, TokenError
from meetbot.config import settings

logger = get_logger(__name__)

T = TypeVar('T')


class TokenCipher:
    """Encrypts and decrypts OAuth tokens stored in the database."""

    def __init__(self, encryption_key: str):
        """Initialize with encryption key."""
        try:
            self.fernet = Fernet(encryption_key.encode())
        except Exception as e:
            logger.error("failed_to_initialize_cipher", error=str(e))
            raise TokenDecryptionError(f"Invalid encryption key: {str(e)}")

    def encrypt_token(self, token: Optional[str]) -> Optional[str]:
        """
        Encrypt a token for secure storage.

        Args:
            token: Plain text token

        Returns:
            Encrypted token as string
        """
        if token is None:
            return None
        if token == "":
            return ""
        return self.fernet.encrypt(token.encode()).decode()

    def decrypt_token(self, encrypted_token: Optional[str]) -> Optional[str]:
        """
        Decrypt an encrypted token.

        Args:
            encrypted_token: Encrypted token string

        Returns:
            Decrypted token string

        Raises:
            TokenDecryptionError: If decryption fails
        """
        if encrypted_token is None:
            return None
        if encrypted_token == "":
            return ""
        try:
            return self.fernet.decrypt(encrypted_token.encode()).decode()
        except Exception as e:
            logger.error("token_decryption_failed", error=str(e))
            raise TokenDecryptionError(f"Failed to decrypt token: {str(e)}")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into a naive UTC datetime.

    Graph returns up to seven fractional digits, which fromisoformat rejects
    on older interpreters, so the fraction is trimmed to microseconds.
    """
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    if len(text) == 10:
        text = f"{text}T00:00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "2m 30s"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def is_transient(error: BaseException) -> bool:
    """
    Whether a failed call is worth repeating.

    Rate limits, 5xx answers and transport failures are; 4xx answers and
    token problems are not, since a retry would fail the same way.
    """
    if isinstance(error, TokenError):
        return False
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, APIError):
        return error.status_code is None or error.status_code >= 500
    return isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError))


def async_retry(
    max_attempts: int = None,
    backoff_base: float = None,
    max_wait: int = None,
):
    """
    Decorator for retrying idempotent async calls with exponential backoff.

    Only transient failures (see is_transient) are retried; the last error is
    re-raised once attempts run out. Never use it on calls that create
    something remotely.

    Args:
        max_attempts: Maximum attempts (default from config)
        backoff_base: Base for exponential backoff (default from config)
        max_wait: Maximum wait between attempts in seconds (default from config)
    """
    max_attempts = max_attempts or settings.max_retries
    backoff_base = backoff_base or settings.retry_backoff_base
    max_wait = max_wait or settings.retry_max_wait

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=max_wait, exp_base=backoff_base),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await func(*args, **kwargs)

        return wrapper

    return decorator


def safe_dict_get(d: dict, *keys: str, default: Any = None) -> Any:
    """
    Safely get nested dictionary values.

    Args:
        d: Dictionary to search
        *keys: Keys to traverse
        default: Default value if key not found

    Returns:
        Value or default
    """
    for key in keys:
        try:
            d = d[key]
        except (KeyError, TypeError, AttributeError, IndexError):
            return default
    return default if d is None else d


token_cipher = TokenCipher(settings.encryption_key)

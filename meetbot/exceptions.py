"""
Custom exceptions for better error handling.
"""


class MeetBotException(Exception):
    """Base exception for meeting bot errors."""
    pass


class TokenError(MeetBotException):
    """Token-related errors."""
    pass


class TokenRefreshError(TokenError):
    """Refreshing the calendar access token failed."""
    pass


class TokenDecryptionError(TokenError):
    """Failed to decrypt token."""
    pass


class APIError(MeetBotException):
    """Base class for API errors."""
    def __init__(self, message: str, status_code: int = None, platform: str = None):
        self.status_code = status_code
        self.platform = platform
        super().__init__(message)


class RateLimitError(APIError):
    """API rate limit exceeded."""
    def __init__(self, message: str, retry_after: int = None, platform: str = None):
        self.retry_after = retry_after
        super().__init__(message, status_code=429, platform=platform)


class CalendarAPIError(APIError):
    """Microsoft Graph calendar errors."""
    def __init__(self, message: str, status_code: int = None):
        super().__init__(message, status_code=status_code, platform="calendar")


class CalendarAuthError(TokenError):
    """Calendar provider rejected the token (401/403). Never retried."""
    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class BotProviderError(APIError):
    """Recall.ai API errors."""
    def __init__(self, message: str, status_code: int = None):
        super().__init__(message, status_code=status_code, platform="recall")


class ConfigurationError(MeetBotException):
    """Configuration or environment variable errors."""
    pass

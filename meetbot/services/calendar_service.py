"""
Calendar access client for Microsoft Graph.

Hands out an authenticated calendar handle per user, refreshing the access
token through MSAL shortly before it expires, and lists upcoming events that
carry a video-conferencing link.
"""
import asyncio
import re
import time
import httpx
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional, Tuple
from msal import ConfidentialClientApplication

from meetbot.config import settings
from meetbot.logging_config import get_logger
from meetbot.exceptions import (
    CalendarAPIError,
    CalendarAuthError,
    ConfigurationError,
    RateLimitError,
    TokenRefreshError,
)
from meetbot.models import CalendarConnection, ConnectionStatus
from meetbot.schemas import Attendee, CalendarEvent
from meetbot.services import connection_service
from meetbot.utils import async_retry, parse_datetime, safe_dict_get, utcnow
from meetbot.rate_limiters import rate_limiters
from meetbot.monitoring import api_requests_total, api_request_duration, record_error

logger = get_logger(__name__)

MEETING_URL_PATTERN = re.compile(
    r"https://(?:meet\.google\.com|teams\.microsoft\.com|teams\.live\.com|[\w.-]*zoom\.us|[\w.-]*webex\.com)/[^\s\"'<>]+",
    re.IGNORECASE,
)


def extract_meeting_url(event: Dict) -> Optional[str]:
    """Video-conferencing entry point of a Graph event, if it has one."""
    join_url = safe_dict_get(event, "onlineMeeting", "joinUrl")
    if join_url:
        return join_url
    if event.get("onlineMeetingUrl"):
        return event["onlineMeetingUrl"]
    for text in (safe_dict_get(event, "location", "displayName"), event.get("bodyPreview")):
        if text:
            match = MEETING_URL_PATTERN.search(text)
            if match:
                return match.group(0)
    return None


def to_calendar_event(event: Dict) -> Optional[CalendarEvent]:
    """Normalize a Graph event; None when it has no meeting link or no start."""
    if event.get("isCancelled"):
        return None
    meeting_url = extract_meeting_url(event)
    start = parse_datetime(safe_dict_get(event, "start", "dateTime"))
    if not meeting_url or not start or not event.get("id"):
        return None

    attendees = [
        Attendee(
            email=safe_dict_get(attendee, "emailAddress", "address", default=""),
            display_name=safe_dict_get(attendee, "emailAddress", "name"),
            response_status=safe_dict_get(attendee, "status", "response"),
        )
        for attendee in event.get("attendees") or []
    ]

    return CalendarEvent(
        id=event["id"],
        title=event.get("subject") or "Untitled meeting",
        start=start,
        end=parse_datetime(safe_dict_get(event, "end", "dateTime")),
        meeting_url=meeting_url,
        attendees=attendees,
        organizer_email=safe_dict_get(event, "organizer", "emailAddress", "address"),
    )


class CalendarHandle:
    """Authenticated view of one user's calendar."""

    GRAPH_API_ENDPOINT = "https://graph.microsoft.com/v1.0"
    REQUEST_TIMEOUT = 30.0
    PAGE_SIZE = 100

    def __init__(
        self,
        service: "CalendarService",
        user_id: str,
        access_token: str,
        calendar_id: Optional[str] = None,
    ):
        self.service = service
        self.user_id = user_id
        self.calendar_id = calendar_id
        self.headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Prefer": 'outlook.timezone="UTC"',
        }

    async def _handle_http_error(self, error: httpx.HTTPStatusError, operation: str) -> None:
        """
        Translate an HTTP error into the matching exception.

        A 401/403 marks the connection expired so later calls short-circuit
        instead of retrying with a dead token.
        """
        status_code = error.response.status_code

        api_requests_total.labels(
            platform="calendar",
            endpoint=operation,
            status=f"error_{status_code}"
        ).inc()

        if status_code in (401, 403):
            record_error("CalendarAuthError", "calendar_service")
            await connection_service.mark_expired(self.user_id)
            raise CalendarAuthError(
                f"Calendar rejected credentials in {operation}",
                status_code=status_code
            )
        elif status_code == 429:
            retry_after = int(error.response.headers.get("Retry-After", 60))
            record_error("RateLimitError", "calendar_service")
            raise RateLimitError(
                f"Rate limit exceeded for {operation}",
                retry_after=retry_after,
                platform="calendar"
            )
        else:
            record_error("CalendarAPIError", "calendar_service")
            error_text = error.response.text[:500] if error.response.text else "No details"
            raise CalendarAPIError(
                f"API error in {operation}: {status_code} - {error_text}",
                status_code=status_code
            )

    def _events_url(self) -> str:
        if self.calendar_id:
            return f"{self.GRAPH_API_ENDPOINT}/me/calendars/{self.calendar_id}/calendarView"
        return f"{self.GRAPH_API_ENDPOINT}/me/calendarView"

    @async_retry()
    async def list_meeting_events(self, days_ahead: int = 7) -> List[CalendarEvent]:
        """
        List events with a video-conferencing link from the start of today
        until the end of the last day in range.

        Args:
            days_ahead: Number of days after today to include

        Returns:
            Normalized events ordered by start time
        """
        operation = "list_meeting_events"
        started = time.time()

        start_of_today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        window_end = start_of_today + timedelta(days=days_ahead + 1)
        params = {
            "startDateTime": start_of_today.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "endDateTime": window_end.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "$top": self.PAGE_SIZE,
            "$orderby": "start/dateTime",
            "$select": "id,subject,start,end,isCancelled,onlineMeeting,onlineMeetingUrl,"
                       "location,bodyPreview,attendees,organizer",
        }

        raw_events = []
        url = self._events_url()

        try:
            async with self.service.http_client() as client:
                # Follow @odata.nextLink until Graph stops paging
                while url:
                    await rate_limiters.acquire_graph_limit()
                    response = await client.get(url, headers=self.headers, params=params)
                    response.raise_for_status()
                    page = response.json()
                    raw_events.extend(safe_dict_get(page, "value", default=[]))
                    url = page.get("@odata.nextLink")
                    params = None
        except httpx.HTTPStatusError as e:
            await self._handle_http_error(e, operation)
            return []
        except httpx.TimeoutException as e:
            record_error("TimeoutError", "calendar_service")
            logger.error("calendar_api_timeout", operation=operation, error=str(e))
            raise CalendarAPIError(f"Timeout in {operation}")
        except httpx.RequestError as e:
            record_error("RequestError", "calendar_service")
            logger.error("calendar_api_request_failed", operation=operation, error=str(e))
            raise CalendarAPIError(f"Request failed in {operation}: {str(e)}")

        api_requests_total.labels(platform="calendar", endpoint=operation, status="success").inc()
        api_request_duration.labels(platform="calendar", endpoint=operation).observe(time.time() - started)

        events = [e for e in (to_calendar_event(raw) for raw in raw_events) if e is not None]
        logger.info(
            "calendar_events_fetched",
            user_id=self.user_id,
            total=len(raw_events),
            with_meeting_link=len(events),
            days_ahead=days_ahead
        )
        return events


class CalendarService:
    """Calendar access client: token lifecycle plus authenticated handles."""

    REQUEST_TIMEOUT = 30.0

    def __init__(
        self,
        msal_app: Optional[ConfidentialClientApplication] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._msal_app = msal_app
        self._http_client = http_client

    def get_msal_app(self) -> ConfidentialClientApplication:
        """Get or create MSAL application instance."""
        if self._msal_app is None:
            if not settings.client_id or not settings.client_secret:
                raise ConfigurationError("CLIENT_ID and CLIENT_SECRET must be configured")
            self._msal_app = ConfidentialClientApplication(
                settings.client_id,
                authority=settings.authority,
                client_credential=settings.client_secret
            )
        return self._msal_app

    @asynccontextmanager
    async def http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Injected client when present, otherwise a short-lived one."""
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self.REQUEST_TIMEOUT) as client:
                yield client

    # ============================================
    # OAUTH CONSENT
    # ============================================

    def build_auth_url(self, state: str) -> str:
        """Consent URL the user is redirected to."""
        return self.get_msal_app().get_authorization_request_url(
            scopes=settings.scopes,
            state=state,
            redirect_uri=settings.redirect_uri,
            prompt="consent",
        )

    async def exchange_code(self, code: str) -> CalendarConnection:
        """
        Exchange an authorization code for tokens and store the connection.

        The connection belongs to the account that signed in: the user id is
        the object id (``oid``) claim of the returned ID token.

        Raises:
            TokenRefreshError: If the provider rejects the code or the ID
                token carries no object id
        """
        # MSAL is synchronous; keep its network round trip off the event loop
        result = await asyncio.to_thread(
            self.get_msal_app().acquire_token_by_authorization_code,
            code,
            scopes=settings.scopes,
            redirect_uri=settings.redirect_uri
        )
        if "error" in result:
            raise TokenRefreshError(f"{result.get('error')}: {result.get('error_description')}")

        claims = result.get("id_token_claims", {})
        user_id = claims.get("oid")
        if not user_id:
            raise TokenRefreshError("ID token has no oid claim")
        email = claims.get("preferred_username") or claims.get("email")
        expires_at = utcnow() + timedelta(seconds=int(result.get("expires_in", 3600)))

        return await connection_service.save_connection(
            user_id=user_id,
            account_email=email,
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_at=expires_at,
        )

    async def disconnect(self, user_id: str) -> bool:
        """Stop using a user's calendar. Tokens stay stored until reconnect overwrites them."""
        disconnected = await connection_service.set_status(user_id, ConnectionStatus.DISCONNECTED)
        if disconnected:
            logger.info("calendar_disconnected", user_id=user_id)
        return disconnected

    # ============================================
    # TOKEN LIFECYCLE
    # ============================================

    def _needs_refresh(self, expires_at: datetime) -> bool:
        buffer = timedelta(seconds=settings.token_refresh_threshold_seconds)
        return expires_at - buffer <= utcnow()

    async def _refresh(self, connection: CalendarConnection, refresh_token: Optional[str]) -> Optional[str]:
        """
        Refresh the access token; persist the outcome either way.

        Returns:
            New access token, or None if the refresh failed
        """
        if not refresh_token:
            logger.warning("calendar_refresh_token_missing", user_id=connection.user_id)
            await connection_service.mark_expired(connection.user_id)
            return None

        try:
            result = await asyncio.to_thread(
                self.get_msal_app().acquire_token_by_refresh_token,
                refresh_token,
                scopes=settings.scopes
            )
        except Exception as e:
            result = {"error": type(e).__name__, "error_description": str(e)}

        if "error" in result or not result.get("access_token"):
            record_error("TokenRefreshError", "calendar_service")
            logger.warning(
                "calendar_token_refresh_failed",
                user_id=connection.user_id,
                error=result.get("error"),
            )
            await connection_service.mark_expired(connection.user_id)
            return None

        expires_at = utcnow() + timedelta(seconds=int(result.get("expires_in", 3600)))
        await connection_service.update_tokens(
            connection.user_id,
            result["access_token"],
            expires_at,
            result.get("refresh_token"),
        )
        connection.token_expires_at = expires_at
        logger.info("calendar_token_refreshed", user_id=connection.user_id)
        return result["access_token"]

    async def get_client(self, user_id: str) -> Optional[Tuple[CalendarHandle, CalendarConnection]]:
        """
        Authenticated calendar handle for a user.

        Returns:
            (handle, connection), or None if there is no active connection or
            the token could not be refreshed
        """
        connection = await connection_service.get_connection(user_id)
        if connection is None:
            return None

        tokens = connection_service.decrypt_connection_tokens(connection)
        access_token = tokens["access_token"]

        if self._needs_refresh(connection.token_expires_at):
            access_token = await self._refresh(connection, tokens["refresh_token"])
            if access_token is None:
                return None

        handle = CalendarHandle(self, user_id, access_token, connection.calendar_id)
        return handle, connection

    async def fetch_upcoming_meeting_events(self, user_id: str, days_ahead: int = 7) -> Optional[List[CalendarEvent]]:
        """
        Upcoming events with meeting links, or None when the calendar is unavailable.

        Raises:
            CalendarAPIError: On non-auth API failures after retries
        """
        client = await self.get_client(user_id)
        if client is None:
            return None
        handle, _ = client
        try:
            return await handle.list_meeting_events(days_ahead)
        except CalendarAuthError:
            logger.warning("calendar_auth_rejected", user_id=user_id)
            return None


calendar_service = CalendarService()

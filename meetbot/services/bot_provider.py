"""
Recall.ai bot provider client.
"""
import time
import httpx
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from meetbot.config import settings
from meetbot.logging_config import get_logger
from meetbot.exceptions import BotProviderError, ConfigurationError, RateLimitError
from meetbot.schemas import TranscriptSegment
from meetbot.utils import async_retry, safe_dict_get, utcnow
from meetbot.rate_limiters import rate_limiters
from meetbot.monitoring import api_requests_total, api_request_duration, bots_created_total, record_error

logger = get_logger(__name__)

TRANSCRIPT_EVENTS = ["transcript.data", "transcript.partial_data"]


def _join_words(words: List[Dict]) -> str:
    return " ".join(str(w.get("text", "")) for w in words if isinstance(w, dict)).strip()


def _speaker_label(participant: Optional[Dict], fallback_id: Any = None) -> str:
    name = safe_dict_get(participant, "name")
    if name:
        return name
    speaker_id = safe_dict_get(participant, "id", default=fallback_id)
    return f"Participant {speaker_id}" if speaker_id is not None else "Participant"


def parse_bot_transcript(data: Any) -> List[TranscriptSegment]:
    """
    Parse the response of GET /bot/{id}/transcript/.

    Accepts a bare list or a paginated {"results": [...]} body.
    """
    items = data if isinstance(data, list) else safe_dict_get(data, "results", default=[])
    segments = []
    for item in items:
        words = item.get("words") or []
        text = _join_words(words)
        if not text:
            continue
        start = safe_dict_get(words, 0, "start_time")
        segments.append(TranscriptSegment(
            speaker=item.get("speaker") or _speaker_label(item.get("participant"), item.get("speaker_id")),
            text=text,
            timestamp=f"{start}s" if start is not None else utcnow().isoformat() + "Z",
            is_partial=item.get("is_final") is False,
        ))
    return segments


def parse_recording_transcript(data: Any) -> List[TranscriptSegment]:
    """Parse a transcript downloaded from a recording's media shortcut."""
    if not isinstance(data, list):
        return []
    segments = []
    for item in data:
        words = item.get("words") or []
        text = _join_words(words)
        if not text:
            continue
        relative = safe_dict_get(words, 0, "start_timestamp", "relative")
        segments.append(TranscriptSegment(
            speaker=_speaker_label(item.get("participant"), item.get("speaker")),
            text=text,
            timestamp=f"{relative}s" if relative is not None else utcnow().isoformat() + "Z",
        ))
    return segments


class RecallClient:
    """Client for the Recall.ai bot REST API."""

    REQUEST_TIMEOUT = 30.0

    def __init__(self, api_key: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key or settings.recall_api_key
        self.base_url = settings.recall_api_url
        self._http_client = http_client

    @property
    def headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("RECALL_API_KEY must be configured")
        return {
            "Authorization": f"Token {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @asynccontextmanager
    async def http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self.REQUEST_TIMEOUT) as client:
                yield client

    def _handle_http_error(self, error: httpx.HTTPStatusError, operation: str) -> None:
        """Translate an HTTP error into the matching exception."""
        status_code = error.response.status_code

        api_requests_total.labels(
            platform="recall",
            endpoint=operation,
            status=f"error_{status_code}"
        ).inc()

        if status_code == 429:
            retry_after = int(error.response.headers.get("Retry-After", 60))
            record_error("RateLimitError", "bot_provider")
            raise RateLimitError(
                f"Rate limit exceeded for {operation}",
                retry_after=retry_after,
                platform="recall"
            )

        record_error("BotProviderError", "bot_provider")
        try:
            detail = error.response.json().get("detail")
        except (ValueError, AttributeError):
            detail = None
        detail = detail or (error.response.text[:500] if error.response.text else "No details")
        raise BotProviderError(f"{operation} failed: {status_code} - {detail}", status_code=status_code)

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        """Rate-limited request against the provider API."""
        started = time.time()
        await rate_limiters.acquire_recall_limit()

        try:
            async with self.http_client() as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", headers=self.headers, **kwargs
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self._handle_http_error(e, operation)
        except httpx.TimeoutException as e:
            record_error("TimeoutError", "bot_provider")
            logger.error("recall_api_timeout", operation=operation, error=str(e))
            raise BotProviderError(f"Timeout in {operation}")
        except httpx.RequestError as e:
            record_error("RequestError", "bot_provider")
            logger.error("recall_api_request_failed", operation=operation, error=str(e))
            raise BotProviderError(f"Request failed in {operation}: {str(e)}")

        api_requests_total.labels(platform="recall", endpoint=operation, status="success").inc()
        api_request_duration.labels(platform="recall", endpoint=operation).observe(time.time() - started)
        return response

    def build_bot_request(self, meeting_url: str, bot_name: Optional[str] = None) -> Dict[str, Any]:
        """Body of a bot creation request."""
        return {
            "meeting_url": meeting_url,
            "bot_name": bot_name or settings.bot_name,
            "recording_config": {
                "transcript": {
                    "provider": {
                        settings.transcription_provider: {
                            "model": settings.transcription_model,
                            "language": settings.transcription_language,
                            "diarize": True,
                        }
                    }
                },
                "realtime_endpoints": [
                    {
                        "type": "webhook",
                        "url": settings.webhook_url,
                        "events": TRANSCRIPT_EVENTS,
                    }
                ],
            },
            "chat": {
                "on_bot_join": {
                    "send_to": "everyone",
                    "message": settings.bot_join_message,
                }
            },
            "automatic_leave": {
                "waiting_room_timeout": settings.waiting_room_timeout,
                "noone_joined_timeout": settings.noone_joined_timeout,
                "everyone_left_timeout": settings.everyone_left_timeout,
            },
        }

    async def create_bot(self, meeting_url: str, bot_name: Optional[str] = None) -> str:
        """
        Ask the provider to send a bot to a meeting.

        Never retried: a retry after a lost response could create a second
        bot for the same meeting.

        Returns:
            Provider bot id

        Raises:
            BotProviderError: If the provider refuses or cannot be reached
        """
        try:
            response = await self._request(
                "POST", "/bot/", "create_bot", json=self.build_bot_request(meeting_url, bot_name)
            )
        except (BotProviderError, RateLimitError):
            bots_created_total.labels(status="failed").inc()
            raise

        bot_id = safe_dict_get(response.json(), "id")
        if not bot_id:
            bots_created_total.labels(status="failed").inc()
            raise BotProviderError("create_bot returned no bot id")

        bots_created_total.labels(status="success").inc()
        logger.info("bot_created", bot_id=bot_id, meeting_url=meeting_url)
        return bot_id

    @async_retry()
    async def get_bot(self, bot_id: str) -> Dict[str, Any]:
        """Full provider record of a bot."""
        response = await self._request("GET", f"/bot/{bot_id}/", "get_bot")
        return response.json()

    async def leave_call(self, bot_id: str) -> bool:
        """
        Ask a bot to leave its call.

        A 400 means the bot already left and counts as success.
        """
        try:
            await self._request("POST", f"/bot/{bot_id}/leave_call/", "leave_call")
        except BotProviderError as e:
            if e.status_code == 400:
                logger.info("bot_already_left", bot_id=bot_id)
                return True
            raise
        logger.info("bot_leave_requested", bot_id=bot_id)
        return True

    @async_retry()
    async def _fetch_bot_transcript(self, bot_id: str) -> List[TranscriptSegment]:
        response = await self._request("GET", f"/bot/{bot_id}/transcript/", "fetch_transcript")
        return parse_bot_transcript(response.json())

    async def _fetch_recording_transcript(self, bot_id: str) -> List[TranscriptSegment]:
        bot = await self.get_bot(bot_id)
        recordings = bot.get("recordings") or []
        if not recordings:
            logger.info("bot_has_no_recordings", bot_id=bot_id)
            return []

        download_url = safe_dict_get(recordings[-1], "media_shortcuts", "transcript", "data", "download_url")
        if not download_url:
            return []

        try:
            async with self.http_client() as client:
                response = await client.get(download_url)
                if response.status_code != 200:
                    logger.warning("transcript_download_failed", bot_id=bot_id, status=response.status_code)
                    return []
                payload = response.json()
        except httpx.RequestError as e:
            record_error("RequestError", "bot_provider")
            raise BotProviderError(f"Transcript download failed: {str(e)}")
        except ValueError as e:
            record_error("ValueError", "bot_provider")
            raise BotProviderError(f"Transcript download is not valid JSON: {str(e)}")
        return parse_recording_transcript(payload)

    async def fetch_transcript(self, bot_id: str) -> List[TranscriptSegment]:
        """
        Final transcript of a bot.

        Tries the bot transcript endpoint first and falls back to the latest
        recording's download URL. Returns an empty list when neither has data.
        """
        try:
            segments = await self._fetch_bot_transcript(bot_id)
            if segments:
                logger.info("transcript_fetched", bot_id=bot_id, source="bot", segments=len(segments))
                return segments
        except BotProviderError as e:
            logger.warning("bot_transcript_endpoint_failed", bot_id=bot_id, error=str(e))

        segments = await self._fetch_recording_transcript(bot_id)
        if segments:
            logger.info("transcript_fetched", bot_id=bot_id, source="recording", segments=len(segments))
        else:
            logger.warning("transcript_not_available", bot_id=bot_id)
        return segments


recall_client = RecallClient()

"""
In-memory live transcript buffer.

Keeps one ordered segment list per bot. Partial segments from the speaker
currently talking are collapsed into a single trailing entry; entries idle
longer than the max age are swept.
"""
import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from meetbot.config import settings
from meetbot.logging_config import get_logger
from meetbot.monitoring import live_transcripts_gauge
from meetbot.schemas import TranscriptSegment

logger = get_logger(__name__)


@dataclass
class _BotTranscript:
    segments: List[TranscriptSegment] = field(default_factory=list)
    last_updated: float = field(default_factory=time.time)


class LiveTranscriptBuffer:
    """Thread-safe per-bot transcript store with time-based eviction."""

    def __init__(self, max_age_seconds: int = None):
        self.max_age_seconds = max_age_seconds or settings.transcript_max_age_seconds
        self._entries: Dict[str, _BotTranscript] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def apply(self, bot_id: str, segment: TranscriptSegment) -> None:
        """
        Merge a segment into the bot's transcript.

        A trailing partial from the same speaker is replaced in place,
        whether the incoming segment is partial or final. Anything else is
        appended.
        """
        with self._lock:
            entry = self._entries.get(bot_id)
            if entry is None:
                entry = self._entries[bot_id] = _BotTranscript()

            segments = entry.segments
            if segments and segments[-1].is_partial and segments[-1].speaker == segment.speaker:
                segments[-1] = segment
            else:
                if segments and segments[-1].is_partial:
                    # Speaker changed mid-utterance: the old partial is all we will get
                    segments[-1] = segments[-1].model_copy(update={"is_partial": False})
                segments.append(segment)
            entry.last_updated = time.time()
            live_transcripts_gauge.set(len(self._entries))

    def read(self, bot_id: str) -> List[TranscriptSegment]:
        """Copy of the bot's transcript; only the last segment may be partial."""
        with self._lock:
            entry = self._entries.get(bot_id)
            if entry is None:
                return []
            segments = list(entry.segments)

        return [
            s if (i == len(segments) - 1 or not s.is_partial) else s.model_copy(update={"is_partial": False})
            for i, s in enumerate(segments)
        ]

    def last_updated(self, bot_id: str) -> Optional[float]:
        with self._lock:
            entry = self._entries.get(bot_id)
            return entry.last_updated if entry else None

    def replace(self, bot_id: str, segments: List[TranscriptSegment]) -> None:
        """Overwrite a bot's transcript, e.g. with segments fetched from the provider."""
        with self._lock:
            self._entries[bot_id] = _BotTranscript(segments=list(segments))
            live_transcripts_gauge.set(len(self._entries))

    def evict(self, bot_id: str) -> bool:
        """Drop a bot's transcript. Returns whether one existed."""
        with self._lock:
            removed = self._entries.pop(bot_id, None) is not None
            live_transcripts_gauge.set(len(self._entries))
        if removed:
            logger.info("live_transcript_evicted", bot_id=bot_id)
        return removed

    def sweep(self, now: float = None) -> int:
        """
        Remove transcripts not updated within the max age.

        Returns:
            Number of evicted entries
        """
        now = now if now is not None else time.time()
        with self._lock:
            stale = [
                bot_id for bot_id, entry in self._entries.items()
                if now - entry.last_updated > self.max_age_seconds
            ]
            for bot_id in stale:
                del self._entries[bot_id]
            live_transcripts_gauge.set(len(self._entries))

        if stale:
            logger.info("live_transcripts_swept", evicted=len(stale))
        return len(stale)

    async def run_sweeper(self, interval_seconds: int = None) -> None:
        """Sweep periodically until cancelled."""
        interval = interval_seconds or settings.transcript_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.sweep()


transcript_buffer = LiveTranscriptBuffer()

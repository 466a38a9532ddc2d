"""
Post-meeting evaluation handoff.

DispatchRegistry remembers which bots already had their evaluation
dispatched so a redelivered "done" webhook does not start a second one.
EvaluationDispatcher is a bounded queue drained by a fixed number of worker
tasks; webhook handlers only enqueue and return.
"""
import asyncio
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from sqlalchemy import select, update

from meetbot.config import settings
from meetbot.db import get_db_session
from meetbot.logging_config import get_logger, LogContext
from meetbot.models import BotSession, BotState, ScheduledBot, ScheduledBotStatus
from meetbot.monitoring import evaluation_dispatches_total, evaluation_job_duration, record_error, track_time
from meetbot.services.bot_provider import RecallClient, recall_client
from meetbot.utils import safe_dict_get, utcnow

logger = get_logger(__name__)


class DispatchRegistry:
    """Process-local dedup set of dispatched bot ids with a TTL."""

    def __init__(self, ttl_seconds: int = None):
        self.ttl_seconds = ttl_seconds or settings.dispatch_ttl_seconds
        self._dispatched: Dict[str, float] = {}
        self._lock = threading.Lock()

    def mark_dispatched(self, bot_id: str, now: float = None) -> bool:
        """
        Atomically record a dispatch.

        Returns:
            True if this call claimed the dispatch, False if the bot was
            already dispatched within the TTL
        """
        now = now if now is not None else time.time()
        with self._lock:
            marked_at = self._dispatched.get(bot_id)
            if marked_at is not None and now - marked_at < self.ttl_seconds:
                return False
            self._dispatched[bot_id] = now
            return True

    def is_dispatched(self, bot_id: str, now: float = None) -> bool:
        now = now if now is not None else time.time()
        with self._lock:
            marked_at = self._dispatched.get(bot_id)
            return marked_at is not None and now - marked_at < self.ttl_seconds

    def release(self, bot_id: str) -> None:
        with self._lock:
            self._dispatched.pop(bot_id, None)

    def sweep(self, now: float = None) -> int:
        """Forget expired entries. Returns how many were removed."""
        now = now if now is not None else time.time()
        with self._lock:
            expired = [b for b, t in self._dispatched.items() if now - t >= self.ttl_seconds]
            for bot_id in expired:
                del self._dispatched[bot_id]
        return len(expired)

    async def run_sweeper(self, interval_seconds: int = None) -> None:
        """Sweep periodically until cancelled."""
        interval = interval_seconds or self.ttl_seconds
        while True:
            await asyncio.sleep(interval)
            self.sweep()


class EvaluationJob:
    """
    Default evaluation job for a finished bot.

    Fetches the final transcript, stores it on the bot session and hands it
    to the evaluation endpoint. A returned evaluation id completes the bot.
    """

    REQUEST_TIMEOUT = 60.0

    def __init__(
        self,
        client: Optional[RecallClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        ready_delay: float = None,
        retry_delay: float = None,
    ):
        self.client = client or recall_client
        self._http_client = http_client
        self.ready_delay = settings.transcript_ready_delay_seconds if ready_delay is None else ready_delay
        self.retry_delay = settings.transcript_retry_delay_seconds if retry_delay is None else retry_delay

    @track_time(evaluation_job_duration)
    async def __call__(self, bot_id: str) -> None:
        async with get_db_session() as session:
            result = await session.execute(select(BotSession).where(BotSession.bot_id == bot_id))
            bot_session = result.scalar_one_or_none()
            user_id = bot_session.user_id if bot_session else None
            scheduled_bot_id = bot_session.scheduled_bot_id if bot_session else None

        # The provider needs a moment after "done" before the transcript is served
        await asyncio.sleep(self.ready_delay)
        segments = await self.client.fetch_transcript(bot_id)
        if not segments:
            await asyncio.sleep(self.retry_delay)
            segments = await self.client.fetch_transcript(bot_id)

        if not segments:
            evaluation_dispatches_total.labels(outcome="no_transcript").inc()
            logger.warning("evaluation_skipped_no_transcript", bot_id=bot_id)
            return

        transcript = [s.model_dump() for s in segments]
        async with get_db_session() as session:
            await session.execute(
                update(BotSession)
                .where(BotSession.bot_id == bot_id)
                .values(transcript=transcript, updated_at=utcnow())
            )

        if not settings.evaluation_webhook_url:
            evaluation_dispatches_total.labels(outcome="stored").inc()
            logger.info("transcript_stored_without_evaluation", bot_id=bot_id, segments=len(segments))
            return

        evaluation_id = await self._post_evaluation(bot_id, user_id, transcript)
        if evaluation_id:
            await self._complete(bot_id, scheduled_bot_id, evaluation_id)
        evaluation_dispatches_total.labels(outcome="success").inc()

    async def _post_evaluation(self, bot_id: str, user_id: Optional[str], transcript: List[Dict[str, Any]]) -> Optional[str]:
        body = {"bot_id": bot_id, "user_id": user_id, "transcript": transcript}
        if self._http_client is not None:
            response = await self._http_client.post(settings.evaluation_webhook_url, json=body)
        else:
            async with httpx.AsyncClient(timeout=self.REQUEST_TIMEOUT) as client:
                response = await client.post(settings.evaluation_webhook_url, json=body)
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError:
            return None
        evaluation_id = safe_dict_get(data, "evaluation_id") or safe_dict_get(data, "id")
        return str(evaluation_id) if evaluation_id is not None else None

    async def _complete(self, bot_id: str, scheduled_bot_id: Optional[int], evaluation_id: str) -> None:
        async with get_db_session() as session:
            await session.execute(
                update(BotSession)
                .where(BotSession.bot_id == bot_id)
                .values(status=BotState.COMPLETED, evaluation_id=evaluation_id, updated_at=utcnow())
            )
            query = update(ScheduledBot).values(
                bot_status=ScheduledBotStatus.COMPLETED,
                evaluation_id=evaluation_id,
                updated_at=utcnow()
            )
            if scheduled_bot_id is not None:
                query = query.where(ScheduledBot.id == scheduled_bot_id)
            else:
                query = query.where(ScheduledBot.bot_id == bot_id)
            await session.execute(query)

        logger.info("evaluation_linked", bot_id=bot_id, evaluation_id=evaluation_id)


class EvaluationDispatcher:
    """Bounded work queue of finished bots drained by worker tasks."""

    def __init__(
        self,
        job: Callable[[str], Awaitable[None]] = None,
        workers: int = None,
        queue_size: int = None,
    ):
        self.job = job or EvaluationJob()
        self.worker_count = workers or settings.evaluation_workers
        self.queue_size = queue_size or settings.evaluation_queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._worker_tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._worker_tasks)

    @property
    def queue(self) -> asyncio.Queue:
        # Created lazily so it binds to the running event loop
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
        return self._queue

    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self.running:
            return
        for i in range(self.worker_count):
            self._worker_tasks.append(
                asyncio.create_task(self._worker_loop(i), name=f"evaluation-worker-{i}")
            )
        logger.info("evaluation_dispatcher_started", workers=self.worker_count, queue_size=self.queue_size)

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Wait briefly for queued jobs, then cancel the workers."""
        if not self.running:
            return
        if drain_timeout > 0 and not self.queue.empty():
            try:
                await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("evaluation_drain_timed_out", remaining=self.queue.qsize())

        for task in self._worker_tasks:
            task.cancel()
        for task in self._worker_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker_tasks.clear()
        logger.info("evaluation_dispatcher_stopped")

    def enqueue(self, bot_id: str) -> bool:
        """
        Hand a finished bot to the workers without waiting.

        Returns:
            False if the queue is full and the job was dropped
        """
        try:
            self.queue.put_nowait(bot_id)
        except asyncio.QueueFull:
            evaluation_dispatches_total.labels(outcome="dropped").inc()
            logger.error("evaluation_queue_full", bot_id=bot_id, queue_size=self.queue_size)
            return False
        evaluation_dispatches_total.labels(outcome="enqueued").inc()
        return True

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            bot_id = await self.queue.get()
            try:
                with LogContext(bot_id=bot_id, worker=worker_id):
                    await self.job(bot_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                evaluation_dispatches_total.labels(outcome="failed").inc()
                record_error(type(e).__name__, "evaluation_dispatcher")
                logger.exception("evaluation_job_failed", bot_id=bot_id, error=str(e))
            finally:
                self.queue.task_done()


dispatch_registry = DispatchRegistry()
evaluation_dispatcher = EvaluationDispatcher()

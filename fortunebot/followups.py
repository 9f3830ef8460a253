"""
followups.py — Delivery worker for scheduled outbound jobs.

The conversation core enqueues followup_jobs rows (reminder pushes after the
profile reading, redelivery of messages whose send failed) instead of sleeping
inside a webhook request. This worker executes them:

  1. claim due jobs (pending -> sending, one conditional UPDATE per job)
  2. skip reminders whose session has left the required phase
  3. push with the job id as LINE retry key (a retried push is delivered once)
  4. mark sent, re-schedule with backoff, or mark failed after max attempts

run_forever() is started as an asyncio task in main.py lifespan and cancelled on shutdown.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fortunebot.config import Settings
from fortunebot.conversation.schemas import FollowupJob, TextMessage
from fortunebot.line.client import DeliveryError, LineResponder
from fortunebot.store import SessionStore, StoreUnavailable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FollowupWorker:
    def __init__(
        self,
        store: SessionStore,
        responder: LineResponder,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._responder = responder
        self._poll_seconds = settings.followup_poll_seconds
        self._max_attempts = settings.followup_max_attempts
        self._batch_size = settings.followup_batch_size
        self._clock = clock

    def retry_delay(self, attempts: int) -> timedelta:
        return timedelta(seconds=min(3600, 30 * (2 ** (attempts - 1))))

    async def _process(self, job: FollowupJob) -> str:
        if job.required_phase is not None:
            session = await self._store.get(job.user_id)
            if session is None or session.phase is not job.required_phase:
                await self._store.finish_job(job.id, "skipped")
                return "skipped"

        outgoing = [TextMessage.model_validate(m) for m in job.messages]
        try:
            await self._responder.push(job.user_id, outgoing, retry_key=job.id)
        except DeliveryError as exc:
            error = f"status={exc.status_code}"
            if exc.retryable and job.attempts < self._max_attempts:
                await self._store.finish_job(
                    job.id, "pending", error=error, retry_at=self._clock() + self.retry_delay(job.attempts)
                )
                return "pending"
            logger.error("Follow-up job failed job_id=%s user_id=%s kind=%s", job.id, job.user_id, job.kind)
            await self._store.finish_job(job.id, "failed", error=error)
            return "failed"

        await self._store.finish_job(job.id, "sent")
        return "sent"

    async def run_once(self) -> dict[str, int]:
        """Process one batch of due jobs. Returns a count per resulting status."""
        counts: dict[str, int] = {}
        jobs = await self._store.claim_due_jobs(self._batch_size, now=self._clock())
        for job in jobs:
            status = await self._process(job)
            counts[status] = counts.get(status, 0) + 1
        if jobs:
            logger.info("Follow-up batch processed jobs=%d counts=%s", len(jobs), counts)
        return counts

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.run_once()
            except StoreUnavailable:
                logger.warning("Follow-up worker: store unavailable, retrying in %.1fs", self._poll_seconds)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_seconds)
            except asyncio.TimeoutError:
                pass

"""Claim engine — hands the next eligible job to exactly one worker."""

import asyncio
import logging

from mediaqueue.config import settings
from mediaqueue.models.job import ProcessingJob
from mediaqueue.services.errors import ClaimContention
from mediaqueue.services.job_store import JobStore

logger = logging.getLogger(__name__)


class ClaimEngine:
    def __init__(
        self,
        store: JobStore,
        batch_size: int = settings.CLAIM_BATCH_SIZE,
        max_attempts: int = settings.CLAIM_MAX_ATTEMPTS,
        poll_interval: float = settings.WORKER_POLL_INTERVAL_SECONDS,
        max_poll_interval: float = settings.WORKER_POLL_MAX_INTERVAL_SECONDS,
    ):
        self._store = store
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._poll_interval = poll_interval
        self._max_poll_interval = max_poll_interval

    async def claim_next(self, worker_id: str) -> ProcessingJob | None:
        """Reserve the best eligible job for ``worker_id``.

        Candidates are ordered by priority (high first) then creation time.
        Each reservation is a conditional update that only succeeds while the
        row is still eligible, so two workers can never both win the same
        job. Returns None when nothing is eligible (or every candidate in
        every selection round was taken by someone else).
        """
        for attempt in range(1, self._max_attempts + 1):
            candidates = await self._store.eligible_ids(self._batch_size)
            if not candidates:
                return None

            for job_id in candidates:
                try:
                    job = await self._store.try_claim(job_id, worker_id)
                except ClaimContention:
                    logger.debug("Worker %s lost claim race for job %s (round %d)", worker_id, job_id, attempt)
                    continue
                logger.info(
                    "Worker %s claimed job %s (priority=%d, attempt=%d)",
                    worker_id, job.id, job.priority, job.retry_count + 1,
                )
                return job

        return None

    async def wait_for_job(self, worker_id: str, stop_event: asyncio.Event | None = None) -> ProcessingJob | None:
        """Poll until a job is claimed, backing off exponentially while idle.

        Returns None only when ``stop_event`` is set.
        """
        delay = self._poll_interval
        while stop_event is None or not stop_event.is_set():
            job = await self.claim_next(worker_id)
            if job is not None:
                return job
            try:
                if stop_event is None:
                    await asyncio.sleep(delay)
                else:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            delay = min(delay * 2, self._max_poll_interval)
        return None

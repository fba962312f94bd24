"""
Stall reaper — hands jobs stuck in processing to the retry manager.

A job is stalled when it has been processing for longer than
MAX_JOB_RUNTIME_SECONDS, which usually means its worker died mid-stage.
Stalls are treated as retryable failures, so they consume retry budget like
any other transient error. Can be run as a cron job or scheduled task.
"""

import asyncio
import logging

from mediaqueue.config import settings
from mediaqueue.models.job import JobStatus
from mediaqueue.services.errors import JobStalled
from mediaqueue.services.job_service import JobService

logger = logging.getLogger(__name__)


async def reap_stalled_jobs(
    service: JobService,
    max_runtime_seconds: float = settings.MAX_JOB_RUNTIME_SECONDS,
) -> int:
    """Fail over every stalled job. Returns how many jobs changed state."""
    now = service.store.clock()
    reaped = 0
    for job in await service.store.find_stalled(max_runtime_seconds):
        runtime = (now - job.started_at).total_seconds()
        updated = await service.retries.handle_failure(job, JobStalled(runtime, max_runtime_seconds))
        if updated.status != JobStatus.PROCESSING.value:
            reaped += 1
            logger.info("Reaped stalled job %s from %s -> %s", job.id, job.worker_id, updated.status)
    return reaped


def run_reaper() -> int:
    """Synchronous entry point for a single reaper pass."""
    logger.info("Starting stall reaper pass...")
    count = asyncio.run(reap_stalled_jobs(JobService()))
    logger.info("Reaper pass complete: %d stalled job(s) handled", count)
    return count


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    run_reaper()


if __name__ == "__main__":
    main()

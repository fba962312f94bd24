"""Job service — the scheduler's internal API for ingestion, workers and admin consumers."""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaqueue.models.job import JobStatus, ProcessingJob
from mediaqueue.schemas.job import JobCreate, JobFilter, JobStatistics, SourceRef
from mediaqueue.services.claim_engine import ClaimEngine
from mediaqueue.services.errors import StageExecutionError, TerminalStageError
from mediaqueue.services.job_factory import JobFactory, resolve_source
from mediaqueue.services.job_store import JobStore
from mediaqueue.services.retry_manager import BackoffPolicy, ErrorClassifier, RetryManager
from mediaqueue.services.stage_runner import StageExecutor, StageOutcome, StageRunner
from mediaqueue.services.statistics import StatisticsService
from mediaqueue.utils.progress import progress_manager as default_progress_manager
from mediaqueue.utils.timing import utcnow

logger = logging.getLogger(__name__)


def as_stage_error(error: BaseException | str | Mapping[str, Any]) -> BaseException:
    """Normalise a failure reported by an out-of-process worker into an exception."""
    if isinstance(error, BaseException):
        return error
    if isinstance(error, Mapping):
        message = str(error.get("message") or "stage failed")
        stage = error.get("stage")
        extra = {k: v for k, v in error.items() if k not in ("message", "stage", "retryable")}
        if error.get("retryable", True):
            return StageExecutionError(message, stage=stage, **extra)
        return TerminalStageError(message, stage=stage, **extra)
    return StageExecutionError(str(error))


class JobService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = utcnow,
        classifier: ErrorClassifier | None = None,
        backoff: BackoffPolicy | None = None,
        progress=None,
    ):
        if session_factory is None:
            from mediaqueue.db.session import async_session_factory as session_factory
        self.progress = progress or default_progress_manager
        self.store = JobStore(session_factory, clock=clock)
        self.factory = JobFactory(self.store)
        self.claims = ClaimEngine(self.store)
        self.retries = RetryManager(self.store, classifier=classifier, backoff=backoff)
        self.runner = StageRunner(self.store, self.retries, progress=self.progress)
        self.statistics = StatisticsService(self.store)

    # ── Ingestion ────────────────────────────────────────

    async def create_job(
        self,
        user_id: str,
        job_type: str,
        media_type: str,
        source: SourceRef | Mapping[str, Any] | None,
        config: Mapping[str, Any] | None = None,
        input_metadata: Mapping[str, Any] | None = None,
    ) -> ProcessingJob:
        job = await self.factory.create_job(user_id, job_type, media_type, source, config, input_metadata)
        self._publish(job)
        return job

    async def create_from_payload(self, payload: JobCreate) -> ProcessingJob:
        source = resolve_source(payload.content_id, payload.file_id)
        return await self.create_job(
            payload.user_id, payload.job_type, payload.media_type, source, payload.config, payload.input_metadata,
        )

    # ── Workers ──────────────────────────────────────────

    async def claim_next(self, worker_id: str) -> ProcessingJob | None:
        job = await self.claims.claim_next(worker_id)
        if job is not None:
            self._publish(job)
        return job

    async def run_claimed(self, job: ProcessingJob, stage_executors: Mapping[str, StageExecutor]) -> StageOutcome:
        return await self.runner.run_stages(job, stage_executors)

    async def report_progress(
        self,
        job_id: uuid.UUID,
        worker_id: str,
        stage_label: str,
        partial_result: Mapping[str, Any] | None = None,
    ) -> ProcessingJob | None:
        """Record a finished stage reported by a worker. None means the worker lost the job."""
        job = await self.store.record_stage_result(job_id, worker_id, stage_label, dict(partial_result or {}))
        if job is None:
            logger.info("Progress report for job %s from %s ignored: not owned", job_id, worker_id)
            return None
        self._publish(job)
        return job

    async def report_stage_failure(
        self,
        job_id: uuid.UUID,
        worker_id: str,
        error: BaseException | str | Mapping[str, Any],
    ) -> ProcessingJob:
        job = await self.store.require(job_id)
        if job.worker_id != worker_id:
            logger.info("Failure report for job %s from %s ignored: held by %s", job_id, worker_id, job.worker_id)
            return job
        updated = await self.retries.handle_failure(job, as_stage_error(error))
        self._publish(updated)
        return updated

    async def report_completion(
        self,
        job_id: uuid.UUID,
        worker_id: str,
        final_results: Mapping[str, Any] | None = None,
    ) -> ProcessingJob | None:
        """Complete a job. Repeating the call on a completed job returns it unchanged."""
        job = await self.store.complete(job_id, worker_id, dict(final_results or {}))
        if job is None:
            current = await self.store.require(job_id)
            if current.status == JobStatus.COMPLETED.value:
                return current
            logger.info("Completion report for job %s from %s ignored (status=%s)", job_id, worker_id, current.status)
            return None
        self._publish(job)
        return job

    # ── Admin / observability ────────────────────────────

    async def get_job(self, job_id: uuid.UUID) -> ProcessingJob | None:
        return await self.store.get(job_id)

    async def list_jobs(self, criteria: JobFilter | None = None) -> tuple[list[ProcessingJob], int]:
        return await self.store.list_jobs(criteria or JobFilter())

    async def get_statistics(self, user_id: str | None = None) -> JobStatistics:
        return await self.statistics.get_statistics(user_id)

    async def cancel_job(self, job_id: uuid.UUID) -> bool:
        job = await self.retries.cancel(job_id)
        if job is None:
            return False
        self._publish(job)
        return True

    def _publish(self, job: ProcessingJob) -> None:
        try:
            self.progress.publish(job)
        except Exception as e:
            logger.warning("Progress publish failed for job %s: %s", job.id, e)

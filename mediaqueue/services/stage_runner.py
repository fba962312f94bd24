"""
Stage runner — drives a claimed job through its stages on the claiming worker.

Stages run sequentially in the order given by ``job_config["stages"]`` (or
the executor mapping's own order when the config names none). Stages that
already completed on an earlier attempt are skipped, so a retry resumes
where the previous attempt failed instead of re-running (and re-billing)
finished analysis calls.
"""

import asyncio
import enum
import functools
import inspect
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Union

from mediaqueue.config import settings
from mediaqueue.models.job import JobStatus, ProcessingJob
from mediaqueue.services.errors import JobNotFound, MissingStageExecutor
from mediaqueue.services.job_store import JobStore
from mediaqueue.services.retry_manager import RetryManager
from mediaqueue.utils.progress import progress_manager as default_progress_manager

logger = logging.getLogger(__name__)

# Shared thread pool for synchronous (blocking) stage executors
_executor = ThreadPoolExecutor(max_workers=settings.MAX_CONCURRENT_JOBS, thread_name_prefix="stage")


@dataclass(frozen=True)
class StageInput:
    """What a stage executor gets to see of the job it works on."""

    job_id: str
    user_id: str
    job_type: str
    media_type: str
    stage: str
    source: dict | None
    input_metadata: dict = field(default_factory=dict)
    previous_results: dict = field(default_factory=dict)


StageResult = Union[Mapping[str, Any], None]
StageExecutor = Callable[[StageInput, dict], Union[StageResult, Awaitable[StageResult]]]


class StageOutcome(str, enum.Enum):
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ALREADY_COMPLETED = "already_completed"
    NOT_OWNED = "not_owned"


_OUTCOME_FOR_STATUS = {
    JobStatus.RETRYING.value: StageOutcome.RETRYING,
    JobStatus.FAILED.value: StageOutcome.FAILED,
    JobStatus.CANCELLED.value: StageOutcome.CANCELLED,
    JobStatus.COMPLETED.value: StageOutcome.ALREADY_COMPLETED,
}


def stage_plan(job: ProcessingJob, stage_executors: Mapping[str, StageExecutor]) -> list[str]:
    configured = (job.job_config or {}).get("stages")
    if configured:
        return [str(label) for label in configured]
    return list(stage_executors)


def stage_config(job: ProcessingJob, stage: str) -> dict:
    """Job config with the per-stage overrides from ``stage_options`` applied."""
    config = dict(job.job_config or {})
    overrides = config.get("stage_options", {}).get(stage) or {}
    config.update(overrides)
    return config


class StageRunner:
    def __init__(
        self,
        store: JobStore,
        retry_manager: RetryManager,
        progress=None,
        executor: Executor | None = None,
    ):
        self._store = store
        self._retry_manager = retry_manager
        self._progress = progress or default_progress_manager
        self._executor = executor or _executor

    async def run_stages(self, job: ProcessingJob, stage_executors: Mapping[str, StageExecutor]) -> StageOutcome:
        current = await self._store.get(job.id)
        if current is None:
            raise JobNotFound(job.id)
        if current.status == JobStatus.COMPLETED.value:
            logger.info("Job %s already completed; nothing to run", job.id)
            return StageOutcome.ALREADY_COMPLETED
        if not self._owns(current, job.worker_id):
            return _OUTCOME_FOR_STATUS.get(current.status, StageOutcome.NOT_OWNED)

        worker_id = current.worker_id
        plan = stage_plan(current, stage_executors)
        if current.total_stages != len(plan):
            current = await self._store.set_total_stages(job.id, worker_id, len(plan))
            if current is None:
                return await self._lost(job)

        done = set(current.completed_stage_names())
        for stage in plan:
            if stage in done:
                continue

            current = await self._store.get(job.id)
            if not self._owns(current, worker_id):
                return await self._lost(job)

            running = await self._store.start_stage(job.id, worker_id, stage)
            if running is None:
                return await self._lost(job)
            self._publish(running)

            try:
                output = await self._execute(running, stage, stage_executors.get(stage))
            except Exception as exc:
                logger.warning("Job %s stage '%s' raised %s: %s", job.id, stage, type(exc).__name__, exc)
                updated = await self._retry_manager.handle_failure(running, exc)
                self._publish(updated)
                return _OUTCOME_FOR_STATUS.get(updated.status, StageOutcome.NOT_OWNED)

            recorded = await self._store.record_stage_result(job.id, worker_id, stage, output)
            if recorded is None:
                return await self._lost(job)
            logger.info(
                "Job %s stage '%s' done (%d/%d, %d%%)",
                job.id, stage, len(recorded.completed_stage_names()), len(plan), recorded.progress,
            )
            self._publish(recorded)

        completed = await self._store.complete(job.id, worker_id)
        if completed is None:
            return await self._lost(job)
        logger.info("Job %s completed in %sms", job.id, completed.duration_ms)
        self._publish(completed)
        return StageOutcome.COMPLETED

    async def _execute(self, job: ProcessingJob, stage: str, executor: StageExecutor | None) -> dict:
        if executor is None:
            raise MissingStageExecutor(stage)

        stage_input = StageInput(
            job_id=str(job.id),
            user_id=job.user_id,
            job_type=job.job_type,
            media_type=job.media_type,
            stage=stage,
            source=job.source,
            input_metadata=dict(job.input_metadata or {}),
            previous_results=dict(job.processing_results or {}),
        )
        config = stage_config(job, stage)

        if inspect.iscoroutinefunction(executor) or inspect.iscoroutinefunction(getattr(executor, "__call__", None)):
            result = await executor(stage_input, config)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self._executor, functools.partial(executor, stage_input, config))

        if result is None:
            return {}
        if isinstance(result, Mapping):
            return dict(result)
        return {"result": result}

    @staticmethod
    def _owns(job: ProcessingJob | None, worker_id: str | None) -> bool:
        return (
            job is not None
            and job.status == JobStatus.PROCESSING.value
            and job.worker_id == worker_id
        )

    async def _lost(self, job: ProcessingJob) -> StageOutcome:
        """The job left our hands mid-run; report why and stop touching it."""
        current = await self._store.require(job.id)
        outcome = _OUTCOME_FOR_STATUS.get(current.status, StageOutcome.NOT_OWNED)
        if outcome is StageOutcome.CANCELLED:
            logger.info("Job %s was cancelled; worker %s stops", job.id, job.worker_id)
            self._publish(current)
        else:
            logger.warning("Worker %s no longer owns job %s (status=%s)", job.worker_id, job.id, current.status)
        return outcome

    def _publish(self, job: ProcessingJob) -> None:
        try:
            self._progress.publish(job)
        except Exception as e:
            logger.warning("Progress publish failed for job %s: %s", job.id, e)

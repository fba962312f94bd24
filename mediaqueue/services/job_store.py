"""
Job store — the only code that reads or writes the processing_jobs table.

Every state change is a single conditional UPDATE whose WHERE clause encodes
the state it expects the row to be in; the affected row count tells the
caller whether the transition happened. No exclusive lock is ever held while
a stage executor runs, ownership is expressed by status=processing plus
worker_id.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaqueue.models.job import JobStatus, ProcessingJob
from mediaqueue.schemas.job import JobFilter
from mediaqueue.services.errors import CancellationConflict, ClaimContention, JobNotFound
from mediaqueue.services.state import CANCELLABLE_STATUSES
from mediaqueue.utils.timing import duration_ms, estimate_completion, utcnow

logger = logging.getLogger(__name__)

Mutation = Callable[[ProcessingJob, datetime], dict[str, Any] | None]
Guard = list | Callable[[ProcessingJob], list]


def _matches(column, value):
    return column.is_(None) if value is None else column == value


def merge_results(base: dict | None, update_: dict | None) -> dict:
    """Additive merge: nested mappings are merged, nothing already present is dropped."""
    merged = dict(base or {})
    for key, value in (update_ or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_results(merged[key], value)
        else:
            merged[key] = value
    return merged


def stage_progress(completed_stages: int, total_stages: int | None, current: int) -> int:
    """Percentage after a stage; never moves backwards and stays below 100 until completion."""
    if not total_stages:
        return current
    pct = round(100 * completed_stages / total_stages)
    return max(current, min(pct, 99))


class JobStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.clock = clock

    # ── Reads ────────────────────────────────────────────

    async def insert(self, job: ProcessingJob) -> ProcessingJob:
        now = self.clock()
        job.created_at = now
        job.updated_at = now
        job.last_activity = now
        async with self._session_factory() as session:
            session.add(job)
            await session.commit()
        return job

    async def get(self, job_id: uuid.UUID) -> ProcessingJob | None:
        async with self._session_factory() as session:
            return await session.get(ProcessingJob, job_id)

    async def require(self, job_id: uuid.UUID) -> ProcessingJob:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def ping(self) -> None:
        async with self._session_factory() as session:
            await session.execute(select(1))

    async def list_jobs(self, criteria: JobFilter) -> tuple[list[ProcessingJob], int]:
        """Return (jobs, total_count) matching the filter, newest first."""
        conditions = []
        if criteria.user_id:
            conditions.append(ProcessingJob.user_id == criteria.user_id)
        if criteria.status:
            conditions.append(ProcessingJob.status == criteria.status)
        if criteria.job_type:
            conditions.append(ProcessingJob.job_type == criteria.job_type)
        if criteria.media_type:
            conditions.append(ProcessingJob.media_type == criteria.media_type)
        if criteria.worker_id:
            conditions.append(ProcessingJob.worker_id == criteria.worker_id)

        query = (
            select(ProcessingJob)
            .where(*conditions)
            .order_by(ProcessingJob.created_at.desc())
            .offset((criteria.page - 1) * criteria.page_size)
            .limit(criteria.page_size)
        )
        count_query = select(func.count()).select_from(ProcessingJob).where(*conditions)

        async with self._session_factory() as session:
            result = await session.execute(query)
            jobs = list(result.scalars().all())
            count_result = await session.execute(count_query)
            total = count_result.scalar() or 0

        return jobs, total

    async def eligible_ids(self, limit: int) -> list[uuid.UUID]:
        """Claimable job ids, highest priority first, oldest first within a priority."""
        now = self.clock()
        query = (
            select(ProcessingJob.id)
            .where(self._eligible(now))
            .order_by(ProcessingJob.priority.desc(), ProcessingJob.created_at.asc(), ProcessingJob.id.asc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_stalled(self, max_runtime_seconds: float) -> list[ProcessingJob]:
        cutoff = self.clock() - timedelta(seconds=max_runtime_seconds)
        query = select(ProcessingJob).where(
            ProcessingJob.status == JobStatus.PROCESSING.value,
            ProcessingJob.started_at < cutoff,
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_by(self, column_name: str, user_id: str | None = None) -> dict[str, int]:
        column = getattr(ProcessingJob, column_name)
        query = select(column, func.count()).group_by(column)
        if user_id:
            query = query.where(ProcessingJob.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return {key: count for key, count in result.all()}

    async def duration_summary(self, user_id: str | None = None) -> tuple[int, int]:
        """Return (jobs_with_duration, total_duration_ms)."""
        query = select(
            func.count(ProcessingJob.duration_ms),
            func.coalesce(func.sum(ProcessingJob.duration_ms), 0),
        ).where(ProcessingJob.duration_ms.is_not(None))
        if user_id:
            query = query.where(ProcessingJob.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(query)
            count, total = result.one()
        return int(count or 0), int(total or 0)

    # ── Transitions ──────────────────────────────────────

    async def try_claim(self, job_id: uuid.UUID, worker_id: str) -> ProcessingJob:
        """Reserve one eligible job for a worker, or raise ClaimContention."""
        now = self.clock()
        values = {
            "status": JobStatus.PROCESSING.value,
            "worker_id": worker_id,
            "started_at": now,
            "next_attempt_at": None,
            "estimated_completion": None,
            "last_activity": now,
            "updated_at": now,
        }
        job = await self._conditional_update(job_id, [self._eligible(now)], values)
        if job is None:
            raise ClaimContention(job_id)
        return job

    async def set_total_stages(self, job_id: uuid.UUID, worker_id: str, total_stages: int) -> ProcessingJob | None:
        now = self.clock()
        return await self._conditional_update(
            job_id,
            self._owned_by(worker_id),
            {"total_stages": total_stages, "last_activity": now, "updated_at": now},
        )

    async def start_stage(self, job_id: uuid.UUID, worker_id: str, stage: str) -> ProcessingJob | None:
        def mutate(job: ProcessingJob, now: datetime) -> dict[str, Any]:
            entries = [s for s in (job.stages_data or []) if s.get("name") != stage]
            entries.append({
                "name": stage,
                "status": "running",
                "attempt": job.retry_count + 1,
                "started_at": now.isoformat(),
            })
            return {"stages_data": entries, "current_stage": stage}

        return await self._mutate(job_id, self._owned_by(worker_id), mutate)

    async def record_stage_result(
        self,
        job_id: uuid.UUID,
        worker_id: str,
        stage: str,
        output: dict | None,
    ) -> ProcessingJob | None:
        """Mark a stage completed, merge its output and recompute progress."""

        def mutate(job: ProcessingJob, now: datetime) -> dict[str, Any]:
            entries = [dict(s) for s in (job.stages_data or [])]
            entry = next((s for s in entries if s.get("name") == stage), None)
            if entry is None:
                entry = {"name": stage, "attempt": job.retry_count + 1, "started_at": now.isoformat()}
                entries.append(entry)
            stage_started = datetime.fromisoformat(entry["started_at"])
            entry["status"] = "completed"
            entry["completed_at"] = now.isoformat()
            entry["duration_ms"] = duration_ms(stage_started, now)
            entry.pop("error", None)

            completed = [s for s in entries if s.get("status") == "completed"]
            stage_durations = {s["name"]: s.get("duration_ms") or 0 for s in completed}
            spent_ms = sum(stage_durations.values())
            metrics = dict(job.performance_metrics or {})
            metrics["stage_durations_ms"] = stage_durations
            metrics["completed_stages"] = len(completed)
            metrics["average_stage_ms"] = spent_ms / len(completed)

            return {
                "stages_data": entries,
                "current_stage": stage,
                "processing_results": merge_results(job.processing_results, {stage: output or {}}),
                "performance_metrics": metrics,
                "progress": stage_progress(len(completed), job.total_stages, job.progress),
                "estimated_completion": estimate_completion(now, spent_ms, len(completed), job.total_stages or 0),
            }

        return await self._mutate(job_id, self._owned_by(worker_id), mutate)

    async def complete(
        self,
        job_id: uuid.UUID,
        worker_id: str,
        final_results: dict | None = None,
    ) -> ProcessingJob | None:
        def mutate(job: ProcessingJob, now: datetime) -> dict[str, Any]:
            metrics = dict(job.performance_metrics or {})
            metrics["attempts"] = job.retry_count + 1
            return {
                "status": JobStatus.COMPLETED.value,
                "progress": 100,
                "completed_at": now,
                "duration_ms": duration_ms(job.started_at, now),
                "estimated_completion": None,
                "processing_results": merge_results(job.processing_results, final_results),
                "performance_metrics": metrics,
            }

        return await self._mutate(job_id, self._owned_by(worker_id), mutate)

    async def schedule_retry(
        self,
        job: ProcessingJob,
        next_attempt_at: datetime,
        error_details: dict,
    ) -> ProcessingJob | None:
        def mutate(current: ProcessingJob, now: datetime) -> dict[str, Any]:
            return {
                "status": JobStatus.RETRYING.value,
                "retry_count": current.retry_count + 1,
                "next_attempt_at": next_attempt_at,
                "error_details": error_details,
                "stages_data": self._fail_running_stages(current, now, error_details.get("message")),
                "estimated_completion": None,
            }

        guard = [*self._owned_by(job.worker_id), ProcessingJob.retry_count == job.retry_count]
        return await self._mutate(job.id, guard, mutate)

    async def fail(self, job: ProcessingJob, error_details: dict) -> ProcessingJob | None:
        def mutate(current: ProcessingJob, now: datetime) -> dict[str, Any]:
            metrics = dict(current.performance_metrics or {})
            metrics["attempts"] = current.retry_count + 1
            return {
                "status": JobStatus.FAILED.value,
                "completed_at": now,
                "duration_ms": duration_ms(current.started_at, now),
                "error_details": error_details,
                "stages_data": self._fail_running_stages(current, now, error_details.get("message")),
                "performance_metrics": metrics,
                "estimated_completion": None,
            }

        guard = [*self._owned_by(job.worker_id), ProcessingJob.retry_count == job.retry_count]
        return await self._mutate(job.id, guard, mutate)

    async def cancel(self, job_id: uuid.UUID, attempts: int = 5) -> ProcessingJob | None:
        """Move any non-terminal job to cancelled. Returns None if it was already terminal.

        Raises CancellationConflict when the row kept changing underneath every attempt.
        """

        def mutate(job: ProcessingJob, now: datetime) -> dict[str, Any] | None:
            if job.status not in CANCELLABLE_STATUSES:
                return None
            return {
                "status": JobStatus.CANCELLED.value,
                "completed_at": now,
                "duration_ms": duration_ms(job.started_at, now),
                "next_attempt_at": None,
                "estimated_completion": None,
            }

        # Pin every column the derived values depend on; a reclaim in between changes started_at.
        def guard(job: ProcessingJob) -> list:
            return [
                ProcessingJob.status == job.status,
                ProcessingJob.retry_count == job.retry_count,
                _matches(ProcessingJob.worker_id, job.worker_id),
                _matches(ProcessingJob.started_at, job.started_at),
            ]

        for _ in range(attempts):
            cancelled = await self._mutate(job_id, guard, mutate)
            if cancelled is not None:
                return cancelled
            current = await self.require(job_id)
            if current.status not in CANCELLABLE_STATUSES:
                return None
        raise CancellationConflict(job_id, attempts)

    # ── Internals ────────────────────────────────────────

    @staticmethod
    def _eligible(now: datetime):
        return or_(
            ProcessingJob.status == JobStatus.PENDING.value,
            and_(
                ProcessingJob.status == JobStatus.RETRYING.value,
                or_(ProcessingJob.next_attempt_at.is_(None), ProcessingJob.next_attempt_at <= now),
            ),
        )

    @staticmethod
    def _owned_by(worker_id: str | None) -> list:
        return [
            ProcessingJob.status == JobStatus.PROCESSING.value,
            ProcessingJob.worker_id == worker_id,
        ]

    @staticmethod
    def _fail_running_stages(job: ProcessingJob, now: datetime, message: str | None) -> list[dict]:
        entries = [dict(s) for s in (job.stages_data or [])]
        for entry in entries:
            if entry.get("status") == "running":
                entry["status"] = "failed"
                entry["completed_at"] = now.isoformat()
                entry["error"] = message
        return entries

    async def _mutate(self, job_id: uuid.UUID, guard: Guard, mutate: Mutation) -> ProcessingJob | None:
        """Read the row, derive new values from it, then apply them conditionally."""
        now = self.clock()
        async with self._session_factory() as session:
            job = await session.get(ProcessingJob, job_id)
            if job is None:
                raise JobNotFound(job_id)
            values = mutate(job, now)
            if callable(guard):
                guard = guard(job)
        if values is None:
            return None
        values.setdefault("last_activity", now)
        values.setdefault("updated_at", now)
        return await self._conditional_update(job_id, guard, values)

    async def _conditional_update(self, job_id: uuid.UUID, guard: list, values: dict[str, Any]) -> ProcessingJob | None:
        stmt = (
            update(ProcessingJob)
            .where(ProcessingJob.id == job_id, *guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                logger.debug("Conditional update on job %s matched no row", job_id)
                return None
            job = await session.get(ProcessingJob, job_id, populate_existing=True)
            await session.commit()
            return job

"""Statistics aggregator — read-only job counts and duration figures."""

from mediaqueue.models.job import JobStatus, JobType, MediaType
from mediaqueue.schemas.job import JobStatistics
from mediaqueue.services.job_store import JobStore


def _zero_filled(counts: dict[str, int], keys) -> dict[str, int]:
    filled = {k.value: 0 for k in keys}
    for key, count in counts.items():
        filled[key] = filled.get(key, 0) + int(count)
    return filled


class StatisticsService:
    def __init__(self, store: JobStore):
        self._store = store

    async def get_statistics(self, user_id: str | None = None) -> JobStatistics:
        by_status = _zero_filled(await self._store.count_by("status", user_id), JobStatus)
        by_job_type = _zero_filled(await self._store.count_by("job_type", user_id), JobType)
        by_media_type = _zero_filled(await self._store.count_by("media_type", user_id), MediaType)
        with_duration, total_duration = await self._store.duration_summary(user_id)

        completed = by_status[JobStatus.COMPLETED.value]
        finished = completed + by_status[JobStatus.FAILED.value] + by_status[JobStatus.CANCELLED.value]

        return JobStatistics(
            user_id=user_id,
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_job_type=by_job_type,
            by_media_type=by_media_type,
            jobs_with_duration=with_duration,
            total_duration_ms=total_duration,
            average_duration_ms=(total_duration / with_duration) if with_duration else 0.0,
            success_rate=(completed / finished) if finished else 0.0,
        )

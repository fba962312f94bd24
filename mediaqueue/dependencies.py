"""FastAPI dependency injection — the shared JobService instance."""

from functools import lru_cache

from mediaqueue.services.job_service import JobService


@lru_cache
def get_job_service() -> JobService:
    """One JobService per process, bound to the configured database."""
    return JobService()

"""
Shared fixtures: a throwaway SQLite job store per test and a clock the tests
move by hand, so backoff deadlines and durations are deterministic.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mediaqueue.db.session import build_engine, build_session_factory, create_tables
from mediaqueue.services.job_service import JobService
from mediaqueue.utils.progress import InMemoryProgressManager


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 14, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingProgress(InMemoryProgressManager):
    """In-memory progress manager that also keeps every published snapshot."""

    def __init__(self):
        super().__init__()
        self.events: list[tuple[str, int]] = []

    def publish(self, job) -> None:
        super().publish(job)
        self.events.append((job.status, job.progress))


# ===== Fixtures =====

@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def progress():
    return RecordingProgress()


@pytest.fixture
def service(session_factory, clock, progress):
    return JobService(session_factory, clock=clock, progress=progress)


@pytest.fixture
def submit(service):
    """Create a job with sensible defaults; keyword arguments override them."""

    async def _submit(**overrides):
        params = {
            "user_id": "user-1",
            "job_type": "video_analysis",
            "media_type": "video",
            "source": {"content_id": "content-1"},
            "config": None,
        }
        params.update(overrides)
        return await service.create_job(**params)

    return _submit

"""Processing job ORM model."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mediaqueue.db.base import Base
from mediaqueue.db.types import UTCDateTime
from mediaqueue.utils.timing import utcnow


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, enum.Enum):
    VIDEO_ANALYSIS = "video_analysis"
    AUDIO_ANALYSIS = "audio_analysis"
    IMAGE_ANALYSIS = "image_analysis"
    URL_ANALYSIS = "url_analysis"
    BATCH_PROCESSING = "batch_processing"


class MediaType(str, enum.Enum):
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"
    DOCUMENT = "document"
    URL = "url"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class ProcessingJob(Base):
    __tablename__ = "processing_jobs"
    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_processing_jobs_progress"),
        CheckConstraint("priority >= 1 AND priority <= 10", name="ck_processing_jobs_priority"),
        Index("ix_processing_jobs_claim", "status", "priority", "created_at"),
        Index("ix_processing_jobs_worker", "worker_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    content_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    file_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    job_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    media_type: Mapped[str] = mapped_column(String(16), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_stage: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_stages: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stages_data: Mapped[list] = mapped_column(JSON, default=list)

    job_config: Mapped[dict] = mapped_column(JSON, default=dict)
    input_metadata: Mapped[dict] = mapped_column(JSON, default=dict)
    processing_results: Mapped[dict] = mapped_column(JSON, default=dict)
    performance_metrics: Mapped[dict] = mapped_column(JSON, default=dict)
    error_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    estimated_completion: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_activity: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def source(self) -> dict | None:
        """Tagged view of the content/file reference, or None when neither is set."""
        if self.content_id is not None:
            return {"kind": "content", "content_id": self.content_id}
        if self.file_id is not None:
            return {"kind": "file", "file_id": self.file_id}
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}

    def completed_stage_names(self) -> list[str]:
        return [s["name"] for s in (self.stages_data or []) if s.get("status") == "completed"]

    def __repr__(self) -> str:
        return f"<ProcessingJob {self.id} {self.job_type} status={self.status} progress={self.progress}>"

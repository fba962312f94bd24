"""Job request/response schemas."""

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class ContentSource(BaseModel):
    kind: Literal["content"] = "content"
    content_id: str


class FileSource(BaseModel):
    kind: Literal["file"] = "file"
    file_id: str


SourceRef = Annotated[Union[ContentSource, FileSource], Field(discriminator="kind")]


class JobCreate(BaseModel):
    user_id: str
    job_type: str  # validated by the job factory
    media_type: str
    content_id: str | None = None
    file_id: str | None = None
    config: dict[str, Any] = {}
    input_metadata: dict[str, Any] = {}


class JobFilter(BaseModel):
    user_id: str | None = None
    status: str | None = None
    job_type: str | None = None
    media_type: str | None = None
    worker_id: str | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=200)


class JobResponse(BaseModel):
    id: uuid.UUID
    user_id: str
    source: SourceRef | None = None
    job_type: str
    media_type: str
    status: str
    priority: int
    retry_count: int
    max_retries: int
    next_attempt_at: datetime | None = None
    progress: int
    current_stage: str | None = None
    total_stages: int | None = None
    stages_data: list[dict] = []
    job_config: dict = {}
    input_metadata: dict = {}
    processing_results: dict = {}
    performance_metrics: dict = {}
    error_details: dict | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_completion: datetime | None = None
    duration_ms: int | None = None
    worker_id: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class JobListResponse(BaseModel):
    items: list[JobResponse]
    total: int
    page: int
    page_size: int


class JobStatistics(BaseModel):
    user_id: str | None = None
    total_jobs: int = 0
    by_status: dict[str, int] = {}
    by_job_type: dict[str, int] = {}
    by_media_type: dict[str, int] = {}
    jobs_with_duration: int = 0
    total_duration_ms: int = 0
    average_duration_ms: float = 0.0
    success_rate: float = 0.0

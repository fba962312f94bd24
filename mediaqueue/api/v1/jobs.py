"""Job API routes — submit, list, inspect, cancel and aggregate."""

import uuid

from fastapi import APIRouter, Depends, Query, status

from mediaqueue.dependencies import get_job_service
from mediaqueue.models.job import JobStatus
from mediaqueue.schemas.common import MessageResponse
from mediaqueue.schemas.job import JobCreate, JobFilter, JobListResponse, JobResponse, JobStatistics
from mediaqueue.services.errors import JobNotFound
from mediaqueue.services.job_service import JobService
from mediaqueue.services.state import validate_transition

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreate, service: JobService = Depends(get_job_service)):
    return await service.create_from_payload(payload)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    user_id: str | None = None,
    status_filter: str | None = None,
    job_type: str | None = None,
    media_type: str | None = None,
    worker_id: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    service: JobService = Depends(get_job_service),
):
    criteria = JobFilter(
        user_id=user_id,
        status=status_filter,
        job_type=job_type,
        media_type=media_type,
        worker_id=worker_id,
        page=page,
        page_size=page_size,
    )
    jobs, total = await service.list_jobs(criteria)
    return JobListResponse(
        items=[JobResponse.model_validate(j) for j in jobs],
        total=total,
        page=criteria.page,
        page_size=criteria.page_size,
    )


@router.get("/statistics", response_model=JobStatistics)
async def job_statistics(user_id: str | None = None, service: JobService = Depends(get_job_service)):
    return await service.get_statistics(user_id)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: uuid.UUID, service: JobService = Depends(get_job_service)):
    job = await service.get_job(job_id)
    if not job:
        raise JobNotFound(job_id)
    return job


@router.post("/{job_id}/cancel", response_model=MessageResponse)
async def cancel_job(job_id: uuid.UUID, service: JobService = Depends(get_job_service)):
    if not await service.cancel_job(job_id):
        job = await service.get_job(job_id)
        if not job:
            raise JobNotFound(job_id)
        validate_transition(job.status, JobStatus.CANCELLED)
    return MessageResponse(message="Job cancelled")

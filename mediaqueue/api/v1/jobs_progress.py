"""SSE endpoint for real-time job progress streaming."""

import uuid

from fastapi import APIRouter, Depends
from starlette.responses import StreamingResponse

from mediaqueue.dependencies import get_job_service
from mediaqueue.services.errors import JobNotFound
from mediaqueue.services.job_service import JobService
from mediaqueue.utils.progress import snapshot

router = APIRouter(tags=["jobs"])


@router.get("/jobs/{job_id}/progress")
async def stream_job_progress(job_id: uuid.UUID, service: JobService = Depends(get_job_service)):
    """SSE stream of progress updates for a specific job."""
    job = await service.get_job(job_id)
    if not job:
        raise JobNotFound(job_id)
    return StreamingResponse(
        service.progress.subscribe(job_id, initial=snapshot(job)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )

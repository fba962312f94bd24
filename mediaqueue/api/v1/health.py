"""Health check endpoints."""

from fastapi import APIRouter, Depends

from mediaqueue.dependencies import get_job_service
from mediaqueue.services.job_service import JobService

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check():
    return {"status": "ok"}


@router.get("/db")
async def database_check(service: JobService = Depends(get_job_service)):
    try:
        await service.store.ping()
        reachable = True
    except Exception:
        reachable = False
    return {"database": "ok" if reachable else "unreachable"}

"""Aggregates all v1 API routers into a single router."""

from fastapi import APIRouter

from mediaqueue.api.v1.health import router as health_router
from mediaqueue.api.v1.jobs import router as jobs_router
from mediaqueue.api.v1.jobs_progress import router as jobs_progress_router

v1_router = APIRouter(prefix="/api/v1")

v1_router.include_router(health_router)
v1_router.include_router(jobs_router)
v1_router.include_router(jobs_progress_router)

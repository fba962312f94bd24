"""
FastAPI application factory — admin and observability surface for the job scheduler.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mediaqueue.api.v1.router import v1_router
from mediaqueue.config import settings
from mediaqueue.db.session import create_tables, engine
from mediaqueue.middleware.error_handler import ErrorHandlerMiddleware, RequestIdMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hooks."""
    # Tables are created on startup; production deployments run migrations instead
    await create_tables()
    logger.info("Job tables ready on %s", engine.url.render_as_string(hide_password=True))

    yield

    await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title="MediaQueue API",
        description="Submission, inspection and statistics for media analysis jobs.",
        version="1.0.0",
        lifespan=lifespan,
    )

    # ── Middleware (last added runs outermost) ───────────
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── API Routes ───────────────────────────────────────
    app.include_router(v1_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mediaqueue.main:app",
        host=settings.BACKEND_HOST,
        port=settings.BACKEND_PORT,
        reload=True,
    )

"""Global exception handler middleware."""

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from mediaqueue.schemas.common import ErrorResponse
from mediaqueue.services.errors import CancellationConflict, InvalidStateTransition, JobNotFound, JobValidationError

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(code=code, message=message, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump())


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except JobValidationError as exc:
            return _error(422, exc.code, str(exc))
        except JobNotFound as exc:
            return _error(404, exc.code, str(exc), {"job_id": str(exc.job_id)})
        except InvalidStateTransition as exc:
            return _error(409, exc.code, str(exc), {"current_state": exc.current_state})
        except CancellationConflict as exc:
            return _error(409, exc.code, str(exc), {"job_id": str(exc.job_id)})
        except Exception as exc:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return _error(500, "INTERNAL_ERROR", str(exc))


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

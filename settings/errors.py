from __future__ import annotations

from fastapi import Request, status
from fastapi.responses import JSONResponse


class PipelineError(Exception):
    """Base class for errors the ingestion pipeline raises on purpose."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PipelineError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(PipelineError):
    # 403 is used when the caller authenticated but no tenant could be resolved
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(PipelineError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(PipelineError):
    status_code = status.HTTP_409_CONFLICT


class TransientError(PipelineError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

"""Map service-layer errors onto HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rewardquota.services.errors import (
    ConcurrentUpdateError,
    NotFoundError,
    PersistenceError,
    QuotaError,
    ValidationError,
)

logger: logging.Logger = logging.getLogger(__name__)

# Checked in order; ReferenceNotFoundError is a ValidationError first.
_STATUS_BY_ERROR: tuple[tuple[type[QuotaError], int], ...] = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConcurrentUpdateError, 409),
    (PersistenceError, 500),
)


def status_for(exc: QuotaError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(QuotaError)
    async def _on_quota_error(request: Request, exc: QuotaError) -> JSONResponse:
        status: int = status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status,
            content={"detail": str(exc), "type": type(exc).__name__},
        )

    @app.exception_handler(Exception)
    async def _on_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__},
        )

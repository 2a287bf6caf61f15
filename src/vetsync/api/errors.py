"""Translate application exceptions into HTTP responses."""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.vetsync.core.exceptions import (
    ConfigurationError,
    EntityNotFoundError,
    GHLApiError,
    GHLAuthError,
    MappingNotFoundError,
    OAuthStateError,
    UnknownEntityTypeError,
    VetSyncError,
)

logger = structlog.get_logger(__name__)

# Checked in order; the first matching class wins.
ERROR_STATUS: list[tuple[type[VetSyncError], int]] = [
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (MappingNotFoundError, status.HTTP_404_NOT_FOUND),
    (EntityNotFoundError, status.HTTP_404_NOT_FOUND),
    (OAuthStateError, status.HTTP_400_BAD_REQUEST),
    (UnknownEntityTypeError, status.HTTP_400_BAD_REQUEST),
    (GHLAuthError, status.HTTP_502_BAD_GATEWAY),
    (GHLApiError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: VetSyncError) -> int:
    for exc_type, status_code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def vetsync_error_handler(request: Request, exc: VetSyncError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "api.request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(VetSyncError, vetsync_error_handler)

"""Top-level FastAPI APIRouter for the ListingMatch REST API (v1).

Prefix:  /api/v1
Tags:    ["rest-api"]

Sub-routers included:
- duplicates_router: /api/v1/duplicates/* (evaluation, scans, review actions)

``install_error_handlers`` maps the domain error taxonomy onto HTTP status
codes so route handlers can let DetectionError subclasses propagate.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from listingmatch.api.routes.duplicates import duplicates_router
from listingmatch.errors import (
    AuthorizationDenied,
    DetectionError,
    InvalidRecord,
    PersistenceConflict,
    RecordNotFound,
)

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api/v1", tags=["rest-api"])

api_router.include_router(duplicates_router)

_STATUS_BY_ERROR: dict[type[DetectionError], int] = {
    AuthorizationDenied: 403,
    RecordNotFound: 404,
    PersistenceConflict: 409,
    InvalidRecord: 422,
}


async def _detection_error_handler(request: Request, exc: DetectionError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)),
        500,
    )
    if status_code == 500:
        logger.error("Unhandled detection error on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "kind": exc.kind},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DetectionError, _detection_error_handler)

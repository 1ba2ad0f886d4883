"""FastAPI dependencies for the duplicate-detection REST API.

The service is built once in the app lifespan and stored on ``app.state``;
routes receive it through ``get_service``.  Tests override that dependency
with ``app.dependency_overrides``.

Authentication is external: an upstream gateway identifies the caller and
forwards the actor id in the ``X-Actor-Id`` header.  Authorization is then
decided by the service's Authorizer.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from listingmatch.dedup.pipeline import DuplicateDetectionService

# auto_error=False so a missing header reaches the Authorizer as None (denied -> 403)
ACTOR_HEADER = APIKeyHeader(name="X-Actor-Id", auto_error=False)


def get_service(request: Request) -> DuplicateDetectionService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Detection service is not ready")
    return service


def get_actor_id(actor_id: str | None = Security(ACTOR_HEADER)) -> str | None:
    return actor_id or None

"""Duplicate-detection REST endpoints.

Endpoints:
- POST /duplicates/evaluate                : score a submitted record against its pool
- POST /duplicates/records/{record_id}/evaluate: score a stored record
- POST /duplicates/scan                    : full-corpus scan (duplicates:scan)
- GET  /duplicates/groups                  : groups by status, highest confidence first
- POST /duplicates/groups/{group_id}/dismiss: reject a group (duplicates:resolve)
- POST /duplicates/groups/{group_id}/confirm: accept a group (duplicates:resolve)
- POST /duplicates/false-positives         : record a non-duplicate pair (duplicates:resolve)
- GET  /duplicates/stats                   : review dashboard counters (duplicates:stats)

The routes are a thin HTTP adapter over DuplicateDetectionService; domain
errors are mapped to status codes by the handlers in listingmatch.api.router.

Operation IDs are set explicitly so generated clients get readable names.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from listingmatch.api.deps import get_actor_id, get_service
from listingmatch.dedup.pipeline import DuplicateDetectionService
from listingmatch.dedup.records import GroupStatus, PropertyRecord, SimilarityResult

logger = logging.getLogger(__name__)

duplicates_router = APIRouter(prefix="/duplicates", tags=["duplicates"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class PropertyRecordIn(BaseModel):
    """A listing submitted for incremental evaluation."""

    id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    title: str = ""
    description: str | None = None
    street_number: str | None = None
    street_name: str | None = None
    city: str | None = None
    zip_code: str | None = None
    monthly_rent: float | None = Field(default=None, ge=0)
    square_meters: float | None = Field(default=None, ge=0)
    bedrooms: int | None = Field(default=None, ge=0)
    bathrooms: float | None = Field(default=None, ge=0)
    image_urls: list[str] = Field(default_factory=list)
    created_at: datetime | None = None

    def to_record(self) -> PropertyRecord:
        return PropertyRecord(**self.model_dump())


class SignalScoresOut(BaseModel):
    lexical: float
    semantic: float
    visual: float


class SimilarityResultOut(BaseModel):
    matched_record_id: str
    confidence: float
    classification: str
    explanation: list[str]
    scores: SignalScoresOut

    @classmethod
    def from_result(cls, result: SimilarityResult) -> "SimilarityResultOut":
        return cls(**result.to_dict())


class EvaluateResponse(BaseModel):
    record_id: str
    matches: list[SimilarityResultOut]


class ScanResponse(BaseModel):
    records_scanned: int
    duplicates_found: int
    groups_created: int
    groups_skipped: int
    comparisons_made: int
    embedding_failures: int
    image_failures: int


class GroupMemberOut(BaseModel):
    record_id: str
    similarity_reasons: list[str]


class GroupOut(BaseModel):
    id: str
    confidence_score: float
    status: str
    notes: str | None = None
    reviewed_by: str | None = None
    created_at: str | None = None
    members: list[GroupMemberOut]


class GroupListResponse(BaseModel):
    groups: list[GroupOut]


class ResolveRequest(BaseModel):
    notes: str | None = None


class FalsePositiveRequest(BaseModel):
    record_id_a: str = Field(min_length=1)
    record_id_b: str = Field(min_length=1)
    reason: str | None = None


class FalsePositiveResponse(BaseModel):
    created: bool
    dismissed_group_ids: list[str]


class StatsResponse(BaseModel):
    total_groups: int
    pending_groups: int
    confirmed_groups: int
    dismissed_groups: int
    high_confidence_groups: int
    false_positives: int
    active_records: int
    recent_scans: int
    last_scan_at: str | None = None


ServiceDep = Annotated[DuplicateDetectionService, Depends(get_service)]
ActorDep = Annotated[str | None, Depends(get_actor_id)]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@duplicates_router.post(
    "/evaluate",
    response_model=EvaluateResponse,
    operation_id="evaluate_record",
    summary="Score a listing against its candidate pool",
)
async def evaluate_record_endpoint(body: PropertyRecordIn, service: ServiceDep) -> EvaluateResponse:
    results = await service.evaluate_record(body.to_record())
    return EvaluateResponse(
        record_id=body.id,
        matches=[SimilarityResultOut.from_result(r) for r in results],
    )


@duplicates_router.post(
    "/records/{record_id}/evaluate",
    response_model=EvaluateResponse,
    operation_id="evaluate_stored_record",
    summary="Score a stored listing against its candidate pool",
)
async def evaluate_stored_record_endpoint(record_id: str, service: ServiceDep) -> EvaluateResponse:
    results = await service.evaluate_record_by_id(record_id)
    return EvaluateResponse(
        record_id=record_id,
        matches=[SimilarityResultOut.from_result(r) for r in results],
    )


@duplicates_router.post(
    "/scan",
    response_model=ScanResponse,
    operation_id="trigger_full_scan",
    summary="Scan every listing pair and propose duplicate groups",
    description=(
        "Runs synchronously over the whole active corpus. Requires the "
        "duplicates:scan permission for the actor in X-Actor-Id."
    ),
)
async def trigger_full_scan_endpoint(service: ServiceDep, actor_id: ActorDep) -> ScanResponse:
    summary = await service.trigger_full_scan(actor_id)
    return ScanResponse(**{k: v for k, v in summary.to_dict().items() if k in ScanResponse.model_fields})


@duplicates_router.get(
    "/groups",
    response_model=GroupListResponse,
    operation_id="list_duplicate_groups",
    summary="List duplicate groups by status",
)
async def list_groups_endpoint(
    service: ServiceDep,
    status: Annotated[GroupStatus, Query(description="Group status filter")] = GroupStatus.PENDING,
    limit: Annotated[int, Query(ge=1, le=200, description="Max groups (1-200)")] = 50,
) -> GroupListResponse:
    groups = await service.list_groups(status, limit)
    return GroupListResponse(groups=[GroupOut(**g) for g in groups])


@duplicates_router.post(
    "/groups/{group_id}/dismiss",
    response_model=GroupOut,
    operation_id="dismiss_duplicate_group",
    summary="Dismiss a proposed group; its pairs become false positives",
)
async def dismiss_group_endpoint(
    group_id: str,
    service: ServiceDep,
    actor_id: ActorDep,
    body: ResolveRequest | None = None,
) -> GroupOut:
    group = await service.dismiss_group(actor_id, group_id, body.notes if body else None)
    return GroupOut(**group)


@duplicates_router.post(
    "/groups/{group_id}/confirm",
    response_model=GroupOut,
    operation_id="confirm_duplicate_group",
    summary="Confirm a proposed group",
)
async def confirm_group_endpoint(
    group_id: str,
    service: ServiceDep,
    actor_id: ActorDep,
    body: ResolveRequest | None = None,
) -> GroupOut:
    group = await service.confirm_group(actor_id, group_id, body.notes if body else None)
    return GroupOut(**group)


@duplicates_router.post(
    "/false-positives",
    response_model=FalsePositiveResponse,
    operation_id="mark_false_positive",
    summary="Record a listing pair as not duplicate",
)
async def mark_false_positive_endpoint(
    body: FalsePositiveRequest,
    service: ServiceDep,
    actor_id: ActorDep,
) -> FalsePositiveResponse:
    result = await service.mark_false_positive(actor_id, body.record_id_a, body.record_id_b, body.reason)
    return FalsePositiveResponse(**result)


@duplicates_router.get(
    "/stats",
    response_model=StatsResponse,
    operation_id="get_duplicate_stats",
    summary="Duplicate review dashboard counters",
)
async def stats_endpoint(service: ServiceDep, actor_id: ActorDep) -> StatsResponse:
    return StatsResponse(**await service.get_stats(actor_id))

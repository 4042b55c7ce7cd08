"""
Person registry and unknown-person endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from core.context import RequestContext
from core.services import people as people_service
from core.services import unknown_people as unknown_service
from app.deps import get_request_context
from app.schemas import (
    DetectedNamesRequest,
    IdentifyRequest,
    MentionRequest,
    PersonCreateRequest,
    PersonUpdateRequest,
)

router = APIRouter(tags=["people"])


# =============================================================================
# Known people
# =============================================================================

@router.get("/people")
def list_people(
    search: Optional[str] = None,
    limit: int = 50,
    ctx: RequestContext = Depends(get_request_context),
):
    people = people_service.list_people(ctx.owner_id, search=search, limit=limit)
    return {"people": people, "count": len(people)}


@router.post("/people", status_code=201)
def create_person(body: PersonCreateRequest, ctx: RequestContext = Depends(get_request_context)):
    return people_service.create_person(ctx.owner_id, **body.model_dump())


@router.get("/people/{person_id}")
def get_person(person_id: int, ctx: RequestContext = Depends(get_request_context)):
    return people_service.get_person(ctx.owner_id, person_id)


@router.patch("/people/{person_id}")
def update_person(
    person_id: int,
    body: PersonUpdateRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    return people_service.update_person(ctx.owner_id, person_id, **body.model_dump())


@router.delete("/people/{person_id}")
def delete_person(person_id: int, ctx: RequestContext = Depends(get_request_context)):
    return people_service.delete_person(ctx.owner_id, person_id)


# =============================================================================
# Unknown people
# =============================================================================

@router.get("/unknown-people")
def list_unknown_people(
    status: Optional[str] = "unknown",
    limit: int = 50,
    ctx: RequestContext = Depends(get_request_context),
):
    records = unknown_service.list_unknown_people(ctx.owner_id, status=status, limit=limit)
    return {"unknown_people": records, "count": len(records)}


@router.get("/unknown-people/ask")
def unknown_people_to_ask(
    max_candidates: int = 3,
    cooldown_hours: Optional[float] = None,
    ctx: RequestContext = Depends(get_request_context),
):
    candidates = unknown_service.candidates_to_ask(
        ctx.owner_id,
        max_candidates=max_candidates,
        cooldown_hours=cooldown_hours,
        deadline=ctx.deadline,
    )
    return {"candidates": candidates, "count": len(candidates)}


@router.post("/unknown-people/mentions")
def record_mention(body: MentionRequest, ctx: RequestContext = Depends(get_request_context)):
    return unknown_service.record_mention(ctx.owner_id, **body.model_dump())


@router.post("/unknown-people/detections")
def process_detections(body: DetectedNamesRequest, ctx: RequestContext = Depends(get_request_context)):
    detections = [item.model_dump() for item in body.detections]
    return unknown_service.process_detected_names(ctx.owner_id, detections)


@router.get("/unknown-people/{unknown_person_id}")
def get_unknown_person(unknown_person_id: int, ctx: RequestContext = Depends(get_request_context)):
    return unknown_service.get_unknown_person(ctx.owner_id, unknown_person_id)


@router.post("/unknown-people/{unknown_person_id}/asked")
def mark_asked(unknown_person_id: int, ctx: RequestContext = Depends(get_request_context)):
    return unknown_service.mark_asked(ctx.owner_id, unknown_person_id)


@router.post("/unknown-people/{unknown_person_id}/identify")
def identify(
    unknown_person_id: int,
    body: IdentifyRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    person_id = unknown_service.identify(
        ctx.owner_id,
        unknown_person_id,
        body.description,
        relationship=body.relationship,
    )
    return {"status": "identified", "person_id": person_id, "unknown_person_id": unknown_person_id}


@router.delete("/unknown-people/{unknown_person_id}")
def dismiss(unknown_person_id: int, ctx: RequestContext = Depends(get_request_context)):
    return unknown_service.dismiss(ctx.owner_id, unknown_person_id)

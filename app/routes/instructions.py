"""
Instruction management endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response

from core.context import RequestContext
from core.errors import ValidationIssue
from core.services import instructions as instruction_service
from app.deps import get_request_context
from app.schemas import (
    InstructionCreateRequest,
    InstructionSupersedeRequest,
    InstructionUpdateRequest,
)

router = APIRouter(prefix="/instructions", tags=["instructions"])


@router.get("")
def list_instructions(
    category: Optional[str] = None,
    limit: int = 100,
    ctx: RequestContext = Depends(get_request_context),
):
    return instruction_service.list_instructions_grouped(ctx.owner_id, category=category, limit=limit)


@router.post("")
def create_instruction(
    body: InstructionCreateRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
):
    result = instruction_service.create_instruction(ctx.owner_id, **body.model_dump())
    response.status_code = 201 if result["status"] == "created" else 200
    return result


@router.get("/rendered")
def rendered_instructions(ctx: RequestContext = Depends(get_request_context)):
    """The exact block injected into the assistant prompt."""
    text, ids = instruction_service.render_context(ctx.owner_id, deadline=ctx.deadline)
    return {"context": text, "instruction_ids": ids, "has_instructions": bool(ids)}


@router.get("/{instruction_id}")
def get_instruction(instruction_id: int, ctx: RequestContext = Depends(get_request_context)):
    return instruction_service.get_instruction(ctx.owner_id, instruction_id)


@router.patch("/{instruction_id}")
def update_instruction(
    instruction_id: int,
    body: InstructionUpdateRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    if body.is_active is True:
        raise ValidationIssue(
            "inactive instructions cannot be reactivated; create a new one",
            field="is_active",
            error_type="unsupported",
        )
    if body.priority is None and body.is_active is None:
        raise ValidationIssue("nothing to update", field="body", error_type="required")

    result = None
    if body.priority is not None:
        result = instruction_service.update_instruction_priority(ctx.owner_id, instruction_id, body.priority)
    if body.is_active is False:
        instruction_service.deactivate_instruction(ctx.owner_id, instruction_id)
        result = instruction_service.get_instruction(ctx.owner_id, instruction_id)
    return result


@router.delete("/{instruction_id}")
def delete_instruction(instruction_id: int, ctx: RequestContext = Depends(get_request_context)):
    return instruction_service.deactivate_instruction(ctx.owner_id, instruction_id)


@router.post("/{instruction_id}/supersede", status_code=201)
def supersede_instruction(
    instruction_id: int,
    body: InstructionSupersedeRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    return instruction_service.supersede_instruction(ctx.owner_id, instruction_id, **body.model_dump())

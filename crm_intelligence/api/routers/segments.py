"""
Segmentation API endpoints.

Saved segments are rule trees, not member lists: membership is computed
against current customer data every time it is requested.
"""

import uuid
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from crm_intelligence.api.dependencies import Engine, get_engine, require_admin
from crm_intelligence.core.exceptions import NotFoundError, ValidationError
from crm_intelligence.middleware.logging_config import get_logger, log_business_event
from crm_intelligence.segmentation.rules import load_rule
from crm_intelligence.segmentation.segments import PRESET_SEGMENTS, CustomerSnapshot, Segment, evaluate

router = APIRouter(prefix="/api/admin/segments", tags=["segments"])
logger = get_logger(__name__)

MAX_SEGMENT_NAME_LENGTH = 120


class SegmentCreateRequest(BaseModel):
    """Request to save a named segment."""
    name: str = Field(..., description="Display name")
    description: str = Field("", description="Optional description")
    definition: Any = Field(..., description="Versioned rule document (or legacy rule rows)")


class SegmentPreviewRequest(BaseModel):
    """Request to evaluate an unsaved rule."""
    definition: Any = Field(..., description="Versioned rule document (or legacy rule rows)")
    limit: int = Field(20, ge=0, le=500, description="Maximum sample members returned")


def _member(snapshot: CustomerSnapshot) -> dict:
    customer = snapshot.customer
    return {
        "id": customer.id,
        "name": customer.name,
        "email": customer.email,
        "healthScore": snapshot.health.composite,
        "healthLabel": snapshot.health.label.value,
        "totalOrders": customer.order_count,
        "totalSpent": round(customer.lifetime_spend, 2),
    }


async def _members(engine: Engine, segment: Segment) -> List[dict]:
    snapshots = await engine.customer_snapshots(engine.clock())
    member_ids = evaluate(snapshots, segment.rule)
    return [_member(s) for s in snapshots if s.customer.id in member_ids]


async def _find_segment(engine: Engine, segment_id: str) -> Segment:
    for preset in PRESET_SEGMENTS:
        if preset.id == segment_id:
            return preset
    segment = await engine.segment_store.get_segment(segment_id)
    if segment is None:
        raise NotFoundError("Segment", segment_id)
    return segment


@router.get("")
async def list_segments(
    _caller: str = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    """Saved segments with their current member counts."""
    snapshots = await engine.customer_snapshots(engine.clock())
    segments = await engine.segment_store.list_segments()

    data = []
    for segment in segments:
        entry = segment.to_dict()
        entry["memberCount"] = len(evaluate(snapshots, segment.rule))
        data.append(entry)
    return {"success": True, "data": data}


@router.post("", status_code=201)
async def create_segment(
    request: SegmentCreateRequest,
    _caller: str = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    name = request.name.strip()
    if not name:
        raise ValidationError("Segment name is required", field="name")
    if len(name) > MAX_SEGMENT_NAME_LENGTH:
        raise ValidationError(
            f"Segment name must be at most {MAX_SEGMENT_NAME_LENGTH} characters", field="name"
        )

    segment = Segment(
        id=uuid.uuid4().hex,
        name=name,
        description=request.description.strip(),
        rule=load_rule(request.definition),
        created_at=engine.clock(),
    )
    segment = await engine.segment_store.save_segment(segment)

    log_business_event("segment_created", segment_id=segment.id, name=segment.name)
    return {"success": True, "data": segment.to_dict()}


@router.get("/presets")
async def list_presets(_caller: str = Depends(require_admin)):
    """Built-in segments, expressed in the same rule grammar as saved ones."""
    return {"success": True, "data": [preset.to_dict() for preset in PRESET_SEGMENTS]}


@router.post("/preview")
async def preview_segment(
    request: SegmentPreviewRequest,
    _caller: str = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    """Evaluate a rule without saving it."""
    rule = load_rule(request.definition)
    snapshots = await engine.customer_snapshots(engine.clock())
    member_ids = evaluate(snapshots, rule)
    sample = [_member(s) for s in snapshots if s.customer.id in member_ids][:request.limit]

    return {
        "success": True,
        "data": {
            "memberCount": len(member_ids),
            "totalCustomers": len(snapshots),
            "members": sample,
        },
    }


@router.get("/{segment_id}")
async def get_segment(
    segment_id: str,
    _caller: str = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    segment = await _find_segment(engine, segment_id)
    return {"success": True, "data": segment.to_dict()}


@router.get("/{segment_id}/members")
async def get_segment_members(
    segment_id: str,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    _caller: str = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    """Current members of a saved or preset segment."""
    segment = await _find_segment(engine, segment_id)
    members = await _members(engine, segment)

    logger.info("segment_materialized", segment_id=segment.id, member_count=len(members))
    return {
        "success": True,
        "data": {
            "segment": segment.to_dict(),
            "memberCount": len(members),
            "members": members[:limit] if limit else members,
        },
    }

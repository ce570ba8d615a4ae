"""Customer health endpoints."""

from fastapi import APIRouter, Depends

from crm_intelligence.api.dependencies import Engine, get_engine, require_admin
from crm_intelligence.segmentation.segments import PRESET_SEGMENTS, CustomerSnapshot, matching_segment_names

router = APIRouter(prefix="/api/admin/customers", tags=["customers"])


@router.get("/{customer_id}/health")
async def get_customer_health(
    customer_id: str,
    _caller: str = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    """Health score, churn risk, recommended actions and matching segments for one customer."""
    report = await engine.health_report(customer_id)

    names = []
    customer = await engine.repository.get_customer(customer_id)
    if customer is not None:
        segments = list(PRESET_SEGMENTS) + list(await engine.segment_store.list_segments())
        names = matching_segment_names(CustomerSnapshot(customer, report.score, engine.clock()), segments)

    data = report.to_dict()
    data["customerId"] = customer_id
    data["segments"] = names
    return {"success": True, "data": data}

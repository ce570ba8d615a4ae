"""
AI Endpoints Router

Single caller boundary for the admin AI features:
- customer insight
- natural-language store queries
- dashboard alerts (always answered, rule-based when the LLM is unavailable)
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from crm_intelligence.api.dependencies import Engine, get_engine, require_admin

router = APIRouter(prefix="/api/admin", tags=["ai"])


# ==================== Request Models ====================

class AIRequest(BaseModel):
    """Request model for POST /api/admin/ai."""
    type: Optional[str] = Field(None, description="Operation: query, insight or alerts")
    query: Optional[str] = Field(None, description="Natural-language question (type=query)")
    customerId: Optional[str] = Field(None, description="Customer to analyse (type=insight)")
    context: Optional[Dict[str, Any]] = Field(None, description="Aggregate overrides (type=query)")

    model_config = {
        "json_schema_extra": {
            "example": {"type": "query", "query": "Which customers are most likely to churn?"}
        }
    }


# ==================== Endpoints ====================

@router.post("/ai")
async def handle_ai_request(
    request: AIRequest,
    caller_id: str = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    """
    Handle an AI CRM request.

    Status codes: 400 malformed request, 404 unknown customer, 429 quota
    exhausted (Retry-After header), 503 completion service unavailable.
    """
    data = await engine.orchestrator.handle(request.model_dump(), caller_id=caller_id)
    return {"success": True, "data": data}

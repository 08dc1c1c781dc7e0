"""
Job and Ledger API Schemas (Pydantic)
"""
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field


class RunPendingRequest(BaseModel):
    """Request schema for triggering one worker batch."""
    limit: Optional[int] = Field(default=None, ge=1, le=500)


class RunSummaryResponse(BaseModel):
    success: bool
    processed: int
    successful: int
    failed: int
    results: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None


class RequeueRequest(BaseModel):
    """Failed jobs are requeued one scenario at a time."""
    scenario_id: int = Field(..., ge=1)


class LedgerOverride(BaseModel):
    """Admin correction of a ledger entry. Only listed fields may change."""
    sales: Optional[float] = None
    revenue: Optional[float] = None
    costs: Optional[float] = None
    waste: Optional[float] = None
    cash_before: Optional[float] = None
    cash_after: Optional[float] = None
    inventory_before: Optional[float] = None
    inventory_after: Optional[float] = None
    net_profit: Optional[float] = None
    random_event: Optional[str] = None
    summary: Optional[str] = None

    def patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)

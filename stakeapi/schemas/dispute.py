from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from stakeapi.models.dispute import DisputeResolution, DisputeStatus
from stakeapi.schemas.challenge import SettlementSummary


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=5, max_length=2000)
    evidence: List[str] = Field(default_factory=list, max_length=10, description="Evidence URLs")


class DisputeResponse(BaseModel):
    id: str
    challenge_id: str
    raised_by_id: str
    raised_by_username: str
    reason: str
    evidence: List[str] = Field(default_factory=list)
    status: DisputeStatus
    resolution: Optional[DisputeResolution] = None
    admin_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DisputeStatusUpdate(BaseModel):
    status: DisputeStatus
    admin_notes: Optional[str] = Field(None, max_length=2000)


class DisputeResolveRequest(BaseModel):
    resolution: DisputeResolution
    admin_notes: Optional[str] = Field(None, max_length=2000)


class DisputeResolveResponse(BaseModel):
    dispute: DisputeResponse
    settlement: SettlementSummary
    reversed_transaction_ids: List[int] = Field(default_factory=list)
    changed: bool = Field(..., description="False when the existing payout already matched")


class DisputeStatsResponse(BaseModel):
    total: int
    pending: int
    reviewed: int
    resolved: int

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime, timezone
import uuid
from .enums import ObligationStatus, ObligationTier, ReturnStatus, ReturnDecision, BloodGroup

class Obligation(BaseModel):
    """A donor's duty to return a borrowed unit. `status` is a cache of derive_tier."""
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    donor_id: str
    request_id: str
    hospital_id: Optional[str] = None
    blood_group: Optional[BloodGroup] = None
    units: int = 1
    deposit_amount: float
    issued_date: datetime
    due_date: datetime
    status: ObligationStatus = ObligationStatus.ACTIVE
    extensions_used: int = Field(default=0, ge=0, le=3)
    pending_return_id: Optional[str] = None
    cleared_by_return_id: Optional[str] = None
    cleared_at: Optional[datetime] = None
    refund_percentage: Optional[int] = None
    refund_amount: Optional[float] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class TierAssessment(BaseModel):
    tier: ObligationTier
    status: ObligationStatus
    days_overdue: int
    # None once the obligation is locked
    multiplier: Optional[float]
    refund_percentage: int
    obligation_units: Optional[float] = None

class ReturnRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    obligation_id: str
    donor_id: str
    actor_id: Optional[str] = None
    status: ReturnStatus = ReturnStatus.PENDING
    units: int = 1
    declared_unit_ids: List[str] = []
    declared_expiry: Optional[datetime] = None
    comments: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    decided_at: Optional[datetime] = None

class ObligationIssue(BaseModel):
    request_id: str
    donor_id: str

class ReturnVerify(BaseModel):
    decision: ReturnDecision
    declared_unit_ids: List[str] = []
    declared_expiry: Optional[datetime] = None
    declared_blood_group: Optional[BloodGroup] = None
    comments: Optional[str] = None

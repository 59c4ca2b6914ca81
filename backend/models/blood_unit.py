from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime, timezone
import uuid
from .enums import BloodGroup, UnitStatus, ExchangeStatus

class BloodUnit(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    bag_id: str
    blood_group: BloodGroup
    volume: float = 450.0
    expiry_date: datetime
    collection_date: datetime
    origin_actor_id: str
    current_owner_id: str
    source_donor_id: Optional[str] = None
    source_return_id: Optional[str] = None
    status: UnitStatus = UnitStatus.AVAILABLE
    transfer_count: int = Field(default=0, ge=0, le=1)
    exchange_status: ExchangeStatus = ExchangeStatus.NONE
    cold_chain_intact: bool = True
    issued_request_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def days_to_expiry(self, now: datetime) -> float:
        return (self.expiry_date - now).total_seconds() / 86400

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_date < now

class BloodUnitCreate(BaseModel):
    bag_id: str = Field(min_length=1)
    blood_group: BloodGroup
    volume: float = Field(default=450.0, gt=0)
    expiry_date: datetime
    collection_date: Optional[datetime] = None
    source_donor_id: Optional[str] = None
    cold_chain_intact: bool = True
    notes: Optional[str] = Field(default=None, max_length=500)

class UnitIssue(BaseModel):
    request_id: str

class Eligibility(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    code: Optional[str] = None

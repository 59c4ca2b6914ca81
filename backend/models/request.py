from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime, timezone
import uuid
from .enums import BloodGroup, RequestStatus, Urgency, ClaimDecision

class BloodRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str = ""
    requester_id: str
    blood_group: BloodGroup
    units: int = Field(ge=1)
    urgency: Urgency = Urgency.NORMAL
    patient_hospital: str = "Not Specified"
    recipient_actor_id: Optional[str] = None
    reason: Optional[str] = None
    # unset until a hospital claims (or rejects) the request
    claiming_actor_id: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    deposit_amount: float
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime

class BloodRequestCreate(BaseModel):
    blood_group: BloodGroup
    units: int = Field(default=1, ge=1)
    urgency: Urgency = Urgency.NORMAL
    patient_hospital: Optional[str] = None
    recipient_actor_id: Optional[str] = None
    reason: Optional[str] = None

class ClaimBody(BaseModel):
    decision: ClaimDecision

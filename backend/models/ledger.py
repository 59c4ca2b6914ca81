"""
Ledger Entry Models
Append-only money and custody records. Metadata is a closed set of record
kinds rather than a free-form dict.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Union, Literal, Annotated
from datetime import datetime, timezone
import uuid

from .enums import LedgerEntryType, LedgerEntryStatus, ObligationTier


class RefundMetadata(BaseModel):
    kind: Literal["refund"] = "refund"
    original_deposit: float
    refund_percentage: int
    days_overdue: int
    tier: ObligationTier


class PenaltyMetadata(BaseModel):
    kind: Literal["penalty"] = "penalty"
    original_deposit: float
    penalty_percentage: int
    days_overdue: int
    tier: ObligationTier


class TransferMetadata(BaseModel):
    kind: Literal["transfer"] = "transfer"
    bag_id: str
    previous_owner_id: str
    new_owner_id: str


LedgerMetadata = Annotated[
    Union[RefundMetadata, PenaltyMetadata, TransferMetadata],
    Field(discriminator="kind"),
]


class LedgerEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    # set on entries that must exist at most once, e.g. the refund for one return
    key: Optional[str] = None
    user_id: str
    type: LedgerEntryType
    amount: float = 0
    currency: str = "INR"
    status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED
    related_entity: Literal["BloodRequest", "Obligation", "ReturnRequest", "BloodUnit"]
    entity_id: str
    description: Optional[str] = None
    metadata: LedgerMetadata
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

"""
Audit Log Models
Audit trail for every state-changing action in the coordination core.
"""
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from typing import Optional
from enum import Enum
import uuid


class AuditAction(str, Enum):
    CREATE = "create"

    # Claim race
    APPROVE = "approve"
    REJECT = "reject"
    FULFILL = "fulfill"

    # Exchange
    LIST = "list"
    TRANSFER = "transfer"
    ISSUE = "issue"

    # Obligations
    EXTEND = "extend"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"


class AuditModule(str, Enum):
    REQUESTS = "requests"
    BLOOD_UNITS = "blood_units"
    EXCHANGE = "exchange"
    OBLIGATIONS = "obligations"
    RETURNS = "returns"


class AuditLog(BaseModel):
    """Audit log entry for tracking all system actions."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    # Actor info
    user_id: Optional[str] = None
    user_type: Optional[str] = None  # donor, hospital, admin

    # Action details
    action: AuditAction
    module: AuditModule
    record_id: Optional[str] = None
    record_type: Optional[str] = None  # e.g., "blood_unit", "obligation"
    description: Optional[str] = None

    # Data changes
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Optional[dict] = None

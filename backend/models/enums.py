from enum import Enum

class ActorRole(str, Enum):
    DONOR = "donor"
    HOSPITAL = "hospital"
    ADMIN = "admin"

class BloodGroup(str, Enum):
    A_POSITIVE = "A+"
    A_NEGATIVE = "A-"
    B_POSITIVE = "B+"
    B_NEGATIVE = "B-"
    AB_POSITIVE = "AB+"
    AB_NEGATIVE = "AB-"
    O_POSITIVE = "O+"
    O_NEGATIVE = "O-"

class UnitStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    TRANSFERRED = "TRANSFERRED"
    EXPIRED = "EXPIRED"
    USED = "USED"
    DISCARDED = "DISCARDED"

class ExchangeStatus(str, Enum):
    NONE = "NONE"
    LISTED = "LISTED"
    TRANSFERRED = "TRANSFERRED"

class Urgency(str, Enum):
    NORMAL = "Normal"
    URGENT = "Urgent"
    EMERGENCY = "Emergency"

class RequestStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    FULFILLED = "Fulfilled"

class ClaimDecision(str, Enum):
    APPROVE = "Approve"
    REJECT = "Reject"

class ObligationStatus(str, Enum):
    ACTIVE = "active"
    EXTENDED = "extended"
    OVERDUE = "overdue"
    CLEARED = "cleared"
    BLOCKED = "blocked"

class ObligationTier(str, Enum):
    ON_TIME = "on_time"
    TIER_1 = "tier_1"
    TIER_2 = "tier_2"
    TIER_3 = "tier_3"
    BLOCKED = "blocked"
    CLEARED = "cleared"

class ReturnStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class ReturnDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

class LedgerEntryType(str, Enum):
    REFUND = "REFUND"
    PENALTY = "PENALTY"
    TRANSFER = "TRANSFER"

class LedgerEntryStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

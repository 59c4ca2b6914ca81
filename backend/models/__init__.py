from .enums import (
    ActorRole, BloodGroup, UnitStatus, ExchangeStatus, Urgency, RequestStatus,
    ClaimDecision, ObligationStatus, ObligationTier, ReturnStatus, ReturnDecision,
    LedgerEntryType, LedgerEntryStatus
)
from .base import utcnow, iso, to_document, as_utc, resolve_now
from .blood_unit import BloodUnit, BloodUnitCreate, UnitIssue, Eligibility
from .request import BloodRequest, BloodRequestCreate, ClaimBody
from .obligation import Obligation, TierAssessment, ReturnRequest, ObligationIssue, ReturnVerify
from .ledger import LedgerEntry, RefundMetadata, PenaltyMetadata, TransferMetadata
from .notification import Notification, EventType
from .audit import AuditLog, AuditAction, AuditModule

"""
Obligation lifecycle engine.

A donor who borrows a unit owes one back within OBLIGATION_TERM_DAYS. How
late they are decides the penalty multiplier and how much of the deposit is
refunded. Nothing runs on a timer: `derive_tier` is evaluated from the
stored due date on every read and action, and the stored `status` is only a
cache of its last result.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Optional, Sequence

import config
from database import db, compare_and_swap, insert_document
from models import (
    Obligation, TierAssessment, ReturnRequest, BloodUnitCreate, BloodGroup, LedgerEntry, LedgerEntryType,
    RefundMetadata, PenaltyMetadata, ObligationStatus, ObligationTier, ReturnStatus, ReturnDecision,
    RequestStatus, AuditAction, AuditModule, iso, to_document, as_utc, resolve_now
)
from services import claims, ledger
from services.audit_service import audit_create, audit_update
from services.errors import (
    ValidationError, ForbiddenError, NotFoundError, ConflictError, TransientStoreError
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (ObligationStatus.CLEARED, ObligationStatus.BLOCKED)
_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]

# (last day overdue covered, tier, multiplier, refund %)
TIER_SCHEDULE = (
    (0, ObligationTier.ON_TIME, 1.00, 75),
    (7, ObligationTier.TIER_1, 1.25, 50),
    (14, ObligationTier.TIER_2, 1.50, 25),
    (21, ObligationTier.TIER_3, 1.75, 0),
)
ON_TIME_REFUND = TIER_SCHEDULE[0][3]
BLOCK_AFTER_DAYS = TIER_SCHEDULE[-1][0]


def days_overdue(due_date: datetime, now: datetime) -> int:
    """Whole days past due, rounding any started day up; 0 while on time."""
    seconds = (as_utc(now) - as_utc(due_date)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def derive_tier(obligation: Obligation, now: datetime) -> TierAssessment:
    """Pure tier evaluation. Never touches the store."""
    now = as_utc(now)

    if obligation.status == ObligationStatus.CLEARED:
        return TierAssessment(
            tier=ObligationTier.CLEARED,
            status=ObligationStatus.CLEARED,
            days_overdue=days_overdue(obligation.due_date, obligation.cleared_at or now),
            multiplier=None,
            refund_percentage=obligation.refund_percentage or 0,
            obligation_units=0,
        )

    overdue = days_overdue(obligation.due_date, now)
    if obligation.status == ObligationStatus.BLOCKED or overdue > BLOCK_AFTER_DAYS:
        return TierAssessment(
            tier=ObligationTier.BLOCKED,
            status=ObligationStatus.BLOCKED,
            days_overdue=overdue,
            multiplier=None,
            refund_percentage=0,
            obligation_units=None,
        )

    for limit, tier, multiplier, refund in TIER_SCHEDULE:
        if overdue <= limit:
            break

    if tier == ObligationTier.ON_TIME:
        status = ObligationStatus.EXTENDED if obligation.extensions_used > 0 else ObligationStatus.ACTIVE
    else:
        status = ObligationStatus.OVERDUE

    return TierAssessment(
        tier=tier,
        status=status,
        days_overdue=overdue,
        multiplier=multiplier,
        refund_percentage=refund,
        obligation_units=obligation.units * multiplier,
    )


async def _refresh_status(obligation: Obligation, assessment: TierAssessment):
    """Bring the cached status in line with the derived one, unless it moved meanwhile."""
    if obligation.status in TERMINAL_STATUSES or assessment.status == obligation.status:
        return
    await db.obligations.update_one(
        {"id": obligation.id, "status": obligation.status.value, "due_date": iso(obligation.due_date)},
        {"$set": {"status": assessment.status.value}},
    )


async def get_obligation(obligation_id: str) -> Obligation:
    doc = await db.obligations.find_one({"id": obligation_id}, {"_id": 0})
    if not doc:
        raise NotFoundError("Obligation not found")
    return Obligation(**doc)


async def assess(obligation_id: str, now: Optional[datetime] = None) -> dict:
    now = resolve_now(now)
    obligation = await get_obligation(obligation_id)
    assessment = derive_tier(obligation, now)
    await _refresh_status(obligation, assessment)
    return _view(obligation, assessment)


def _view(obligation: Obligation, assessment: TierAssessment, return_status: Optional[str] = None) -> dict:
    doc = to_document(obligation)
    doc["status"] = assessment.status.value
    doc["assessment"] = assessment.model_dump(mode="json")
    doc["extensions_remaining"] = max(0, config.MAX_EXTENSIONS - obligation.extensions_used)
    if return_status is not None:
        doc["return_request_status"] = return_status
    return doc


async def issue_obligation(request_id: str, donor_id: str, now: Optional[datetime] = None) -> dict:
    """Create the single obligation for a fulfilled request and its donor."""
    now = resolve_now(now)
    request = await claims.get_request(request_id)
    if request["requester_id"] != donor_id:
        raise ForbiddenError("Obligations can only be issued to the donor who raised the request")
    if request["status"] not in (RequestStatus.APPROVED.value, RequestStatus.FULFILLED.value):
        raise ConflictError(f"Request is {request['status']}, obligations are issued on fulfilment",
                            code="REQUEST_NOT_FULFILLED")

    obligation = Obligation(
        donor_id=donor_id,
        request_id=request["id"],
        hospital_id=request.get("claiming_actor_id"),
        blood_group=request["blood_group"],
        units=request["units"],
        deposit_amount=request.get("deposit_amount") or config.DEFAULT_DEPOSIT_AMOUNT,
        issued_date=now,
        due_date=now + timedelta(days=config.OBLIGATION_TERM_DAYS),
        created_at=now,
    )
    doc = to_document(obligation)
    await insert_document(db.obligations, doc, duplicate_code="ALREADY_ISSUED")
    logger.info(f"Obligation {obligation.id} issued to {donor_id} for request {request['id']}")
    await audit_create(AuditModule.OBLIGATIONS, {"id": donor_id, "role": "donor"}, obligation.id, "obligation",
                       {"request_id": request["id"], "due_date": doc["due_date"]}, timestamp=now)
    return _view(obligation, derive_tier(obligation, now))


async def extend_obligation(obligation_id: str, donor_id: Optional[str] = None,
                            now: Optional[datetime] = None) -> dict:
    """
    Push the due date back EXTENSION_DAYS. Lateness already accrued is not
    forgiven, the reference point simply moves, so an overdue obligation can
    become current again.
    """
    now = resolve_now(now)
    obligation = await get_obligation(obligation_id)
    if donor_id and obligation.donor_id != donor_id:
        raise ForbiddenError("You can only extend your own obligations")

    # checked before anything else: the cap holds whatever the status is
    if obligation.extensions_used >= config.MAX_EXTENSIONS:
        raise ConflictError("Maximum number of extensions have already been used.", code="MAX_EXTENSIONS")

    assessment = derive_tier(obligation, now)
    if assessment.status in TERMINAL_STATUSES:
        await _refresh_status(obligation, assessment)
        raise ConflictError(f"Cannot extend a {assessment.status.value} obligation.", code="OBLIGATION_CLOSED")

    new_due = obligation.due_date + timedelta(days=config.EXTENSION_DAYS)
    updated = await compare_and_swap(
        db.obligations,
        {
            "id": obligation.id,
            "extensions_used": obligation.extensions_used,
            "due_date": iso(obligation.due_date),
            "status": {"$nin": _TERMINAL_VALUES},
        },
        {
            "$set": {"due_date": iso(new_due), "status": ObligationStatus.EXTENDED.value},
            "$inc": {"extensions_used": 1},
        },
    )
    if updated is None:
        logger.info(f"Extension of obligation {obligation.id} lost to a concurrent change")
        raise ConflictError("Obligation changed while extending, please retry", code="CONFLICT")

    extended = Obligation(**updated)
    await audit_update(AuditModule.OBLIGATIONS, AuditAction.EXTEND, {"id": extended.donor_id, "role": "donor"},
                       extended.id, "obligation",
                       {"due_date": iso(obligation.due_date), "extensions_used": obligation.extensions_used},
                       {"due_date": updated["due_date"], "extensions_used": extended.extensions_used},
                       timestamp=now)
    return _view(extended, derive_tier(extended, now))


async def request_return(obligation_id: str, donor_id: str, now: Optional[datetime] = None) -> dict:
    """Open a pending return; the obligation itself is untouched until a hospital verifies it."""
    now = resolve_now(now)
    obligation = await get_obligation(obligation_id)
    if obligation.donor_id != donor_id:
        raise ForbiddenError("Obligation not found or unauthorized")

    assessment = derive_tier(obligation, now)
    await _refresh_status(obligation, assessment)
    if assessment.status in TERMINAL_STATUSES:
        raise ConflictError(f"Obligation is {assessment.status.value}, returns are closed", code="OBLIGATION_CLOSED")

    return_request = ReturnRequest(
        obligation_id=obligation.id,
        donor_id=donor_id,
        units=obligation.units,
        created_at=now,
    )
    marked = await compare_and_swap(
        db.obligations,
        {"id": obligation.id, "pending_return_id": None, "status": {"$nin": _TERMINAL_VALUES}},
        {"$set": {"pending_return_id": return_request.id}},
    )
    if marked is None:
        raise ConflictError("A return request is already pending for this obligation", code="RETURN_PENDING")

    doc = to_document(return_request)
    try:
        await insert_document(db.return_requests, doc)
    except TransientStoreError:
        await db.obligations.update_one(
            {"id": obligation.id, "pending_return_id": return_request.id},
            {"$set": {"pending_return_id": None}},
        )
        raise

    await audit_update(AuditModule.RETURNS, AuditAction.RETURN_REQUESTED, {"id": donor_id, "role": "donor"},
                       return_request.id, "return_request", None, {"obligation_id": obligation.id},
                       timestamp=now)
    return doc


async def get_return_request(return_request_id: str) -> ReturnRequest:
    doc = await db.return_requests.find_one({"id": return_request_id}, {"_id": 0})
    if not doc:
        raise NotFoundError("Return request not found")
    return ReturnRequest(**doc)


async def verify_return(
    return_request_id: str,
    hospital_actor_id: str,
    decision,
    declared_unit_ids: Sequence[str] = (),
    declared_expiry: Optional[datetime] = None,
    declared_blood_group: Optional[str] = None,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    A hospital confirms (or turns down) a donor's physical return.

    Approve: the declared bags enter the hospital's stock, the obligation is
    cleared and the refund is settled on the tier at this moment. Reject:
    only the return request changes; the donor may submit again.

    An approval interrupted after the obligation was cleared is completed by
    approving the same return again; the settlement is written once.
    """
    now = resolve_now(now)
    try:
        decision = ReturnDecision(decision)
    except ValueError:
        raise ValidationError(f"Unknown return decision '{decision}'")

    return_request = await get_return_request(return_request_id)
    obligation = await get_obligation(return_request.obligation_id)
    if decision == ReturnDecision.APPROVE and obligation.cleared_by_return_id == return_request.id:
        return await _complete_approval(return_request, obligation, hospital_actor_id, comments, now)
    if return_request.status != ReturnStatus.PENDING:
        raise ConflictError(f"Return request is already {return_request.status.value}", code="RETURN_DECIDED")

    if decision == ReturnDecision.REJECT:
        return await _reject_return(return_request, obligation, hospital_actor_id, comments, now)

    bag_ids = [b.strip() for b in declared_unit_ids if b and b.strip()]
    if not bag_ids or declared_expiry is None:
        raise ValidationError("At least one Bag ID and Expiry Date are required for approval")
    if len(set(bag_ids)) != len(bag_ids):
        raise ValidationError("Bag IDs must be distinct")
    declared_expiry = as_utc(declared_expiry)
    if declared_expiry <= now:
        raise ValidationError("Returned units must not already be expired")
    if declared_blood_group is None and obligation.blood_group is None:
        raise ValidationError("Blood group of the returned units is required")
    try:
        blood_group = BloodGroup(declared_blood_group or obligation.blood_group)
    except ValueError:
        raise ValidationError(f"Unknown blood group '{declared_blood_group}'")
    if obligation.blood_group and blood_group != obligation.blood_group:
        raise ValidationError(
            f"Mismatch! Obligation is for {obligation.blood_group.value}, returned units are {blood_group.value}",
            code="BLOOD_GROUP_MISMATCH"
        )

    existing = await db.blood_units.find({"bag_id": {"$in": bag_ids}}, {"_id": 0, "bag_id": 1}).to_list(len(bag_ids))
    if existing:
        taken = ", ".join(sorted(b["bag_id"] for b in existing))
        raise ConflictError(f"One or more Bag IDs ({taken}) already exist in inventory.", code="DUPLICATE_UNIT")

    assessment = derive_tier(obligation, now)
    if assessment.status in TERMINAL_STATUSES:
        await _refresh_status(obligation, assessment)
        raise ConflictError(f"Obligation is {assessment.status.value}, returns are closed", code="OBLIGATION_CLOSED")

    # units go in first, tagged with the return, so a lost race below can take them back out
    inserted = []
    try:
        for bag_id in bag_ids:
            await ledger.intake_unit(
                hospital_actor_id,
                BloodUnitCreate(bag_id=bag_id, blood_group=blood_group,
                                expiry_date=declared_expiry, source_donor_id=obligation.donor_id),
                now=now,
                source_return_id=return_request.id,
            )
            inserted.append(bag_id)
    except (ValidationError, ConflictError, TransientStoreError):
        await ledger.discard_units_from_return(return_request.id, inserted)
        raise

    refund_percentage = assessment.refund_percentage
    refund_amount = round(obligation.deposit_amount * refund_percentage / 100)

    cleared = await compare_and_swap(
        db.obligations,
        {"id": obligation.id, "pending_return_id": return_request.id, "status": {"$nin": _TERMINAL_VALUES}},
        {"$set": {
            "status": ObligationStatus.CLEARED.value,
            "pending_return_id": None,
            "cleared_by_return_id": return_request.id,
            "cleared_at": iso(now),
            "refund_percentage": refund_percentage,
            "refund_amount": refund_amount,
        }},
    )
    if cleared is None:
        await ledger.discard_units_from_return(return_request.id, inserted)
        logger.info(f"Return {return_request.id} lost its obligation {obligation.id} to a concurrent change")
        raise ConflictError("Obligation changed while verifying the return", code="CONFLICT")

    return await _complete_approval(return_request, Obligation(**cleared), hospital_actor_id, comments, now)


def _assessment_at_clearing(obligation: Obligation) -> TierAssessment:
    """The tier the obligation was on when it was cleared."""
    still_open = obligation.model_copy(update={"status": ObligationStatus.ACTIVE})
    return derive_tier(still_open, obligation.cleared_at)


async def _complete_approval(return_request: ReturnRequest, obligation: Obligation, hospital_actor_id: str,
                             comments: Optional[str], now: datetime) -> dict:
    """Everything after the obligation is cleared; each step is safe to repeat."""
    units = await db.blood_units.find(
        {"source_return_id": return_request.id}, {"_id": 0, "bag_id": 1, "expiry_date": 1}
    ).sort("bag_id", 1).to_list(1000)

    approved = await compare_and_swap(
        db.return_requests,
        {"id": return_request.id, "status": ReturnStatus.PENDING.value},
        {"$set": {
            "status": ReturnStatus.APPROVED.value,
            "actor_id": hospital_actor_id,
            "declared_unit_ids": [u["bag_id"] for u in units],
            "declared_expiry": units[0]["expiry_date"] if units else None,
            "comments": comments,
            "decided_at": iso(now),
        }},
    )
    decided_now = approved is not None
    if not decided_now:
        approved = await db.return_requests.find_one({"id": return_request.id}, {"_id": 0})

    assessment = _assessment_at_clearing(obligation)
    settled = await _settle_deposit(obligation, return_request, assessment)
    if not decided_now and not settled:
        raise ConflictError("Return request is already approved", code="RETURN_DECIDED")

    if decided_now:
        logger.info(f"Obligation {obligation.id} cleared by {hospital_actor_id}, "
                    f"refund {obligation.refund_percentage}%")
        await audit_update(AuditModule.RETURNS, AuditAction.RETURN_APPROVED,
                           {"id": hospital_actor_id, "role": "hospital"},
                           return_request.id, "return_request", {"status": ReturnStatus.PENDING.value},
                           {"status": ReturnStatus.APPROVED.value, "bag_ids": approved["declared_unit_ids"],
                            "refund_percentage": obligation.refund_percentage}, timestamp=now)

    return {
        "return_request": approved,
        "obligation": _view(obligation, derive_tier(obligation, now)),
        "refund_amount": obligation.refund_amount,
        "refund_percentage": obligation.refund_percentage,
    }


async def _reject_return(return_request: ReturnRequest, obligation: Obligation, hospital_actor_id: str,
                         comments: Optional[str], now: datetime) -> dict:
    # the pending marker is what an approval clears against; whoever takes it first decides
    released = await compare_and_swap(
        db.obligations,
        {"id": obligation.id, "pending_return_id": return_request.id},
        {"$set": {"pending_return_id": None}},
    )
    if released is None:
        raise ConflictError("Return request was decided concurrently", code="RETURN_DECIDED")

    rejected = await compare_and_swap(
        db.return_requests,
        {"id": return_request.id, "status": ReturnStatus.PENDING.value},
        {"$set": {
            "status": ReturnStatus.REJECTED.value,
            "actor_id": hospital_actor_id,
            "comments": comments,
            "decided_at": iso(now),
        }},
    )
    await audit_update(AuditModule.RETURNS, AuditAction.RETURN_REJECTED, {"id": hospital_actor_id, "role": "hospital"},
                       return_request.id, "return_request", {"status": ReturnStatus.PENDING.value},
                       {"status": ReturnStatus.REJECTED.value}, timestamp=now)

    current = await get_obligation(obligation.id)
    assessment = derive_tier(current, now)
    await _refresh_status(current, assessment)
    return {"return_request": rejected, "obligation": _view(current, assessment)}


async def _settle_deposit(obligation: Obligation, return_request: ReturnRequest,
                          assessment: TierAssessment) -> bool:
    """Write the REFUND (and PENALTY for a late return) once per return; True if anything was new."""
    deposit = obligation.deposit_amount
    written = await ledger.record_entry_once(LedgerEntry(
        key=f"refund:{return_request.id}",
        user_id=obligation.donor_id,
        type=LedgerEntryType.REFUND,
        amount=obligation.refund_amount,
        currency=config.DEPOSIT_CURRENCY,
        related_entity="ReturnRequest",
        entity_id=return_request.id,
        description=f"Refund for blood return ({assessment.refund_percentage}% of deposit)",
        metadata=RefundMetadata(original_deposit=deposit, refund_percentage=assessment.refund_percentage,
                                days_overdue=assessment.days_overdue, tier=assessment.tier),
        created_at=obligation.cleared_at,
    ))
    if assessment.days_overdue > 0:
        # late-return penalty, measured against what an on-time return would have refunded
        penalty_percentage = ON_TIME_REFUND - assessment.refund_percentage
        written = await ledger.record_entry_once(LedgerEntry(
            key=f"penalty:{return_request.id}",
            user_id=obligation.donor_id,
            type=LedgerEntryType.PENALTY,
            amount=round(deposit * penalty_percentage / 100),
            currency=config.DEPOSIT_CURRENCY,
            related_entity="Obligation",
            entity_id=obligation.id,
            description=f"Late return penalty, {assessment.days_overdue} days overdue",
            metadata=PenaltyMetadata(original_deposit=deposit, penalty_percentage=penalty_percentage,
                                     days_overdue=assessment.days_overdue, tier=assessment.tier),
            created_at=obligation.cleared_at,
        )) or written
    return written


def _blocks_donor(obligation: Obligation, assessment: TierAssessment) -> bool:
    return (assessment.status != ObligationStatus.CLEARED
            and obligation.extensions_used >= config.MAX_EXTENSIONS
            and assessment.days_overdue > BLOCK_AFTER_DAYS)


async def _donor_obligations(donor_id: str) -> list:
    docs = await db.obligations.find({"donor_id": donor_id}, {"_id": 0}).sort("issued_date", -1).to_list(1000)
    return [Obligation(**d) for d in docs]


async def is_donor_blocked(donor_id: str, now: Optional[datetime] = None) -> bool:
    now = resolve_now(now)
    for obligation in await _donor_obligations(donor_id):
        if _blocks_donor(obligation, derive_tier(obligation, now)):
            return True
    return False


async def donor_summary(donor_id: str, now: Optional[datetime] = None) -> dict:
    """Every obligation of a donor, re-derived and grouped for the wallet view."""
    now = resolve_now(now)
    pending = await db.return_requests.find(
        {"donor_id": donor_id, "status": ReturnStatus.PENDING.value}, {"_id": 0}
    ).to_list(1000)
    pending_by_obligation = {r["obligation_id"]: r["status"] for r in pending}

    groups = {"active": [], "overdue": [], "cleared": [], "blocked": []}
    is_blocked = False
    for obligation in await _donor_obligations(donor_id):
        assessment = derive_tier(obligation, now)
        await _refresh_status(obligation, assessment)
        is_blocked = is_blocked or _blocks_donor(obligation, assessment)

        view = _view(obligation, assessment, pending_by_obligation.get(obligation.id))
        if assessment.status in (ObligationStatus.ACTIVE, ObligationStatus.EXTENDED):
            groups["active"].append(view)
        else:
            groups[assessment.status.value].append(view)

    return {
        "is_blocked": is_blocked,
        "active_obligations": groups["active"],
        "overdue_obligations": groups["overdue"],
        "cleared_obligations": groups["cleared"],
        "blocked_obligations": groups["blocked"],
    }

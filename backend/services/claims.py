"""
Request claim coordinator.

A donor's request is broadcast to every hospital; the first hospital whose
conditional update commits owns it. There is no read-then-write anywhere on
this path: the whole precondition lives in the store predicate.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError as SchemaError

import config
from database import db, compare_and_swap, insert_document, next_sequence
from models import (
    BloodRequest, RequestStatus, ClaimDecision, EventType, AuditAction, AuditModule,
    iso, to_document, resolve_now
)
from services import notifications
from services.audit_service import audit_create, audit_update
from services.errors import ValidationError, NotFoundError, ConflictError

logger = logging.getLogger(__name__)


async def generate_request_id(now: datetime) -> str:
    """Human-readable REQ-YYYYMMDD-NNNN code from a per-day counter."""
    today = now.strftime("%Y%m%d")
    seq = await next_sequence(f"blood_requests:{today}")
    return f"REQ-{today}-{str(seq).zfill(4)}"


async def create_request(
    donor_id: str,
    blood_group: str,
    units: int,
    urgency: str,
    patient_hospital: Optional[str] = None,
    recipient_actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    deposit_amount: Optional[float] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Persist a Pending, unclaimed request that expires REQUEST_TTL_MINUTES from now."""
    now = resolve_now(now)
    if not donor_id:
        raise ValidationError("Requester is required")
    try:
        request = BloodRequest(
            requester_id=donor_id,
            blood_group=blood_group,
            units=units,
            urgency=urgency,
            patient_hospital=patient_hospital or "Not Specified",
            recipient_actor_id=recipient_actor_id,
            reason=reason,
            deposit_amount=deposit_amount or config.DEFAULT_DEPOSIT_AMOUNT,
            created_at=now,
            expires_at=now + timedelta(minutes=config.REQUEST_TTL_MINUTES),
        )
    except SchemaError as exc:
        raise ValidationError(f"Invalid blood request: {exc.errors()[0]['msg']}")

    request.request_id = await generate_request_id(now)
    doc = to_document(request)
    await insert_document(db.blood_requests, doc)

    notifications.publish(EventType.REQUEST_CREATED, {
        "id": doc["id"],
        "request_id": doc["request_id"],
        "blood_group": doc["blood_group"],
        "units": doc["units"],
        "urgency": doc["urgency"],
        "patient_hospital": doc["patient_hospital"],
        "expires_at": doc["expires_at"],
    })
    await audit_create(AuditModule.REQUESTS, {"id": donor_id, "role": "donor"}, doc["id"], "blood_request",
                       {"blood_group": doc["blood_group"], "units": doc["units"], "urgency": doc["urgency"]},
                       timestamp=now)
    return doc


async def get_request(request_id: str) -> dict:
    request = await db.blood_requests.find_one(
        {"$or": [{"id": request_id}, {"request_id": request_id}]},
        {"_id": 0}
    )
    if not request:
        raise NotFoundError("Request not found")
    return request


async def claim(request_id: str, actor_id: str, decision, now: Optional[datetime] = None) -> dict:
    """
    Resolve a hospital's Approve/Reject on a broadcast request.

    Succeeds only if, at commit time, the request is unexpired and either
    unclaimed or already held by `actor_id`. Reject additionally needs the
    request to still be Pending. A Reject takes the request out of the pool
    for every hospital, exactly like an Approve does.

    Losing is final for this decision: ConflictError is never retried here,
    and it does not say whether the request expired or someone else won.
    """
    now = resolve_now(now)
    try:
        decision = ClaimDecision(decision)
    except ValueError:
        raise ValidationError(f"Unknown claim decision '{decision}'")
    if not actor_id:
        raise ValidationError("Claiming actor is required")

    predicate = {
        "id": request_id,
        "expires_at": {"$gt": iso(now)},
        "$or": [{"claiming_actor_id": None}, {"claiming_actor_id": actor_id}],
    }
    if decision == ClaimDecision.REJECT:
        predicate["status"] = RequestStatus.PENDING.value
        new_status = RequestStatus.REJECTED
    else:
        # a winner re-approving after fulfilment must not roll the request back
        predicate["status"] = {"$ne": RequestStatus.FULFILLED.value}
        new_status = RequestStatus.APPROVED

    updated = await compare_and_swap(
        db.blood_requests,
        predicate,
        {"$set": {"claiming_actor_id": actor_id, "status": new_status.value}},
    )

    if updated is None:
        current = await db.blood_requests.find_one({"id": request_id}, {"_id": 0})
        if current is None:
            raise NotFoundError("Request not found")
        if (decision == ClaimDecision.APPROVE
                and current["status"] == RequestStatus.FULFILLED.value
                and current.get("claiming_actor_id") == actor_id
                and current["expires_at"] > iso(now)):
            # the winner repeating its approval; the request stays Fulfilled
            return current
        logger.info(f"Claim {decision.value} on request {request_id} by {actor_id} lost")
        raise ConflictError("Request unavailable, already handled, or expired.", code="CONFLICT")

    logger.info(f"Request {request_id} {new_status.value.lower()} by {actor_id}")
    notifications.publish(EventType.REQUEST_TAKEN, {
        "id": updated["id"],
        "request_id": updated.get("request_id"),
        "status": updated["status"],
        "claiming_actor_id": actor_id,
    })
    action = AuditAction.APPROVE if decision == ClaimDecision.APPROVE else AuditAction.REJECT
    await audit_update(AuditModule.REQUESTS, action, {"id": actor_id, "role": "hospital"}, updated["id"],
                       "blood_request", None, {"status": updated["status"], "claiming_actor_id": actor_id},
                       timestamp=now)
    return updated


async def claimable_requests(blood_group: Optional[str] = None, now: Optional[datetime] = None) -> list:
    """Live feed for hospitals: Pending, unclaimed, unexpired, soonest deadline first."""
    now = resolve_now(now)
    query = {
        "status": RequestStatus.PENDING.value,
        "claiming_actor_id": None,
        "expires_at": {"$gt": iso(now)},
    }
    if blood_group:
        query["blood_group"] = blood_group
    return await db.blood_requests.find(query, {"_id": 0}).sort("expires_at", 1).to_list(1000)


async def mark_fulfilled(request_id: str, actor_id: str, now: Optional[datetime] = None) -> dict:
    """Approved -> Fulfilled for the winning hospital; repeat calls are no-ops."""
    now = resolve_now(now)
    updated = await compare_and_swap(
        db.blood_requests,
        {
            "id": request_id,
            "claiming_actor_id": actor_id,
            "status": {"$in": [RequestStatus.APPROVED.value, RequestStatus.FULFILLED.value]},
        },
        {"$set": {"status": RequestStatus.FULFILLED.value}},
    )
    if updated is None:
        await get_request(request_id)
        raise ConflictError("Request must be approved by this hospital before it can be fulfilled",
                            code="REQUEST_NOT_APPROVED")

    await audit_update(AuditModule.REQUESTS, AuditAction.FULFILL, {"id": actor_id, "role": "hospital"},
                       request_id, "blood_request", None, {"status": updated["status"]}, timestamp=now)
    return updated

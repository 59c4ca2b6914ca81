"""
Unit ledger.

Durable record of every physical blood unit plus the append-only ledger of
money and custody entries. Unit status only ever moves forward; the only
writers of status/owner/transfer fields are the conditional updates in this
module and in services.exchange.
"""
import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError as SchemaError

from database import db, compare_and_swap, insert_document, insert_once
from models import (
    BloodUnit, BloodUnitCreate, UnitStatus, ExchangeStatus, RequestStatus, LedgerEntry,
    AuditAction, AuditModule, iso, to_document, as_utc, resolve_now
)
from services import claims
from services.audit_service import audit_create, audit_update
from services.errors import ValidationError, NotFoundError, ForbiddenError, ConflictError

logger = logging.getLogger(__name__)

# statuses a unit may be issued from; TRANSFERRED units are stock received via exchange
ISSUABLE_STATUSES = [UnitStatus.AVAILABLE.value, UnitStatus.TRANSFERRED.value]


async def intake_unit(
    owner_actor_id: str,
    data: BloodUnitCreate,
    now: Optional[datetime] = None,
    source_return_id: Optional[str] = None,
) -> dict:
    """Register a new physical unit as AVAILABLE stock of `owner_actor_id`."""
    now = resolve_now(now)
    bag_id = data.bag_id.strip()
    if not bag_id:
        raise ValidationError("Bag ID (barcode) is required")

    collection_date = as_utc(data.collection_date) if data.collection_date else now
    expiry_date = as_utc(data.expiry_date)
    if expiry_date <= collection_date:
        raise ValidationError("Expiry date must be after the collection date")

    try:
        unit = BloodUnit(
            bag_id=bag_id,
            blood_group=data.blood_group,
            volume=data.volume,
            expiry_date=expiry_date,
            collection_date=collection_date,
            origin_actor_id=owner_actor_id,
            current_owner_id=owner_actor_id,
            source_donor_id=data.source_donor_id,
            source_return_id=source_return_id,
            cold_chain_intact=data.cold_chain_intact,
            notes=data.notes,
            created_at=now,
            updated_at=now,
        )
    except SchemaError as exc:
        raise ValidationError(f"Invalid blood unit: {exc.errors()[0]['msg']}")

    doc = to_document(unit)
    await insert_document(db.blood_units, doc, duplicate_code="DUPLICATE_UNIT")
    logger.info(f"Unit {bag_id} ({doc['blood_group']}) taken into stock of {owner_actor_id}")
    await audit_create(AuditModule.BLOOD_UNITS, {"id": owner_actor_id, "role": "hospital"}, doc["id"],
                       "blood_unit", {"bag_id": bag_id, "blood_group": doc["blood_group"]}, timestamp=now)
    return doc


async def get_unit(bag_id: str) -> dict:
    unit = await db.blood_units.find_one(
        {"$or": [{"bag_id": bag_id}, {"id": bag_id}]},
        {"_id": 0}
    )
    if not unit:
        raise NotFoundError("Blood unit not found")
    return unit


async def list_units(owner_actor_id: str, status: Optional[str] = None, blood_group: Optional[str] = None) -> list:
    query = {"current_owner_id": owner_actor_id}
    if status:
        query["status"] = status
    if blood_group:
        query["blood_group"] = blood_group
    return await db.blood_units.find(query, {"_id": 0}).sort("expiry_date", 1).to_list(1000)


async def mark_unit_issued(
    bag_id: str,
    request_id: str,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Consume a unit against an approved request.

    Called by the pickup workflow once it has verified the pickup code. The
    unit must still be in stock, unexpired, owned by the fulfilling hospital
    and of the requested blood group; the status flip to USED is a single
    conditional update, so two pickups can never consume the same bag.
    """
    now = resolve_now(now)
    request = await claims.get_request(request_id)
    if request["status"] not in (RequestStatus.APPROVED.value, RequestStatus.FULFILLED.value):
        raise ConflictError(f"Request is {request['status']}, it must be Approved to be fulfilled",
                            code="REQUEST_NOT_APPROVED")
    fulfiller = request.get("claiming_actor_id")
    if actor_id and fulfiller != actor_id:
        raise ForbiddenError("Only the hospital that approved this request can issue units for it")

    unit = await get_unit(bag_id)
    if unit["status"] not in ISSUABLE_STATUSES:
        raise ConflictError(f"Bag is currently {unit['status']} (Not Available)", code="UNIT_UNAVAILABLE")
    if unit["blood_group"] != request["blood_group"]:
        raise ValidationError(
            f"Mismatch! Request needs {request['blood_group']}, but Bag is {unit['blood_group']}",
            code="BLOOD_GROUP_MISMATCH"
        )
    if unit["current_owner_id"] != fulfiller:
        raise ForbiddenError("Invalid Blood Bag ID for this Hospital.")
    if BloodUnit(**unit).is_expired(now):
        raise ConflictError("Bag is expired", code="EXPIRED")

    updated = await compare_and_swap(
        db.blood_units,
        {
            "id": unit["id"],
            "status": {"$in": ISSUABLE_STATUSES},
            "current_owner_id": fulfiller,
            "blood_group": request["blood_group"],
            "expiry_date": {"$gte": iso(now)},
        },
        {"$set": {
            "status": UnitStatus.USED.value,
            # an issued unit leaves the exchange pool with it
            "exchange_status": (ExchangeStatus.TRANSFERRED.value
                                if unit["exchange_status"] == ExchangeStatus.TRANSFERRED.value
                                else ExchangeStatus.NONE.value),
            "issued_request_id": request["id"],
            "updated_at": iso(now),
        }},
    )
    if updated is None:
        logger.info(f"Unit {bag_id} changed before it could be issued against {request['id']}")
        raise ConflictError("Bag was consumed or transferred concurrently", code="UNIT_UNAVAILABLE")

    await audit_update(AuditModule.BLOOD_UNITS, AuditAction.ISSUE, {"id": fulfiller, "role": "hospital"},
                       updated["id"], "blood_unit", {"status": unit["status"]},
                       {"status": updated["status"], "issued_request_id": request["id"]}, timestamp=now)
    await claims.mark_fulfilled(request["id"], fulfiller, now=now)
    return updated


async def discard_units_from_return(return_request_id: str, bag_ids: list) -> int:
    """Undo the intake of units declared by a return that did not go through."""
    if not bag_ids:
        return 0
    result = await db.blood_units.delete_many({
        "source_return_id": return_request_id,
        "bag_id": {"$in": list(bag_ids)},
        "status": UnitStatus.AVAILABLE.value,
        "exchange_status": ExchangeStatus.NONE.value,
    })
    return result.deleted_count


async def record_entry(entry: LedgerEntry) -> dict:
    doc = to_document(entry)
    if doc.get("key") is None:
        doc.pop("key", None)
    return await insert_document(db.ledger_entries, doc)


async def record_entry_once(entry: LedgerEntry) -> bool:
    """
    Write a keyed entry unless one with the same key is already recorded.
    Safe to repeat after a failed or unacknowledged attempt; True when this
    call wrote the entry.
    """
    if not entry.key:
        raise ValueError("record_entry_once needs a keyed entry")
    doc = to_document(entry)
    key = doc.pop("key")
    return await insert_once(db.ledger_entries, {"key": key}, doc)


async def list_entries(user_id: str, limit: int = 50) -> list:
    return await db.ledger_entries.find({"user_id": user_id}, {"_id": 0}).sort("created_at", -1).to_list(limit)

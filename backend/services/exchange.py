"""
Inter-hospital exchange.

Hospitals list near-expiry surplus for other hospitals to claim. A unit may
change hands through the exchange at most once (the one-hop rule): the
transfer increments `transfer_count` in the same conditional update that
moves ownership, and the predicate requires the count to still be zero.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

import config
from database import db, compare_and_swap
from models import (
    BloodUnit, Eligibility, UnitStatus, ExchangeStatus, LedgerEntry, LedgerEntryType,
    TransferMetadata, AuditAction, AuditModule, iso, resolve_now
)
from services import ledger
from services.audit_service import audit_update
from services.errors import NotFoundError, ForbiddenError, ConflictError, TransientStoreError

logger = logging.getLogger(__name__)


def check_eligibility(unit: BloodUnit, now: Optional[datetime] = None) -> Eligibility:
    """
    Listing rules, evaluated in order; the first failure is reported.
      1. status is AVAILABLE
      2. not expired
      3. never transferred before (one-hop)
      4. expires within EXCHANGE_WINDOW_DAYS (only near-expiry surplus)
      5. cold chain intact
    """
    now = resolve_now(now)
    if unit.status != UnitStatus.AVAILABLE:
        return Eligibility(eligible=False, code="STATUS",
                           reason=f"Status is {unit.status.value}, must be AVAILABLE")
    if unit.is_expired(now):
        return Eligibility(eligible=False, code="EXPIRED", reason="Bag is expired")
    if unit.transfer_count >= 1:
        return Eligibility(eligible=False, code="LIMIT_EXCEEDED", reason="One-Time Transfer limit reached")
    days_to_expiry = unit.days_to_expiry(now)
    if days_to_expiry > config.EXCHANGE_WINDOW_DAYS:
        return Eligibility(
            eligible=False, code="TOO_EARLY",
            reason=(f"Too early to list. Can only list units expiring in <= {config.EXCHANGE_WINDOW_DAYS} days. "
                    f"({days_to_expiry:.1f} days left)")
        )
    if not unit.cold_chain_intact:
        return Eligibility(eligible=False, code="COLD_CHAIN", reason="Cold Chain integrity breach detected")
    return Eligibility(eligible=True)


async def eligibility_for(bag_id: str, now: Optional[datetime] = None) -> Eligibility:
    return check_eligibility(BloodUnit(**await ledger.get_unit(bag_id)), now)


async def list_unit(bag_id: str, owner_actor_id: str, now: Optional[datetime] = None) -> dict:
    """Put an eligible unit into the exchange pool. Listing twice is a no-op."""
    now = resolve_now(now)
    unit = BloodUnit(**await ledger.get_unit(bag_id))

    result = check_eligibility(unit, now)
    if not result.eligible:
        raise ConflictError(result.reason, code="INELIGIBLE")
    if unit.current_owner_id != owner_actor_id:
        raise ForbiddenError("Unauthorized: You do not own this unit")

    # every listing rule is restated in the predicate; the read above is only a hint
    listed = await compare_and_swap(
        db.blood_units,
        {
            "id": unit.id,
            "current_owner_id": owner_actor_id,
            "status": UnitStatus.AVAILABLE.value,
            "transfer_count": 0,
            "cold_chain_intact": True,
            "exchange_status": {"$in": [ExchangeStatus.NONE.value, ExchangeStatus.LISTED.value]},
            "expiry_date": {
                "$gte": iso(now),
                "$lte": iso(now + timedelta(days=config.EXCHANGE_WINDOW_DAYS)),
            },
        },
        {"$set": {"exchange_status": ExchangeStatus.LISTED.value, "updated_at": iso(now)}},
    )
    if listed is None:
        fresh = BloodUnit(**await ledger.get_unit(bag_id))
        result = check_eligibility(fresh, now)
        if not result.eligible:
            raise ConflictError(result.reason, code="INELIGIBLE")
        raise ForbiddenError("Unauthorized: You do not own this unit")

    if unit.exchange_status != ExchangeStatus.LISTED:
        logger.info(f"Unit {unit.bag_id} listed on the exchange by {owner_actor_id}")
        await audit_update(AuditModule.EXCHANGE, AuditAction.LIST, {"id": owner_actor_id, "role": "hospital"},
                           unit.id, "blood_unit", {"exchange_status": unit.exchange_status.value},
                           {"exchange_status": listed["exchange_status"]}, timestamp=now)
    return listed


def _transfer_failure(unit: dict, now: datetime) -> ConflictError:
    if unit.get("transfer_count", 0) >= 1:
        return ConflictError("Security Lock: Transfer limit exceeded", code="LIMIT_EXCEEDED")
    if BloodUnit(**unit).is_expired(now):
        return ConflictError("Security Lock: Unit expired during transaction", code="EXPIRED")
    return ConflictError("Bag is not listed for exchange", code="NOT_LISTED")


def _received_by(unit: dict, actor_id: str) -> bool:
    return (unit["current_owner_id"] == actor_id
            and unit["exchange_status"] == ExchangeStatus.TRANSFERRED.value)


async def transfer_unit(bag_id: str, claiming_actor_id: str, now: Optional[datetime] = None) -> dict:
    """
    Move a listed unit to `claiming_actor_id`.

    Of any number of concurrent calls on one unit exactly one commits; the
    others get LIMIT_EXCEEDED, NOT_LISTED or EXPIRED and must not retry.
    Transient store failures are retried, and a call that finds the unit
    already received by `claiming_actor_id` completes that earlier transfer
    (its TRANSFER ledger entry included) and reports success.
    """
    now = resolve_now(now)
    unit = await ledger.get_unit(bag_id)
    if _received_by(unit, claiming_actor_id):
        return await _complete_transfer(unit, unit["origin_actor_id"], claiming_actor_id, now)
    previous_owner = unit["current_owner_id"]
    if previous_owner == claiming_actor_id and unit["exchange_status"] == ExchangeStatus.LISTED.value:
        raise ForbiddenError("You cannot claim your own listing")

    predicate = {
        "id": unit["id"],
        "status": UnitStatus.AVAILABLE.value,
        "exchange_status": ExchangeStatus.LISTED.value,
        "transfer_count": 0,
        "expiry_date": {"$gte": iso(now)},
    }
    update = {
        "$set": {
            "current_owner_id": claiming_actor_id,
            "status": UnitStatus.TRANSFERRED.value,
            "exchange_status": ExchangeStatus.TRANSFERRED.value,
            "updated_at": iso(now),
        },
        "$inc": {"transfer_count": 1},
    }

    updated = None
    for attempt in range(1, config.TRANSFER_MAX_ATTEMPTS + 1):
        try:
            updated = await compare_and_swap(db.blood_units, predicate, update)
            break
        except TransientStoreError:
            if attempt == config.TRANSFER_MAX_ATTEMPTS:
                raise
            logger.warning(f"Transfer of {bag_id} to {claiming_actor_id} hit a store error, retry {attempt}")
            fresh = await db.blood_units.find_one({"id": unit["id"]}, {"_id": 0})
            if fresh and _received_by(fresh, claiming_actor_id):
                updated = fresh
                break

    if updated is None:
        fresh = await db.blood_units.find_one({"id": unit["id"]}, {"_id": 0})
        if fresh is None:
            raise NotFoundError("Blood unit not found")
        error = _transfer_failure(fresh, now)
        logger.info(f"Transfer of {bag_id} to {claiming_actor_id} refused: {error.code}")
        raise error

    return await _complete_transfer(updated, previous_owner, claiming_actor_id, now)


async def _complete_transfer(unit: dict, previous_owner: str, claiming_actor_id: str, now: datetime) -> dict:
    # keyed by unit: a unit changes hands through the exchange once, so it has one TRANSFER entry
    written = await ledger.record_entry_once(LedgerEntry(
        key=f"transfer:{unit['id']}",
        user_id=claiming_actor_id,
        type=LedgerEntryType.TRANSFER,
        related_entity="BloodUnit",
        entity_id=unit["id"],
        description=f"One-hop exchange of {unit['bag_id']}",
        metadata=TransferMetadata(bag_id=unit["bag_id"], previous_owner_id=previous_owner,
                                  new_owner_id=claiming_actor_id),
        created_at=now,
    ))
    if written:
        logger.info(f"Unit {unit['bag_id']} transferred {previous_owner} -> {claiming_actor_id}")
        await audit_update(AuditModule.EXCHANGE, AuditAction.TRANSFER, {"id": claiming_actor_id, "role": "hospital"},
                           unit["id"], "blood_unit", {"current_owner_id": previous_owner, "transfer_count": 0},
                           {"current_owner_id": claiming_actor_id, "transfer_count": unit["transfer_count"]},
                           timestamp=now)
    return {"bag_id": unit["bag_id"], "new_owner": claiming_actor_id, "unit": unit}


async def exchange_pool(blood_group: Optional[str] = None, now: Optional[datetime] = None) -> list:
    """Units other hospitals can claim right now, nearest expiry first."""
    now = resolve_now(now)
    query = {
        "exchange_status": ExchangeStatus.LISTED.value,
        "status": UnitStatus.AVAILABLE.value,
        "transfer_count": 0,
        "expiry_date": {"$gte": iso(now)},
    }
    if blood_group:
        query["blood_group"] = blood_group
    return await db.blood_units.find(query, {"_id": 0}).sort("expiry_date", 1).to_list(1000)


async def my_listings(actor_id: str) -> list:
    """Active listings of `actor_id` plus units it has already handed on."""
    query = {
        "$or": [
            {"current_owner_id": actor_id, "exchange_status": ExchangeStatus.LISTED.value},
            {"origin_actor_id": actor_id, "exchange_status": ExchangeStatus.TRANSFERRED.value},
        ]
    }
    return await db.blood_units.find(query, {"_id": 0}).sort("expiry_date", 1).to_list(1000)


async def wastage_metrics(actor_id: str, now: Optional[datetime] = None) -> dict:
    """
    Score 0-100 (100 = no wastage) for the dashboard gauge.
    Stock past its expiry counts as wasted even before an expiry sweep marks it.
    """
    now = resolve_now(now)
    total_units = await db.blood_units.count_documents({
        "$or": [{"current_owner_id": actor_id}, {"origin_actor_id": actor_id}]
    })
    if total_units == 0:
        return {"score": 100, "wastage_percentage": 0.0, "saved_via_exchange": 0, "grade": "Green"}

    expired_units = await db.blood_units.count_documents({
        "current_owner_id": actor_id,
        "$or": [
            {"status": UnitStatus.EXPIRED.value},
            {"status": {"$in": [UnitStatus.AVAILABLE.value, UnitStatus.TRANSFERRED.value]},
             "expiry_date": {"$lt": iso(now)}},
        ],
    })
    exchanged_units = await db.blood_units.count_documents({
        "origin_actor_id": actor_id,
        "exchange_status": ExchangeStatus.TRANSFERRED.value,
    })

    wastage_rate = (expired_units / total_units) * 100
    score = max(0.0, 100 - wastage_rate)

    grade = "Green"
    if score < 80:
        grade = "Yellow"
    if score < 50:
        grade = "Red"

    return {
        "score": round(score),
        "wastage_percentage": round(wastage_rate, 1),
        "saved_via_exchange": exchanged_units,
        "grade": grade,
    }

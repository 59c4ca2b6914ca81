import asyncio
from datetime import timedelta

import pytest

from models import Obligation, ObligationStatus, ObligationTier
from services import claims, ledger, obligations
from services.errors import ConflictError, ForbiddenError, TransientStoreError, ValidationError


def _obligation(now, due_in_days=0, **extra):
    fields = dict(
        donor_id="donor-1",
        request_id="req-1",
        units=2,
        deposit_amount=3000,
        issued_date=now - timedelta(days=30),
        due_date=now + timedelta(days=due_in_days),
    )
    fields.update(extra)
    return Obligation(**fields)


@pytest.mark.parametrize("days_late, tier, multiplier, refund", [
    (0, ObligationTier.ON_TIME, 1.00, 75),
    (1, ObligationTier.TIER_1, 1.25, 50),
    (7, ObligationTier.TIER_1, 1.25, 50),
    (8, ObligationTier.TIER_2, 1.50, 25),
    (14, ObligationTier.TIER_2, 1.50, 25),
    (15, ObligationTier.TIER_3, 1.75, 0),
    (21, ObligationTier.TIER_3, 1.75, 0),
])
def test_tier_boundaries(now, days_late, tier, multiplier, refund):
    assessment = obligations.derive_tier(_obligation(now, due_in_days=-days_late), now)

    assert assessment.tier == tier
    assert assessment.days_overdue == days_late
    assert assessment.multiplier == multiplier
    assert assessment.refund_percentage == refund
    assert assessment.obligation_units == 2 * multiplier


def test_blocked_after_three_weeks(now):
    assessment = obligations.derive_tier(_obligation(now, due_in_days=-22), now)

    assert assessment.tier == ObligationTier.BLOCKED
    assert assessment.status == ObligationStatus.BLOCKED
    assert assessment.multiplier is None
    assert assessment.refund_percentage == 0


def test_partial_day_counts_as_a_day(now):
    obligation = _obligation(now)
    assert obligations.derive_tier(obligation, now + timedelta(hours=1)).days_overdue == 1
    assert obligations.derive_tier(obligation, now - timedelta(hours=1)).days_overdue == 0


def test_on_time_status_reflects_extensions(now):
    assert obligations.derive_tier(_obligation(now, 5), now).status == ObligationStatus.ACTIVE
    extended = _obligation(now, 5, extensions_used=1)
    assert obligations.derive_tier(extended, now).status == ObligationStatus.EXTENDED
    assert obligations.derive_tier(_obligation(now, -3), now).status == ObligationStatus.OVERDUE


def test_terminal_statuses_stay_terminal(now):
    cleared = _obligation(now, -30, status="cleared", cleared_at=now - timedelta(days=40), refund_percentage=75)
    assessment = obligations.derive_tier(cleared, now)
    assert assessment.tier == ObligationTier.CLEARED
    assert assessment.refund_percentage == 75

    blocked = _obligation(now, 100, status="blocked")
    assert obligations.derive_tier(blocked, now).status == ObligationStatus.BLOCKED


def test_derive_tier_is_pure(now):
    obligation = _obligation(now, -3)
    before = obligation.model_dump()
    obligations.derive_tier(obligation, now)
    assert obligation.model_dump() == before


async def test_issue_obligation(db, now, fulfilled_request):
    request = await fulfilled_request(units=1)
    obligation = await obligations.issue_obligation(request["id"], "donor-1", now=now)

    assert obligation["status"] == "active"
    assert obligation["extensions_used"] == 0
    assert obligation["hospital_id"] == "hosp-a"
    assert obligation["due_date"] == (now + timedelta(days=30)).isoformat(timespec="microseconds")
    assert obligation["assessment"]["tier"] == "on_time"


async def test_issue_obligation_once_per_request(db, now, fulfilled_request):
    request = await fulfilled_request()
    await obligations.issue_obligation(request["id"], "donor-1", now=now)

    with pytest.raises(ConflictError) as exc:
        await obligations.issue_obligation(request["id"], "donor-1", now=now)
    assert exc.value.code == "ALREADY_ISSUED"
    assert await db.obligations.count_documents({}) == 1


async def test_issue_obligation_refusals(db, now, fulfilled_request):
    request = await fulfilled_request()
    with pytest.raises(ForbiddenError):
        await obligations.issue_obligation(request["id"], "donor-2", now=now)

    pending = await claims.create_request("donor-1", "A+", 1, "Normal", now=now)
    with pytest.raises(ConflictError) as exc:
        await obligations.issue_obligation(pending["id"], "donor-1", now=now)
    assert exc.value.code == "REQUEST_NOT_FULFILLED"


async def test_overdue_then_extended_back_on_time(db, now, fulfilled_request):
    request = await fulfilled_request()
    issued = await obligations.issue_obligation(request["id"], "donor-1", now=now)

    later = now + timedelta(days=35)
    view = await obligations.assess(issued["id"], now=later)
    assert view["assessment"]["tier"] == "tier_1"
    assert view["assessment"]["refund_percentage"] == 50
    assert view["assessment"]["multiplier"] == 1.25
    assert (await db.obligations.find_one({"id": issued["id"]}))["status"] == "overdue"

    extended = await obligations.extend_obligation(issued["id"], now=later)
    assert extended["due_date"] == (now + timedelta(days=37)).isoformat(timespec="microseconds")
    assert extended["extensions_used"] == 1
    assert extended["status"] == "extended"
    assert extended["assessment"]["tier"] == "on_time"
    assert extended["assessment"]["refund_percentage"] == 75


async def test_fourth_extension_refused(db, now, fulfilled_request):
    request = await fulfilled_request()
    issued = await obligations.issue_obligation(request["id"], "donor-1", now=now)

    for _ in range(3):
        await obligations.extend_obligation(issued["id"], donor_id="donor-1", now=now)
    with pytest.raises(ConflictError) as exc:
        await obligations.extend_obligation(issued["id"], donor_id="donor-1", now=now)
    assert exc.value.code == "MAX_EXTENSIONS"

    stored = await obligations.get_obligation(issued["id"])
    assert stored.extensions_used == 3
    assert stored.due_date == now + timedelta(days=51)


async def test_fourth_extension_reports_the_cap_on_closed_obligations(db, now, fulfilled_request):
    locked = await obligations.issue_obligation((await fulfilled_request())["id"], "donor-1", now=now)
    returned = await obligations.issue_obligation((await fulfilled_request())["id"], "donor-1", now=now)
    for issued in (locked, returned):
        for _ in range(3):
            await obligations.extend_obligation(issued["id"], now=now)

    return_request = await obligations.request_return(returned["id"], "donor-1", now=now)
    await obligations.verify_return(return_request["id"], "hosp-a", "approve", declared_unit_ids=["RET-1"],
                                    declared_expiry=now + timedelta(days=30), now=now)
    assert (await obligations.get_obligation(returned["id"])).status == ObligationStatus.CLEARED

    # due date is day 51, so by day 80 the other one is past the blocking threshold
    late = now + timedelta(days=80)
    assert (await obligations.assess(locked["id"], now=late))["status"] == "blocked"

    for issued in (locked, returned):
        with pytest.raises(ConflictError) as exc:
            await obligations.extend_obligation(issued["id"], now=late)
        assert exc.value.code == "MAX_EXTENSIONS"


async def test_extension_refused_for_other_donor_and_closed_obligation(db, now, fulfilled_request):
    request = await fulfilled_request()
    issued = await obligations.issue_obligation(request["id"], "donor-1", now=now)

    with pytest.raises(ForbiddenError):
        await obligations.extend_obligation(issued["id"], donor_id="donor-2", now=now)

    with pytest.raises(ConflictError) as exc:
        await obligations.extend_obligation(issued["id"], now=now + timedelta(days=60))
    assert exc.value.code == "OBLIGATION_CLOSED"
    assert (await db.obligations.find_one({"id": issued["id"]}))["status"] == "blocked"


async def test_concurrent_extensions_respect_the_cap(db, now, fulfilled_request):
    request = await fulfilled_request()
    issued = await obligations.issue_obligation(request["id"], "donor-1", now=now)

    results = await asyncio.gather(
        *(obligations.extend_obligation(issued["id"], now=now) for _ in range(6)),
        return_exceptions=True,
    )

    assert all(isinstance(r, (dict, ConflictError)) for r in results)
    stored = await obligations.get_obligation(issued["id"])
    successes = [r for r in results if isinstance(r, dict)]
    assert 1 <= len(successes) <= 3
    assert stored.extensions_used == len(successes)
    assert stored.due_date == now + timedelta(days=30 + 7 * len(successes))


async def _pending_return(now, fulfilled_request, **kwargs):
    request = await fulfilled_request(**kwargs)
    issued = await obligations.issue_obligation(request["id"], "donor-1", now=now)
    return_request = await obligations.request_return(issued["id"], "donor-1", now=now)
    return issued, return_request


async def test_request_return_leaves_obligation_untouched(db, now, fulfilled_request):
    issued, return_request = await _pending_return(now, fulfilled_request)

    assert return_request["status"] == "pending"
    stored = await obligations.get_obligation(issued["id"])
    assert stored.status == ObligationStatus.ACTIVE
    assert stored.pending_return_id == return_request["id"]

    with pytest.raises(ConflictError) as exc:
        await obligations.request_return(issued["id"], "donor-1", now=now)
    assert exc.value.code == "RETURN_PENDING"

    with pytest.raises(ForbiddenError):
        await obligations.request_return(issued["id"], "donor-2", now=now)


async def test_on_time_return_clears_with_full_refund(db, now, fulfilled_request):
    issued, return_request = await _pending_return(now, fulfilled_request)
    verified_at = now + timedelta(days=10)

    result = await obligations.verify_return(
        return_request["id"], "hosp-b", "approve",
        declared_unit_ids=["RET-1"], declared_expiry=verified_at + timedelta(days=35), now=verified_at,
    )

    assert result["obligation"]["status"] == "cleared"
    assert result["refund_percentage"] == 75
    assert result["refund_amount"] == 2250
    assert result["return_request"]["status"] == "approved"

    unit = await ledger.get_unit("RET-1")
    assert unit["current_owner_id"] == "hosp-b"
    assert unit["status"] == "AVAILABLE"
    assert unit["source_donor_id"] == "donor-1"

    entries = await ledger.list_entries("donor-1")
    assert [e["type"] for e in entries] == ["REFUND"]
    assert entries[0]["amount"] == 2250
    assert entries[0]["metadata"]["kind"] == "refund"


async def test_late_return_settles_on_tier_at_verification(db, now, fulfilled_request):
    issued, return_request = await _pending_return(now, fulfilled_request)
    verified_at = now + timedelta(days=40)

    result = await obligations.verify_return(
        return_request["id"], "hosp-a", "approve",
        declared_unit_ids=["RET-1", "RET-2"], declared_expiry=verified_at + timedelta(days=30), now=verified_at,
    )

    assert result["refund_percentage"] == 25
    assert result["refund_amount"] == 750
    entries = {e["type"]: e for e in await ledger.list_entries("donor-1")}
    assert entries["PENALTY"]["amount"] == 1500
    assert entries["PENALTY"]["metadata"]["penalty_percentage"] == 50
    assert entries["REFUND"]["metadata"]["days_overdue"] == 10
    assert len(await ledger.list_units("hosp-a", status="AVAILABLE")) == 2

    with pytest.raises(ConflictError):
        await obligations.extend_obligation(issued["id"], now=verified_at)


async def test_approval_validates_declared_units(db, now, make_unit, fulfilled_request):
    issued, return_request = await _pending_return(now, fulfilled_request)
    expiry = now + timedelta(days=30)

    with pytest.raises(ValidationError):
        await obligations.verify_return(return_request["id"], "hosp-a", "approve", declared_expiry=expiry, now=now)
    with pytest.raises(ValidationError):
        await obligations.verify_return(return_request["id"], "hosp-a", "approve",
                                        declared_unit_ids=["RET-1"], now=now)
    with pytest.raises(ValidationError):
        await obligations.verify_return(return_request["id"], "hosp-a", "approve",
                                        declared_unit_ids=["RET-1"], declared_expiry=now - timedelta(days=1), now=now)
    with pytest.raises(ValidationError) as exc:
        await obligations.verify_return(return_request["id"], "hosp-a", "approve", declared_unit_ids=["RET-1"],
                                        declared_expiry=expiry, declared_blood_group="AB-", now=now)
    assert exc.value.code == "BLOOD_GROUP_MISMATCH"

    await make_unit(bag_id="TAKEN-1")
    with pytest.raises(ConflictError) as exc:
        await obligations.verify_return(return_request["id"], "hosp-a", "approve",
                                        declared_unit_ids=["RET-9", "TAKEN-1"], declared_expiry=expiry, now=now)
    assert exc.value.code == "DUPLICATE_UNIT"

    assert await db.blood_units.count_documents({"bag_id": "RET-9"}) == 0
    assert (await obligations.get_obligation(issued["id"])).status == ObligationStatus.ACTIVE


async def test_interrupted_settlement_is_completed_on_retry(db, now, fulfilled_request, monkeypatch):
    issued, return_request = await _pending_return(now, fulfilled_request)
    verified_at = now + timedelta(days=40)

    real_record = ledger.record_entry_once
    calls = {"n": 0}

    async def flaky(entry):
        calls["n"] += 1
        if calls["n"] == 1:
            raise TransientStoreError("timeout")
        return await real_record(entry)

    monkeypatch.setattr(ledger, "record_entry_once", flaky)
    approve = dict(declared_unit_ids=["RET-1"], declared_expiry=verified_at + timedelta(days=30), now=verified_at)
    with pytest.raises(TransientStoreError):
        await obligations.verify_return(return_request["id"], "hosp-a", "approve", **approve)
    assert (await obligations.get_obligation(issued["id"])).status == ObligationStatus.CLEARED
    assert await ledger.list_entries("donor-1") == []

    result = await obligations.verify_return(return_request["id"], "hosp-a", "approve", **approve)

    assert result["refund_amount"] == 750
    assert result["return_request"]["status"] == "approved"
    entries = await ledger.list_entries("donor-1")
    assert sorted(e["type"] for e in entries) == ["PENALTY", "REFUND"]
    assert await db.blood_units.count_documents({"bag_id": "RET-1"}) == 1

    with pytest.raises(ConflictError) as exc:
        await obligations.verify_return(return_request["id"], "hosp-a", "approve", **approve)
    assert exc.value.code == "RETURN_DECIDED"
    assert len(await ledger.list_entries("donor-1")) == 2


async def test_interrupted_return_approval_is_completed_on_retry(db, now, fulfilled_request, monkeypatch):
    issued, return_request = await _pending_return(now, fulfilled_request)
    expiry = now + timedelta(days=30)

    real_cas = obligations.compare_and_swap

    async def return_store_down(collection, predicate, update):
        if collection.name == "return_requests":
            raise TransientStoreError("timeout")
        return await real_cas(collection, predicate, update)

    monkeypatch.setattr(obligations, "compare_and_swap", return_store_down)
    with pytest.raises(TransientStoreError):
        await obligations.verify_return(return_request["id"], "hosp-a", "approve",
                                        declared_unit_ids=["RET-1"], declared_expiry=expiry, now=now)
    assert (await obligations.get_return_request(return_request["id"])).status.value == "pending"

    monkeypatch.setattr(obligations, "compare_and_swap", real_cas)
    result = await obligations.verify_return(return_request["id"], "hosp-a", "approve",
                                             declared_unit_ids=["RET-1"], declared_expiry=expiry, now=now)

    assert result["return_request"]["status"] == "approved"
    assert result["return_request"]["declared_unit_ids"] == ["RET-1"]
    assert result["obligation"]["status"] == "cleared"
    assert [e["type"] for e in await ledger.list_entries("donor-1")] == ["REFUND"]
    assert await db.blood_units.count_documents({"bag_id": "RET-1"}) == 1


async def test_rejected_return_allows_resubmission(db, now, fulfilled_request):
    issued, return_request = await _pending_return(now, fulfilled_request)
    checked_at = now + timedelta(days=33)

    result = await obligations.verify_return(return_request["id"], "hosp-a", "reject",
                                             comments="bag seal broken", now=checked_at)

    assert result["return_request"]["status"] == "rejected"
    assert result["obligation"]["assessment"]["tier"] == "tier_1"
    stored = await obligations.get_obligation(issued["id"])
    assert stored.pending_return_id is None
    assert await ledger.list_entries("donor-1") == []

    with pytest.raises(ConflictError) as exc:
        await obligations.verify_return(return_request["id"], "hosp-a", "approve",
                                        declared_unit_ids=["RET-1"], declared_expiry=checked_at + timedelta(days=9),
                                        now=checked_at)
    assert exc.value.code == "RETURN_DECIDED"

    again = await obligations.request_return(issued["id"], "donor-1", now=checked_at)
    assert again["status"] == "pending"


async def test_concurrent_approve_and_reject(db, now, fulfilled_request):
    issued, return_request = await _pending_return(now, fulfilled_request)
    expiry = now + timedelta(days=30)

    results = await asyncio.gather(
        obligations.verify_return(return_request["id"], "hosp-a", "approve",
                                  declared_unit_ids=["RET-1"], declared_expiry=expiry, now=now),
        obligations.verify_return(return_request["id"], "hosp-a", "reject", now=now),
        return_exceptions=True,
    )

    assert sum(isinstance(r, dict) for r in results) == 1
    stored = await obligations.get_obligation(issued["id"])
    decided = await obligations.get_return_request(return_request["id"])
    if stored.status == ObligationStatus.CLEARED:
        assert decided.status.value == "approved"
        assert await db.blood_units.count_documents({"bag_id": "RET-1"}) == 1
    else:
        assert decided.status.value == "rejected"
        assert await db.blood_units.count_documents({"bag_id": "RET-1"}) == 0


async def test_returns_closed_once_blocked(db, now, fulfilled_request):
    request = await fulfilled_request()
    issued = await obligations.issue_obligation(request["id"], "donor-1", now=now)

    with pytest.raises(ConflictError) as exc:
        await obligations.request_return(issued["id"], "donor-1", now=now + timedelta(days=55))
    assert exc.value.code == "OBLIGATION_CLOSED"


async def test_donor_blocking_needs_exhausted_extensions(db, now, fulfilled_request):
    request = await fulfilled_request()
    issued = await obligations.issue_obligation(request["id"], "donor-1", now=now)

    # 30 days past due without extensions: locked, but the donor is not blocked
    assert not await obligations.is_donor_blocked("donor-1", now=now + timedelta(days=60))

    for _ in range(3):
        await obligations.extend_obligation(issued["id"], now=now)
    assert not await obligations.is_donor_blocked("donor-1", now=now + timedelta(days=60))
    # due date is now day 51; more than 21 days past it the donor is blocked
    assert await obligations.is_donor_blocked("donor-1", now=now + timedelta(days=73))
    assert not await obligations.is_donor_blocked("donor-2", now=now + timedelta(days=73))


async def test_donor_summary_groups(db, now, fulfilled_request):
    on_time = await fulfilled_request()
    late = await fulfilled_request()
    ob_on_time = await obligations.issue_obligation(on_time["id"], "donor-1", now=now)
    ob_late = await obligations.issue_obligation(late["id"], "donor-1", now=now - timedelta(days=35))
    await obligations.request_return(ob_on_time["id"], "donor-1", now=now)

    summary = await obligations.donor_summary("donor-1", now=now)

    assert summary["is_blocked"] is False
    assert [o["id"] for o in summary["active_obligations"]] == [ob_on_time["id"]]
    assert summary["active_obligations"][0]["return_request_status"] == "pending"
    assert [o["id"] for o in summary["overdue_obligations"]] == [ob_late["id"]]
    assert summary["overdue_obligations"][0]["assessment"]["tier"] == "tier_1"
    assert summary["cleared_obligations"] == []
    assert summary["blocked_obligations"] == []

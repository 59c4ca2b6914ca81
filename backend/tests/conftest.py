from datetime import datetime, timedelta, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

import database
from models import BloodUnitCreate
from services import audit_service, claims, exchange, ledger, notifications, obligations

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

DB_MODULES = [database, audit_service, notifications, claims, ledger, exchange, obligations]


@pytest.fixture
async def db(monkeypatch):
    mock_db = AsyncMongoMockClient()["blood_exchange_test"]
    for module in DB_MODULES:
        monkeypatch.setattr(module, "db", mock_db)
    await database.ensure_indexes(mock_db)
    yield mock_db
    await notifications.drain()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_unit(db, now):
    """Take a unit into a hospital's stock; expiry is given in days from `now`."""
    counter = {"n": 0}

    async def _make(owner="hosp-a", blood_group="O+", expires_in_days=10, bag_id=None, **extra):
        counter["n"] += 1
        data = BloodUnitCreate(
            bag_id=bag_id or f"BAG-{counter['n']:04d}",
            blood_group=blood_group,
            expiry_date=now + timedelta(days=expires_in_days),
            collection_date=now - timedelta(days=30),
            **extra,
        )
        return await ledger.intake_unit(owner, data, now=now)

    return _make


@pytest.fixture
def fulfilled_request(db, now, make_unit):
    """Donor request approved by a hospital and fulfilled from its stock."""

    async def _make(donor="donor-1", hospital="hosp-a", blood_group="O+", units=1):
        request = await claims.create_request(donor, blood_group, units, "Urgent", now=now)
        await claims.claim(request["id"], hospital, "Approve", now=now)
        unit = await make_unit(owner=hospital, blood_group=blood_group)
        await ledger.mark_unit_issued(unit["bag_id"], request["id"], actor_id=hospital, now=now)
        return await claims.get_request(request["id"])

    return _make

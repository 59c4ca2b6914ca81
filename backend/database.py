"""
MongoDB access.
Exposes the shared Motor handle plus the two write primitives the core is
allowed to mutate shared state through: a conditional single-document update
and a plain insert, both with store failures classified.
"""
import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from services.errors import ConflictError, TransientStoreError

logger = logging.getLogger(__name__)

client = AsyncIOMotorClient(config.MONGO_URL)
db = client[config.DB_NAME]


async def ensure_indexes(database=None):
    """Create the unique and lookup indexes the invariants rely on."""
    database = database if database is not None else db
    await database.blood_units.create_index([("id", ASCENDING)], unique=True)
    await database.blood_units.create_index([("bag_id", ASCENDING)], unique=True)
    await database.blood_units.create_index([("current_owner_id", ASCENDING), ("status", ASCENDING)])
    await database.blood_units.create_index([("exchange_status", ASCENDING)])
    await database.blood_requests.create_index([("id", ASCENDING)], unique=True)
    await database.blood_requests.create_index([("request_id", ASCENDING)], unique=True)
    await database.blood_requests.create_index([("status", ASCENDING), ("expires_at", ASCENDING)])
    await database.obligations.create_index([("id", ASCENDING)], unique=True)
    # one obligation per fulfilled request/donor pair
    await database.obligations.create_index(
        [("request_id", ASCENDING), ("donor_id", ASCENDING)], unique=True
    )
    await database.return_requests.create_index([("id", ASCENDING)], unique=True)
    await database.ledger_entries.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    # keyed entries are written at most once; unkeyed ones carry no key field
    await database.ledger_entries.create_index([("key", ASCENDING)], unique=True, sparse=True)


async def compare_and_swap(collection, predicate: dict, update: dict) -> Optional[dict]:
    """
    Apply `update` to the single document matching `predicate`, atomically.

    Returns the updated document (without `_id`), or None when no document
    satisfied the predicate at commit time. Callers decide what a miss means.
    """
    try:
        doc = await collection.find_one_and_update(
            predicate,
            update,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError as exc:
        raise ConflictError(f"Duplicate key on {collection.name}: {exc}", code="DUPLICATE") from exc
    except PyMongoError as exc:
        logger.warning(f"Conditional update on {collection.name} failed: {exc}")
        raise TransientStoreError(f"Store unavailable while updating {collection.name}") from exc
    if doc is not None:
        doc.pop("_id", None)
    return doc


async def insert_document(collection, doc: dict, duplicate_code: str = "DUPLICATE") -> dict:
    """Insert one document; duplicates become ConflictError(duplicate_code)."""
    try:
        await collection.insert_one(doc)
    except DuplicateKeyError as exc:
        raise ConflictError(f"Duplicate record in {collection.name}", code=duplicate_code) from exc
    except PyMongoError as exc:
        logger.warning(f"Insert into {collection.name} failed: {exc}")
        raise TransientStoreError(f"Store unavailable while inserting into {collection.name}") from exc
    doc.pop("_id", None)
    return doc


async def insert_once(collection, key_filter: dict, doc: dict) -> bool:
    """
    Insert `doc` unless a document matching `key_filter` already exists.
    Returns True when this call wrote it.
    """
    try:
        result = await collection.update_one(key_filter, {"$setOnInsert": doc}, upsert=True)
    except DuplicateKeyError:
        # a concurrent writer inserted the same key first
        return False
    except PyMongoError as exc:
        logger.warning(f"Keyed insert into {collection.name} failed: {exc}")
        raise TransientStoreError(f"Store unavailable while inserting into {collection.name}") from exc
    return result.upserted_id is not None


async def next_sequence(name: str) -> int:
    """Atomically increment and return the named counter, starting at 1."""
    try:
        counter = await db.counters.find_one_and_update(
            {"id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as exc:
        logger.warning(f"Counter {name} could not be advanced: {exc}")
        raise TransientStoreError("Store unavailable while allocating a sequence number") from exc
    return counter["seq"]


def close():
    client.close()

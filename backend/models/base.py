from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """
    Fixed-width UTC timestamp. Stored timestamps are compared as strings
    inside store predicates, so every writer must go through here.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _plain(value):
    if isinstance(value, datetime):
        return iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def to_document(model) -> dict:
    """Dump a model into a Mongo-ready dict (ISO timestamps, enum values)."""
    return _plain(model.model_dump())


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes from callers are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_now(now: datetime = None) -> datetime:
    return as_utc(now) if now is not None else utcnow()

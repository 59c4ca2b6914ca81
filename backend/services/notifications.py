"""
Broadcast gateway.
Fan-out of request events to hospital dashboards. Delivery runs in the
background and every failure is logged and dropped; callers never wait on it
and never see its errors.
"""
import asyncio
import logging

from database import db
from models import Notification, EventType, to_document

logger = logging.getLogger(__name__)

_pending = set()


async def _deliver(event_type: EventType, payload: dict, user_id=None):
    try:
        note = Notification(event_type=event_type, payload=payload, user_id=user_id)
        await db.notifications.insert_one(to_document(note))
    except Exception as exc:
        # a broken gateway must never surface into the claim or create path
        logger.warning(f"Broadcast of {event_type.value} dropped: {exc}")


def publish(event_type: EventType, payload: dict, user_id=None):
    """Schedule delivery and return immediately."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning(f"No running loop, broadcast of {event_type.value} skipped")
        return
    task = loop.create_task(_deliver(event_type, payload, user_id))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain():
    """Wait for in-flight deliveries (shutdown and tests)."""
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)

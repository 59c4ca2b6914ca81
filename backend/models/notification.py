from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime, timezone
import uuid
from enum import Enum

class EventType(str, Enum):
    REQUEST_CREATED = "request.created"
    REQUEST_TAKEN = "request.taken"

class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    user_id: Optional[str] = None  # None means broadcast to all hospitals
    role: Optional[str] = "hospital"
    payload: dict = {}
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from common.errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# PROCESSING -> QUEUED is the boot/timeout reclaim, FAILED -> QUEUED the retry
_ALLOWED_TRANSITIONS = {
    OrderStatus.QUEUED: {OrderStatus.PROCESSING},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.QUEUED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.FAILED: {OrderStatus.QUEUED},
}


def validate_status_transition(current: OrderStatus, new: OrderStatus) -> None:
    if new not in _ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot move order from {current.value} to {new.value}")


class Photo(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    file_path: str                    # local path until uploaded, then the object key
    public_url: Optional[str] = None  # set once uploaded; never uploaded again
    created_at: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: OrderStatus = OrderStatus.QUEUED
    retry_count: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    photos: List[Photo] = Field(default_factory=list)

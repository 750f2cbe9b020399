# delivery_queue/models.py
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_VERIFICATION = "payment_verification"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    DELAYED = "delayed"
    CANCELLED = "cancelled"


class DeliveryType(str, Enum):
    STANDARD = "Standard"
    EXPRESS = "Express"


# statuses that occupy a queue slot; delayed is an annotation on an active order
SLOT_HOLDING = frozenset({OrderStatus.QUEUED, OrderStatus.IN_PROGRESS, OrderStatus.DELAYED})
TERMINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


class Order(BaseModel):
    order_id: str
    status: OrderStatus = OrderStatus.PAYMENT_VERIFICATION
    delivery_type: DeliveryType = DeliveryType.STANDARD
    queue_position: Optional[int] = Field(default=None, gt=0)
    estimated_delivery_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    delayed_from: Optional[OrderStatus] = None  # stage a delayed order resumes to
    delivered_at: Optional[datetime] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    delivery_proof_url: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)  # buyer, product, payment: opaque here

    @property
    def holds_slot(self) -> bool:
        return self.status in SLOT_HOLDING


# Request / response bodies

class OrderIn(BaseModel):
    order_id: Optional[str] = None  # generated when omitted
    status: OrderStatus = Field(default=OrderStatus.PAYMENT_VERIFICATION)
    delivery_type: DeliveryType = DeliveryType.STANDARD
    notes: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class OrderOut(BaseModel):
    order_id: str
    status: OrderStatus
    delivery_type: DeliveryType
    queue_position: Optional[int]
    estimated_delivery_time: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    delivered_at: Optional[datetime]
    delayed_from: Optional[OrderStatus] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    delivery_proof_url: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class QueuedOut(BaseModel):
    order_id: str
    queue_position: int
    estimated_delivery_time: datetime


class StatusPatch(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None
    delivery_proof_url: Optional[str] = None  # only meaningful for delivered


class DeliveryTypePatch(BaseModel):
    delivery_type: DeliveryType


class PositionPatch(BaseModel):
    queue_position: int = Field(gt=0)
    actor: str = Field(min_length=1)  # operator id, logged for audit


class AdminNotesPatch(BaseModel):
    admin_notes: str

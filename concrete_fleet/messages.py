"""Message contracts exchanged between the dispatch services.

Every message carries a unique id and a UTC creation timestamp. Messages are
serialized into an envelope that also names the message type, so a consumer
can rebuild the concrete model without knowing it in advance.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, Optional, Tuple, Type
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from .constants import OrderState, TruckState
from .utils import utc_now


class Message(BaseModel):
    message_id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


# --- order events -----------------------------------------------------------


class OrderEvent(Message):
    order_id: int


class OrderCreated(OrderEvent):
    customer_name: str
    distance_miles: int
    plant_id: Optional[int] = None
    status: OrderState = OrderState.PENDING


class OrderCancelled(OrderEvent):
    reason: str
    customer_name: str


class OrderStatusChanged(OrderEvent):
    previous_status: OrderState
    new_status: OrderState


class TruckAssignedToOrder(OrderEvent):
    truck_id: int
    truck_driver_name: str


class OrderInTransit(OrderEvent):
    truck_id: int


class OrderDelivered(OrderEvent):
    truck_id: int
    delivered_at: datetime = Field(default_factory=utc_now)


# --- truck events -----------------------------------------------------------


class TruckEvent(Message):
    truck_id: int


class TruckStatusChanged(TruckEvent):
    previous_status: TruckState
    new_status: TruckState
    order_id: Optional[int] = None


class MaterialsLoaded(TruckEvent):
    materials: Dict[str, float]


class ArrivedAtJobSite(TruckEvent):
    job_site_id: str


class PouringStarted(TruckEvent):
    job_site_id: str


class PouringCompleted(TruckEvent):
    job_site_id: str
    amount_poured: float


class ReturnedToPlant(TruckEvent):
    pass


class WashStarted(TruckEvent):
    pass


class WashCompleted(TruckEvent):
    pass


class TruckIdle(TruckEvent):
    pass


# --- truck commands ---------------------------------------------------------


class ReturnToPlant(TruckEvent):
    reason: Optional[str] = None


MESSAGE_TYPES: Dict[str, Type[Message]] = {
    cls.__name__: cls
    for cls in (
        OrderCreated,
        OrderCancelled,
        OrderStatusChanged,
        TruckAssignedToOrder,
        OrderInTransit,
        OrderDelivered,
        TruckStatusChanged,
        MaterialsLoaded,
        ArrivedAtJobSite,
        PouringStarted,
        PouringCompleted,
        ReturnedToPlant,
        WashStarted,
        WashCompleted,
        TruckIdle,
        ReturnToPlant,
    )
}


class UnknownMessageType(ValueError):
    pass


def encode_envelope(message: Message, routing_key: str) -> str:
    return json.dumps(
        {
            "type": type(message).__name__,
            "routing_key": routing_key,
            "body": message.model_dump(mode="json"),
        }
    )


def decode_envelope(raw: str) -> Tuple[str, Message]:
    """Return ``(routing_key, message)`` for a serialized envelope."""
    envelope = json.loads(raw)
    message_cls = MESSAGE_TYPES.get(envelope.get("type", ""))
    if message_cls is None:
        raise UnknownMessageType(f"Unknown message type {envelope.get('type')!r}")
    return envelope.get("routing_key", ""), message_cls.model_validate(envelope["body"])

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import OrderState, TruckState


class OrderCreate(BaseModel):
    customer_name: str = Field(..., min_length=1, max_length=200)
    distance_miles: int = Field(..., gt=0)
    plant_id: Optional[int] = Field(default=None, ge=1)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"customer_name": "Riverside Apartments", "distance_miles": 5, "plant_id": 1}
        }
    )

    @field_validator("customer_name")
    @classmethod
    def _strip_customer_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("customer_name must not be blank")
        return value


class OrderCancelRequest(BaseModel):
    reason: str = Field("Cancelled from dashboard", max_length=500)


class AssignTruckRequest(BaseModel):
    truck_id: int = Field(..., ge=1)


class OrderRead(BaseModel):
    id: int
    customer_name: str
    distance_miles: int
    status: OrderState
    plant_id: Optional[int] = None
    truck_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TruckRead(BaseModel):
    truck_id: int
    driver_name: str
    status: TruckState
    current_order_id: Optional[int] = None
    updated_at: Optional[datetime] = None


class InventoryRead(BaseModel):
    sand_quantity: int = Field(..., ge=0)
    gravel_quantity: int = Field(..., ge=0)
    concrete_quantity: int = Field(..., ge=0)
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PlantRead(BaseModel):
    id: int
    name: str
    inventory: Optional[InventoryRead] = None

    model_config = ConfigDict(from_attributes=True)


class AssignmentRead(BaseModel):
    order_id: int
    truck_id: int
    driver_name: str


class EventRead(BaseModel):
    exchange: str
    event_type: str
    received_at: datetime
    payload: Dict[str, Any]

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Enum as SAEnum, ForeignKey, Integer, String
from sqlalchemy.orm import declarative_base, relationship

from .constants import OrderState, TruckState

Base = declarative_base()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls):
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class Plant(Base):
    __tablename__ = "plants"

    id: int = Column(Integer, primary_key=True, index=True)
    name: str = Column(String(100), nullable=False)
    created_at: datetime = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    inventory = relationship("PlantInventory", back_populates="plant", uselist=False)


class PlantInventory(Base):
    __tablename__ = "plant_inventory"

    id: int = Column(Integer, primary_key=True, index=True)
    plant_id: int = Column(Integer, ForeignKey("plants.id"), unique=True, nullable=False)
    sand_quantity: int = Column(Integer, nullable=False, default=0)
    gravel_quantity: int = Column(Integer, nullable=False, default=0)
    concrete_quantity: int = Column(Integer, nullable=False, default=0)
    updated_at: datetime = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    plant = relationship("Plant", back_populates="inventory")

    def can_supply(self, amount: int) -> bool:
        return (
            self.sand_quantity >= amount
            and self.gravel_quantity >= amount
            and self.concrete_quantity >= amount
        )

    def snapshot(self) -> dict:
        return {
            "sand": self.sand_quantity,
            "gravel": self.gravel_quantity,
            "concrete": self.concrete_quantity,
        }


class Truck(Base):
    __tablename__ = "trucks"

    id: int = Column(Integer, primary_key=True, index=True)
    driver_name: str = Column(String(100), nullable=False)
    created_at: datetime = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    current_status = relationship("TruckStatus", back_populates="truck", uselist=False)


class TruckStatus(Base):
    __tablename__ = "truck_status"

    id: int = Column(Integer, primary_key=True, index=True)
    truck_id: int = Column(Integer, ForeignKey("trucks.id"), unique=True, nullable=False)
    status: TruckState = Column(_enum_column(TruckState), nullable=False, default=TruckState.AVAILABLE)
    current_order_id: Optional[int] = Column(Integer, ForeignKey("orders.id"), nullable=True)
    updated_at: datetime = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    truck = relationship("Truck", back_populates="current_status")
    current_order = relationship("Order", foreign_keys=[current_order_id])


class Order(Base):
    __tablename__ = "orders"

    id: int = Column(Integer, primary_key=True, index=True)
    customer_name: str = Column(String(200), nullable=False)
    distance_miles: int = Column(Integer, nullable=False)
    status: OrderState = Column(_enum_column(OrderState), nullable=False, default=OrderState.PENDING, index=True)
    plant_id: Optional[int] = Column(Integer, ForeignKey("plants.id"), nullable=True, index=True)
    truck_id: Optional[int] = Column(Integer, ForeignKey("trucks.id"), nullable=True)
    created_at: datetime = Column(DateTime(timezone=True), default=_utc_now, nullable=False, index=True)
    updated_at: datetime = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    plant = relationship("Plant")
    truck = relationship("Truck")

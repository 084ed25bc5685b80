"""Plant inventory deduction triggered by trucks entering their loading phase."""

from __future__ import annotations

from typing import Optional

import structlog
from sqlalchemy.orm import sessionmaker

from .broker import MessageBroker
from .constants import MATERIALS_PER_TRUCK, ExchangeNames, QueueNames, TruckRoutingKeys, TruckState
from .messages import Message, TruckStatusChanged
from .models import Order, PlantInventory, TruckStatus
from .repository import FleetRepository
from .utils import utc_now

logger = structlog.get_logger(__name__)


class InventoryManager:
    """Deducts a fixed load of sand, gravel and concrete per truck."""

    def __init__(self, session_factory: sessionmaker, amount: int = MATERIALS_PER_TRUCK) -> None:
        self.repository = FleetRepository(session_factory)
        self.amount = amount

    def get_plant_inventory(self, plant_id: int) -> Optional[PlantInventory]:
        with self.repository.session() as db:
            return db.query(PlantInventory).filter(PlantInventory.plant_id == plant_id).one_or_none()

    def deduct_materials_for_truck(self, truck_id: int, order_id: Optional[int] = None) -> bool:
        """Deduct one load for the order *truck_id* is loading.

        *order_id* comes from the status-changed event when present; otherwise
        the truck's currently bound order is used. Returns False, leaving
        inventory untouched, when there is no order, the order has no plant,
        or the plant is short of any material.
        """
        log = logger.bind(truck_id=truck_id)
        with self.repository.session() as db:
            if order_id is None:
                truck_status = db.query(TruckStatus).filter(TruckStatus.truck_id == truck_id).one_or_none()
                if truck_status is None or truck_status.current_order_id is None:
                    log.warning("Truck has no assigned order")
                    return False
                order_id = truck_status.current_order_id

            order = db.get(Order, order_id)
            if order is None:
                log.warning("Bound order not found", order_id=order_id)
                return False
            log = log.bind(order_id=order.id)
            if order.plant_id is None:
                log.warning("Order has no assigned plant")
                return False
            log = log.bind(plant_id=order.plant_id)

            inventory = (
                db.query(PlantInventory).filter(PlantInventory.plant_id == order.plant_id).one_or_none()
            )
            if inventory is None:
                log.error("No inventory found for plant")
                return False

            before = inventory.snapshot()
            if not inventory.can_supply(self.amount):
                log.warning("Insufficient materials at plant", required=self.amount, **before)
                return False

            amount = self.amount
            rows = (
                db.query(PlantInventory)
                .filter(
                    PlantInventory.id == inventory.id,
                    PlantInventory.sand_quantity >= amount,
                    PlantInventory.gravel_quantity >= amount,
                    PlantInventory.concrete_quantity >= amount,
                )
                .update(
                    {
                        PlantInventory.sand_quantity: PlantInventory.sand_quantity - amount,
                        PlantInventory.gravel_quantity: PlantInventory.gravel_quantity - amount,
                        PlantInventory.concrete_quantity: PlantInventory.concrete_quantity - amount,
                        PlantInventory.updated_at: utc_now(),
                    },
                    synchronize_session=False,
                )
            )
            if rows != 1:
                db.rollback()
                log.warning("Inventory changed underneath deduction; skipped", required=amount)
                return False
            db.commit()

        log.info(
            "Materials deducted",
            sand=f"{before['sand']} -> {before['sand'] - amount}",
            gravel=f"{before['gravel']} -> {before['gravel'] - amount}",
            concrete=f"{before['concrete']} -> {before['concrete'] - amount}",
        )
        return True


class TruckEventListener:
    """Consumes truck status changes and deducts stock when loading starts."""

    def __init__(self, broker: MessageBroker, manager: InventoryManager) -> None:
        self.broker = broker
        self.manager = manager

    async def start(self) -> None:
        await self.broker.subscribe(
            QueueNames.INVENTORY_TRUCK_STATUS,
            ExchangeNames.TRUCK_EVENTS,
            TruckRoutingKeys.STATUS_CHANGED,
            self.handle_truck_status_changed,
        )
        logger.info("Inventory service listening for truck events")

    async def stop(self) -> None:
        logger.info("Inventory service stopping")

    async def handle_truck_status_changed(self, message: Message) -> None:
        if not isinstance(message, TruckStatusChanged):
            return
        if message.new_status != TruckState.LOADING:
            return
        logger.info("Truck is loading - deducting materials", truck_id=message.truck_id)
        if not self.manager.deduct_materials_for_truck(message.truck_id, message.order_id):
            # Shortfalls are reported, never raised: the truck keeps loading.
            logger.warning("Materials not deducted for truck", truck_id=message.truck_id)

"""Order commands issued from the dashboard.

These are the only writes the dashboard makes. Truck status rows are left to
the workflow services; a cancelled order only drops its truck reference and
the truck is redirected by the cancellation handler.
"""

from __future__ import annotations

from typing import Optional

import structlog
from sqlalchemy.orm import Session, sessionmaker

from .broker import MessageBroker
from .constants import TERMINAL_ORDER_STATES, ExchangeNames, OrderRoutingKeys, OrderState
from .messages import OrderCancelled, OrderCreated, OrderStatusChanged
from .models import Order, Plant
from .orchestrator import announce_assignment
from .repository import AvailableTruck, FleetRepository
from .utils import utc_now

logger = structlog.get_logger(__name__)


class OrderNotFound(LookupError):
    pass


class OrderStateConflict(RuntimeError):
    pass


async def create_order(
    db: Session,
    broker: MessageBroker,
    customer_name: str,
    distance_miles: int,
    plant_id: Optional[int] = None,
) -> Order:
    if plant_id is not None and db.get(Plant, plant_id) is None:
        raise OrderNotFound(f"Plant {plant_id} not found")
    order = Order(
        customer_name=customer_name,
        distance_miles=distance_miles,
        plant_id=plant_id,
        status=OrderState.PENDING,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("Order created", order_id=order.id, customer=customer_name, distance_miles=distance_miles)

    await broker.publish(
        OrderCreated(
            order_id=order.id,
            customer_name=order.customer_name,
            distance_miles=order.distance_miles,
            plant_id=order.plant_id,
        ),
        ExchangeNames.ORDER_EVENTS,
        OrderRoutingKeys.CREATED,
    )
    return order


async def cancel_order(db: Session, broker: MessageBroker, order_id: int, reason: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    if order.status in TERMINAL_ORDER_STATES:
        raise OrderStateConflict(f"Order {order_id} is already {order.status.value}")

    previous = order.status
    order.status = OrderState.CANCELLED
    order.truck_id = None
    order.updated_at = utc_now()
    db.commit()
    db.refresh(order)
    logger.info("Order cancelled", order_id=order_id, previous_status=previous.value, reason=reason)

    await broker.publish(
        OrderCancelled(order_id=order_id, reason=reason, customer_name=order.customer_name),
        ExchangeNames.ORDER_EVENTS,
        OrderRoutingKeys.CANCELLED,
    )
    await broker.publish(
        OrderStatusChanged(order_id=order_id, previous_status=previous, new_status=OrderState.CANCELLED),
        ExchangeNames.ORDER_EVENTS,
        OrderRoutingKeys.STATUS_CHANGED,
    )
    return order


async def assign_truck(
    session_factory: sessionmaker, broker: MessageBroker, order_id: int, truck_id: int
) -> AvailableTruck:
    """Assign *truck_id* to *order_id* by hand, bypassing first-available matching."""
    repository = FleetRepository(session_factory)
    if repository.get_order(order_id) is None:
        raise OrderNotFound(f"Order {order_id} not found")
    truck = repository.get_truck(truck_id)
    if truck is None:
        raise OrderNotFound(f"Truck {truck_id} not found")
    if not repository.assign_truck_to_order(order_id, truck_id):
        raise OrderStateConflict(f"Order {order_id} must be Pending and truck {truck_id} Available")

    assigned = AvailableTruck(truck.truck_id, truck.driver_name)
    await announce_assignment(broker, order_id, assigned)
    logger.info("Truck manually assigned", order_id=order_id, truck_id=truck_id)
    return assigned


__all__ = ["OrderNotFound", "OrderStateConflict", "create_order", "cancel_order", "assign_truck"]

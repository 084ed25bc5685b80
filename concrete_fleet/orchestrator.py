"""Pairs pending orders with available trucks."""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from sqlalchemy.orm import sessionmaker

from .broker import MessageBroker
from .constants import ExchangeNames, OrderRoutingKeys, QueueNames, TruckRoutingKeys, TruckState
from .messages import Message, OrderCreated, TruckAssignedToOrder, TruckIdle, TruckStatusChanged
from .repository import AvailableTruck, FleetRepository
from .utils import run_periodically

logger = structlog.get_logger(__name__)


async def announce_assignment(broker: MessageBroker, order_id: int, truck: AvailableTruck) -> None:
    """Publish the events that follow a committed assignment."""
    await broker.publish(
        TruckStatusChanged(
            truck_id=truck.truck_id,
            previous_status=TruckState.AVAILABLE,
            new_status=TruckState.ASSIGNED,
            order_id=order_id,
        ),
        ExchangeNames.TRUCK_EVENTS,
        TruckRoutingKeys.STATUS_CHANGED,
    )
    await broker.publish(
        TruckAssignedToOrder(order_id=order_id, truck_id=truck.truck_id, truck_driver_name=truck.driver_name),
        ExchangeNames.ORDER_EVENTS,
        OrderRoutingKeys.TRUCK_ASSIGNED,
    )


class JobAssignmentOrchestrator:
    def __init__(
        self,
        broker: MessageBroker,
        session_factory: sessionmaker,
        reconcile_interval: float = 30.0,
    ) -> None:
        self.broker = broker
        self.repository = FleetRepository(session_factory)
        self.reconcile_interval = reconcile_interval
        self._sweeper: Optional[asyncio.Task] = None

    async def start(self) -> None:
        logger.info("Job workflow service starting - processing pending orders")
        await self.process_pending_orders()
        await self.broker.subscribe(
            QueueNames.ORCHESTRATOR_ORDERS,
            ExchangeNames.ORDER_EVENTS,
            OrderRoutingKeys.CREATED,
            self.handle_order_created,
        )
        await self.broker.subscribe(
            QueueNames.ORCHESTRATOR_TRUCK_IDLE,
            ExchangeNames.TRUCK_EVENTS,
            TruckRoutingKeys.IDLE,
            self.handle_truck_idle,
        )
        self._sweeper = asyncio.create_task(
            run_periodically(self.reconcile_interval, self.process_pending_orders, "pending-order-sweep"),
            name="pending-order-sweep",
        )

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        logger.info("Job workflow service stopped")

    async def handle_order_created(self, message: Message) -> None:
        if not isinstance(message, OrderCreated):
            return
        logger.info(
            "Processing new order",
            order_id=message.order_id,
            customer=message.customer_name,
            distance_miles=message.distance_miles,
        )
        await self.try_assign_next()

    async def handle_truck_idle(self, message: Message) -> None:
        if not isinstance(message, TruckIdle):
            return
        logger.info("Truck is now idle - checking for pending orders", truck_id=message.truck_id)
        await self.try_assign_next()

    async def try_assign_next(self) -> bool:
        """Assign the oldest pending order to the lowest-id available truck.

        Orders that lose a race for the truck are skipped in favour of the next
        pending one; the loop ends when an assignment sticks or either side
        runs out.
        """
        for order in self.repository.get_pending_orders():
            truck = self.repository.get_available_truck()
            if truck is None:
                logger.info("No trucks available - order remains pending", order_id=order.id)
                return False
            if await self.assign(order.id, truck):
                return True
        return False

    async def assign(self, order_id: int, truck: AvailableTruck) -> bool:
        if not self.repository.assign_truck_to_order(order_id, truck.truck_id):
            return False
        await announce_assignment(self.broker, order_id, truck)
        logger.info(
            "Assigned truck to order",
            truck_id=truck.truck_id,
            driver=truck.driver_name,
            order_id=order_id,
        )
        return True

    async def process_pending_orders(self) -> int:
        """Greedily pair pending orders with available trucks, oldest first."""
        pending = self.repository.get_pending_orders()
        if not pending:
            return 0
        logger.info("Found pending orders", count=len(pending))
        assigned = 0
        for order in pending:
            truck = self.repository.get_available_truck()
            if truck is None:
                logger.info("No more trucks available", remaining=len(pending) - assigned)
                break
            if await self.assign(order.id, truck):
                assigned += 1
        return assigned


__all__ = ["JobAssignmentOrchestrator", "announce_assignment"]

"""Redirects the truck serving an order once that order is cancelled."""

from __future__ import annotations

import structlog

from .broker import MessageBroker
from .constants import ExchangeNames, OrderRoutingKeys, QueueNames, TruckState
from .messages import Message, OrderCancelled
from .simulator import TruckSimulator

logger = structlog.get_logger(__name__)

# Trucks in these states are already heading home; their running workflow is
# left alone and the Cancelled order survives its completion step.
CONVERGING_STATES = (TruckState.AVAILABLE, TruckState.RETURNING, TruckState.WASHING)


class OrderCancellationHandler:
    def __init__(self, broker: MessageBroker, simulator: TruckSimulator) -> None:
        self.broker = broker
        self.simulator = simulator

    async def start(self) -> None:
        await self.broker.subscribe(
            QueueNames.CANCELLATIONS,
            ExchangeNames.ORDER_EVENTS,
            OrderRoutingKeys.CANCELLED,
            self.handle_order_cancelled,
        )

    async def stop(self) -> None:
        return None

    async def handle_order_cancelled(self, message: Message) -> None:
        if not isinstance(message, OrderCancelled):
            return
        log = logger.bind(order_id=message.order_id)
        log.info("Processing order cancellation", reason=message.reason)

        repository = self.simulator.repository
        truck = repository.get_truck_for_order(message.order_id)
        if truck is None:
            log.info("No truck bound to cancelled order")
            return
        log = log.bind(truck_id=truck.truck_id)
        if truck.status in CONVERGING_STATES:
            log.info("Truck already returning - no redirect needed", status=truck.status.value)
            return

        await self.simulator.cancel_workflow(truck.truck_id)

        # The workflow may have advanced before it was cancelled; the tail
        # table covers Returning and Washing too.
        truck = repository.get_truck(truck.truck_id)
        if truck is None or truck.order_id != message.order_id or truck.status == TruckState.AVAILABLE:
            log.info("Truck moved on before cancellation took effect")
            return
        self.simulator.start_cancellation_tail(truck.truck_id, message.order_id, truck.status)


__all__ = ["OrderCancellationHandler"]

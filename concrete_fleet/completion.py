"""Records delivered orders."""

from __future__ import annotations

import structlog
from sqlalchemy.orm import sessionmaker

from .broker import MessageBroker
from .constants import ExchangeNames, OrderRoutingKeys, QueueNames
from .messages import Message, OrderDelivered
from .repository import FleetRepository

logger = structlog.get_logger(__name__)


class OrderCompletionHandler:
    def __init__(self, broker: MessageBroker, session_factory: sessionmaker) -> None:
        self.broker = broker
        self.repository = FleetRepository(session_factory)

    async def start(self) -> None:
        await self.broker.subscribe(
            QueueNames.COMPLETIONS,
            ExchangeNames.ORDER_EVENTS,
            OrderRoutingKeys.DELIVERED,
            self.handle_order_delivered,
        )

    async def stop(self) -> None:
        return None

    async def handle_order_delivered(self, message: Message) -> None:
        if not isinstance(message, OrderDelivered):
            return
        if self.repository.mark_order_delivered(message.order_id):
            logger.info("Order completed", order_id=message.order_id, truck_id=message.truck_id)


__all__ = ["OrderCompletionHandler"]

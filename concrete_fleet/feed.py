"""Recent-event buffer backing the dashboard's activity feed."""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Deque, List, NamedTuple

import structlog

from .broker import MessageBroker
from .constants import ExchangeNames, QueueNames
from .messages import Message, OrderEvent
from .utils import utc_now

logger = structlog.get_logger(__name__)


class FeedEntry(NamedTuple):
    exchange: str
    event_type: str
    received_at: datetime
    payload: dict


class EventFeed:
    def __init__(self, broker: MessageBroker, max_events: int = 200) -> None:
        self.broker = broker
        self._events: Deque[FeedEntry] = deque(maxlen=max_events)

    async def start(self) -> None:
        for exchange in (ExchangeNames.ORDER_EVENTS, ExchangeNames.TRUCK_EVENTS):
            await self.broker.subscribe(QueueNames.DASHBOARD_EVENTS, exchange, "#", self.record)

    async def record(self, message: Message) -> None:
        exchange = ExchangeNames.ORDER_EVENTS if isinstance(message, OrderEvent) else ExchangeNames.TRUCK_EVENTS
        self._events.append(
            FeedEntry(exchange, type(message).__name__, utc_now(), message.model_dump(mode="json"))
        )

    def recent(self, limit: int = 50) -> List[FeedEntry]:
        """Newest first."""
        if limit <= 0:
            return []
        return list(reversed(self._events))[:limit]

    def __len__(self) -> int:
        return len(self._events)


__all__ = ["EventFeed", "FeedEntry"]

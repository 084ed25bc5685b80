from __future__ import annotations

from concrete_fleet.broker import InMemoryBroker
from concrete_fleet.completion import OrderCompletionHandler
from concrete_fleet.constants import ExchangeNames, OrderRoutingKeys, OrderState
from concrete_fleet.messages import OrderDelivered
from concrete_fleet.repository import FleetRepository

from fleet_helpers import add_order, run, settle


def _deliver(order_id: int) -> OrderDelivered:
    return OrderDelivered(order_id=order_id, truck_id=1)


def test_delivered_event_closes_order(session_factory) -> None:
    async def scenario() -> None:
        order_id = add_order(session_factory, status=OrderState.DELIVERING, truck_id=1)
        before = FleetRepository(session_factory).get_order(order_id).updated_at

        broker = InMemoryBroker()
        await OrderCompletionHandler(broker, session_factory).start()
        await broker.publish(_deliver(order_id), ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.DELIVERED)
        await settle(broker)
        await broker.close()

        order = FleetRepository(session_factory).get_order(order_id)
        assert order.status == OrderState.DELIVERED
        assert order.updated_at >= before

    run(scenario)


def test_cancelled_order_stays_cancelled(session_factory) -> None:
    async def scenario() -> None:
        order_id = add_order(session_factory, status=OrderState.CANCELLED)
        broker = InMemoryBroker()
        handler = OrderCompletionHandler(broker, session_factory)
        await handler.handle_order_delivered(_deliver(order_id))

        assert FleetRepository(session_factory).get_order(order_id).status == OrderState.CANCELLED

    run(scenario)


def test_unknown_order_is_ignored(session_factory) -> None:
    async def scenario() -> None:
        handler = OrderCompletionHandler(InMemoryBroker(), session_factory)
        await handler.handle_order_delivered(_deliver(12345))

    run(scenario)

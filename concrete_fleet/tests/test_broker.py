from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from concrete_fleet.broker import InMemoryBroker, RedisStreamsBroker, build_broker
from concrete_fleet.config import Settings
from concrete_fleet.constants import ExchangeNames, OrderRoutingKeys, TruckRoutingKeys, TruckState
from concrete_fleet.messages import (
    OrderCreated,
    TruckIdle,
    TruckStatusChanged,
    UnknownMessageType,
    decode_envelope,
    encode_envelope,
)

from fleet_helpers import Recorder, run, settle


def _order_created(order_id: int = 1) -> OrderCreated:
    return OrderCreated(order_id=order_id, customer_name="Acme Builders", distance_miles=5)


def test_envelope_preserves_type_and_routing_key() -> None:
    message = TruckStatusChanged(
        truck_id=2,
        previous_status=TruckState.AVAILABLE,
        new_status=TruckState.ASSIGNED,
        order_id=7,
    )
    routing_key, decoded = decode_envelope(encode_envelope(message, TruckRoutingKeys.STATUS_CHANGED))

    assert routing_key == TruckRoutingKeys.STATUS_CHANGED
    assert isinstance(decoded, TruckStatusChanged)
    assert decoded == message


def test_envelope_body_uses_status_strings() -> None:
    raw = encode_envelope(
        TruckStatusChanged(truck_id=1, previous_status=TruckState.LOADING, new_status=TruckState.EN_ROUTE),
        TruckRoutingKeys.STATUS_CHANGED,
    )
    body = json.loads(raw)["body"]
    assert body["new_status"] == "EnRoute"
    assert "message_id" in body and "created_at" in body


def test_unknown_message_type_is_rejected() -> None:
    raw = json.dumps({"type": "TruckExploded", "routing_key": "truck.exploded", "body": {}})
    with pytest.raises(UnknownMessageType):
        decode_envelope(raw)


def test_messages_are_immutable() -> None:
    message = TruckIdle(truck_id=1)
    with pytest.raises(ValidationError):
        message.truck_id = 2


def test_topic_bindings_route_to_matching_queues() -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        created, everything, trucks = Recorder(), Recorder(), Recorder()
        await broker.subscribe("created", ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.CREATED, created)
        await broker.subscribe("everything", ExchangeNames.ORDER_EVENTS, "order.#", everything)
        await broker.subscribe("trucks", ExchangeNames.TRUCK_EVENTS, "#", trucks)

        await broker.publish(_order_created(), ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.CREATED)
        await broker.publish(TruckIdle(truck_id=3), ExchangeNames.TRUCK_EVENTS, TruckRoutingKeys.IDLE)
        await settle(broker)
        await broker.close()

        assert [type(message) for message in created.messages] == [OrderCreated]
        assert [type(message) for message in everything.messages] == [OrderCreated]
        assert [type(message) for message in trucks.messages] == [TruckIdle]

    run(scenario)


def test_competing_consumers_share_a_queue() -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        first, second = Recorder(), Recorder()
        await broker.subscribe("workers", ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.CREATED, first)
        await broker.subscribe("workers", ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.CREATED, second)

        for order_id in range(1, 11):
            await broker.publish(_order_created(order_id), ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.CREATED)
        await settle(broker)
        await broker.close()

        received = sorted(message.order_id for message in first.messages + second.messages)
        assert received == list(range(1, 11))

    run(scenario)


def test_failed_handler_gets_the_message_again() -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        attempts = []

        async def flaky(message) -> None:
            attempts.append(message.message_id)
            if len(attempts) == 1:
                raise RuntimeError("database unavailable")

        await broker.subscribe("flaky", ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.CREATED, flaky)
        message = _order_created()
        await broker.publish(message, ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.CREATED)
        await settle(broker)
        await broker.close()

        assert attempts == [message.message_id, message.message_id]

    run(scenario)


def test_undecodable_delivery_is_acknowledged() -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        handled = Recorder()
        assert await broker._handle_delivery("orders", "not json", handled) is True
        assert handled.messages == []

    run(scenario)


def test_unbound_exchange_drops_messages() -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        await broker.publish(TruckIdle(truck_id=1), ExchangeNames.TRUCK_EVENTS, TruckRoutingKeys.IDLE)
        assert broker.idle

    run(scenario)


def test_build_broker_selects_implementation() -> None:
    assert isinstance(build_broker(Settings(broker_url="memory://")), InMemoryBroker)

    redis_broker = build_broker(Settings(broker_url="redis://localhost:6379/0", redis_stream_prefix="fleet"))
    assert isinstance(redis_broker, RedisStreamsBroker)
    assert redis_broker._stream(ExchangeNames.ORDER_EVENTS) == "fleet:order-events"

    with pytest.raises(ValueError):
        build_broker(Settings(broker_url="amqp://guest@localhost"))

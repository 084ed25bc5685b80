from __future__ import annotations

import pytest

from concrete_fleet.broker import InMemoryBroker
from concrete_fleet.cancellation import OrderCancellationHandler
from concrete_fleet.completion import OrderCompletionHandler
from concrete_fleet.config import Settings
from concrete_fleet.constants import ExchangeNames, OrderRoutingKeys, OrderState, TruckRoutingKeys
from concrete_fleet.feed import EventFeed
from concrete_fleet.inventory import TruckEventListener
from concrete_fleet.messages import OrderCreated, TruckIdle
from concrete_fleet.orchestrator import JobAssignmentOrchestrator
from concrete_fleet.repository import FleetRepository
from concrete_fleet.simulator import TruckSimulator
from concrete_fleet.worker import ServiceHost, build_components, parse_cli_args

from fleet_helpers import INSTANT, add_order, run, settle


@pytest.mark.parametrize(
    "service, expected",
    [
        ("job-workflow", [OrderCompletionHandler, JobAssignmentOrchestrator]),
        ("truck-status", [TruckSimulator, OrderCancellationHandler]),
        ("inventory", [TruckEventListener]),
        (
            "all",
            [
                TruckEventListener,
                OrderCompletionHandler,
                TruckSimulator,
                OrderCancellationHandler,
                JobAssignmentOrchestrator,
            ],
        ),
    ],
)
def test_service_components(session_factory, service: str, expected: list) -> None:
    components = build_components(service, InMemoryBroker(), session_factory, Settings())
    assert [type(component) for component in components] == expected


def test_unknown_service_is_rejected(session_factory) -> None:
    with pytest.raises(ValueError):
        build_components("billing", InMemoryBroker(), session_factory, Settings())


def test_cli_defaults_to_all_services() -> None:
    assert parse_cli_args([]).service == "all"
    assert parse_cli_args(["--service", "inventory"]).service == "inventory"
    with pytest.raises(SystemExit):
        parse_cli_args(["--service", "billing"])


def test_settings_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("BROKER_URL", "redis://cache:6379/0")
    monkeypatch.setenv("SIM_TIME_SCALE", "0.5")
    monkeypatch.setenv("ENVIRONMENT", "Production")
    monkeypatch.delenv("RUN_WORKERS_IN_PROCESS", raising=False)

    settings = Settings.from_env()

    assert settings.timing.time_scale == 0.5
    assert settings.environment == "production"
    assert not settings.uses_memory_broker
    assert not settings.workers_in_process


def test_host_runs_every_service_in_one_process(session_factory) -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        settings = Settings(timing=INSTANT)
        host = ServiceHost("all", broker, session_factory, settings)
        simulator = next(component for component in host.components if isinstance(component, TruckSimulator))
        await host.start()

        order_id = add_order(session_factory, plant_id=1)
        await broker.publish(
            OrderCreated(order_id=order_id, customer_name="Acme Builders", distance_miles=3, plant_id=1),
            ExchangeNames.ORDER_EVENTS,
            OrderRoutingKeys.CREATED,
        )
        await settle(broker, simulator)
        await host.stop()
        await broker.close()

        assert FleetRepository(session_factory).get_order(order_id).status == OrderState.DELIVERED
        inventory = next(c for c in host.components if isinstance(c, TruckEventListener)).manager
        assert inventory.get_plant_inventory(1).sand_quantity == 990

    run(scenario)


def test_event_feed_keeps_newest_first() -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        feed = EventFeed(broker, max_events=3)
        await feed.start()
        for truck_id in range(1, 6):
            await broker.publish(TruckIdle(truck_id=truck_id), ExchangeNames.TRUCK_EVENTS, TruckRoutingKeys.IDLE)
        await settle(broker)
        await broker.close()

        entries = feed.recent(10)
        assert len(feed) == 3
        assert [entry.payload["truck_id"] for entry in entries] == [5, 4, 3]
        assert entries[0].exchange == ExchangeNames.TRUCK_EVENTS
        assert entries[0].event_type == "TruckIdle"
        assert feed.recent(0) == []

    run(scenario)

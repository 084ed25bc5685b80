from __future__ import annotations

from concrete_fleet.broker import InMemoryBroker
from concrete_fleet.completion import OrderCompletionHandler
from concrete_fleet.constants import ExchangeNames, OrderRoutingKeys, OrderState, TruckRoutingKeys, TruckState
from concrete_fleet.messages import OrderCreated, TruckAssignedToOrder, TruckIdle
from concrete_fleet.orchestrator import JobAssignmentOrchestrator
from concrete_fleet.repository import FleetRepository
from concrete_fleet.simulator import TruckSimulator

from fleet_helpers import INSTANT, Recorder, add_order, record_truck_status, run, settle


async def _record_assignments(broker: InMemoryBroker) -> Recorder:
    recorder = Recorder()
    await broker.subscribe("test-assignments", ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.TRUCK_ASSIGNED, recorder)
    return recorder


def test_new_order_gets_lowest_id_truck(session_factory) -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        assignments = await _record_assignments(broker)
        statuses = await record_truck_status(broker)
        orchestrator = JobAssignmentOrchestrator(broker, session_factory)
        await orchestrator.start()

        order_id = add_order(session_factory)
        await broker.publish(
            OrderCreated(order_id=order_id, customer_name="Acme Builders", distance_miles=5),
            ExchangeNames.ORDER_EVENTS,
            OrderRoutingKeys.CREATED,
        )
        await settle(broker)
        await orchestrator.stop()
        await broker.close()

        [assignment] = assignments.of_type(TruckAssignedToOrder)
        assert (assignment.order_id, assignment.truck_id, assignment.truck_driver_name) == (order_id, 1, "John Smith")
        assert statuses.truck_statuses(1) == [TruckState.ASSIGNED]

    run(scenario)


def test_second_order_waits_for_idle_truck(single_truck_factory) -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        repository = FleetRepository(single_truck_factory)
        orchestrator = JobAssignmentOrchestrator(broker, single_truck_factory)
        await orchestrator.start()

        first = add_order(single_truck_factory, "First")
        second = add_order(single_truck_factory, "Second")
        assert await orchestrator.try_assign_next()
        assert not await orchestrator.try_assign_next()
        assert repository.get_order(first).status == OrderState.ASSIGNED
        assert repository.get_order(second).status == OrderState.PENDING

        # the truck finishes its first delivery
        repository.update_truck_status(1, TruckState.AVAILABLE)
        repository.mark_order_delivered(first)
        await broker.publish(TruckIdle(truck_id=1), ExchangeNames.TRUCK_EVENTS, TruckRoutingKeys.IDLE)
        await settle(broker)
        await orchestrator.stop()
        await broker.close()

        order = repository.get_order(second)
        assert order.status == OrderState.ASSIGNED and order.truck_id == 1

    run(scenario)


def test_one_truck_serves_both_orders_end_to_end(single_truck_factory) -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        repository = FleetRepository(single_truck_factory)
        statuses = await record_truck_status(broker)
        simulator = TruckSimulator(broker, single_truck_factory, timing=INSTANT)
        orchestrator = JobAssignmentOrchestrator(broker, single_truck_factory)
        await OrderCompletionHandler(broker, single_truck_factory).start()
        await simulator.start()
        await orchestrator.start()

        first = add_order(single_truck_factory, "First")
        second = add_order(single_truck_factory, "Second")
        await orchestrator.try_assign_next()
        await settle(broker, simulator)
        await orchestrator.stop()
        await simulator.stop()
        await broker.close()

        assert repository.get_order(first).status == OrderState.DELIVERED
        assert repository.get_order(second).status == OrderState.DELIVERED
        assert statuses.truck_statuses(1).count(TruckState.ASSIGNED) == 2
        assert statuses.truck_statuses(1)[-1] == TruckState.AVAILABLE

    run(scenario)


def test_startup_assigns_backlog_greedily(session_factory) -> None:
    async def scenario() -> None:
        order_ids = [add_order(session_factory, f"Customer {index}") for index in range(7)]
        broker = InMemoryBroker()
        orchestrator = JobAssignmentOrchestrator(broker, session_factory)
        await orchestrator.start()
        await settle(broker)
        await orchestrator.stop()
        await broker.close()

        repository = FleetRepository(session_factory)
        orders = [repository.get_order(order_id) for order_id in order_ids]
        assert [order.truck_id for order in orders[:5]] == [1, 2, 3, 4, 5]
        assert all(order.status == OrderState.ASSIGNED for order in orders[:5])
        assert all(order.status == OrderState.PENDING for order in orders[5:])

    run(scenario)


def test_replayed_order_created_does_not_reassign(session_factory) -> None:
    async def scenario() -> None:
        broker = InMemoryBroker()
        assignments = await _record_assignments(broker)
        orchestrator = JobAssignmentOrchestrator(broker, session_factory)
        await orchestrator.start()

        order_id = add_order(session_factory)
        created = OrderCreated(order_id=order_id, customer_name="Acme Builders", distance_miles=5)
        for _ in range(3):
            await broker.publish(created, ExchangeNames.ORDER_EVENTS, OrderRoutingKeys.CREATED)
        await settle(broker)
        await orchestrator.stop()
        await broker.close()

        assert len(assignments.messages) == 1
        repository = FleetRepository(session_factory)
        assert repository.get_truck(1).order_id == order_id
        assert repository.get_truck(2).status == TruckState.AVAILABLE

    run(scenario)


def test_no_truck_leaves_order_pending(single_truck_factory) -> None:
    async def scenario() -> None:
        repository = FleetRepository(single_truck_factory)
        busy = add_order(single_truck_factory)
        assert repository.assign_truck_to_order(busy, 1)
        waiting = add_order(single_truck_factory)

        orchestrator = JobAssignmentOrchestrator(InMemoryBroker(), single_truck_factory)
        assert await orchestrator.process_pending_orders() == 0
        assert repository.get_order(waiting).status == OrderState.PENDING

    run(scenario)

"""Truck workflow state machine.

Every assigned truck runs one asyncio task that walks it through
Loading -> EnRoute -> Delivering -> Returning -> Washing and back to
Available. Each phase persists the new status, announces it, waits out the
simulated duration and then announces the phase-completion event.

The simulator owns the registry of running workflows. It also recovers
trucks left mid-delivery by a crash and starts workflows whose assignment
message was missed.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Dict, Optional, Tuple

import structlog
from sqlalchemy.orm import sessionmaker

from .broker import MessageBroker
from .config import SimulationTiming
from .constants import (
    CONCRETE_PER_LOAD,
    WORKFLOW_ORDER_STATES,
    ExchangeNames,
    OrderRoutingKeys,
    OrderState,
    QueueNames,
    TruckRoutingKeys,
    TruckState,
)
from .messages import (
    ArrivedAtJobSite,
    MaterialsLoaded,
    Message,
    OrderDelivered,
    OrderInTransit,
    PouringCompleted,
    PouringStarted,
    ReturnedToPlant,
    ReturnToPlant,
    TruckAssignedToOrder,
    TruckEvent,
    TruckIdle,
    TruckStatusChanged,
    WashCompleted,
    WashStarted,
)
from .repository import FleetRepository, TruckSnapshot
from .utils import jittered_duration, run_periodically

logger = structlog.get_logger(__name__)

Phases = Tuple[TruckState, ...]

FULL_WORKFLOW: Phases = (
    TruckState.LOADING,
    TruckState.EN_ROUTE,
    TruckState.DELIVERING,
    TruckState.RETURNING,
    TruckState.WASHING,
)

# Phases still to run for a truck found in a given state after a restart.
# The persisted phase itself is treated as done.
RESUME_PHASES: Dict[TruckState, Phases] = {
    TruckState.LOADING: FULL_WORKFLOW[1:],
    TruckState.EN_ROUTE: FULL_WORKFLOW[2:],
    TruckState.AT_JOB_SITE: FULL_WORKFLOW[2:],
    TruckState.DELIVERING: FULL_WORKFLOW[3:],
    TruckState.RETURNING: FULL_WORKFLOW[4:],
    TruckState.WASHING: (),
}

# Phases a truck runs after its order is cancelled, by the state it was in.
CANCELLATION_TAILS: Dict[TruckState, Phases] = {
    TruckState.AVAILABLE: (),
    TruckState.ASSIGNED: (TruckState.WASHING,),
    TruckState.LOADING: (TruckState.WASHING,),
    TruckState.EN_ROUTE: (TruckState.RETURNING, TruckState.WASHING),
    TruckState.AT_JOB_SITE: (TruckState.RETURNING, TruckState.WASHING),
    TruckState.DELIVERING: (TruckState.RETURNING, TruckState.WASHING),
    TruckState.RETURNING: (TruckState.WASHING,),
    TruckState.WASHING: (),
}


class TruckRegistry:
    """Running workflow tasks keyed by truck id.

    Only touched from the event loop thread. A task removes itself when it
    finishes, whatever the reason.
    """

    def __init__(self) -> None:
        self._tasks: Dict[int, asyncio.Task] = {}

    def __contains__(self, truck_id: int) -> bool:
        return truck_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def start(self, truck_id: int, factory: Callable[[], Awaitable[None]], name: str) -> bool:
        if truck_id in self._tasks:
            return False
        task = asyncio.create_task(factory(), name=name)
        self._tasks[truck_id] = task
        task.add_done_callback(lambda done, key=truck_id: self._discard(key, done))
        return True

    def _discard(self, truck_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(truck_id) is task:
            del self._tasks[truck_id]

    async def cancel(self, truck_id: int) -> bool:
        task = self._tasks.get(truck_id)
        if task is None:
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._discard(truck_id, task)
        return True

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)


class TruckSimulator:
    def __init__(
        self,
        broker: MessageBroker,
        session_factory: sessionmaker,
        timing: Optional[SimulationTiming] = None,
        reconcile_interval: float = 30.0,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.broker = broker
        self.repository = FleetRepository(session_factory)
        self.timing = timing or SimulationTiming()
        self.reconcile_interval = reconcile_interval
        self.rng = rng or random.Random()
        self._sleep = sleep
        self.registry = TruckRegistry()
        self._sweeper: Optional[asyncio.Task] = None

    # --- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        logger.info("Truck status service starting up")
        await self.reconcile()
        await self.broker.subscribe(
            QueueNames.SIMULATOR_ASSIGNMENTS,
            ExchangeNames.ORDER_EVENTS,
            OrderRoutingKeys.TRUCK_ASSIGNED,
            self.handle_truck_assigned,
        )
        self._sweeper = asyncio.create_task(
            run_periodically(self.reconcile_interval, self.reconcile, "truck-reconciliation"),
            name="truck-reconciliation",
        )

    async def stop(self) -> None:
        logger.info("Truck status service stopping - cancelling active truck simulations", active=len(self.registry))
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.registry.cancel_all()

    async def wait_idle(self) -> None:
        await self.registry.wait_idle()

    # --- message handling ---------------------------------------------------

    async def handle_truck_assigned(self, message: Message) -> None:
        if not isinstance(message, TruckAssignedToOrder):
            return
        log = logger.bind(truck_id=message.truck_id, order_id=message.order_id)
        truck = self.repository.get_truck(message.truck_id)
        if truck is None:
            log.warning("Assigned truck not found")
            return
        if truck.status != TruckState.ASSIGNED or truck.order_id != message.order_id:
            log.info("Ignoring stale truck assignment", status=truck.status.value, bound_order_id=truck.order_id)
            return
        order = self.repository.get_order(message.order_id)
        if order is None or order.status == OrderState.CANCELLED:
            log.info("Order no longer deliverable - skipping assignment")
            return
        log.info("Truck assigned - starting simulation", driver=message.truck_driver_name)
        self.start_workflow(message.truck_id, message.order_id)

    # --- starting units -----------------------------------------------------

    def start_workflow(self, truck_id: int, order_id: int, phases: Phases = FULL_WORKFLOW) -> bool:
        started = self.registry.start(
            truck_id,
            lambda: self._drive(truck_id, order_id, phases, deliver=True),
            name=f"truck-{truck_id}-workflow",
        )
        if not started:
            logger.info("Workflow already active for truck", truck_id=truck_id, order_id=order_id)
        return started

    def start_cancellation_tail(self, truck_id: int, order_id: int, from_status: TruckState) -> bool:
        phases = CANCELLATION_TAILS[from_status]
        started = self.registry.start(
            truck_id,
            lambda: self._drive(truck_id, order_id, phases, deliver=False),
            name=f"truck-{truck_id}-return",
        )
        if started:
            logger.info(
                "Redirecting truck after cancellation",
                truck_id=truck_id,
                order_id=order_id,
                from_status=from_status.value,
                phases=[phase.value for phase in phases],
            )
        return started

    async def cancel_workflow(self, truck_id: int) -> bool:
        cancelled = await self.registry.cancel(truck_id)
        if cancelled:
            logger.info("Cancelled active workflow", truck_id=truck_id)
        return cancelled

    # --- reconciliation -----------------------------------------------------

    async def reconcile(self) -> None:
        await self.resume_assigned_trucks()
        await self.recover_stuck_trucks()
        await self.complete_released_orders()

    async def resume_assigned_trucks(self) -> int:
        """Start workflows for Assigned trucks nobody is simulating."""
        started = 0
        for truck in self.repository.get_assigned_trucks():
            if truck.truck_id in self.registry:
                continue
            order = self.repository.get_order(truck.order_id)
            if order is None:
                logger.warning("Assigned truck's order is missing - forcing Available", truck_id=truck.truck_id)
                await self._force_available(truck)
                continue
            if order.status == OrderState.CANCELLED:
                started += self.start_cancellation_tail(truck.truck_id, truck.order_id, truck.status)
                continue
            logger.info(
                "Starting workflow for assigned truck",
                truck_id=truck.truck_id,
                order_id=truck.order_id,
                driver=truck.driver_name,
            )
            started += self.start_workflow(truck.truck_id, truck.order_id)
        return started

    async def recover_stuck_trucks(self) -> int:
        """Resume trucks left mid-delivery with no running workflow."""
        recovered = 0
        for truck in self.repository.get_trucks_in_intermediate_states():
            if truck.truck_id in self.registry:
                continue
            log = logger.bind(truck_id=truck.truck_id, order_id=truck.order_id, status=truck.status.value)
            order = self.repository.get_order(truck.order_id) if truck.order_id is not None else None
            if order is None:
                log.warning("Stuck truck has no order - forcing Available")
                await self._force_available(truck)
            elif order.status == OrderState.CANCELLED:
                log.info("Stuck truck belongs to a cancelled order")
                self.start_cancellation_tail(truck.truck_id, order.id, truck.status)
            else:
                log.info("Resuming stuck truck")
                self.start_workflow(truck.truck_id, order.id, RESUME_PHASES[truck.status])
            recovered += 1
        return recovered

    async def complete_released_orders(self) -> int:
        """Deliver in-progress orders whose truck has already moved on.

        ``_finish`` releases the truck before it marks the order Delivered, so
        a crash between the two commits leaves the order mid-workflow with
        nobody driving it.
        """
        completed = 0
        for order in self.repository.get_orders_by_status(*WORKFLOW_ORDER_STATES):
            if order.truck_id is None or order.truck_id in self.registry:
                continue
            truck = self.repository.get_truck(order.truck_id)
            if truck is None or truck.order_id == order.id:
                continue
            logger.warning(
                "Order outlived its truck's workflow - marking delivered",
                order_id=order.id,
                truck_id=order.truck_id,
                order_status=order.status.value,
                truck_status=truck.status.value,
            )
            if self.repository.update_order_status(order.id, OrderState.DELIVERED):
                await self.broker.publish(
                    OrderDelivered(order_id=order.id, truck_id=order.truck_id),
                    ExchangeNames.ORDER_EVENTS,
                    OrderRoutingKeys.DELIVERED,
                )
                completed += 1
        return completed

    async def _force_available(self, truck: TruckSnapshot) -> None:
        previous = self.repository.update_truck_status(truck.truck_id, TruckState.AVAILABLE)
        if previous is None:
            return
        await self._announce_status(truck.truck_id, previous, TruckState.AVAILABLE, truck.order_id)
        await self._publish_truck(TruckIdle(truck_id=truck.truck_id), TruckRoutingKeys.IDLE)

    # --- workflow -----------------------------------------------------------

    async def _drive(self, truck_id: int, order_id: int, phases: Phases, deliver: bool) -> None:
        log = logger.bind(truck_id=truck_id, order_id=order_id)
        try:
            order = self.repository.get_order(order_id)
            if order is None:
                log.warning("No order found for truck")
                return
            travel_seconds = jittered_duration(
                order.distance_miles * self.timing.seconds_per_mile, self.timing.jitter, self.rng
            )
            log.info(
                "Starting truck workflow",
                phases=[phase.value for phase in phases],
                distance_miles=order.distance_miles,
                travel_seconds=travel_seconds,
                delivering=deliver,
            )
            for phase in phases:
                await self._run_phase(phase, truck_id, order_id, travel_seconds, deliver)
            await self._finish(truck_id, order_id, deliver)
            log.info("Completed truck workflow")
        except asyncio.CancelledError:
            log.info("Workflow cancelled for truck")
            raise
        except Exception:
            # The periodic recovery sweep picks the truck up again.
            log.exception("Error in truck workflow")

    async def _run_phase(
        self, phase: TruckState, truck_id: int, order_id: int, travel_seconds: float, deliver: bool
    ) -> None:
        job_site_id = str(order_id)
        if phase == TruckState.LOADING:
            await self._enter(truck_id, order_id, phase, OrderState.LOADING)
            await self._wait(truck_id, phase, self._phase_seconds(self.timing.loading_seconds))
            await self._publish_truck(
                MaterialsLoaded(truck_id=truck_id, materials={"Concrete": CONCRETE_PER_LOAD}),
                TruckRoutingKeys.MATERIALS_LOADED,
            )
        elif phase == TruckState.EN_ROUTE:
            await self._enter(truck_id, order_id, phase, OrderState.IN_TRANSIT)
            await self.broker.publish(
                OrderInTransit(order_id=order_id, truck_id=truck_id),
                ExchangeNames.ORDER_EVENTS,
                OrderRoutingKeys.IN_TRANSIT,
            )
            await self._wait(truck_id, phase, travel_seconds)
            await self._publish_truck(
                ArrivedAtJobSite(truck_id=truck_id, job_site_id=job_site_id),
                TruckRoutingKeys.ARRIVED_AT_JOB_SITE,
            )
        elif phase == TruckState.DELIVERING:
            await self._enter(truck_id, order_id, phase, OrderState.DELIVERING)
            await self._publish_truck(
                PouringStarted(truck_id=truck_id, job_site_id=job_site_id), TruckRoutingKeys.POURING_STARTED
            )
            await self._wait(truck_id, phase, self._phase_seconds(self.timing.delivery_seconds))
            await self._publish_truck(
                PouringCompleted(truck_id=truck_id, job_site_id=job_site_id, amount_poured=CONCRETE_PER_LOAD),
                TruckRoutingKeys.POURING_COMPLETED,
            )
        elif phase == TruckState.RETURNING:
            await self._enter(truck_id, order_id, phase)
            if not deliver:
                await self.broker.publish(
                    ReturnToPlant(truck_id=truck_id, reason="order cancelled"),
                    ExchangeNames.TRUCK_COMMANDS,
                    TruckRoutingKeys.return_to_plant(truck_id),
                )
            await self._wait(truck_id, phase, travel_seconds)
            await self._publish_truck(ReturnedToPlant(truck_id=truck_id), TruckRoutingKeys.RETURNED_TO_PLANT)
        elif phase == TruckState.WASHING:
            await self._enter(truck_id, order_id, phase)
            await self._publish_truck(WashStarted(truck_id=truck_id), TruckRoutingKeys.WASH_STARTED)
            await self._wait(truck_id, phase, self._phase_seconds(self.timing.washing_seconds))
            await self._publish_truck(WashCompleted(truck_id=truck_id), TruckRoutingKeys.WASH_COMPLETED)
        else:
            raise ValueError(f"{phase.value} is not a workflow phase")

    async def _finish(self, truck_id: int, order_id: int, deliver: bool) -> None:
        previous = self.repository.update_truck_status(truck_id, TruckState.AVAILABLE)
        if previous is None:
            raise LookupError(f"Truck {truck_id} has no status row")
        delivered = deliver and self.repository.update_order_status(order_id, OrderState.DELIVERED)
        await self._announce_status(truck_id, previous, TruckState.AVAILABLE, order_id)
        await self._publish_truck(TruckIdle(truck_id=truck_id), TruckRoutingKeys.IDLE)
        if delivered:
            await self.broker.publish(
                OrderDelivered(order_id=order_id, truck_id=truck_id),
                ExchangeNames.ORDER_EVENTS,
                OrderRoutingKeys.DELIVERED,
            )
        logger.info("Truck now available for new orders", truck_id=truck_id, order_delivered=delivered)

    async def _enter(
        self,
        truck_id: int,
        order_id: int,
        state: TruckState,
        order_state: Optional[OrderState] = None,
    ) -> None:
        previous = self.repository.update_truck_status(truck_id, state, order_id)
        if previous is None:
            raise LookupError(f"Truck {truck_id} has no status row")
        if order_state is not None:
            self.repository.update_order_status(order_id, order_state)
        await self._announce_status(truck_id, previous, state, order_id)

    async def _announce_status(
        self, truck_id: int, previous: TruckState, new: TruckState, order_id: Optional[int]
    ) -> None:
        await self._publish_truck(
            TruckStatusChanged(truck_id=truck_id, previous_status=previous, new_status=new, order_id=order_id),
            TruckRoutingKeys.STATUS_CHANGED,
        )

    async def _publish_truck(self, message: TruckEvent, routing_key: str) -> None:
        await self.broker.publish(message, ExchangeNames.TRUCK_EVENTS, routing_key)

    def _phase_seconds(self, base_seconds: float) -> float:
        return jittered_duration(base_seconds, self.timing.jitter, self.rng)

    async def _wait(self, truck_id: int, phase: TruckState, seconds: float) -> None:
        logger.debug("Truck phase running", truck_id=truck_id, phase=phase.value, seconds=seconds)
        await self._sleep(seconds * self.timing.time_scale)

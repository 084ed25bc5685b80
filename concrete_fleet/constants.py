"""Status enumerations, exchange names, routing keys and queue names."""

from __future__ import annotations

from enum import Enum


class TruckState(str, Enum):
    AVAILABLE = "Available"
    ASSIGNED = "Assigned"
    LOADING = "Loading"
    EN_ROUTE = "EnRoute"
    AT_JOB_SITE = "AtJobSite"
    DELIVERING = "Delivering"
    RETURNING = "Returning"
    WASHING = "Washing"


class OrderState(str, Enum):
    PENDING = "Pending"
    ASSIGNED = "Assigned"
    LOADING = "Loading"
    IN_TRANSIT = "InTransit"
    DELIVERING = "Delivering"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


# Trucks in these states are mid-delivery; a truck found here with no running
# workflow was interrupted by a crash.
INTERMEDIATE_TRUCK_STATES = (
    TruckState.LOADING,
    TruckState.EN_ROUTE,
    TruckState.AT_JOB_SITE,
    TruckState.DELIVERING,
    TruckState.RETURNING,
    TruckState.WASHING,
)

TERMINAL_ORDER_STATES = (OrderState.DELIVERED, OrderState.CANCELLED)

# Orders a truck is actively working on; only the workflow moves them forward.
WORKFLOW_ORDER_STATES = (OrderState.LOADING, OrderState.IN_TRANSIT, OrderState.DELIVERING)

# Standard amount of each material loaded per truck.
MATERIALS_PER_TRUCK = 10
CONCRETE_PER_LOAD = 10  # cubic yards


class ExchangeNames:
    ORDER_EVENTS = "order-events"
    TRUCK_EVENTS = "truck-events"
    TRUCK_COMMANDS = "truck-commands"


class OrderRoutingKeys:
    CREATED = "order.created"
    CANCELLED = "order.cancelled"
    STATUS_CHANGED = "order.status.changed"
    IN_TRANSIT = "order.status.intransit"
    DELIVERED = "order.delivered"
    TRUCK_ASSIGNED = "order.truck.assigned"


class TruckRoutingKeys:
    STATUS_CHANGED = "truck.status.changed"
    MATERIALS_LOADED = "truck.materials.loaded"
    ARRIVED_AT_JOB_SITE = "truck.arrived.jobsite"
    POURING_STARTED = "truck.pouring.started"
    POURING_COMPLETED = "truck.pouring.completed"
    RETURNED_TO_PLANT = "truck.returned.plant"
    WASH_STARTED = "truck.wash.started"
    WASH_COMPLETED = "truck.wash.completed"
    IDLE = "truck.idle"

    @staticmethod
    def return_to_plant(truck_id: int) -> str:
        return f"truck.{truck_id}.returntoplant"


class QueueNames:
    ORCHESTRATOR_ORDERS = "job-workflow-service-orders"
    ORCHESTRATOR_TRUCK_IDLE = "job-workflow-service-truck-idle"
    COMPLETIONS = "job-workflow-service-completions"
    SIMULATOR_ASSIGNMENTS = "truck-status-service-assignments"
    CANCELLATIONS = "truck-status-service-cancellations"
    INVENTORY_TRUCK_STATUS = "inventory-service-truck-status"
    DASHBOARD_EVENTS = "dashboard-events"

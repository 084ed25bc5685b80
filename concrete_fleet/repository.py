"""Data-access helpers shared by the workflow components.

Each method opens its own short session and touches a single aggregate,
except ``assign_truck_to_order`` which pairs an order with a truck in one
transaction. Status guards live in the WHERE clauses of the updates so that
replayed or concurrent messages cannot move a row backwards.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, NamedTuple, Optional

import structlog
from sqlalchemy.orm import Session, sessionmaker

from .constants import INTERMEDIATE_TRUCK_STATES, TERMINAL_ORDER_STATES, OrderState, TruckState
from .models import Order, Truck, TruckStatus
from .utils import utc_now

logger = structlog.get_logger(__name__)


class AvailableTruck(NamedTuple):
    truck_id: int
    driver_name: str


class TruckSnapshot(NamedTuple):
    truck_id: int
    driver_name: str
    status: TruckState
    order_id: Optional[int]


class FleetRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # --- orders -------------------------------------------------------------

    def get_order(self, order_id: int) -> Optional[Order]:
        with self.session() as db:
            return db.get(Order, order_id)

    def get_pending_orders(self) -> List[Order]:
        """Pending orders, oldest first."""
        with self.session() as db:
            return (
                db.query(Order)
                .filter(Order.status == OrderState.PENDING)
                .order_by(Order.created_at.asc(), Order.id.asc())
                .all()
            )

    def get_orders_by_status(self, *statuses: OrderState) -> List[Order]:
        with self.session() as db:
            return db.query(Order).filter(Order.status.in_(statuses)).order_by(Order.id.asc()).all()

    def update_order_status(self, order_id: int, status: OrderState) -> bool:
        """Move an order to *status*; terminal orders are never overwritten."""
        with self.session() as db:
            order = db.get(Order, order_id)
            if order is None:
                logger.warning("Order not found", order_id=order_id)
                return False
            if order.status in TERMINAL_ORDER_STATES or order.status == status:
                logger.debug(
                    "Order status unchanged",
                    order_id=order_id,
                    current_status=order.status.value,
                    requested_status=status.value,
                )
                return False
            previous = order.status
            order.status = status
            order.updated_at = utc_now()
            db.commit()
            logger.info(
                "Updated order status",
                order_id=order_id,
                previous_status=previous.value,
                new_status=status.value,
            )
            return True

    def mark_order_delivered(self, order_id: int) -> bool:
        """Record delivery; a Cancelled order stays Cancelled."""
        with self.session() as db:
            order = db.get(Order, order_id)
            if order is None:
                logger.warning("Order not found", order_id=order_id)
                return False
            if order.status == OrderState.CANCELLED:
                logger.warning("Not marking cancelled order as delivered", order_id=order_id)
                return False
            order.status = OrderState.DELIVERED
            order.updated_at = utc_now()
            db.commit()
            return True

    # --- trucks -------------------------------------------------------------

    def get_truck(self, truck_id: int) -> Optional[TruckSnapshot]:
        with self.session() as db:
            row = (
                db.query(TruckStatus, Truck.driver_name)
                .join(Truck, Truck.id == TruckStatus.truck_id)
                .filter(TruckStatus.truck_id == truck_id)
                .one_or_none()
            )
            if row is None:
                return None
            truck_status, driver_name = row
            return TruckSnapshot(truck_id, driver_name, truck_status.status, truck_status.current_order_id)

    def get_available_truck(self) -> Optional[AvailableTruck]:
        """Lowest-id truck that is Available and not bound to an order."""
        with self.session() as db:
            row = (
                db.query(TruckStatus.truck_id, Truck.driver_name)
                .join(Truck, Truck.id == TruckStatus.truck_id)
                .filter(
                    TruckStatus.status == TruckState.AVAILABLE,
                    TruckStatus.current_order_id.is_(None),
                )
                .order_by(TruckStatus.truck_id.asc())
                .first()
            )
            return AvailableTruck(*row) if row else None

    def get_truck_for_order(self, order_id: int) -> Optional[TruckSnapshot]:
        """The truck whose status row is bound to *order_id*, if any."""
        with self.session() as db:
            row = (
                db.query(TruckStatus, Truck.driver_name)
                .join(Truck, Truck.id == TruckStatus.truck_id)
                .filter(TruckStatus.current_order_id == order_id)
                .first()
            )
            if row is None:
                return None
            truck_status, driver_name = row
            return TruckSnapshot(truck_status.truck_id, driver_name, truck_status.status, order_id)

    def get_assigned_trucks(self) -> List[TruckSnapshot]:
        """Trucks assigned to an order whose workflow has not started yet."""
        return self._trucks_in_states((TruckState.ASSIGNED,), require_order=True)

    def get_trucks_in_intermediate_states(self) -> List[TruckSnapshot]:
        return self._trucks_in_states(INTERMEDIATE_TRUCK_STATES, require_order=False)

    def _trucks_in_states(self, states, require_order: bool) -> List[TruckSnapshot]:
        with self.session() as db:
            query = (
                db.query(TruckStatus, Truck.driver_name)
                .join(Truck, Truck.id == TruckStatus.truck_id)
                .filter(TruckStatus.status.in_(list(states)))
            )
            if require_order:
                query = query.filter(TruckStatus.current_order_id.isnot(None))
            return [
                TruckSnapshot(truck_status.truck_id, driver_name, truck_status.status, truck_status.current_order_id)
                for truck_status, driver_name in query.order_by(TruckStatus.truck_id.asc()).all()
            ]

    def update_truck_status(
        self,
        truck_id: int,
        status: TruckState,
        order_id: Optional[int] = None,
    ) -> Optional[TruckState]:
        """Persist a truck transition and return the previous status.

        Available always clears the order binding and every other status
        requires one.
        """
        if status == TruckState.AVAILABLE:
            order_id = None
        elif order_id is None:
            raise ValueError(f"Truck status {status.value} requires a bound order")

        with self.session() as db:
            truck_status = db.query(TruckStatus).filter(TruckStatus.truck_id == truck_id).one_or_none()
            if truck_status is None:
                logger.warning("Truck status not found", truck_id=truck_id)
                return None
            previous = truck_status.status
            truck_status.status = status
            truck_status.current_order_id = order_id
            truck_status.updated_at = utc_now()
            db.commit()
            logger.info(
                "Updated truck status",
                truck_id=truck_id,
                previous_status=previous.value,
                new_status=status.value,
                order_id=order_id,
            )
            return previous

    # --- assignment ---------------------------------------------------------

    def assign_truck_to_order(self, order_id: int, truck_id: int) -> bool:
        """Pair a Pending order with an Available truck in one transaction.

        Returns False without changing anything when either side has already
        moved on.
        """
        now = utc_now()
        with self.session() as db:
            truck_rows = (
                db.query(TruckStatus)
                .filter(
                    TruckStatus.truck_id == truck_id,
                    TruckStatus.status == TruckState.AVAILABLE,
                    TruckStatus.current_order_id.is_(None),
                )
                .update(
                    {
                        TruckStatus.status: TruckState.ASSIGNED,
                        TruckStatus.current_order_id: order_id,
                        TruckStatus.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            order_rows = (
                db.query(Order)
                .filter(Order.id == order_id, Order.status == OrderState.PENDING)
                .update(
                    {
                        Order.status: OrderState.ASSIGNED,
                        Order.truck_id: truck_id,
                        Order.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if truck_rows != 1 or order_rows != 1:
                db.rollback()
                logger.info(
                    "Assignment rejected by status guard",
                    truck_id=truck_id,
                    order_id=order_id,
                    truck_available=bool(truck_rows),
                    order_pending=bool(order_rows),
                )
                return False
            db.commit()
        logger.info("Assigned truck to order", truck_id=truck_id, order_id=order_id)
        return True


__all__ = ["FleetRepository", "AvailableTruck", "TruckSnapshot"]

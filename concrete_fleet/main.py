from contextlib import asynccontextmanager
from typing import Generator, List

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session, joinedload

from .broker import MessageBroker, build_broker
from .config import Settings
from .database import create_session_factory, init_db
from .feed import EventFeed
from .inventory import InventoryManager
from .logging_config import configure_logging
from .models import Order, Plant, Truck, TruckStatus
from .orders import OrderNotFound, OrderStateConflict, assign_truck, cancel_order, create_order
from .schemas import (
    AssignmentRead,
    AssignTruckRequest,
    EventRead,
    InventoryRead,
    OrderCancelRequest,
    OrderCreate,
    OrderRead,
    PlantRead,
    TruckRead,
)
from .worker import ServiceHost

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    configure_logging(settings.environment, settings.log_level)

    session_factory = create_session_factory(settings.database_url)
    init_db(session_factory)  # Create tables and seed plants and trucks
    broker = build_broker(settings)
    await broker.connect()

    feed = EventFeed(broker)
    await feed.start()
    host = None
    if settings.workers_in_process:
        host = ServiceHost("all", broker, session_factory, settings)
        await host.start()

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.broker = broker
    app.state.feed = feed
    logger.info("Dashboard API started", broker=settings.broker_url, workers_in_process=host is not None)
    try:
        yield
    finally:
        if host is not None:
            await host.stop()
        await broker.close()


app = FastAPI(
    title="Concrete Fleet Dispatch API",
    description="Order intake and fleet status for the concrete delivery dashboard.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db(request: Request) -> Generator[Session, None, None]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_broker(request: Request) -> MessageBroker:
    return request.app.state.broker


def get_feed(request: Request) -> EventFeed:
    return request.app.state.feed


@app.get("/api/health")
def health_check():
    return {"status": "running"}


@app.get("/api/orders", response_model=List[OrderRead])
def get_orders(db: Session = Depends(get_db)) -> List[OrderRead]:
    orders = db.query(Order).order_by(Order.created_at.desc(), Order.id.desc()).all()
    return [OrderRead.model_validate(order) for order in orders]


@app.get("/api/orders/{order_id}", response_model=OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db)) -> OrderRead:
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderRead.model_validate(order)


@app.post("/api/orders", response_model=OrderRead, status_code=201)
async def submit_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    broker: MessageBroker = Depends(get_broker),
) -> OrderRead:
    """Accept a new order; the job workflow service assigns a truck."""
    try:
        order = await create_order(db, broker, payload.customer_name, payload.distance_miles, payload.plant_id)
    except OrderNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return OrderRead.model_validate(order)


@app.post("/api/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel(
    order_id: int,
    payload: OrderCancelRequest,
    db: Session = Depends(get_db),
    broker: MessageBroker = Depends(get_broker),
) -> OrderRead:
    try:
        order = await cancel_order(db, broker, order_id, payload.reason)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except OrderStateConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return OrderRead.model_validate(order)


@app.post("/api/orders/{order_id}/assign", response_model=AssignmentRead)
async def manual_assign(
    order_id: int,
    payload: AssignTruckRequest,
    request: Request,
    broker: MessageBroker = Depends(get_broker),
) -> AssignmentRead:
    """Override first-available matching for one order."""
    try:
        truck = await assign_truck(request.app.state.session_factory, broker, order_id, payload.truck_id)
    except OrderNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except OrderStateConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return AssignmentRead(order_id=order_id, truck_id=truck.truck_id, driver_name=truck.driver_name)


@app.get("/api/trucks", response_model=List[TruckRead])
def get_trucks(db: Session = Depends(get_db)) -> List[TruckRead]:
    rows = (
        db.query(Truck, TruckStatus)
        .outerjoin(TruckStatus, TruckStatus.truck_id == Truck.id)
        .order_by(Truck.id.asc())
        .all()
    )
    return [
        TruckRead(
            truck_id=truck.id,
            driver_name=truck.driver_name,
            status=status.status,
            current_order_id=status.current_order_id,
            updated_at=status.updated_at,
        )
        for truck, status in rows
        if status is not None
    ]


@app.get("/api/plants", response_model=List[PlantRead])
def get_plants(db: Session = Depends(get_db)) -> List[PlantRead]:
    plants = db.query(Plant).options(joinedload(Plant.inventory)).order_by(Plant.id.asc()).all()
    return [PlantRead.model_validate(plant) for plant in plants]


@app.get("/api/plants/{plant_id}/inventory", response_model=InventoryRead)
def get_plant_inventory(plant_id: int, request: Request) -> InventoryRead:
    inventory = InventoryManager(request.app.state.session_factory).get_plant_inventory(plant_id)
    if inventory is None:
        raise HTTPException(status_code=404, detail="Plant inventory not found")
    return InventoryRead.model_validate(inventory)


@app.get("/api/events", response_model=List[EventRead])
def get_events(limit: int = Query(50, ge=1, le=200), feed: EventFeed = Depends(get_feed)) -> List[EventRead]:
    return [EventRead(**entry._asdict()) for entry in feed.recent(limit)]

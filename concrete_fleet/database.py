from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .constants import TruckState
from .models import Base, Plant, PlantInventory, Truck, TruckStatus

# (name, sand, gravel, concrete)
DEFAULT_PLANTS = [
    ("North Plant", 1000, 800, 500),
    ("South Plant", 1200, 900, 600),
    ("East Plant", 800, 700, 400),
]
DEFAULT_DRIVERS = ["John Smith", "Maria Garcia", "David Chen", "Sarah Johnson", "Michael Brown"]


def create_db_engine(database_url: str) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


def create_session_factory(database_url: str) -> sessionmaker:
    engine = create_db_engine(database_url)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(session_factory: sessionmaker, seed: bool = True) -> None:
    """Create tables if they do not exist and load reference data."""
    Base.metadata.create_all(bind=session_factory.kw["bind"])
    if seed:
        init_plants(session_factory)
        init_trucks(session_factory)


def init_plants(session_factory: sessionmaker) -> None:
    """Seed the three plants with their starting inventory."""
    db = session_factory()
    try:
        if db.query(Plant).count() > 0:
            return
        for name, sand, gravel, concrete in DEFAULT_PLANTS:
            plant = Plant(name=name)
            plant.inventory = PlantInventory(
                sand_quantity=sand,
                gravel_quantity=gravel,
                concrete_quantity=concrete,
            )
            db.add(plant)
        db.commit()
    finally:
        db.close()


def init_trucks(session_factory: sessionmaker) -> None:
    """Seed the fleet; every truck starts Available with no order."""
    db = session_factory()
    try:
        if db.query(Truck).count() > 0:
            return
        for driver in DEFAULT_DRIVERS:
            truck = Truck(driver_name=driver)
            truck.current_status = TruckStatus(status=TruckState.AVAILABLE, current_order_id=None)
            db.add(truck)
        db.commit()
    finally:
        db.close()

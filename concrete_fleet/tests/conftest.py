from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy.orm import sessionmaker

from concrete_fleet.constants import TruckState
from concrete_fleet.database import create_session_factory, init_db
from concrete_fleet.models import Plant, PlantInventory, Truck, TruckStatus


def _factory(path: Path, seed: bool) -> sessionmaker:
    factory = create_session_factory(f"sqlite:///{path}")
    init_db(factory, seed=seed)
    return factory


@pytest.fixture()
def session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """Seeded database: three plants and five Available trucks."""
    factory = _factory(tmp_path / "fleet.db", seed=True)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture()
def single_truck_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """One plant and exactly one Available truck."""
    factory = _factory(tmp_path / "single.db", seed=False)
    db = factory()
    try:
        plant = Plant(name="North Plant")
        plant.inventory = PlantInventory(sand_quantity=1000, gravel_quantity=800, concrete_quantity=500)
        truck = Truck(driver_name="John Smith")
        truck.current_status = TruckStatus(status=TruckState.AVAILABLE)
        db.add_all([plant, truck])
        db.commit()
    finally:
        db.close()
    yield factory
    factory.kw["bind"].dispose()

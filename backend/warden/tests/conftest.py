import os
os.environ.setdefault("WARDEN_LOCK_TIMEOUT_SECONDS", "5")
import pytest
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[2]))

from warden import models, schemas
from warden.database import Base, build_engine, create_schema
from warden.services import capacity, facility

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_warden.db"
engine = build_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    create_schema(bind=engine)
    yield


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def block(db) -> models.Block:
    prison = facility.create_prison(db, schemas.PrisonCreate(name="North Ridge"))
    return facility.create_block(db, schemas.BlockCreate(prison_id=prison.id, block_type="general"))


@pytest.fixture
def make_cell(db, block):
    """Create a cell in the shared block (or another block) with optional occupant names."""

    def _make(size: int, occupants: tuple[str, ...] = (), cell_type: str = "standard", block_id=None):
        cell = facility.create_cell(
            db,
            schemas.CellCreate(block_id=block_id or block.id, cell_type=cell_type, capacity=size),
        )
        return cell, [admit(db, name, cell.id) for name in occupants]

    return _make


def admit(db, name: str, cell_id) -> models.Occupant:
    return capacity.admit_occupant(db, schemas.OccupantCreate(name=name, cell_id=cell_id))


@pytest.fixture
def make_staff(db):
    def _make(name: str, role: str = "officer") -> models.Staff:
        return facility.register_staff(db, schemas.StaffCreate(name=name, role=role))

    return _make


@pytest.fixture
def make_firearm(db):
    def _make(serial_number: str, firearm_type: str = "pistol", name: str = "Service pistol") -> models.Firearm:
        return facility.register_firearm(
            db,
            schemas.FirearmCreate(serial_number=serial_number, firearm_type=firearm_type, name=name),
        )

    return _make

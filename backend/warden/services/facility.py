"""Facility entity registration and lifecycle services."""

from __future__ import annotations

import logging
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import locks, models, schemas
from ..errors import FacilityError, NotFound, ValidationError
from ..transaction import guarded_transaction
from . import armory
from .armory import FirearmNotAvailable

# purpose: validate and persist prisons, blocks, cells, staff and firearms; retire them with dependent cleanup
# status: active
# depends_on: warden.models, warden.services.armory

logger = logging.getLogger(__name__)


class CellNotEmpty(FacilityError):
    """Raised when deleting a cell that still houses occupants."""

    kind = "CellNotEmpty"


class HolderArmed(FacilityError):
    """Raised when retiring staff who still hold a firearm."""

    kind = "HolderArmed"


def create_prison(db: Session, payload: schemas.PrisonCreate) -> models.Prison:
    prison = models.Prison(name=payload.name)
    db.add(prison)
    db.commit()
    db.refresh(prison)
    return prison


def create_block(db: Session, payload: schemas.BlockCreate) -> models.Block:
    if db.get(models.Prison, payload.prison_id) is None:
        raise NotFound(f"prison {payload.prison_id} not found")
    block = models.Block(prison_id=payload.prison_id, block_type=payload.block_type)
    db.add(block)
    db.commit()
    db.refresh(block)
    return block


def create_cell(db: Session, payload: schemas.CellCreate) -> models.Cell:
    """Add a cell at the end of its block's position order."""

    if db.get(models.Block, payload.block_id) is None:
        raise NotFound(f"block {payload.block_id} not found")

    with guarded_transaction(db, locks.block_key(payload.block_id)):
        latest = (
            db.query(sa.func.max(models.Cell.position_index))
            .filter(models.Cell.block_id == payload.block_id)
            .scalar()
        )
        cell = models.Cell(
            block_id=payload.block_id,
            cell_type=payload.cell_type,
            capacity=payload.capacity,
            position_index=0 if latest is None else latest + 1,
        )
        db.add(cell)
        db.flush()
    db.refresh(cell)
    return cell


def delete_cell(db: Session, cell_id: UUID) -> None:
    cell = db.get(models.Cell, cell_id)
    if cell is None:
        raise NotFound(f"cell {cell_id} not found")

    with guarded_transaction(db, locks.block_key(cell.block_id)):
        cell = db.get(models.Cell, cell_id)
        if cell is None:
            raise NotFound(f"cell {cell_id} not found")
        occupancy = (
            db.query(sa.func.count(models.Occupant.id))
            .filter(models.Occupant.cell_id == cell_id)
            .scalar()
        )
        if occupancy:
            raise CellNotEmpty(f"cell {cell_id} still houses {occupancy} occupants")
        db.delete(cell)
    logger.info("Cell %s deleted", cell_id)


def block_summary(db: Session, block_id: UUID) -> schemas.BlockSummary:
    block = db.get(models.Block, block_id)
    if block is None:
        raise NotFound(f"block {block_id} not found")
    cell_count, total_capacity = (
        db.query(sa.func.count(models.Cell.id), sa.func.coalesce(sa.func.sum(models.Cell.capacity), 0))
        .filter(models.Cell.block_id == block_id)
        .one()
    )
    occupant_count = (
        db.query(sa.func.count(models.Occupant.id))
        .join(models.Cell, models.Cell.id == models.Occupant.cell_id)
        .filter(models.Cell.block_id == block_id)
        .scalar()
    )
    return schemas.BlockSummary(
        block_id=block.id,
        block_type=block.block_type,
        cell_count=cell_count,
        occupant_count=occupant_count,
        total_capacity=total_capacity,
    )


def register_staff(db: Session, payload: schemas.StaffCreate) -> models.Staff:
    staff = models.Staff(name=payload.name, role=payload.role, status="active")
    db.add(staff)
    db.commit()
    db.refresh(staff)
    return staff


def retire_staff(db: Session, staff_id: UUID) -> models.Staff:
    """Retire a staff member, detaching them from the supervision graph."""

    with guarded_transaction(db, locks.holder_key(staff_id), locks.SUPERVISION_KEY):
        staff = db.get(models.Staff, staff_id)
        if staff is None:
            raise NotFound(f"staff {staff_id} not found")
        armed = (
            db.query(models.FirearmAssignment.firearm_serial)
            .filter(
                models.FirearmAssignment.staff_id == staff_id,
                models.FirearmAssignment.returned.is_(False),
            )
            .all()
        )
        if armed:
            serials = ", ".join(serial for (serial,) in armed)
            raise HolderArmed(f"staff {staff_id} still holds firearms {serials}")

        edges = (
            db.query(models.StaffSupervision)
            .filter(
                sa.or_(
                    models.StaffSupervision.supervisor_id == staff_id,
                    models.StaffSupervision.subordinate_id == staff_id,
                )
            )
            .all()
        )
        for edge in edges:
            db.delete(edge)
        staff.status = "retired"
        db.flush()
    logger.info("Staff %s retired; %s supervision edges removed", staff_id, len(edges))
    return staff


def register_firearm(db: Session, payload: schemas.FirearmCreate) -> models.Firearm:
    with guarded_transaction(db, locks.firearm_key(payload.serial_number)):
        if db.get(models.Firearm, payload.serial_number) is not None:
            raise ValidationError(f"firearm {payload.serial_number} is already registered")
        firearm = models.Firearm(
            serial_number=payload.serial_number,
            firearm_type=payload.firearm_type,
            name=payload.name,
            status="in_service",
        )
        db.add(firearm)
        db.flush()
    return firearm


def decommission_firearm(db: Session, serial_number: str) -> models.Firearm:
    with guarded_transaction(db, locks.firearm_key(serial_number)):
        firearm = armory.lock_firearm_row(db, serial_number)
        active = (
            db.query(models.FirearmAssignment.id)
            .filter(
                models.FirearmAssignment.firearm_serial == serial_number,
                models.FirearmAssignment.returned.is_(False),
            )
            .first()
        )
        if active is not None:
            raise FirearmNotAvailable(f"firearm {serial_number} is still assigned")
        firearm.status = "decommissioned"
        db.flush()
    logger.info("Firearm %s decommissioned", serial_number)
    return firearm

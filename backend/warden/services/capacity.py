"""Cell capacity allocation and occupant placement services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import locks, models, schemas
from ..errors import FacilityError, NotFound, ValidationError
from ..transaction import guarded_transaction

# purpose: keep every cell at or under capacity, relocating occupants inside the block when capacity shrinks
# status: active
# depends_on: warden.models.Cell, warden.models.Occupant
#
# Placement policy ("oldest stays"): every placement stamps the occupant with
# the cell's next placement_seq. When capacity shrinks, occupants ordered by
# (placement_seq, id) keep their place up to the new capacity and the most
# recently placed move out. Movers are walked oldest-first and fill the
# candidate pool, ordered by (position_index, id), one cell at a time.

logger = logging.getLogger(__name__)


class CellFull(FacilityError):
    """Raised when a cell has no free slot for another occupant."""

    kind = "CellFull"


class NotPresent(FacilityError):
    """Raised when an occupant is not housed in the named cell."""

    kind = "NotPresent"


class CapacityUnavailable(FacilityError):
    """Raised when a capacity reduction cannot relocate every excess occupant."""

    kind = "CapacityUnavailable"


@dataclass
class CandidateCell:
    """Free-slot view of a cell eligible to receive relocated occupants."""

    cell_id: UUID
    free_slots: int
    next_seq: int


def plan_relocations(
    movers: Sequence[UUID],
    pool: Sequence[CandidateCell],
) -> list[tuple[UUID, UUID, int]]:
    """Assign each mover to the first pool cell with room.

    Returns ``(occupant_id, target_cell_id, placement_seq)`` triples in mover
    order. Raises CapacityUnavailable before producing a partial plan when the
    pool cannot absorb every mover.
    """

    free_total = sum(max(candidate.free_slots, 0) for candidate in pool)
    if free_total < len(movers):
        raise CapacityUnavailable(
            f"{len(movers)} occupants need relocation but only {free_total} slots are free"
        )

    remaining = [CandidateCell(c.cell_id, c.free_slots, c.next_seq) for c in pool]
    plan: list[tuple[UUID, UUID, int]] = []
    index = 0
    for occupant_id in movers:
        while remaining[index].free_slots <= 0:
            index += 1
        target = remaining[index]
        plan.append((occupant_id, target.cell_id, target.next_seq))
        target.free_slots -= 1
        target.next_seq += 1
    return plan


def set_capacity(db: Session, cell_id: UUID, new_capacity: int) -> schemas.CapacityChange:
    """Change a cell's capacity, relocating the most recently placed occupants if it shrinks."""

    if isinstance(new_capacity, bool) or not isinstance(new_capacity, int) or new_capacity <= 0:
        raise ValidationError(f"capacity must be a positive integer, got {new_capacity!r}")
    block_id = _resolve_block_id(db, cell_id)

    with guarded_transaction(db, locks.block_key(block_id)):
        _lock_block_row(db, block_id)
        cell = _get_cell(db, cell_id)
        if schemas.is_solitary_type(cell.cell_type) and new_capacity != 1:
            raise ValidationError("solitary cells can only have a capacity of 1")

        occupants = _ordered_occupants(db, cell.id)
        previous_capacity = cell.capacity
        staying, movers = occupants[:new_capacity], occupants[new_capacity:]

        plan: list[tuple[UUID, UUID, int]] = []
        if movers:
            pool = _candidate_pool(db, cell)
            plan = plan_relocations([occupant.id for occupant in movers], pool)

        now = datetime.now(timezone.utc)
        by_id = {occupant.id: occupant for occupant in movers}
        relocations: list[schemas.Relocation] = []
        for occupant_id, target_id, seq in plan:
            occupant = by_id[occupant_id]
            occupant.cell_id = target_id
            occupant.placement_seq = seq
            occupant.placed_at = now
            relocations.append(
                schemas.Relocation(occupant_id=occupant_id, from_cell_id=cell.id, to_cell_id=target_id)
            )
        cell.capacity = new_capacity
        db.flush()

        change = schemas.CapacityChange(
            cell_id=cell.id,
            previous_capacity=previous_capacity,
            capacity=new_capacity,
            occupant_ids=[occupant.id for occupant in staying],
            relocations=relocations,
        )

    if relocations:
        logger.info(
            "Cell %s capacity %s -> %s relocated %s occupants",
            cell_id,
            previous_capacity,
            new_capacity,
            len(relocations),
        )
    return change


def add_occupant(db: Session, cell_id: UUID, occupant_id: UUID) -> models.Occupant:
    """Place an unhoused occupant into a cell."""

    block_id = _resolve_block_id(db, cell_id)
    with guarded_transaction(db, locks.block_key(block_id)):
        _lock_block_row(db, block_id)
        cell = _get_cell(db, cell_id)
        occupant = _get_occupant(db, occupant_id)
        if occupant.cell_id == cell.id:
            raise ValidationError(f"occupant {occupant_id} is already housed in cell {cell_id}")
        if occupant.cell_id is not None:
            raise ValidationError(
                f"occupant {occupant_id} is housed in cell {occupant.cell_id}; transfer instead"
            )
        _place(db, cell, occupant)
        db.flush()
    logger.info("Occupant %s placed in cell %s", occupant_id, cell_id)
    return occupant


def admit_occupant(db: Session, payload: schemas.OccupantCreate) -> models.Occupant:
    """Create an occupant directly into a cell."""

    block_id = _resolve_block_id(db, payload.cell_id)
    with guarded_transaction(db, locks.block_key(block_id)):
        _lock_block_row(db, block_id)
        cell = _get_cell(db, payload.cell_id)
        occupant = models.Occupant(name=payload.name)
        _place(db, cell, occupant)
        db.add(occupant)
        db.flush()
    logger.info("Occupant %s admitted to cell %s", occupant.id, payload.cell_id)
    return occupant


def remove_occupant(db: Session, cell_id: UUID, occupant_id: UUID) -> models.Occupant:
    """Release an occupant from a cell, clearing its back-reference."""

    block_id = _resolve_block_id(db, cell_id)
    with guarded_transaction(db, locks.block_key(block_id)):
        _lock_block_row(db, block_id)
        cell = _get_cell(db, cell_id)
        occupant = _get_occupant(db, occupant_id)
        if occupant.cell_id != cell.id:
            raise NotPresent(f"occupant {occupant_id} is not housed in cell {cell_id}")
        occupant.cell_id = None
        occupant.placement_seq = None
        occupant.placed_at = None
        db.flush()
    logger.info("Occupant %s removed from cell %s", occupant_id, cell_id)
    return occupant


def transfer_occupant(db: Session, occupant_id: UUID, target_cell_id: UUID) -> models.Occupant:
    """Move an occupant into another cell, in any block."""

    occupant = _get_occupant(db, occupant_id)
    block_ids = {_resolve_block_id(db, target_cell_id)}
    if occupant.cell_id is not None:
        block_ids.add(_resolve_block_id(db, occupant.cell_id))
    keys = {locks.block_key(block_id) for block_id in block_ids}

    with guarded_transaction(db, *keys):
        for block_id in sorted(block_ids, key=str):
            _lock_block_row(db, block_id)
        target = _get_cell(db, target_cell_id)
        occupant = _get_occupant(db, occupant_id)
        source_id = occupant.cell_id
        if source_id == target.id:
            raise ValidationError(f"occupant {occupant_id} is already housed in cell {target_cell_id}")
        if source_id is not None and _resolve_block_id(db, source_id) not in block_ids:
            # moved by another request between the unlocked read and the lock
            raise ValidationError(f"occupant {occupant_id} changed cells; retry the transfer")
        _place(db, target, occupant)
        db.flush()
    logger.info("Occupant %s transferred %s -> %s", occupant_id, source_id, target_cell_id)
    return occupant


def available_capacity(db: Session, cell_id: UUID) -> int:
    cell = _get_cell(db, cell_id)
    return cell.capacity - occupant_count(db, cell_id)


def occupant_count(db: Session, cell_id: UUID) -> int:
    return (
        db.query(sa.func.count(models.Occupant.id))
        .filter(models.Occupant.cell_id == cell_id)
        .scalar()
    )


def is_at_capacity(db: Session, cell_id: UUID) -> bool:
    return available_capacity(db, cell_id) <= 0


def list_occupants(db: Session, cell_id: UUID) -> list[models.Occupant]:
    """Return a cell's occupants in placement order, oldest first."""

    _get_cell(db, cell_id)
    return _ordered_occupants(db, cell_id)


def list_cells(db: Session, block_id: UUID, cell_type: str | None = None) -> list[models.Cell]:
    """Return a block's cells in position order, optionally of one type."""

    if db.get(models.Block, block_id) is None:
        raise NotFound(f"block {block_id} not found")
    query = db.query(models.Cell).filter(models.Cell.block_id == block_id)
    if cell_type is not None:
        query = query.filter(models.Cell.cell_type == cell_type)
    return query.order_by(models.Cell.position_index.asc(), models.Cell.id.asc()).all()


def list_available_cells(
    db: Session,
    *,
    block_id: UUID | None = None,
    cell_type: str | None = None,
) -> list[models.Cell]:
    """Return cells with at least one free slot."""

    counts = _occupancy_subquery()
    query = (
        db.query(models.Cell)
        .outerjoin(counts, counts.c.cell_id == models.Cell.id)
        .filter(sa.func.coalesce(counts.c.occupancy, 0) < models.Cell.capacity)
    )
    if block_id is not None:
        query = query.filter(models.Cell.block_id == block_id)
    if cell_type is not None:
        query = query.filter(models.Cell.cell_type == cell_type)
    return query.order_by(
        models.Cell.block_id.asc(),
        models.Cell.position_index.asc(),
        models.Cell.id.asc(),
    ).all()


def _resolve_block_id(db: Session, cell_id: UUID) -> UUID:
    block_id = db.query(models.Cell.block_id).filter(models.Cell.id == cell_id).scalar()
    if block_id is None:
        raise NotFound(f"cell {cell_id} not found")
    return block_id


def _lock_block_row(db: Session, block_id: UUID) -> None:
    # row lock for multi-process deployments; SQLite ignores FOR UPDATE
    db.query(models.Block.id).filter(models.Block.id == block_id).with_for_update().first()


def _get_cell(db: Session, cell_id: UUID) -> models.Cell:
    cell = db.get(models.Cell, cell_id)
    if cell is None:
        raise NotFound(f"cell {cell_id} not found")
    return cell


def _get_occupant(db: Session, occupant_id: UUID) -> models.Occupant:
    occupant = db.get(models.Occupant, occupant_id)
    if occupant is None:
        raise NotFound(f"occupant {occupant_id} not found")
    return occupant


def _ordered_occupants(db: Session, cell_id: UUID) -> list[models.Occupant]:
    return (
        db.query(models.Occupant)
        .filter(models.Occupant.cell_id == cell_id)
        .order_by(models.Occupant.placement_seq.asc(), models.Occupant.id.asc())
        .all()
    )


def _next_seq(db: Session, cell_id: UUID) -> int:
    latest = (
        db.query(sa.func.max(models.Occupant.placement_seq))
        .filter(models.Occupant.cell_id == cell_id)
        .scalar()
    )
    return 1 if latest is None else latest + 1


def _place(db: Session, cell: models.Cell, occupant: models.Occupant) -> None:
    if occupant_count(db, cell.id) >= cell.capacity:
        raise CellFull(f"cell {cell.id} is at capacity {cell.capacity}")
    occupant.placement_seq = _next_seq(db, cell.id)
    occupant.cell_id = cell.id
    occupant.placed_at = datetime.now(timezone.utc)


def _occupancy_subquery():
    return (
        sa.select(
            models.Occupant.cell_id.label("cell_id"),
            sa.func.count(models.Occupant.id).label("occupancy"),
            sa.func.max(models.Occupant.placement_seq).label("latest_seq"),
        )
        .where(models.Occupant.cell_id.isnot(None))
        .group_by(models.Occupant.cell_id)
        .subquery()
    )


def _candidate_pool(db: Session, cell: models.Cell) -> list[CandidateCell]:
    counts = _occupancy_subquery()
    rows = (
        db.query(
            models.Cell.id,
            models.Cell.capacity,
            sa.func.coalesce(counts.c.occupancy, 0),
            sa.func.coalesce(counts.c.latest_seq, 0),
        )
        .outerjoin(counts, counts.c.cell_id == models.Cell.id)
        .filter(
            models.Cell.block_id == cell.block_id,
            models.Cell.cell_type == cell.cell_type,
            models.Cell.id != cell.id,
        )
        .order_by(models.Cell.position_index.asc(), models.Cell.id.asc())
        .all()
    )
    return [
        CandidateCell(cell_id=cell_id, free_slots=capacity - occupancy, next_seq=latest_seq + 1)
        for cell_id, capacity, occupancy, latest_seq in rows
        if occupancy < capacity
    ]

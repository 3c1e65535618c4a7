"""Read-only audit of the capacity, custody and supervision invariants."""

from __future__ import annotations

import logging
from collections import defaultdict
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import models, schemas

# purpose: surface corruption written around the managers (manual SQL, imports, older releases)
# inputs: SQLAlchemy session
# outputs: InvariantViolation entries, empty when the store is consistent
# status: active

logger = logging.getLogger(__name__)


def scan_invariants(db: Session) -> list[schemas.InvariantViolation]:
    """Return every invariant violation currently present in the store."""

    violations = [
        *_over_capacity_cells(db),
        *_firearms_with_multiple_holders(db),
        *_supervision_violations(db),
    ]
    if violations:
        logger.warning("Invariant scan found %s violations", len(violations))
    return violations


def _over_capacity_cells(db: Session) -> list[schemas.InvariantViolation]:
    rows = (
        db.query(models.Cell.id, models.Cell.capacity, sa.func.count(models.Occupant.id))
        .join(models.Occupant, models.Occupant.cell_id == models.Cell.id)
        .group_by(models.Cell.id, models.Cell.capacity)
        .having(sa.func.count(models.Occupant.id) > models.Cell.capacity)
        .all()
    )
    return [
        schemas.InvariantViolation(
            code="cell.over_capacity",
            subject_id=str(cell_id),
            detail=f"{occupancy} occupants exceed capacity {capacity}",
        )
        for cell_id, capacity, occupancy in rows
    ]


def _firearms_with_multiple_holders(db: Session) -> list[schemas.InvariantViolation]:
    active = (
        db.query(models.FirearmAssignment.firearm_serial, models.FirearmAssignment.staff_id)
        .filter(models.FirearmAssignment.returned.is_(False))
        .order_by(models.FirearmAssignment.firearm_serial.asc(), models.FirearmAssignment.sequence.asc())
        .all()
    )
    holders: dict[str, list[str]] = defaultdict(list)
    for serial, staff_id in active:
        holders[serial].append(str(staff_id))
    return [
        schemas.InvariantViolation(
            code="firearm.multiple_active",
            subject_id=serial,
            detail=f"{len(staff_ids)} unreturned assignments",
            related_ids=staff_ids,
        )
        for serial, staff_ids in holders.items()
        if len(staff_ids) > 1
    ]


def _supervision_violations(db: Session) -> list[schemas.InvariantViolation]:
    edges = db.query(models.StaffSupervision.supervisor_id, models.StaffSupervision.subordinate_id).all()
    parents: dict[UUID, list[UUID]] = defaultdict(list)
    violations: list[schemas.InvariantViolation] = []

    for supervisor_id, subordinate_id in edges:
        if supervisor_id == subordinate_id:
            violations.append(
                schemas.InvariantViolation(
                    code="supervision.self_loop",
                    subject_id=str(subordinate_id),
                    detail="staff member supervises themselves",
                )
            )
            continue
        parents[subordinate_id].append(supervisor_id)

    for subordinate_id, supervisor_ids in parents.items():
        if len(supervisor_ids) > 1:
            violations.append(
                schemas.InvariantViolation(
                    code="supervision.multiple_supervisors",
                    subject_id=str(subordinate_id),
                    detail=f"{len(supervisor_ids)} supervisors",
                    related_ids=sorted(str(value) for value in supervisor_ids),
                )
            )

    for cycle in _find_cycles(parents):
        violations.append(
            schemas.InvariantViolation(
                code="supervision.cycle",
                subject_id=str(min(cycle, key=str)),
                detail=f"cycle of length {len(cycle)}",
                related_ids=sorted(str(value) for value in cycle),
            )
        )
    return violations


def _find_cycles(parents: dict[UUID, list[UUID]]) -> list[frozenset[UUID]]:
    """Depth-first over supervisor links; a link back into the current path is a cycle."""

    unvisited, on_path, done = 0, 1, 2
    state: dict[UUID, int] = defaultdict(int)
    cycles: set[frozenset[UUID]] = set()
    for start in sorted(parents, key=str):
        if state[start] != unvisited:
            continue
        state[start] = on_path
        path = [start]
        stack = [iter(parents.get(start, []))]
        while stack:
            for parent in stack[-1]:
                if state[parent] == on_path:
                    cycles.add(frozenset(path[path.index(parent):]))
                elif state[parent] == unvisited:
                    state[parent] = on_path
                    path.append(parent)
                    stack.append(iter(parents.get(parent, [])))
                    break
            else:
                state[path.pop()] = done
                stack.pop()
    return sorted(cycles, key=lambda members: sorted(map(str, members)))

"""Staff supervision hierarchy services."""

from __future__ import annotations

import logging
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import locks, models
from ..errors import FacilityError, NotFound, ValidationError
from ..transaction import guarded_transaction

# purpose: keep the supervisor -> subordinate relation a forest with one supervisor per subordinate
# status: active
# depends_on: warden.models.Staff, warden.models.StaffSupervision
#
# Edges point supervisor -> subordinate. assign_supervisor(sub, sup) is
# rejected when sub already supervises sup, directly or transitively: the
# walk climbs supervisor-of links from sup and fails if it reaches sub.

logger = logging.getLogger(__name__)


class SelfSupervision(FacilityError):
    """Raised when a staff member is proposed as their own supervisor."""

    kind = "SelfSupervision"


class CycleDetected(FacilityError):
    """Raised when a new edge would close a supervision cycle."""

    kind = "CycleDetected"


def assign_supervisor(db: Session, subordinate_id: UUID, supervisor_id: UUID) -> models.StaffSupervision:
    """Make supervisor_id the only supervisor of subordinate_id."""

    if subordinate_id == supervisor_id:
        raise SelfSupervision(f"staff {subordinate_id} cannot supervise themselves")

    with guarded_transaction(db, locks.SUPERVISION_KEY):
        subordinate = _get_staff(db, subordinate_id)
        supervisor = _get_staff(db, supervisor_id)
        for member in (subordinate, supervisor):
            if member.status != "active":
                raise ValidationError(f"staff {member.id} is {member.status}")

        _assert_acyclic(db, subordinate_id, supervisor_id)

        existing = _edges_for_subordinate(db, subordinate_id)
        if len(existing) == 1 and existing[0].supervisor_id == supervisor_id:
            return existing[0]
        for edge in existing:
            logger.info(
                "Replacing supervisor %s of staff %s with %s",
                edge.supervisor_id,
                subordinate_id,
                supervisor_id,
            )
            db.delete(edge)
        db.flush()

        edge = models.StaffSupervision(supervisor_id=supervisor_id, subordinate_id=subordinate_id)
        db.add(edge)
        db.flush()
    logger.info("Staff %s now supervises staff %s", supervisor_id, subordinate_id)
    return edge


def remove_supervisor(db: Session, subordinate_id: UUID) -> bool:
    """Drop the subordinate's supervisor edge; returns False when there was none."""

    with guarded_transaction(db, locks.SUPERVISION_KEY):
        _get_staff(db, subordinate_id)
        existing = _edges_for_subordinate(db, subordinate_id)
        for edge in existing:
            db.delete(edge)
        db.flush()
    if existing:
        logger.info("Staff %s is no longer supervised", subordinate_id)
    return bool(existing)


def list_subordinates(db: Session, supervisor_id: UUID) -> list[models.Staff]:
    """Return direct subordinates only."""

    _get_staff(db, supervisor_id)
    return (
        db.query(models.Staff)
        .join(models.StaffSupervision, models.StaffSupervision.subordinate_id == models.Staff.id)
        .filter(models.StaffSupervision.supervisor_id == supervisor_id)
        .order_by(models.Staff.name.asc(), models.Staff.id.asc())
        .all()
    )


def get_supervisor(db: Session, subordinate_id: UUID) -> models.Staff | None:
    _get_staff(db, subordinate_id)
    edges = _edges_for_subordinate(db, subordinate_id)
    if len(edges) > 1:
        logger.warning("Staff %s has %s supervisors", subordinate_id, len(edges))
    return edges[0].supervisor if edges else None


def count_subordinates(db: Session, supervisor_id: UUID) -> int:
    return (
        db.query(sa.func.count(models.StaffSupervision.id))
        .filter(models.StaffSupervision.supervisor_id == supervisor_id)
        .scalar()
    )


def has_supervision(db: Session, supervisor_id: UUID, subordinate_id: UUID) -> bool:
    return (
        db.query(models.StaffSupervision.id)
        .filter(
            models.StaffSupervision.supervisor_id == supervisor_id,
            models.StaffSupervision.subordinate_id == subordinate_id,
        )
        .first()
        is not None
    )


def _get_staff(db: Session, staff_id: UUID) -> models.Staff:
    staff = db.get(models.Staff, staff_id)
    if staff is None:
        raise NotFound(f"staff {staff_id} not found")
    return staff


def _edges_for_subordinate(db: Session, subordinate_id: UUID) -> list[models.StaffSupervision]:
    return (
        db.query(models.StaffSupervision)
        .filter(models.StaffSupervision.subordinate_id == subordinate_id)
        .order_by(models.StaffSupervision.created_at.asc(), models.StaffSupervision.id.asc())
        .all()
    )


def _supervisors_of(db: Session, staff_ids: set[UUID]) -> set[UUID]:
    rows = (
        db.query(models.StaffSupervision.supervisor_id)
        .filter(models.StaffSupervision.subordinate_id.in_(staff_ids))
        .all()
    )
    return {supervisor_id for (supervisor_id,) in rows}


def _assert_acyclic(db: Session, subordinate_id: UUID, supervisor_id: UUID) -> None:
    """Climb the chain above supervisor_id; reaching subordinate_id means a cycle."""

    bound = db.query(sa.func.count(models.Staff.id)).scalar()
    visited: set[UUID] = {supervisor_id}
    frontier: set[UUID] = {supervisor_id}
    steps = 0
    while frontier:
        steps += 1
        if steps > bound:
            raise CycleDetected(f"supervision chain above staff {supervisor_id} does not terminate")
        parents = _supervisors_of(db, frontier)
        if subordinate_id in parents:
            raise CycleDetected(
                f"staff {subordinate_id} already supervises staff {supervisor_id}"
            )
        frontier = parents - visited
        visited |= frontier

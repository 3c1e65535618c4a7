"""Firearm custody services: exclusive assignment with an append-only history."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import locks, models
from ..errors import FacilityError, NotFound, ValidationError
from ..transaction import guarded_transaction

# purpose: keep at most one unreturned assignment per firearm while retaining every past assignment
# status: active
# depends_on: warden.models.Firearm, warden.models.FirearmAssignment, warden.models.Staff

logger = logging.getLogger(__name__)

_ASSIGNABLE_FIREARM_STATUSES = {"in_service"}
_ASSIGNABLE_STAFF_STATUSES = {"active"}


class AlreadyAssigned(FacilityError):
    """Raised when the firearm is already actively held by the requested holder."""

    kind = "AlreadyAssigned"


class FirearmNotAvailable(FacilityError):
    """Raised when the firearm is held by someone else or out of service."""

    kind = "FirearmNotAvailable"


class NoActiveAssignment(FacilityError):
    """Raised when a firearm is returned without being assigned."""

    kind = "NoActiveAssignment"


def assign_firearm(db: Session, serial_number: str, staff_id: UUID) -> models.FirearmAssignment:
    """Create an active assignment of a firearm to a staff member."""

    with guarded_transaction(db, locks.firearm_key(serial_number), locks.holder_key(staff_id)):
        firearm = lock_firearm_row(db, serial_number)
        staff = db.get(models.Staff, staff_id)
        if staff is None:
            raise NotFound(f"staff {staff_id} not found")
        if staff.status not in _ASSIGNABLE_STAFF_STATUSES:
            raise ValidationError(f"staff {staff_id} is {staff.status} and cannot hold firearms")

        active = _active_rows(db, serial_number)
        if any(row.staff_id == staff_id for row in active):
            raise AlreadyAssigned(f"firearm {serial_number} is already assigned to staff {staff_id}")
        if active:
            raise FirearmNotAvailable(
                f"firearm {serial_number} is assigned to staff {active[-1].staff_id}"
            )
        if firearm.status not in _ASSIGNABLE_FIREARM_STATUSES:
            raise FirearmNotAvailable(f"firearm {serial_number} is {firearm.status}")

        latest = (
            db.query(sa.func.max(models.FirearmAssignment.sequence))
            .filter(models.FirearmAssignment.firearm_serial == serial_number)
            .scalar()
        )
        assignment = models.FirearmAssignment(
            firearm_serial=serial_number,
            staff_id=staff_id,
            sequence=1 if latest is None else latest + 1,
            returned=False,
            assigned_at=datetime.now(timezone.utc),
        )
        db.add(assignment)
        db.flush()
    logger.info("Firearm %s assigned to staff %s", serial_number, staff_id)
    return assignment


def return_firearm(db: Session, serial_number: str) -> models.FirearmAssignment:
    """Flag the firearm's active assignment as returned; the record is kept."""

    with guarded_transaction(db, locks.firearm_key(serial_number)):
        lock_firearm_row(db, serial_number)
        active = _active_rows(db, serial_number)
        if not active:
            raise NoActiveAssignment(f"firearm {serial_number} has no active assignment")
        if len(active) > 1:
            logger.warning(
                "Firearm %s had %s active assignments; returning all of them",
                serial_number,
                len(active),
            )
        now = datetime.now(timezone.utc)
        for row in active:
            row.returned = True
            row.returned_at = now
        assignment = active[-1]
        db.flush()
    logger.info("Firearm %s returned by staff %s", serial_number, assignment.staff_id)
    return assignment


def active_assignment(db: Session, serial_number: str) -> models.FirearmAssignment | None:
    """Return the firearm's unreturned assignment, if any."""

    _get_firearm(db, serial_number)
    active = _active_rows(db, serial_number)
    if len(active) > 1:
        logger.warning("Firearm %s has %s active assignments", serial_number, len(active))
    return active[-1] if active else None


def assignment_history(
    db: Session,
    *,
    serial_number: str | None = None,
    staff_id: UUID | None = None,
    firearm_type: str | None = None,
) -> list[models.FirearmAssignment]:
    """Return every assignment of one firearm or one holder, oldest first.

    ``firearm_type`` narrows a holder's history to firearms of that type.
    """

    query = _history_query(db, serial_number=serial_number, staff_id=staff_id, firearm_type=firearm_type)
    if serial_number is not None:
        return query.order_by(models.FirearmAssignment.sequence.asc()).all()
    return (
        query.order_by(
            models.FirearmAssignment.assigned_at.asc(),
            models.FirearmAssignment.sequence.asc(),
        )
        .all()
    )


def count_assignments(
    db: Session,
    *,
    serial_number: str | None = None,
    staff_id: UUID | None = None,
) -> int:
    """Count past and present assignments of one firearm or one holder."""

    query = _history_query(db, serial_number=serial_number, staff_id=staff_id)
    return query.with_entities(sa.func.count(models.FirearmAssignment.id)).scalar()


def list_active_assignments(db: Session, *, staff_id: UUID | None = None) -> list[models.FirearmAssignment]:
    """Return unreturned assignments system-wide or for one holder."""

    query = db.query(models.FirearmAssignment).filter(models.FirearmAssignment.returned.is_(False))
    if staff_id is not None:
        query = query.filter(models.FirearmAssignment.staff_id == staff_id)
    return query.order_by(
        models.FirearmAssignment.firearm_serial.asc(),
        models.FirearmAssignment.sequence.asc(),
    ).all()


def _history_query(
    db: Session,
    *,
    serial_number: str | None,
    staff_id: UUID | None,
    firearm_type: str | None = None,
):
    if (serial_number is None) == (staff_id is None):
        raise ValidationError("history needs exactly one of serial_number or staff_id")

    query = db.query(models.FirearmAssignment)
    if serial_number is not None:
        _get_firearm(db, serial_number)
        query = query.filter(models.FirearmAssignment.firearm_serial == serial_number)
    else:
        if db.get(models.Staff, staff_id) is None:
            raise NotFound(f"staff {staff_id} not found")
        query = query.filter(models.FirearmAssignment.staff_id == staff_id)
    if firearm_type is not None:
        query = query.join(models.Firearm, models.Firearm.serial_number == models.FirearmAssignment.firearm_serial)
        query = query.filter(models.Firearm.firearm_type == firearm_type)
    return query


def _get_firearm(db: Session, serial_number: str) -> models.Firearm:
    firearm = db.get(models.Firearm, serial_number)
    if firearm is None:
        raise NotFound(f"firearm {serial_number} not found")
    return firearm


def lock_firearm_row(db: Session, serial_number: str) -> models.Firearm:
    """Load the firearm with FOR UPDATE where the database supports row locks."""

    firearm = (
        db.query(models.Firearm)
        .filter(models.Firearm.serial_number == serial_number)
        .with_for_update()
        .one_or_none()
    )
    if firearm is None:
        raise NotFound(f"firearm {serial_number} not found")
    return firearm


def _active_rows(db: Session, serial_number: str) -> list[models.FirearmAssignment]:
    return (
        db.query(models.FirearmAssignment)
        .filter(
            models.FirearmAssignment.firearm_serial == serial_number,
            models.FirearmAssignment.returned.is_(False),
        )
        .order_by(models.FirearmAssignment.sequence.asc())
        .all()
    )

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Prison(Base):
    __tablename__ = "prisons"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    blocks = relationship("Block", back_populates="prison")


class Block(Base):
    __tablename__ = "blocks"

    # purpose: scope boundary for occupant reallocation; cells only trade occupants inside one block
    # depends_on: prisons

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    block_type = Column("type", String(50), nullable=False)
    prison_id = Column(UUID(as_uuid=True), ForeignKey("prisons.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    prison = relationship("Prison", back_populates="blocks")
    cells = relationship(
        "Cell",
        back_populates="block",
        order_by="(Cell.position_index, Cell.id)",
    )


class Cell(Base):
    __tablename__ = "cells"

    # purpose: containment unit holding occupants up to a fixed capacity
    # depends_on: blocks

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    block_id = Column(UUID(as_uuid=True), ForeignKey("blocks.id"), nullable=False, index=True)
    cell_type = Column("type", String, nullable=False, index=True)
    capacity = Column(Integer, nullable=False)
    position_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    block = relationship("Block", back_populates="cells")
    occupants = relationship(
        "Occupant",
        back_populates="cell",
        order_by="(Occupant.placement_seq, Occupant.id)",
    )


class Occupant(Base):
    __tablename__ = "occupants"

    # purpose: person housed in at most one cell; cell_id is a lookup back-reference owned by the capacity service
    # depends_on: cells

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    cell_id = Column(UUID(as_uuid=True), ForeignKey("cells.id"), nullable=True, index=True)
    placement_seq = Column(Integer, nullable=True)
    placed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    cell = relationship("Cell", back_populates="occupants")


class Staff(Base):
    __tablename__ = "staff"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False)
    status = Column(String, default="active", nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    assignments = relationship(
        "FirearmAssignment",
        back_populates="staff",
        order_by="(FirearmAssignment.assigned_at, FirearmAssignment.sequence)",
    )


class Firearm(Base):
    __tablename__ = "firearms"

    # purpose: exclusively held equipment keyed by serial number
    # status: in_service | decommissioned

    serial_number = Column(String, primary_key=True)
    firearm_type = Column("type", String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(String, default="in_service", nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    assignments = relationship(
        "FirearmAssignment",
        back_populates="firearm",
        order_by="FirearmAssignment.sequence",
    )


class FirearmAssignment(Base):
    __tablename__ = "firearm_assignments"
    __table_args__ = (
        UniqueConstraint("firearm_serial", "sequence", name="uq_firearm_assignment_sequence"),
    )

    # purpose: append-only custody log; returned rows are flagged, never deleted
    # depends_on: firearms, staff

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    firearm_serial = Column(
        String,
        ForeignKey("firearms.serial_number"),
        nullable=False,
        index=True,
    )
    staff_id = Column(UUID(as_uuid=True), ForeignKey("staff.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    returned = Column(Boolean, default=False, nullable=False, index=True)
    assigned_at = Column(DateTime, default=_utcnow, nullable=False)
    returned_at = Column(DateTime, nullable=True)

    firearm = relationship("Firearm", back_populates="assignments")
    staff = relationship("Staff", back_populates="assignments")


class StaffSupervision(Base):
    __tablename__ = "staff_supervisions"

    # purpose: directed edge supervisor -> subordinate; at most one per subordinate
    # depends_on: staff

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    supervisor_id = Column(UUID(as_uuid=True), ForeignKey("staff.id"), nullable=False, index=True)
    subordinate_id = Column(
        UUID(as_uuid=True),
        ForeignKey("staff.id"),
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    supervisor = relationship("Staff", foreign_keys=[supervisor_id])
    subordinate = relationship("Staff", foreign_keys=[subordinate_id])

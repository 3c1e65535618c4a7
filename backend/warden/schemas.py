"""Value objects accepted and returned by the facility services."""

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

SOLITARY_MARKERS = ("solitary", "isolation", "segregation")


def is_solitary_type(cell_type: str) -> bool:
    lowered = cell_type.strip().lower()
    return any(marker in lowered for marker in SOLITARY_MARKERS)


def _require_text(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must not be blank")
    return value.strip()


class PrisonCreate(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        return _require_text(value)


class BlockCreate(BaseModel):
    prison_id: UUID
    block_type: str = Field(max_length=50)

    @field_validator("block_type")
    @classmethod
    def type_not_blank(cls, value: str) -> str:
        return _require_text(value)


class CellCreate(BaseModel):
    block_id: UUID
    cell_type: str
    capacity: int = Field(gt=0)

    @field_validator("cell_type")
    @classmethod
    def type_not_blank(cls, value: str) -> str:
        return _require_text(value)

    @model_validator(mode="after")
    def solitary_holds_one(self) -> "CellCreate":
        if is_solitary_type(self.cell_type) and self.capacity != 1:
            raise ValueError("solitary cells can only have a capacity of 1")
        return self


class OccupantCreate(BaseModel):
    name: str
    cell_id: UUID

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        return _require_text(value)


class StaffCreate(BaseModel):
    name: str
    role: str

    @field_validator("name", "role")
    @classmethod
    def fields_not_blank(cls, value: str) -> str:
        return _require_text(value)


class FirearmCreate(BaseModel):
    serial_number: str
    firearm_type: str
    name: str

    @field_validator("serial_number", "firearm_type", "name")
    @classmethod
    def fields_not_blank(cls, value: str) -> str:
        return _require_text(value)


class Relocation(BaseModel):
    occupant_id: UUID
    from_cell_id: UUID
    to_cell_id: UUID


class CapacityChange(BaseModel):
    cell_id: UUID
    previous_capacity: int
    capacity: int
    occupant_ids: list[UUID] = Field(default_factory=list)
    relocations: list[Relocation] = Field(default_factory=list)


class BlockSummary(BaseModel):
    block_id: UUID
    block_type: str
    cell_count: int
    occupant_count: int
    total_capacity: int

    @property
    def free_slots(self) -> int:
        return self.total_capacity - self.occupant_count


class InvariantViolation(BaseModel):
    code: str
    subject_id: str
    detail: str
    related_ids: list[str] = Field(default_factory=list)

from __future__ import annotations

import uuid

import pytest

from warden import schemas
from warden.errors import NotFound, ValidationError
from warden.services import capacity, facility
from warden.services.capacity import CapacityUnavailable, CellFull, NotPresent


def _names(db, cell_id) -> list[str]:
    return [occupant.name for occupant in capacity.list_occupants(db, cell_id)]


def test_shrinking_capacity_keeps_oldest_and_moves_the_rest(db, make_cell):
    cell_a, (p1, p2, p3) = make_cell(3, ("p1", "p2", "p3"))
    cell_c, _ = make_cell(3, ("p4",))

    change = capacity.set_capacity(db, cell_a.id, 1)

    assert change.previous_capacity == 3
    assert change.capacity == 1
    assert change.occupant_ids == [p1.id]
    assert [(move.occupant_id, move.to_cell_id) for move in change.relocations] == [
        (p2.id, cell_c.id),
        (p3.id, cell_c.id),
    ]
    assert _names(db, cell_a.id) == ["p1"]
    assert _names(db, cell_c.id) == ["p4", "p2", "p3"]
    assert capacity.is_at_capacity(db, cell_c.id)
    assert db.get(type(p2), p2.id).cell_id == cell_c.id


def test_shrinking_without_room_fails_and_changes_nothing(db, make_cell):
    cell_a, _ = make_cell(3, ("p1", "p2", "p3"))
    cell_c, _ = make_cell(2, ("p4",))

    with pytest.raises(CapacityUnavailable) as excinfo:
        capacity.set_capacity(db, cell_a.id, 1)
    assert excinfo.value.kind == "CapacityUnavailable"

    db.expire_all()
    assert db.get(type(cell_a), cell_a.id).capacity == 3
    assert _names(db, cell_a.id) == ["p1", "p2", "p3"]
    assert _names(db, cell_c.id) == ["p4"]


def test_shrinking_with_no_candidates_fails(db, make_cell):
    cell, _ = make_cell(2, ("p1", "p2"))
    make_cell(4, ("p3",), cell_type="dormitory")

    with pytest.raises(CapacityUnavailable):
        capacity.set_capacity(db, cell.id, 1)
    assert _names(db, cell.id) == ["p1", "p2"]


def test_relocation_stays_inside_the_block(db, make_cell, block):
    cell_a, _ = make_cell(2, ("p1", "p2"))
    other = facility.create_block(db, schemas.BlockCreate(prison_id=block.prison_id, block_type="annex"))
    make_cell(5, block_id=other.id)

    with pytest.raises(CapacityUnavailable):
        capacity.set_capacity(db, cell_a.id, 1)


def test_relocation_fills_candidates_in_position_order(db, make_cell):
    cell_a, _ = make_cell(4, ("p1", "p2", "p3", "p4"))
    first, _ = make_cell(2, ("q1",))
    second, _ = make_cell(2)

    change = capacity.set_capacity(db, cell_a.id, 1)

    assert [move.to_cell_id for move in change.relocations] == [first.id, second.id, second.id]
    assert _names(db, first.id) == ["q1", "p2"]
    assert _names(db, second.id) == ["p3", "p4"]


def test_growing_capacity_moves_nobody(db, make_cell):
    cell, _ = make_cell(1, ("p1",))

    change = capacity.set_capacity(db, cell.id, 4)

    assert change.relocations == []
    assert capacity.available_capacity(db, cell.id) == 3


@pytest.mark.parametrize("value", [0, -2, True, 1.5])
def test_set_capacity_rejects_non_positive_integers(db, make_cell, value):
    cell, _ = make_cell(2)
    with pytest.raises(ValidationError):
        capacity.set_capacity(db, cell.id, value)


def test_solitary_cells_hold_exactly_one(db, make_cell, block):
    cell, _ = make_cell(1, cell_type="Solitary Confinement")
    with pytest.raises(ValidationError):
        capacity.set_capacity(db, cell.id, 2)
    with pytest.raises(ValueError):
        schemas.CellCreate(block_id=block.id, cell_type="isolation", capacity=3)


def test_add_occupant_respects_capacity(db, make_cell):
    cell, _ = make_cell(1, ("p1",))
    spare, (p2,) = make_cell(1, ("p2",))
    capacity.remove_occupant(db, spare.id, p2.id)

    with pytest.raises(CellFull) as excinfo:
        capacity.add_occupant(db, cell.id, p2.id)
    assert excinfo.value.kind == "CellFull"
    assert db.get(type(p2), p2.id).cell_id is None

    capacity.add_occupant(db, spare.id, p2.id)
    assert _names(db, spare.id) == ["p2"]


def test_add_occupant_rejects_housed_occupants(db, make_cell):
    cell, (p1,) = make_cell(2, ("p1",))
    other, _ = make_cell(2)

    with pytest.raises(ValidationError):
        capacity.add_occupant(db, cell.id, p1.id)
    with pytest.raises(ValidationError):
        capacity.add_occupant(db, other.id, p1.id)


def test_remove_occupant_clears_back_reference(db, make_cell):
    cell, (p1, p2) = make_cell(2, ("p1", "p2"))

    removed = capacity.remove_occupant(db, cell.id, p1.id)

    assert removed.cell_id is None
    assert removed.placement_seq is None
    assert capacity.occupant_count(db, cell.id) == 1
    with pytest.raises(NotPresent):
        capacity.remove_occupant(db, cell.id, p1.id)


def test_remove_occupant_from_wrong_cell(db, make_cell):
    cell, (p1,) = make_cell(2, ("p1",))
    other, _ = make_cell(2)
    with pytest.raises(NotPresent):
        capacity.remove_occupant(db, other.id, p1.id)
    assert capacity.occupant_count(db, cell.id) == 1


def test_unknown_cell_is_not_found(db):
    with pytest.raises(NotFound):
        capacity.available_capacity(db, uuid.uuid4())
    with pytest.raises(NotFound):
        capacity.set_capacity(db, uuid.uuid4(), 2)


def test_transfer_occupant_between_blocks(db, make_cell, block):
    cell, (p1,) = make_cell(1, ("p1",))
    other_block = facility.create_block(db, schemas.BlockCreate(prison_id=block.prison_id, block_type="annex"))
    target, _ = make_cell(2, ("p2",), block_id=other_block.id)

    moved = capacity.transfer_occupant(db, p1.id, target.id)

    assert moved.cell_id == target.id
    assert moved.placement_seq == 2
    assert capacity.occupant_count(db, cell.id) == 0
    with pytest.raises(ValidationError):
        capacity.transfer_occupant(db, p1.id, target.id)


def test_transfer_into_full_cell_is_rejected(db, make_cell):
    cell, (p1,) = make_cell(1, ("p1",))
    full, _ = make_cell(1, ("p2",))
    with pytest.raises(CellFull):
        capacity.transfer_occupant(db, p1.id, full.id)
    assert _names(db, cell.id) == ["p1"]


def test_list_cells_and_available_cells(db, make_cell, block):
    full, _ = make_cell(1, ("p1",))
    roomy, _ = make_cell(3, ("p2",))
    dorm, _ = make_cell(6, cell_type="dormitory")

    assert [cell.id for cell in capacity.list_cells(db, block.id)] == [full.id, roomy.id, dorm.id]
    assert [cell.id for cell in capacity.list_cells(db, block.id, cell_type="dormitory")] == [dorm.id]
    assert [cell.id for cell in capacity.list_available_cells(db, block_id=block.id)] == [roomy.id, dorm.id]
    assert [cell.id for cell in capacity.list_available_cells(db, cell_type="standard")] == [roomy.id]
    assert [cell.position_index for cell in capacity.list_cells(db, block.id)] == [0, 1, 2]


def test_block_row_lock_runs_in_a_fresh_transaction(db, make_cell, monkeypatch):
    cell, _ = make_cell(2)
    seen: list[bool] = []
    original = capacity._lock_block_row

    def recording(session, block_id):
        seen.append(session.in_transaction())
        return original(session, block_id)

    monkeypatch.setattr(capacity, "_lock_block_row", recording)
    db.query(type(cell)).count()

    capacity.admit_occupant(db, schemas.OccupantCreate(name="p1", cell_id=cell.id))
    capacity.set_capacity(db, cell.id, 1)

    assert seen == [False, False]


def test_transfer_locks_both_block_rows(db, make_cell, block, monkeypatch):
    cell, (p1,) = make_cell(1, ("p1",))
    other_block = facility.create_block(db, schemas.BlockCreate(prison_id=block.prison_id, block_type="annex"))
    target, _ = make_cell(1, block_id=other_block.id)
    locked = []
    original = capacity._lock_block_row

    def recording(session, block_id):
        locked.append(block_id)
        return original(session, block_id)

    monkeypatch.setattr(capacity, "_lock_block_row", recording)
    capacity.transfer_occupant(db, p1.id, target.id)

    assert sorted(locked, key=str) == sorted([block.id, other_block.id], key=str)

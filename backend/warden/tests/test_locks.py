from __future__ import annotations

import threading

import pytest

from warden import locks, models
from warden.errors import ResourceBusy
from warden.transaction import guarded_transaction


def test_hold_orders_and_deduplicates_keys():
    registry = locks.LockRegistry(timeout=1)
    with registry.hold(["supervision", "firearm:SN1", "holder:7", "firearm:SN1"]) as held:
        assert held == ("firearm:SN1", "holder:7", "supervision")
        assert len(registry) == 3
    assert len(registry) == 0


def test_hold_is_reentrant_within_a_thread():
    registry = locks.LockRegistry(timeout=1)
    with registry.hold([locks.firearm_key("SN1")]):
        with registry.hold([locks.firearm_key("SN1")], timeout=0.1):
            pass


def test_contended_key_raises_resource_busy():
    registry = locks.LockRegistry(timeout=0.1)
    acquired = threading.Event()
    release = threading.Event()

    def holder():
        with registry.hold([locks.SUPERVISION_KEY]):
            acquired.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert acquired.wait(5)
        with pytest.raises(ResourceBusy) as excinfo:
            with registry.hold([locks.SUPERVISION_KEY]):
                pass
        assert excinfo.value.kind == "ResourceBusy"
    finally:
        release.set()
        thread.join()

    with registry.hold([locks.SUPERVISION_KEY]):
        pass


def test_guarded_transaction_rolls_back_on_error(db):
    registry = locks.LockRegistry(timeout=1)

    with pytest.raises(RuntimeError):
        with guarded_transaction(db, "staff", registry=registry):
            db.add(models.Staff(name="Temp", role="officer"))
            db.flush()
            raise RuntimeError("abort")

    assert db.query(models.Staff).count() == 0

    with guarded_transaction(db, "staff", registry=registry):
        db.add(models.Staff(name="Kept", role="officer"))
    assert [staff.name for staff in db.query(models.Staff).all()] == ["Kept"]


def test_entries_are_dropped_after_timeout_and_release():
    registry = locks.LockRegistry(timeout=0.1)
    acquired = threading.Event()
    release = threading.Event()

    def holder():
        with registry.hold([locks.firearm_key("SN9")]):
            acquired.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert acquired.wait(5)
        with pytest.raises(ResourceBusy):
            with registry.hold([locks.firearm_key("SN9"), locks.holder_key("7")]):
                pass
        assert len(registry) == 1
    finally:
        release.set()
        thread.join()
    assert len(registry) == 0


def test_guarded_transaction_ends_reads_made_before_the_lock(db):
    registry = locks.LockRegistry(timeout=1)
    db.query(models.Staff).count()
    assert db.in_transaction()

    with guarded_transaction(db, "staff", registry=registry):
        assert not db.in_transaction()
        db.add(models.Staff(name="Fresh", role="officer"))
    assert db.query(models.Staff).count() == 1

"""Per-resource mutual exclusion for facility mutations."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from threading import Lock, RLock
from typing import Iterable, Iterator
from uuid import UUID

from .errors import ResourceBusy

# purpose: serialize mutations that touch the same block, firearm, holder or the supervision graph
# inputs: resource keys built by the helpers below
# outputs: held locks for the duration of one transaction
# status: active

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = float(os.getenv("WARDEN_LOCK_TIMEOUT_SECONDS", "10"))

SUPERVISION_KEY = "supervision"


def block_key(block_id: UUID) -> str:
    return f"block:{block_id}"


def firearm_key(serial_number: str) -> str:
    return f"firearm:{serial_number}"


def holder_key(staff_id: UUID) -> str:
    return f"holder:{staff_id}"


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = RLock()
        self.users = 0


class LockRegistry:
    """Hand out one re-entrant lock per resource key.

    An entry lives only while some thread holds or waits on its key, so keys of
    deleted cells, retired staff or decommissioned firearms do not accumulate.
    """

    def __init__(self, timeout: float = LOCK_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout
        self._locks: dict[str, _Entry] = {}
        self._guard = Lock()

    def _checkout(self, key: str) -> RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _Entry()
            entry.users += 1
            return entry.lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[str], timeout: float | None = None) -> Iterator[tuple[str, ...]]:
        """Acquire every key in sorted order; raise ResourceBusy on timeout."""

        ordered = tuple(sorted(set(keys)))
        wait = self.timeout if timeout is None else timeout
        acquired: list[tuple[str, RLock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                if not lock.acquire(timeout=wait):
                    self._checkin(key)
                    logger.warning("Timed out after %.1fs waiting for %s", wait, key)
                    raise ResourceBusy(f"resource {key} is busy")
                acquired.append((key, lock))
            logger.debug("Holding locks %s", ordered)
            yield ordered
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def __len__(self) -> int:
        return len(self._locks)


registry = LockRegistry()

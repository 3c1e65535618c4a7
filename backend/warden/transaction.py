"""Commit boundary for facility mutations.

Every public mutating operation runs inside :func:`guarded_transaction`.
Any transaction left open by earlier reads (or pending caller work) is
committed first, so nothing read before the locks pins the snapshot. Locks
are then taken, all invariant checks and writes happen inside the block,
and the commit is the only point where state becomes visible to other
sessions. Any exception rolls the session back before the locks are
released.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

from . import locks

logger = logging.getLogger(__name__)


@contextmanager
def guarded_transaction(
    db: Session,
    *keys: str,
    registry: locks.LockRegistry | None = None,
) -> Iterator[Session]:
    """Hold the resource locks for ``keys`` around one commit-or-rollback unit."""

    lock_registry = registry or locks.registry
    if db.in_transaction():
        # REPEATABLE READ stores would otherwise keep serving the pre-lock snapshot
        db.commit()
    with lock_registry.hold(keys):
        db.expire_all()
        try:
            yield db
            db.commit()
            logger.debug("Committed transaction for %s", sorted(keys))
        except Exception:
            db.rollback()
            logger.debug("Rolled back transaction for %s", sorted(keys))
            raise

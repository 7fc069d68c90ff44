"""Transaction-scoped advisory locks.

A lock is identified by "{stage}:{activity_id}" so two different stages on the
same activity never contend, and one stage on two activities never contends.
There is no release call: the lock belongs to the session's current
transaction and disappears when it commits, rolls back or is closed.
"""

from __future__ import annotations

import threading

from loguru import logger
from sqlalchemy import event, text
from sqlalchemy.orm import Session, SessionTransaction

from app.adherence.errors import TransientLockContention

# Process-local registry used when the database has no advisory locks (SQLite).
# Maps lock key -> id of the root SessionTransaction holding it.
_local_locks: dict[str, int] = {}
_local_locks_mutex = threading.Lock()
_LISTENER_FLAG = "advisory_lock_listener"


def stage_lock_key(stage: str, activity_id: str) -> str:
    """Build the lock key for one stage running on one activity."""
    return f"{stage}:{activity_id}"


def _release_local_locks(_session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is not None:
        return
    owner = id(transaction)
    with _local_locks_mutex:
        released = [key for key, holder in _local_locks.items() if holder == owner]
        for key in released:
            del _local_locks[key]
    if released:
        logger.debug(f"Released advisory locks at transaction end: {released}")


class LockManager:
    """Grants named, non-blocking, transaction-scoped exclusion."""

    def __init__(self, session: Session):
        self.session = session

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def try_acquire(self, key: str) -> bool:
        """Try to take the lock for the current transaction.

        Returns False immediately when another transaction holds the key.
        """
        if self._dialect_name() == "postgresql":
            acquired = bool(
                self.session.execute(
                    text("SELECT pg_try_advisory_xact_lock(hashtext(:lock_key))"),
                    {"lock_key": key},
                ).scalar()
            )
        else:
            acquired = self._try_acquire_local(key)

        if acquired:
            logger.debug(f"Advisory lock acquired: {key}")
        else:
            logger.info(f"Advisory lock busy: {key}")
        return acquired

    def acquire(self, key: str) -> None:
        """Take the lock or fail fast.

        Raises:
            TransientLockContention: If another transaction holds the key
        """
        if not self.try_acquire(key):
            raise TransientLockContention(key)

    def _try_acquire_local(self, key: str) -> bool:
        # Begin the transaction so the lock has an owner that ends with it
        self.session.connection()
        root = self.session.get_transaction()
        if root is None:
            return False
        while root.parent is not None:
            root = root.parent

        if not self.session.info.get(_LISTENER_FLAG):
            event.listen(self.session, "after_transaction_end", _release_local_locks)
            self.session.info[_LISTENER_FLAG] = True

        owner = id(root)
        with _local_locks_mutex:
            holder = _local_locks.get(key)
            if holder is not None and holder != owner:
                return False
            _local_locks[key] = owner
            return True

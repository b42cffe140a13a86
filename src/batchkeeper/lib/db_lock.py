"""Database-level locking for coordinating concurrent operations.

Locks are rows keyed by the protected resource. The primary key on
`lock_key` is the only thing that makes a lock exclusive, so correctness
does not depend on any single process staying alive. Each acquisition gets
a random session key; releasing deletes the row only if both keys match,
so a holder whose lock expired and was re-taken cannot release the new
holder's lock.

Expired locks are treated as absent: `take_lock` removes an expired row for
the same key in the same transaction as its insert. `cleanup_expired_locks`
reaps the rest.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Generator, Optional

from sqlalchemy import delete, inspect
from sqlalchemy.exc import DatabaseError, IntegrityError

from batchkeeper.models import BatchLock, DocumentLock, MaintenanceLock, TaskLock

logger = logging.getLogger(__name__)

_FAMILY_DEFAULT = object()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LockAcquisitionError(Exception):
    """Raised when a lock cannot be acquired."""
    pass


class LockAlreadyTakenError(LockAcquisitionError):
    """Raised when another holder owns the lock for this key."""

    def __init__(self, lock_key: str, family: str):
        super().__init__(f"Lock '{lock_key}' in '{family}' is already taken")
        self.lock_key = lock_key
        self.family = family


@dataclass(frozen=True)
class Lock:
    lock_key: str
    session_key: str
    expires: Optional[datetime]


class LockStore:
    """Exclusive locks for one lock family (one table).

    Usage:
        store = LockStore(db.Session, BatchLock, expiration_seconds=600)
        lock = store.take_lock("host.example.com")
        try:
            ...
        finally:
            store.release_lock(lock)
    """

    model = None
    default_expiration_seconds: Optional[int] = None

    def __init__(self, session_factory, model=None, expiration_seconds=_FAMILY_DEFAULT):
        """Initialize the lock store.

        Args:
            session_factory: SQLAlchemy sessionmaker
            model: Lock model (table) of this family; defaults to the class attribute
            expiration_seconds: Lock lifetime; None for locks that never
                expire; the family default when omitted
        """
        self.Session = session_factory
        self.model = model or self.model
        if self.model is None:
            raise ValueError("LockStore requires a lock model")
        self.expiration_seconds = self.default_expiration_seconds if expiration_seconds is _FAMILY_DEFAULT else expiration_seconds

    @property
    def family(self) -> str:
        return self.model.__tablename__

    def take_lock(self, lock_key: str) -> Lock:
        """Acquire the lock for `lock_key` or fail immediately.

        Raises:
            LockAlreadyTakenError: If a live lock for the key exists
        """
        now = utcnow()
        lock = Lock(
            lock_key=lock_key,
            session_key=uuid.uuid4().hex,
            expires=now + timedelta(seconds=self.expiration_seconds) if self.expiration_seconds is not None else None,
        )

        with self.Session() as session:
            try:
                with session.begin():
                    session.execute(
                        delete(self.model).where(
                            self.model.lock_key == lock_key,
                            self.model.expires.is_not(None),
                            self.model.expires < now,
                        )
                    )
                    session.add(self.model(lock_key=lock.lock_key, session_key=lock.session_key, expires=lock.expires))
            except IntegrityError as exc:
                raise LockAlreadyTakenError(lock_key, self.family) from exc

        logger.debug("Took lock '%s' in %s (expires %s)", lock_key, self.family, lock.expires)
        return lock

    def release_lock(self, lock: Optional[Lock]) -> None:
        """Release a lock taken by `take_lock`.

        Deletes only the row matching both the lock key and the session key.
        Releasing an unknown, expired or already released lock is a no-op.
        """
        if lock is None:
            return

        with self.Session() as session, session.begin():
            result = session.execute(
                delete(self.model).where(
                    self.model.lock_key == lock.lock_key,
                    self.model.session_key == lock.session_key,
                )
            )

        if result.rowcount:
            logger.debug("Released lock '%s' in %s", lock.lock_key, self.family)
        else:
            logger.debug("Lock '%s' in %s was no longer held by this session", lock.lock_key, self.family)

    def cleanup_expired_locks(self) -> int:
        """Delete expired locks of this family.

        Returns:
            Number of locks cleaned up
        """
        with self.Session() as session, session.begin():
            result = session.execute(
                delete(self.model).where(self.model.expires.is_not(None), self.model.expires < utcnow())
            )
        return result.rowcount or 0

    def ensure_table(self) -> None:
        """Create this family's table if it does not exist yet.

        The maintenance lock guards the first migration, so its table has to
        be usable on a database that was never migrated.
        """
        engine = self.Session.kw["bind"]
        try:
            self.model.__table__.create(engine, checkfirst=True)
        except DatabaseError:
            # another instance created it between the check and the create
            if not inspect(engine).has_table(self.model.__tablename__):
                raise

    def check_lock_exists(self, lock_key: str) -> Optional[Lock]:
        """Return the live lock for `lock_key` without acquiring it, or None."""
        with self.Session() as session:
            record = session.get(self.model, lock_key)
            if record is None or (record.expires is not None and record.expires < utcnow()):
                return None
            return Lock(lock_key=record.lock_key, session_key=record.session_key, expires=record.expires)


class MaintenanceLockStore(LockStore):
    model = MaintenanceLock
    default_expiration_seconds = 3600


class BatchLockStore(LockStore):
    """Serializes batch creation per import host."""
    model = BatchLock
    default_expiration_seconds = 600


class TaskLockStore(LockStore):
    model = TaskLock
    default_expiration_seconds = 600


class DocumentLockStore(LockStore):
    model = DocumentLock
    default_expiration_seconds = 60


@contextmanager
def held_lock(store: LockStore, lock_key: str) -> Generator[Lock, None, None]:
    """Convenience context manager for acquiring a database lock.

    Raises:
        LockAlreadyTakenError: If the lock cannot be acquired

    Example:
        with held_lock(document_lock_store, "doc-key") as lock:
            # Write the document
            pass
    """
    lock = store.take_lock(lock_key)
    try:
        yield lock
    finally:
        store.release_lock(lock)


def cleanup_expired_locks(session_factory) -> int:
    """Clean up expired locks of every lock family.

    Returns:
        Number of locks cleaned up
    """
    count = 0
    for store_cls in (MaintenanceLockStore, BatchLockStore, TaskLockStore, DocumentLockStore):
        removed = store_cls(session_factory).cleanup_expired_locks()
        if removed:
            logger.info("Removed %d expired lock(s) from %s", removed, store_cls.model.__tablename__)
        count += removed
    return count

"""Lock models for cross-process coordination.

Each lock family lives in its own table. All tables share the same shape:
the protected resource key is the primary key, so the database refuses a
second live lock for the same key.
"""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import declared_attr

from batchkeeper.models import Base


class LockMixin:
    """Columns shared by every lock table.

    Example lock families:
    - "maintenance_locks": schema migrations and consistency checks
    - "batch_locks": batch creation, keyed by import host name
    - "task_locks": processing of a single task, keyed by task id
    - "document_locks": writes to a single document, keyed by document key
    """

    @declared_attr
    def lock_key(cls):
        return Column(String(255), primary_key=True)

    @declared_attr
    def session_key(cls):
        return Column(String(64), nullable=False)

    @declared_attr
    def expires(cls):
        return Column(DateTime, nullable=True)  # None means the lock never expires

    def __repr__(self):
        return f"<{type(self).__name__} {self.lock_key} session={self.session_key} expires={self.expires}>"


class MaintenanceLock(LockMixin, Base):
    __tablename__ = "maintenance_locks"


class BatchLock(LockMixin, Base):
    __tablename__ = "batch_locks"


class TaskLock(LockMixin, Base):
    __tablename__ = "task_locks"


class DocumentLock(LockMixin, Base):
    __tablename__ = "document_locks"

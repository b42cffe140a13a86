"""Persistence for batches and their tasks.

Batches and tasks are only changed through narrow, additive operations:
append an attempt, set `processed`, set `completed_on`, append a batch
error. Records are returned as plain dicts shaped like the persisted
documents (`_id`, `batchId`, `taskParams`, ...).
"""
from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update

from batchkeeper.lib.database import session_scope
from batchkeeper.lib.db_lock import utcnow
from batchkeeper.models import Batch, Task, TaskAttempt

logger = logging.getLogger(__name__)


class BatchStore:

    def __init__(self, session_factory):
        self.Session = session_factory

    def create_batch(self, batch: dict, session=None) -> dict:
        params = dict(batch.get("batchParams") or {})
        record = Batch(
            id=batch["_id"],
            created_by=batch["createdBy"],
            created_on=batch["createdOn"],
            completed_on=batch.get("completedOn"),
            batch_type=batch["batchType"],
            host_name=params.get("hostName"),
            batch_params=params,
            errors=list(batch.get("errors") or []),
        )
        with session_scope(self.Session, session) as s:
            s.add(record)
            s.flush()
            return record.to_dict()

    def get_batch_by_id(self, batch_id: str) -> Optional[dict]:
        with self.Session() as session:
            record = session.get(Batch, batch_id)
            return record.to_dict() if record else None

    def get_batches_by_type(self, batch_type: str) -> list[dict]:
        with self.Session() as session:
            rows = session.scalars(
                select(Batch).where(Batch.batch_type == batch_type).order_by(Batch.created_on.desc())
            ).all()
            return [r.to_dict() for r in rows]

    def get_uncompleted_batch_by_type_and_host(self, batch_type: str, host_name: str) -> Optional[dict]:
        with self.Session() as session:
            record = session.scalars(
                select(Batch)
                .where(Batch.batch_type == batch_type, Batch.host_name == host_name, Batch.completed_on.is_(None))
                .limit(1)
            ).first()
            return record.to_dict() if record else None

    def get_uncompleted_batch(self) -> Optional[dict]:
        """Oldest batch that still has work left."""
        with self.Session() as session:
            record = session.scalars(
                select(Batch).where(Batch.completed_on.is_(None)).order_by(Batch.created_on).limit(1)
            ).first()
            return record.to_dict() if record else None

    def complete_batch(self, batch_id: str, completed_on: Optional[datetime] = None) -> bool:
        """Set `completed_on` unless it is already set. Returns True if this call completed the batch."""
        with self.Session() as session, session.begin():
            result = session.execute(
                update(Batch)
                .where(Batch.id == batch_id, Batch.completed_on.is_(None))
                .values(completed_on=completed_on or utcnow())
            )
        return bool(result.rowcount)

    def add_batch_error(self, batch_id: str, error: str) -> None:
        with self.Session() as session, session.begin():
            record = session.scalars(select(Batch).where(Batch.id == batch_id).with_for_update()).one()
            # reassign so the JSON column is flagged dirty
            record.errors = [*(record.errors or []), error]


class TaskStore:

    def __init__(self, session_factory):
        self.Session = session_factory

    def add_tasks(self, tasks: Iterable[dict], session=None) -> int:
        count = 0
        with session_scope(self.Session, session) as s:
            for seq, task in enumerate(tasks):
                s.add(Task(
                    id=task["_id"],
                    seq=seq,
                    batch_id=task["batchId"],
                    task_type=task["taskType"],
                    processed=bool(task.get("processed", False)),
                    task_params=dict(task.get("taskParams") or {}),
                ))
                count += 1
            s.flush()
        return count

    def get_tasks_by_batch_id(self, batch_id: str) -> list[dict]:
        with self.Session() as session:
            rows = session.scalars(select(Task).where(Task.batch_id == batch_id).order_by(Task.seq)).all()
            return [r.to_dict() for r in rows]

    def get_unprocessed_task_by_id(self, task_id: str) -> Optional[dict]:
        with self.Session() as session:
            record = session.scalars(select(Task).where(Task.id == task_id, Task.processed.is_(False))).first()
            return record.to_dict() if record else None

    def get_random_unprocessed_task_with_batch_id(self, batch_id: str) -> Optional[dict]:
        """Pick any unprocessed task of the batch so parallel workers rarely collide."""
        condition = (Task.batch_id == batch_id, Task.processed.is_(False))
        with self.Session() as session:
            total = session.scalar(select(func.count()).select_from(Task).where(*condition))
            if not total:
                return None
            record = session.scalars(
                select(Task).where(*condition).order_by(Task.seq).offset(random.randrange(total)).limit(1)
            ).first()
            if record is None:
                # other workers finished tasks after the count
                record = session.scalars(select(Task).where(*condition).order_by(Task.seq).limit(1)).first()
            return record.to_dict() if record else None

    def count_tasks_with_batch_id_grouped_by_processed_status(self, batch_id: str) -> list[dict]:
        with self.Session() as session:
            rows = session.execute(
                select(Task.processed, func.count(Task.id))
                .where(Task.batch_id == batch_id)
                .group_by(Task.processed)
            ).all()
        return [{"processed": bool(processed), "count": int(count)} for processed, count in rows]

    def record_attempt(
        self,
        task_id: str,
        started_on: datetime,
        completed_on: Optional[datetime] = None,
        error: Optional[str] = None,
        mark_processed: bool = False,
    ) -> None:
        """Append an attempt and optionally flag the task processed, in one transaction."""
        with self.Session() as session, session.begin():
            session.add(TaskAttempt(task_id=task_id, started_on=started_on, completed_on=completed_on, error=error))
            if mark_processed:
                session.execute(
                    update(Task).where(Task.id == task_id, Task.processed.is_(False)).values(processed=True)
                )
        logger.debug("Recorded attempt for task %s (error=%s, processed=%s)", task_id, error is not None, mark_processed)

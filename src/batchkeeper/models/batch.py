"""Batch, task and task attempt models."""
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship

from batchkeeper.models import Base


class Batch(Base):
    """A unit of import work.

    A batch is created once and afterwards only gets `completed_on` set and
    entries appended to `errors`.
    """
    __tablename__ = "batches"

    id = Column(String(32), primary_key=True)
    created_by = Column(String(64), nullable=False)
    created_on = Column(DateTime, nullable=False)
    completed_on = Column(DateTime, nullable=True, index=True)
    batch_type = Column(String(64), nullable=False, index=True)
    # host_name duplicates batch_params["hostName"] so uncompleted batches can be looked up by host
    host_name = Column(String(255), nullable=True, index=True)
    batch_params = Column(JSON, nullable=False, default=dict)
    errors = Column(JSON, nullable=False, default=list)

    tasks = relationship("Task", back_populates="batch", order_by="Task.seq")

    def to_dict(self) -> dict:
        return {
            "_id": self.id,
            "createdBy": self.created_by,
            "createdOn": self.created_on,
            "completedOn": self.completed_on,
            "batchType": self.batch_type,
            "batchParams": dict(self.batch_params or {}),
            "errors": list(self.errors or []),
        }


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String(32), primary_key=True)
    # insertion order within the owning batch
    seq = Column(Integer, nullable=False, default=0)
    batch_id = Column(String(32), ForeignKey("batches.id"), nullable=False, index=True)
    task_type = Column(String(64), nullable=False)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    task_params = Column(JSON, nullable=False, default=dict)

    batch = relationship("Batch", back_populates="tasks")
    attempts = relationship("TaskAttempt", back_populates="task", order_by="TaskAttempt.id", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "_id": self.id,
            "batchId": self.batch_id,
            "taskType": self.task_type,
            "processed": bool(self.processed),
            "attempts": [a.to_dict() for a in self.attempts],
            "taskParams": dict(self.task_params or {}),
        }


class TaskAttempt(Base):
    """One processing attempt of a task. Rows are only ever inserted."""
    __tablename__ = "task_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String(32), ForeignKey("tasks.id"), nullable=False, index=True)
    started_on = Column(DateTime, nullable=False)
    completed_on = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)  # None when the attempt succeeded

    task = relationship("Task", back_populates="attempts")

    def to_dict(self) -> dict:
        return {"startedOn": self.started_on, "completedOn": self.completed_on, "error": self.error}


class BatchType:
    DOCUMENT_IMPORT = "document-import"


class TaskType:
    DOCUMENT_IMPORT = "document-import"


class ImportType:
    ADD = "add"
    UPDATE = "update"
    REIMPORT = "reimport"

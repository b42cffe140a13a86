"""Working off batches one task at a time.

`BatchProcessor.process` is one step of a worker loop: it picks the oldest
uncompleted batch and either completes it or processes one of its open tasks
through `TaskProcessor`. Several workers may run side by side; the task lock
keeps two of them off the same task.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from batchkeeper.lib.db_lock import LockAlreadyTakenError, held_lock, utcnow
from batchkeeper.models import TaskType
from batchkeeper.services.document_store import external_origin

logger = logging.getLogger(__name__)


@dataclass
class ProcessingContext:
    cancellation_requested: bool = False


class CancellationRequested(Exception):
    pass


def serialize_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def parse_iso_datetime(value) -> Optional[datetime]:
    """Parse an ISO 8601 string into a naive UTC datetime."""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class TaskProcessor:

    def __init__(self, task_store, task_lock_store, handlers: dict, max_attempts: Optional[int] = None):
        """
        Args:
            task_store: TaskStore
            task_lock_store: task LockStore
            handlers: task type -> object with `process(task, batch_params, ctx)`
            max_attempts: attempts after which a failing task is given up;
                None retries failing tasks indefinitely
        """
        self.task_store = task_store
        self.task_lock_store = task_lock_store
        self.handlers = handlers
        self.max_attempts = max_attempts

    def process(self, task_id: str, batch_params: dict, ctx: ProcessingContext) -> None:
        try:
            lock = self.task_lock_store.take_lock(task_id)
        except LockAlreadyTakenError:
            logger.debug("Failed to take lock for task %s, will return", task_id)
            return

        try:
            task = self.task_store.get_unprocessed_task_by_id(task_id)
            if not task:
                logger.debug("Task %s has already been processed, will skip", task_id)
                return

            if ctx.cancellation_requested:
                logger.debug("Cancellation requested, will not attempt processing task %s", task_id)
                return

            handler = self.handlers.get(task["taskType"])
            if handler is None:
                raise ValueError(f"Task type {task['taskType']} is unknown")

            started_on = utcnow()
            error = None
            try:
                handler.process(task, batch_params, ctx)
            except Exception as exc:
                logger.warning("Error processing task '%s': %s", task_id, exc, exc_info=True)
                error = serialize_error(exc)

            attempts_exhausted = self.max_attempts is not None and len(task["attempts"]) + 1 >= self.max_attempts
            mark_processed = error is None or attempts_exhausted
            if mark_processed:
                logger.debug(
                    "Marking task %s as processed due to: %s",
                    task_id,
                    "task successfully processed" if error is None else "exhausted attempts",
                )
            self.task_store.record_attempt(
                task_id,
                started_on=started_on,
                completed_on=utcnow(),
                error=error,
                mark_processed=mark_processed,
            )
        finally:
            self.task_lock_store.release_lock(lock)


class BatchProcessor:

    def __init__(self, batch_store, task_store, task_processor: TaskProcessor):
        self.batch_store = batch_store
        self.task_store = task_store
        self.task_processor = task_processor

    def process(self, ctx: ProcessingContext) -> bool:
        """Run one step. Returns True when there may be more work to do."""
        batch = self.batch_store.get_uncompleted_batch()
        if not batch:
            return False

        if ctx.cancellation_requested:
            return True

        task = self.task_store.get_random_unprocessed_task_with_batch_id(batch["_id"])
        if not task:
            logger.info("Completing batch %s", batch["_id"])
            self.batch_store.complete_batch(batch["_id"])
            return False

        self.task_processor.process(task["_id"], batch["batchParams"], ctx)
        return True


class DocumentImportTaskHandler:
    """Copies the revisions of one document from an import source."""

    def __init__(self, settings, export_client, document_store, document_lock_store, order_store, database):
        self.settings = settings
        self.export_client = export_client
        self.document_store = document_store
        self.document_lock_store = document_lock_store
        self.order_store = order_store
        self.database = database

    def process(self, task: dict, batch_params: dict, ctx: ProcessingContext) -> None:
        host_name = batch_params["hostName"]
        import_source = self.settings.get_import_source(host_name)
        if import_source is None:
            raise ValueError(f"No import source is configured for host '{host_name}'")

        params = task["taskParams"]
        key = params["key"]
        imported_revision = params.get("importedRevision")

        export = self.export_client.get_document_export(
            import_source.base_url,
            import_source.api_key,
            key,
            imported_revision,
            params["importableRevision"],
        )

        if ctx.cancellation_requested:
            raise CancellationRequested("Cancellation requested")

        revisions = sorted(export["revisions"], key=lambda r: r.get("order", 0))
        if not revisions:
            return

        with held_lock(self.document_lock_store, key):
            current = self.document_store.get_document_by_key(key)
            current_revision = current["revision"] if current else None
            if imported_revision and current_revision != imported_revision:
                raise ValueError(
                    f"Import of document '{key}' expected to find revision '{imported_revision}' "
                    f"as the latest revision but found revision '{current_revision}'"
                )

            # orders come from their own transactions, so allocate them up front
            orders = [self.order_store.get_next_order() for _ in revisions]

            with self.database.session() as session, session.begin():
                for revision, order in zip(revisions, orders):
                    self.document_store.save_document({
                        "key": key,
                        "revision": revision["_id"],
                        "order": order,
                        "origin": external_origin(host_name),
                        "originUrl": f"{import_source.base_url}/docs/{key}",
                        "title": revision.get("title"),
                        "slug": revision.get("slug"),
                        "language": revision.get("language"),
                        "createdBy": revision.get("createdBy"),
                        "updatedOn": parse_iso_datetime(revision.get("createdOn")),
                    }, session=session)

        logger.info("Imported %d revision(s) of document '%s' from %s", len(revisions), key, host_name)


def build_handlers(document_import_handler: DocumentImportTaskHandler) -> dict:
    return {TaskType.DOCUMENT_IMPORT: document_import_handler}

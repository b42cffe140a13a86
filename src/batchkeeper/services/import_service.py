"""Document imports from other instances.

An import compares what a source offers with what was already imported from
it, then creates one batch with one task per selected document. Tasks are
worked off later by `BatchProcessor`; this service only creates batches and
reports their progress.
"""
from __future__ import annotations

import logging
import uuid
from typing import Iterable, Optional

from batchkeeper.lib.config import ImportSource
from batchkeeper.lib.db_lock import LockAlreadyTakenError, utcnow
from batchkeeper.models import BatchType, ImportType, TaskType
from batchkeeper.services.document_store import external_origin
from batchkeeper.services.errors import ConflictError, NotFoundError
from batchkeeper.services.task_processor import parse_iso_datetime

logger = logging.getLogger(__name__)

CONCURRENT_IMPORT_BATCH_ERROR_MESSAGE = (
    "Cannot create a new import batch while another import for the same source is still active"
)


def new_id() -> str:
    return uuid.uuid4().hex


def _to_iso(value) -> Optional[str]:
    """Store dates in task params as naive UTC ISO strings."""
    parsed = parse_iso_datetime(value)
    return parsed.isoformat() if parsed else None


def get_import_type(imported_revision: Optional[str], importable_revision: Optional[str]) -> str:
    if imported_revision is None:
        return ImportType.ADD
    if imported_revision != importable_revision:
        return ImportType.UPDATE
    return ImportType.REIMPORT


class ImportService:

    def __init__(self, database, batch_store, task_store, batch_lock_store, document_store, export_client):
        self.database = database
        self.batch_store = batch_store
        self.task_store = task_store
        self.batch_lock_store = batch_lock_store
        self.document_store = document_store
        self.export_client = export_client

    def get_all_importable_documents_metadata(self, import_source: ImportSource) -> list[dict]:
        """Documents of `import_source` that can be imported, with their import type.

        Documents that were imported before but are no longer offered by the
        source are left out.
        """
        importable = self.export_client.get_exports(import_source.base_url, import_source.api_key)
        imported = self.document_store.get_documents_metadata_by_origin(external_origin(import_source.host_name))

        imported_revisions = {doc["key"]: doc["revision"] for doc in imported}

        result = []
        for doc in importable:
            imported_revision = imported_revisions.get(doc["key"])
            result.append({
                "key": doc["key"],
                "title": doc.get("title"),
                "slug": doc.get("slug"),
                "language": doc.get("language"),
                "updatedOn": doc.get("updatedOn"),
                "importedRevision": imported_revision,
                "importableRevision": doc["revision"],
                "importType": get_import_type(imported_revision, doc["revision"]),
            })
        return result

    def create_import_batch(self, import_source: ImportSource, documents_to_import: Iterable[dict], user) -> dict:
        """Create a batch with one task per document.

        Raises:
            ConflictError: If another import for the same host holds the
                batch lock or an uncompleted batch exists for the host
        """
        user_id = user["_id"] if isinstance(user, dict) else str(user)
        batch = {
            "_id": new_id(),
            "createdBy": user_id,
            "createdOn": utcnow(),
            "completedOn": None,
            "batchType": BatchType.DOCUMENT_IMPORT,
            "batchParams": import_source.to_batch_params(),
            "errors": [],
        }
        tasks = [
            {
                "_id": new_id(),
                "batchId": batch["_id"],
                "taskType": TaskType.DOCUMENT_IMPORT,
                "processed": False,
                "attempts": [],
                "taskParams": {
                    "key": doc["key"],
                    "title": doc.get("title"),
                    "slug": doc.get("slug"),
                    "language": doc.get("language"),
                    "updatedOn": _to_iso(doc.get("updatedOn")),
                    "importedRevision": doc.get("importedRevision"),
                    "importableRevision": doc.get("importableRevision"),
                    "importType": doc.get("importType")
                    or get_import_type(doc.get("importedRevision"), doc.get("importableRevision")),
                },
            }
            for doc in documents_to_import
        ]

        try:
            lock = self.batch_lock_store.take_lock(import_source.host_name)
        except LockAlreadyTakenError as exc:
            raise ConflictError(CONCURRENT_IMPORT_BATCH_ERROR_MESSAGE) from exc

        try:
            existing = self.batch_store.get_uncompleted_batch_by_type_and_host(
                BatchType.DOCUMENT_IMPORT, import_source.host_name
            )
            if existing:
                raise ConflictError(CONCURRENT_IMPORT_BATCH_ERROR_MESSAGE)

            logger.info(
                "Creating new import batch for source '%s' containing %d tasks", import_source.name, len(tasks)
            )
            with self.database.session() as session, session.begin():
                self.batch_store.create_batch(batch, session=session)
                self.task_store.add_tasks(tasks, session=session)
        finally:
            self.batch_lock_store.release_lock(lock)

        return batch

    def _get_progress_for_batch(self, batch: dict) -> float:
        if batch.get("completedOn"):
            return 1

        total_count = 0
        processed_count = 0
        for group in self.task_store.count_tasks_with_batch_id_grouped_by_processed_status(batch["_id"]):
            total_count += group["count"]
            if group["processed"]:
                processed_count += group["count"]

        return 1 if total_count == 0 else processed_count / total_count

    def get_import_batches(self) -> list[dict]:
        batches = self.batch_store.get_batches_by_type(BatchType.DOCUMENT_IMPORT)
        return [{**batch, "progress": self._get_progress_for_batch(batch)} for batch in batches]

    def get_import_batch_details(self, batch_id: str) -> dict:
        batch = self.batch_store.get_batch_by_id(batch_id)
        if not batch:
            raise NotFoundError("Batch not found")

        batch["tasks"] = self.task_store.get_tasks_by_batch_id(batch_id)
        batch["progress"] = self._get_progress_for_batch(batch)
        return batch

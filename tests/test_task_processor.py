from datetime import datetime

import pytest

from batchkeeper.lib.config import ImportSource, Settings
from batchkeeper.lib.database import InMemoryAdapter
from batchkeeper.lib.db_lock import DocumentLockStore, TaskLockStore
from batchkeeper.lib.order import OrderStore
from batchkeeper.models import BatchType, TaskType
from batchkeeper.services import batch_store
from batchkeeper.services.batch_store import BatchStore, TaskStore
from batchkeeper.services.document_store import DocumentStore
from batchkeeper.services.task_processor import (
    BatchProcessor,
    CancellationRequested,
    DocumentImportTaskHandler,
    ProcessingContext,
    TaskProcessor,
    parse_iso_datetime,
)

HOST = "docs.example.com"
BATCH_PARAMS = {"name": "Docs", "hostName": HOST, "allowUnsecure": False}


class RecordingHandler:

    def __init__(self, error=None):
        self.error = error
        self.processed = []

    def process(self, task, batch_params, ctx):
        self.processed.append(task["_id"])
        if self.error:
            raise self.error


def make_env(handler=None, max_attempts=None):
    adapter = InMemoryAdapter()
    batches = BatchStore(adapter.Session)
    tasks = TaskStore(adapter.Session)
    task_locks = TaskLockStore(adapter.Session)
    handler = handler or RecordingHandler()
    processor = TaskProcessor(tasks, task_locks, {TaskType.DOCUMENT_IMPORT: handler}, max_attempts)
    return adapter, batches, tasks, task_locks, handler, processor


def add_batch(batches, tasks, task_ids, task_type=TaskType.DOCUMENT_IMPORT):
    batches.create_batch({
        "_id": "b1",
        "createdBy": "user-1",
        "createdOn": datetime(2026, 10, 1),
        "completedOn": None,
        "batchType": BatchType.DOCUMENT_IMPORT,
        "batchParams": BATCH_PARAMS,
        "errors": [],
    })
    tasks.add_tasks([
        {"_id": task_id, "batchId": "b1", "taskType": task_type, "processed": False, "attempts": [],
         "taskParams": {"key": task_id}}
        for task_id in task_ids
    ])


def test_successful_task_is_marked_processed():
    _, batches, tasks, task_locks, handler, processor = make_env()
    add_batch(batches, tasks, ["t1"])

    processor.process("t1", BATCH_PARAMS, ProcessingContext())

    task = tasks.get_tasks_by_batch_id("b1")[0]
    assert handler.processed == ["t1"]
    assert task["processed"] is True
    assert len(task["attempts"]) == 1
    assert task["attempts"][0]["error"] is None
    assert task["attempts"][0]["completedOn"] >= task["attempts"][0]["startedOn"]
    assert task_locks.check_lock_exists("t1") is None


def test_failed_attempts_accumulate_without_limit():
    _, batches, tasks, task_locks, _, processor = make_env(handler=RecordingHandler(error=RuntimeError("boom")))
    add_batch(batches, tasks, ["t1"])

    for _ in range(5):
        processor.process("t1", BATCH_PARAMS, ProcessingContext())

    task = tasks.get_tasks_by_batch_id("b1")[0]
    assert task["processed"] is False
    assert [a["error"] for a in task["attempts"]] == ["RuntimeError: boom"] * 5
    assert task_locks.check_lock_exists("t1") is None


def test_task_is_given_up_after_max_attempts():
    _, batches, tasks, _, handler, processor = make_env(handler=RecordingHandler(error=RuntimeError("boom")), max_attempts=2)
    add_batch(batches, tasks, ["t1"])

    processor.process("t1", BATCH_PARAMS, ProcessingContext())
    assert tasks.get_unprocessed_task_by_id("t1") is not None

    processor.process("t1", BATCH_PARAMS, ProcessingContext())
    assert tasks.get_unprocessed_task_by_id("t1") is None

    # processed tasks are skipped
    processor.process("t1", BATCH_PARAMS, ProcessingContext())
    assert handler.processed == ["t1", "t1"]
    assert len(tasks.get_tasks_by_batch_id("b1")[0]["attempts"]) == 2


def test_task_locked_by_another_worker_is_skipped():
    _, batches, tasks, task_locks, handler, processor = make_env()
    add_batch(batches, tasks, ["t1"])
    other = task_locks.take_lock("t1")

    processor.process("t1", BATCH_PARAMS, ProcessingContext())

    assert handler.processed == []
    assert tasks.get_tasks_by_batch_id("b1")[0]["attempts"] == []
    assert task_locks.check_lock_exists("t1") == other


def test_cancelled_context_skips_task():
    _, batches, tasks, task_locks, handler, processor = make_env()
    add_batch(batches, tasks, ["t1"])

    processor.process("t1", BATCH_PARAMS, ProcessingContext(cancellation_requested=True))

    assert handler.processed == []
    assert task_locks.check_lock_exists("t1") is None


def test_unknown_task_type_raises_and_releases_lock():
    _, batches, tasks, task_locks, _, processor = make_env()
    add_batch(batches, tasks, ["t1"], task_type="unknown")

    with pytest.raises(ValueError, match="unknown"):
        processor.process("t1", BATCH_PARAMS, ProcessingContext())

    assert task_locks.check_lock_exists("t1") is None


def test_batch_processor_works_off_tasks_then_completes_batch():
    _, batches, tasks, _, handler, processor = make_env()
    add_batch(batches, tasks, ["t1", "t2"])
    batch_processor = BatchProcessor(batches, tasks, processor)
    ctx = ProcessingContext()

    assert batch_processor.process(ctx) is True
    assert batch_processor.process(ctx) is True
    assert sorted(handler.processed) == ["t1", "t2"]
    assert batches.get_batch_by_id("b1")["completedOn"] is None

    assert batch_processor.process(ctx) is False
    assert batches.get_batch_by_id("b1")["completedOn"] is not None

    # nothing left
    assert batch_processor.process(ctx) is False


def test_batch_processor_without_batches():
    _, batches, tasks, _, _, processor = make_env()
    assert BatchProcessor(batches, tasks, processor).process(ProcessingContext()) is False


def test_batch_processor_completes_empty_batch():
    _, batches, tasks, _, _, processor = make_env()
    add_batch(batches, tasks, [])

    assert BatchProcessor(batches, tasks, processor).process(ProcessingContext()) is False
    assert batches.get_uncompleted_batch() is None


def test_parse_iso_datetime():
    assert parse_iso_datetime(None) is None
    assert parse_iso_datetime("2026-10-01T10:00:00.000Z") == datetime(2026, 10, 1, 10, 0, 0)
    assert parse_iso_datetime("2026-10-01T12:00:00+02:00") == datetime(2026, 10, 1, 10, 0, 0)


class FakeExportClient:

    def __init__(self, revisions):
        self.revisions = revisions
        self.calls = []

    def get_document_export(self, base_url, api_key, document_key, after_revision, to_revision):
        self.calls.append((base_url, api_key, document_key, after_revision, to_revision))
        return {"revisions": self.revisions, "users": [], "cdnRootUrl": None}


def make_import_handler(revisions):
    adapter = InMemoryAdapter()
    settings = Settings(import_sources=[ImportSource(name="Docs", host_name=HOST, api_key="secret")])
    export_client = FakeExportClient(revisions)
    document_store = DocumentStore(adapter.Session)
    handler = DocumentImportTaskHandler(
        settings,
        export_client,
        document_store,
        DocumentLockStore(adapter.Session),
        OrderStore(adapter.Session),
        adapter,
    )
    return handler, export_client, document_store


def revision(revision_id, order, created_on="2026-10-01T10:00:00.000Z"):
    return {"_id": revision_id, "key": "doc1", "order": order, "title": f"Title {revision_id}", "slug": "doc",
            "language": "en", "createdBy": "author-1", "createdOn": created_on}


def import_task(imported_revision=None, importable_revision="r2"):
    return {"_id": "t1", "taskParams": {"key": "doc1", "importedRevision": imported_revision,
                                        "importableRevision": importable_revision}}


def test_document_import_saves_revisions_in_order():
    handler, export_client, document_store = make_import_handler([revision("r2", 20), revision("r1", 10)])

    handler.process(import_task(), BATCH_PARAMS, ProcessingContext())

    assert export_client.calls == [("https://docs.example.com", "secret", "doc1", None, "r2")]
    doc = document_store.get_document_by_key("doc1")
    assert doc["revision"] == "r2"
    # r1 drew order 1, r2 order 2
    assert doc["order"] == 2
    assert doc["origin"] == "external/docs.example.com"
    assert doc["originUrl"] == "https://docs.example.com/docs/doc1"
    assert doc["title"] == "Title r2"
    assert doc["updatedOn"] == datetime(2026, 10, 1, 10, 0, 0)
    assert handler.document_lock_store.check_lock_exists("doc1") is None


def test_document_import_update_checks_current_revision():
    handler, _, document_store = make_import_handler([revision("r3", 30)])
    document_store.save_document({"key": "doc1", "revision": "r2", "order": 5, "origin": "external/docs.example.com"})

    handler.process(import_task(imported_revision="r2", importable_revision="r3"), BATCH_PARAMS, ProcessingContext())

    assert document_store.get_document_by_key("doc1")["revision"] == "r3"


def test_document_import_rejects_changed_document():
    handler, _, document_store = make_import_handler([revision("r3", 30)])
    document_store.save_document({"key": "doc1", "revision": "local", "order": 5, "origin": "external/docs.example.com"})

    with pytest.raises(ValueError, match="expected to find revision 'r2'"):
        handler.process(import_task(imported_revision="r2", importable_revision="r3"), BATCH_PARAMS, ProcessingContext())

    assert document_store.get_document_by_key("doc1")["revision"] == "local"
    assert handler.document_lock_store.check_lock_exists("doc1") is None


def test_document_import_without_configured_source():
    handler, _, _ = make_import_handler([revision("r1", 10)])

    with pytest.raises(ValueError, match="No import source"):
        handler.process(import_task(), {"hostName": "unknown.example.com"}, ProcessingContext())


def test_document_import_stops_on_cancellation():
    handler, _, document_store = make_import_handler([revision("r1", 10)])

    with pytest.raises(CancellationRequested):
        handler.process(import_task(), BATCH_PARAMS, ProcessingContext(cancellation_requested=True))

    assert document_store.get_document_by_key("doc1") is None


def test_batch_processor_keeps_batch_open_when_offset_misses(monkeypatch):
    _, batches, tasks, _, handler, processor = make_env()
    add_batch(batches, tasks, ["t1", "t2"])
    monkeypatch.setattr(batch_store.random, "randrange", lambda total: total)

    assert BatchProcessor(batches, tasks, processor).process(ProcessingContext()) is True

    assert handler.processed == ["t1"]
    assert batches.get_batch_by_id("b1")["completedOn"] is None

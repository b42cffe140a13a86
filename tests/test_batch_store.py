from datetime import datetime

from batchkeeper.lib.database import InMemoryAdapter
from batchkeeper.models import BatchType, TaskType
from batchkeeper.services import batch_store
from batchkeeper.services.batch_store import BatchStore, TaskStore


def make_stores():
    adapter = InMemoryAdapter()
    return adapter, BatchStore(adapter.Session), TaskStore(adapter.Session)


def make_batch(batch_id="b1", host_name="docs.example.com", created_on=None):
    return {
        "_id": batch_id,
        "createdBy": "user-1",
        "createdOn": created_on or datetime(2026, 10, 1, 12, 0, 0),
        "completedOn": None,
        "batchType": BatchType.DOCUMENT_IMPORT,
        "batchParams": {"name": "Docs", "hostName": host_name, "allowUnsecure": False},
        "errors": [],
    }


def make_task(task_id, batch_id="b1", key=None):
    return {
        "_id": task_id,
        "batchId": batch_id,
        "taskType": TaskType.DOCUMENT_IMPORT,
        "processed": False,
        "attempts": [],
        "taskParams": {"key": key or task_id},
    }


def test_create_and_read_batch_with_tasks():
    _, batches, tasks = make_stores()

    created = batches.create_batch(make_batch())
    assert created["_id"] == "b1"
    assert tasks.add_tasks([make_task("t1"), make_task("t2")]) == 2

    got = batches.get_batch_by_id("b1")
    assert got == make_batch()

    rows = tasks.get_tasks_by_batch_id("b1")
    assert [t["_id"] for t in rows] == ["t1", "t2"]
    assert rows[0] == {
        "_id": "t1",
        "batchId": "b1",
        "taskType": TaskType.DOCUMENT_IMPORT,
        "processed": False,
        "attempts": [],
        "taskParams": {"key": "t1"},
    }


def test_get_batch_by_id_unknown():
    _, batches, _ = make_stores()
    assert batches.get_batch_by_id("nope") is None


def test_uncompleted_batch_lookup_by_host():
    _, batches, _ = make_stores()
    batches.create_batch(make_batch("b1", host_name="a.example.com"))

    assert batches.get_uncompleted_batch_by_type_and_host(BatchType.DOCUMENT_IMPORT, "a.example.com")["_id"] == "b1"
    assert batches.get_uncompleted_batch_by_type_and_host(BatchType.DOCUMENT_IMPORT, "b.example.com") is None

    assert batches.complete_batch("b1") is True
    assert batches.get_uncompleted_batch_by_type_and_host(BatchType.DOCUMENT_IMPORT, "a.example.com") is None


def test_complete_batch_only_once():
    _, batches, _ = make_stores()
    batches.create_batch(make_batch())
    first = datetime(2026, 10, 2, 8, 0, 0)

    assert batches.complete_batch("b1", completed_on=first) is True
    assert batches.complete_batch("b1", completed_on=datetime(2026, 10, 3)) is False
    assert batches.get_batch_by_id("b1")["completedOn"] == first


def test_get_uncompleted_batch_returns_oldest():
    _, batches, _ = make_stores()
    batches.create_batch(make_batch("newer", host_name="a", created_on=datetime(2026, 10, 5)))
    batches.create_batch(make_batch("older", host_name="b", created_on=datetime(2026, 10, 1)))

    assert batches.get_uncompleted_batch()["_id"] == "older"
    assert [b["_id"] for b in batches.get_batches_by_type(BatchType.DOCUMENT_IMPORT)] == ["newer", "older"]


def test_add_batch_error_appends():
    _, batches, _ = make_stores()
    batches.create_batch(make_batch())
    batches.add_batch_error("b1", "first")
    batches.add_batch_error("b1", "second")
    assert batches.get_batch_by_id("b1")["errors"] == ["first", "second"]


def test_count_tasks_grouped_by_processed_status():
    _, batches, tasks = make_stores()
    batches.create_batch(make_batch())
    tasks.add_tasks([make_task("t1"), make_task("t2"), make_task("t3")])
    tasks.record_attempt("t1", started_on=datetime(2026, 10, 1), mark_processed=True)

    groups = tasks.count_tasks_with_batch_id_grouped_by_processed_status("b1")
    assert sorted(groups, key=lambda g: g["processed"]) == [
        {"processed": False, "count": 2},
        {"processed": True, "count": 1},
    ]
    assert tasks.count_tasks_with_batch_id_grouped_by_processed_status("other") == []


def test_record_attempt_accumulates_failures():
    _, batches, tasks = make_stores()
    batches.create_batch(make_batch())
    tasks.add_tasks([make_task("t1")])

    tasks.record_attempt("t1", started_on=datetime(2026, 10, 1, 0, 0), error="boom")
    tasks.record_attempt("t1", started_on=datetime(2026, 10, 1, 0, 5), error="boom again")
    task = tasks.get_unprocessed_task_by_id("t1")
    assert task is not None
    assert [a["error"] for a in task["attempts"]] == ["boom", "boom again"]

    tasks.record_attempt("t1", started_on=datetime(2026, 10, 1, 0, 10), completed_on=datetime(2026, 10, 1, 0, 11), mark_processed=True)
    assert tasks.get_unprocessed_task_by_id("t1") is None
    done = tasks.get_tasks_by_batch_id("b1")[0]
    assert done["processed"] is True
    assert len(done["attempts"]) == 3
    assert done["attempts"][-1] == {
        "startedOn": datetime(2026, 10, 1, 0, 10),
        "completedOn": datetime(2026, 10, 1, 0, 11),
        "error": None,
    }


def test_random_unprocessed_task():
    _, batches, tasks = make_stores()
    batches.create_batch(make_batch())
    tasks.add_tasks([make_task("t1"), make_task("t2")])
    tasks.record_attempt("t1", started_on=datetime(2026, 10, 1), mark_processed=True)

    for _ in range(5):
        assert tasks.get_random_unprocessed_task_with_batch_id("b1")["_id"] == "t2"

    tasks.record_attempt("t2", started_on=datetime(2026, 10, 1), mark_processed=True)
    assert tasks.get_random_unprocessed_task_with_batch_id("b1") is None


def test_random_unprocessed_task_when_tasks_finish_after_count(monkeypatch):
    _, batches, tasks = make_stores()
    batches.create_batch(make_batch())
    tasks.add_tasks([make_task("t1"), make_task("t2"), make_task("t3")])
    tasks.record_attempt("t1", started_on=datetime(2026, 10, 1), mark_processed=True)

    # an offset past the last open task, as when another worker completes one
    # between counting and selecting
    monkeypatch.setattr(batch_store.random, "randrange", lambda total: total)

    assert tasks.get_random_unprocessed_task_with_batch_id("b1")["_id"] == "t2"

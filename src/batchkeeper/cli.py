import argparse
import logging
from types import SimpleNamespace
from typing import Optional

from batchkeeper.lib.config import Settings, find_config_path, load_config, normalize_config
from batchkeeper.lib.database import Database
from batchkeeper.lib.db_lock import (
    BatchLockStore,
    DocumentLockStore,
    MaintenanceLockStore,
    TaskLockStore,
    cleanup_expired_locks,
)
from batchkeeper.lib.export_client import ExportApiClient
from batchkeeper.lib.order import OrderStore
from batchkeeper.services.batch_store import BatchStore, TaskStore
from batchkeeper.services.document_store import DocumentStore
from batchkeeper.services.errors import ServiceError
from batchkeeper.services.import_service import ImportService
from batchkeeper.services.maintenance import MaintenanceCoordinator
from batchkeeper.services.task_processor import (
    BatchProcessor,
    DocumentImportTaskHandler,
    ProcessingContext,
    TaskProcessor,
    build_handlers,
)

CLI_USER = {"_id": "cli"}


def build_services(settings: Settings, database: Optional[Database] = None, export_client=None):
    """Wire stores and services for one database."""
    db = database or Database(settings.database)
    expiration = settings.lock_expiration
    export_client = export_client or ExportApiClient(settings.database_schema_hash)

    batch_store = BatchStore(db.Session)
    task_store = TaskStore(db.Session)
    document_store = DocumentStore(db.Session)
    order_store = OrderStore(db.Session)
    task_lock_store = TaskLockStore(db.Session, expiration_seconds=expiration["task"])

    document_import_handler = DocumentImportTaskHandler(
        settings,
        export_client,
        document_store,
        DocumentLockStore(db.Session, expiration_seconds=expiration["document"]),
        order_store,
        db,
    )
    task_processor = TaskProcessor(
        task_store, task_lock_store, build_handlers(document_import_handler), settings.task_max_attempts
    )

    return SimpleNamespace(
        database=db,
        order_store=order_store,
        maintenance=MaintenanceCoordinator(
            db,
            MaintenanceLockStore(db.Session, expiration_seconds=expiration["maintenance"]),
            settings.maintenance_retry_interval,
        ),
        import_service=ImportService(
            db,
            batch_store,
            task_store,
            BatchLockStore(db.Session, expiration_seconds=expiration["batch"]),
            document_store,
            export_client,
        ),
        batch_processor=BatchProcessor(batch_store, task_store, task_processor),
    )


def _format_progress(progress) -> str:
    return f"{progress * 100:.0f}%"


def _source_or_fail(settings: Settings, name: str):
    source = settings.get_import_source(name)
    if source is None:
        print(f"Unknown import source: {name}")
    return source


def maintenance(args, settings, services):
    services.maintenance.run_maintenance()
    print("Maintenance complete")
    return 0


def importable(args, settings, services):
    source = _source_or_fail(settings, args.source)
    if source is None:
        return 1
    docs = services.import_service.get_all_importable_documents_metadata(source)
    if not docs:
        print("No importable documents")
        return 0
    for doc in docs:
        print(f"{doc['importType']:<9} {doc['key']}  {doc.get('title') or ''} (revision {doc['importableRevision']})")
    return 0


def create_batch(args, settings, services):
    source = _source_or_fail(settings, args.source)
    if source is None:
        return 1
    docs = services.import_service.get_all_importable_documents_metadata(source)
    if args.keys:
        offered = {d["key"] for d in docs}
        unknown = [k for k in args.keys if k not in offered]
        if unknown:
            print(f"Not offered by {source.name}: {', '.join(unknown)}")
            return 1
        wanted = set(args.keys)
        docs = [d for d in docs if d["key"] in wanted]
    batch = services.import_service.create_import_batch(source, docs, CLI_USER)
    print(f"Created batch {batch['_id']} with {len(docs)} task(s)")
    return 0


def batches(args, settings, services):
    rows = services.import_service.get_import_batches()
    if not rows:
        print("No batches")
        return 0
    for batch in rows:
        state = "completed" if batch["completedOn"] else "running"
        print(f"{batch['_id']}  {batch['batchParams'].get('hostName')}  {state}  {_format_progress(batch['progress'])}")
    return 0


def batch(args, settings, services):
    details = services.import_service.get_import_batch_details(args.batch_id)
    print(f"Batch {details['_id']} ({_format_progress(details['progress'])})")
    for err in details["errors"]:
        print(f"  error: {err}")
    for task in details["tasks"]:
        params = task["taskParams"]
        mark = "x" if task["processed"] else " "
        print(f"  [{mark}] {params.get('importType')} {params.get('key')} attempts={len(task['attempts'])}")
    return 0


def process(args, settings, services):
    ctx = ProcessingContext()
    steps = 0
    try:
        while args.max_steps is None or steps < args.max_steps:
            steps += 1
            if not services.batch_processor.process(ctx):
                break
    except KeyboardInterrupt:
        ctx.cancellation_requested = True
        print("Interrupted")
    print(f"Processed {steps} step(s)")
    return 0


def cleanup_locks(args, settings, services):
    count = cleanup_expired_locks(services.database.Session)
    print(f"Removed {count} expired lock(s)")
    return 0


def next_order(args, settings, services):
    print(services.order_store.get_next_order())
    return 0


def main(argv=None, services=None):
    parser = argparse.ArgumentParser(prog="batchkeeper")
    parser.add_argument("--config", help="Path to JSON config file (default: config.json)")
    parser.add_argument("--db", help="Override config: SQLAlchemy DB URL or sqlite file path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    sub = parser.add_subparsers(dest="cmd")

    p_maint = sub.add_parser("maintenance", help="Run migrations and database checks (waits for other instances)")
    p_maint.set_defaults(func=maintenance)

    p_importable = sub.add_parser("importable", help="List documents an import source offers")
    p_importable.add_argument("source", help="Import source name or host name")
    p_importable.set_defaults(func=importable)

    p_create = sub.add_parser("create-batch", help="Create an import batch")
    p_create.add_argument("source", help="Import source name or host name")
    p_create.add_argument("keys", nargs="*", help="Document keys to import (default: all importable)")
    p_create.set_defaults(func=create_batch)

    p_batches = sub.add_parser("batches", help="List import batches with progress")
    p_batches.set_defaults(func=batches)

    p_batch = sub.add_parser("batch", help="Show an import batch and its tasks")
    p_batch.add_argument("batch_id")
    p_batch.set_defaults(func=batch)

    p_process = sub.add_parser("process", help="Work off uncompleted batches")
    p_process.add_argument("--max-steps", type=int, help="Stop after this many steps")
    p_process.set_defaults(func=process)

    p_cleanup = sub.add_parser("cleanup-locks", help="Delete expired locks")
    p_cleanup.set_defaults(func=cleanup_locks)

    p_order = sub.add_parser("next-order", help="Draw the next document order value")
    p_order.set_defaults(func=next_order)

    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = normalize_config(load_config(find_config_path(args.config)))
    if args.db:
        settings.database = args.db
    services = services or build_services(settings)

    try:
        return args.func(args, settings, services)
    except ServiceError as exc:
        print(f"ERROR: {exc.message}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

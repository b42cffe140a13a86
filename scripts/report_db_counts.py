#!/usr/bin/env python
"""Report counts from the batch, task and lock tables.

This script reads `config.json` (preferring CWD) to find the `database` DSN
and supports SQLite and SQLAlchemy-compatible DSNs (including MySQL via
`mysql+pymysql://...`).
"""
from sqlalchemy import text

from batchkeeper.lib.config import find_config_path, load_config, normalize_config
from batchkeeper.lib.database import get_engine

LOCK_TABLES = ("maintenance_locks", "batch_locks", "task_locks", "document_locks")


def main():
    settings = normalize_config(load_config(find_config_path()))
    engine = get_engine(settings.database)
    with engine.connect() as conn:
        batches = conn.execute(text("SELECT COUNT(*) FROM batches")).scalar()
        open_batches = conn.execute(text("SELECT COUNT(*) FROM batches WHERE completed_on IS NULL")).scalar()
        tasks = conn.execute(text("SELECT COUNT(*) FROM tasks")).scalar()
        open_tasks = conn.execute(text("SELECT COUNT(*) FROM tasks WHERE processed = :f"), {"f": False}).scalar()
        failed = conn.execute(text("SELECT COUNT(*) FROM task_attempts WHERE error IS NOT NULL")).scalar()
        locks = {t: conn.execute(text(f"SELECT COUNT(*) FROM {t}")).scalar() for t in LOCK_TABLES}

    print(f"DB: {engine.url.render_as_string(hide_password=True)}")
    print(f"Batches: {batches} ({open_batches} uncompleted)")
    print(f"Tasks: {tasks} ({open_tasks} unprocessed, {failed} failed attempts)")
    for table, count in locks.items():
        print(f"{table}: {count}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Startup gate that runs migrations and checks on one instance at a time.

Every instance calls `run_maintenance` before serving. The first one to
take the maintenance lock migrates and checks the database; the others wait
and retry until the lock is gone, then take it themselves and find nothing
left to migrate. Failures are fatal and propagate after the lock has been
released, so a crashed instance never blocks its peers.
"""
import logging
import time

from batchkeeper.lib.db_lock import LockAlreadyTakenError

logger = logging.getLogger(__name__)

MAINTENANCE_LOCK_KEY = "maintenance"


class MaintenanceCoordinator:

    MAINTENANCE_LOCK_INTERVAL_SECONDS = 10

    def __init__(self, database, lock_store, retry_interval_seconds=None):
        """
        Args:
            database: object with `run_migrations()` and `check_db()`
            lock_store: maintenance LockStore
            retry_interval_seconds: wait between lock attempts; the class
                default when None
        """
        self.database = database
        self.lock_store = lock_store
        self.retry_interval_seconds = retry_interval_seconds

    @property
    def _interval(self):
        if self.retry_interval_seconds is None:
            return self.MAINTENANCE_LOCK_INTERVAL_SECONDS
        return self.retry_interval_seconds

    def run_maintenance(self) -> None:
        self.lock_store.ensure_table()
        attempt = 0
        while True:
            attempt += 1
            try:
                lock = self.lock_store.take_lock(MAINTENANCE_LOCK_KEY)
            except LockAlreadyTakenError:
                logger.info(
                    "Maintenance lock is taken by another instance, retrying in %s seconds (attempt %d)",
                    self._interval,
                    attempt,
                )
                time.sleep(self._interval)
                continue

            try:
                logger.info("Starting database migration")
                self.database.run_migrations()
                logger.info("Starting database check")
                self.database.check_db()
                logger.info("Finished maintenance")
            except BaseException:
                # a failing release must not replace the maintenance error
                try:
                    self.lock_store.release_lock(lock)
                except Exception:
                    logger.exception("Failed to release the maintenance lock after failed maintenance")
                raise

            self.lock_store.release_lock(lock)
            return

"""
Periodic background processing of recurring tasks.

RecurringTaskJob runs a materialization pass every interval on a daemon
thread. Its stop event doubles as the batch cancellation signal, so a
shutdown lets the current definition finish and skips the rest.
"""

import logging
import threading
from datetime import datetime
from typing import Optional

from database import Database
from time_utils import utc_now
from recurrence.errors import InfrastructureError
from recurrence.materializer import BatchOptions, BatchResult, OccurrenceMaterializer
from recurrence.store import SqlDefinitionStore, SqlTaskCreator

logger = logging.getLogger(__name__)


class RecurringTaskJob:
    def __init__(
        self,
        database: Database,
        interval_seconds: int = 300,
        max_tasks: int = 1000,
        max_occurrences_per_pass: int = 100,
    ):
        self.database = database
        self.interval_seconds = interval_seconds
        self.max_tasks = max_tasks
        self.max_occurrences_per_pass = max_occurrences_per_pass
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="recurring-task-job", daemon=True)
        self._thread.start()
        logger.info(f"Recurring task job started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("⚠️  Recurring task job did not stop within timeout")
        self._thread = None
        logger.info("Recurring task job stopped")

    def run_once(self, now: Optional[datetime] = None) -> Optional[BatchResult]:
        """
        Run a single pass. Returns None when the pass was aborted because the
        database was unreachable; the next pass retries.
        """
        now = now or utc_now()
        db = self.database.session()
        try:
            store = SqlDefinitionStore(db)
            store.resume_expired_pauses(now)
            materializer = OccurrenceMaterializer(store, SqlTaskCreator(db))
            options = BatchOptions(
                max_tasks=self.max_tasks,
                max_occurrences_per_definition=self.max_occurrences_per_pass,
            )
            return materializer.process_all(now, options, should_stop=self._stop)
        except InfrastructureError as e:
            logger.error(f"Recurring task pass aborted, will retry next run: {e}")
            return None
        finally:
            db.close()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Unexpected error in recurring task job")
            self._stop.wait(self.interval_seconds)

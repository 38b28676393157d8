"""APScheduler-based periodic full and changed-users synchronization."""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Any, Callable, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.events import EVENT_JOB_ERROR

from rest_user_sync.models import SyncResult
from rest_user_sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

FULL_SYNC_JOB = 'full_sync'
CHANGED_SYNC_JOB = 'changed_sync'


def _on_job_error(event) -> None:
    """Log job execution errors."""
    logger.error(f"Job {event.job_id} raised an exception: {event.exception}")


class SyncScheduler:
    """
    Runs the orchestrator periodically.

    Runs are serialized by a lock. ``last_sync`` advances to the start time
    of each run that fetched users; the changed-users job falls back to a
    full sync until such a run has completed.
    """

    def __init__(self, orchestrator: SyncOrchestrator, config: Dict[str, Any],
                 on_result: Optional[Callable[[str, SyncResult, float], None]] = None):
        """
        Args:
            orchestrator: Sync engine to drive
            config: ``scheduler`` configuration section
            on_result: Called with (mode, result, runtime seconds) after each run
        """
        self.orchestrator = orchestrator
        self.full_sync_period = int(config.get('full_sync_period', 0) or 0)
        self.changed_sync_period = int(config.get('changed_sync_period', 0) or 0)
        self.misfire_grace_time = int(config.get('misfire_grace_time', 60))
        self.on_result = on_result
        self.last_sync = None
        self._lock = threading.Lock()

    def run_full(self) -> SyncResult:
        with self._lock:
            return self._run('full', self.orchestrator.sync_full)

    def run_changed(self) -> SyncResult:
        with self._lock:
            if self.last_sync is None:
                logger.info("No previous sync recorded, running a full sync instead")
                return self._run('full', self.orchestrator.sync_full)
            since = self.last_sync
            return self._run('updated', lambda: self.orchestrator.sync_since(since))

    def _run(self, mode: str, sync: Callable[[], SyncResult]) -> SyncResult:
        started = datetime.now(timezone.utc)
        logger.info(f"Starting {mode} sync")

        result = sync()

        runtime = (datetime.now(timezone.utc) - started).total_seconds()
        # A by-passed run or a failed fetch must not move the changed-users window
        if self.orchestrator.last_fetch_count:
            self.last_sync = started
        else:
            logger.warning(f"{mode.capitalize()} sync fetched no users, last sync time stays at {self.last_sync}")
        logger.info(f"{mode.capitalize()} sync completed in {runtime:.2f}s: {result}")

        if self.on_result:
            self.on_result(mode, result, runtime)
        return result

    def build(self) -> BlockingScheduler:
        """Create the scheduler with one interval job per enabled period."""
        scheduler = BlockingScheduler()
        scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)

        if self.full_sync_period > 0:
            scheduler.add_job(
                self.run_full,
                'interval',
                seconds=self.full_sync_period,
                id=FULL_SYNC_JOB,
                max_instances=1,
                misfire_grace_time=self.misfire_grace_time,
                next_run_time=datetime.now(timezone.utc),
            )

        if self.changed_sync_period > 0:
            scheduler.add_job(
                self.run_changed,
                'interval',
                seconds=self.changed_sync_period,
                id=CHANGED_SYNC_JOB,
                max_instances=1,
                misfire_grace_time=self.misfire_grace_time,
            )

        return scheduler

    def start(self):
        """Build the scheduler and block until interrupted."""
        scheduler = self.build()
        jobs = [job.id for job in scheduler.get_jobs()]
        if not jobs:
            logger.warning("No sync job scheduled: both periods are disabled")
            return

        logger.info(f"Starting scheduler with jobs: {jobs}")
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Scheduler stopped")

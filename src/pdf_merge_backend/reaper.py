"""
Time-based reclamation of batch output files.

Two independent sweeps run at a fixed interval and once at startup:

- the expiry sweep deletes the files of completed/partial jobs whose
  retention has passed and marks those jobs expired (records are kept);
- the orphan sweep removes job directories with no matching job record.

At startup the Reaper also requeues jobs left in ``processing`` by a worker
that died mid-job.
"""

from __future__ import annotations

import logging
import shutil
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .database import JobStore
from .models import EXPIRABLE_JOB_STATUSES, JobStatus
from .utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL = 3600.0


class Reaper:
    def __init__(
        self,
        store: JobStore,
        storage_root: Path,
        interval: float = DEFAULT_CLEANUP_INTERVAL,
        stale_after: timedelta = timedelta(0),
    ) -> None:
        self._store = store
        self.storage_root = Path(storage_root)
        self.interval = interval
        self.stale_after = stale_after
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def expire_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """
        Delete the files of jobs past their retention and mark them expired.

        Each job, and each file within a job, is handled independently: a
        failure is logged and the sweep moves on.

        Returns:
            IDs of the jobs moved to expired
        """
        now = now or utc_now()
        expired_jobs = self._store.list_jobs(
            statuses=EXPIRABLE_JOB_STATUSES, expires_before=now, include_groups=True
        )
        if not expired_jobs:
            return []

        logger.info(f"[BatchCleanup] Found {len(expired_jobs)} expired job(s) to clean up")

        expired: List[str] = []
        for job in expired_jobs:
            try:
                for group in job["groups"]:
                    self._delete_file(group["file_path"])

                self._remove_dir_if_empty(self.storage_root / job["id"])

                if self._store.transition_job(job["id"], EXPIRABLE_JOB_STATUSES, JobStatus.EXPIRED):
                    self._store.clear_group_files(job["id"])
                    expired.append(job["id"])
                    logger.info(f"[BatchCleanup] Cleaned up job {job['id']}")
            except Exception:
                logger.exception(f"[BatchCleanup] Error cleaning up job {job['id']}")

        return expired

    def remove_orphans(self) -> List[Path]:
        """
        Remove job directories that have no matching job record.

        Returns:
            The directories that were removed
        """
        if not self.storage_root.exists():
            return []

        removed: List[Path] = []
        for entry in sorted(self.storage_root.iterdir()):
            try:
                if not entry.is_dir() or self._store.job_exists(entry.name):
                    continue
                logger.info(f"[BatchCleanup] Removing orphaned directory: {entry}")
                shutil.rmtree(entry)
                removed.append(entry)
            except Exception:
                logger.exception(f"[BatchCleanup] Error removing orphaned directory {entry}")

        return removed

    def recover_stale_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """
        Requeue jobs stuck in processing since before the stale threshold.

        Must only run while no worker in this process is processing a job
        (i.e. at startup). Group files written by the interrupted run are
        deleted, and every group restarts from scratch.

        Returns:
            IDs of the requeued jobs
        """
        now = now or utc_now()
        stale_jobs = self._store.list_jobs(
            statuses=[JobStatus.PROCESSING],
            started_before=now - self.stale_after,
            include_groups=True,
        )

        recovered: List[str] = []
        for job in stale_jobs:
            try:
                for group in job["groups"]:
                    self._delete_file(group["file_path"])
                self._store.reset_job(job["id"])
                recovered.append(job["id"])
                logger.warning(f"[BatchCleanup] Requeued job {job['id']} abandoned in processing")
            except Exception:
                logger.exception(f"[BatchCleanup] Error requeueing job {job['id']}")

        return recovered

    def run_once(self) -> None:
        """Run both sweeps; a failing sweep never prevents the other."""
        try:
            self.expire_jobs()
        except Exception:
            logger.exception("[BatchCleanup] Error during cleanup")

        try:
            self.remove_orphans()
        except Exception:
            logger.exception("[BatchCleanup] Error cleaning orphaned files")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("[BatchCleanup] Cleanup job already running")
            return

        logger.info(f"[BatchCleanup] Starting cleanup job (interval: {self.interval:g}s)")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="batch-cleanup", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("[BatchCleanup] Stopped cleanup job")

    def _loop(self) -> None:
        self.run_once()
        while not self._stop_event.wait(self.interval):
            self.run_once()

    @staticmethod
    def _delete_file(file_path: Optional[Path]) -> None:
        if file_path is None:
            return
        try:
            if file_path.exists():
                file_path.unlink()
                logger.info(f"[BatchCleanup] Deleted file: {file_path}")
        except OSError as exc:
            logger.error(f"[BatchCleanup] Could not delete {file_path}: {exc}")

    @staticmethod
    def _remove_dir_if_empty(directory: Path) -> None:
        try:
            if directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()
                logger.info(f"[BatchCleanup] Removed directory: {directory}")
        except OSError as exc:
            logger.error(f"[BatchCleanup] Could not remove {directory}: {exc}")

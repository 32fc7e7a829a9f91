"""
Background worker that processes queued batch jobs one at a time.

The worker polls the store at a fixed interval (and immediately on start or
when woken by a new submission), claims the oldest queued job and hands it to
the orchestrator. A single-slot semaphore guarantees that only one claim-and-
process cycle runs at a time in this process.

There is no lease or heartbeat: if the process dies mid-job, the job stays in
``processing`` until the Reaper's startup recovery requeues it.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from .database import JobStore
from .orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


class BatchWorker:
    def __init__(
        self,
        store: JobStore,
        orchestrator: JobOrchestrator,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self.poll_interval = poll_interval
        self._slot = threading.Semaphore(1)
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._processing = False

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Optional[str]:
        """
        Claim and process the oldest queued job, if any.

        Returns immediately when another cycle holds the slot.

        Returns:
            The processed job ID, or None if nothing was processed
        """
        if not self._slot.acquire(blocking=False):
            logger.debug("[BatchWorker] Previous cycle still running, skipping")
            return None

        self._processing = True
        try:
            job_id = self._store.next_queued_job_id()
            if not job_id:
                return None

            logger.info(f"[BatchWorker] Processing job {job_id}")
            started = time.monotonic()
            self._orchestrator.process_job(job_id)
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"[BatchWorker] Completed job {job_id} in {duration_ms}ms")
            return job_id
        except Exception:
            logger.exception("[BatchWorker] Error processing job")
            return None
        finally:
            self._processing = False
            self._slot.release()

    def wake(self) -> None:
        """Ask the polling thread to check the queue now."""
        self._wake_event.set()

    def start(self) -> None:
        if self.is_running:
            logger.warning("[BatchWorker] Worker already running")
            return

        logger.info(f"[BatchWorker] Starting batch worker (poll interval {self.poll_interval:g}s)")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="batch-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._wake_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("[BatchWorker] Stopped batch worker")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._wake_event.wait(self.poll_interval)
            self._wake_event.clear()

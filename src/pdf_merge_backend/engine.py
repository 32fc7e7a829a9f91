"""
Process-wide wiring of the batch engine.

Every component is constructed once from the settings and receives the same
JobStore handle; nothing is created lazily on first use.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from .configuration import Settings
from .database import JobStore
from .fetcher import Fetcher
from .group_processor import GroupProcessor
from .job_manager import JobManager
from .key_manager import KeyManager
from .notifier import WebhookNotifier
from .orchestrator import JobOrchestrator
from .reaper import Reaper
from .telemetry import TelemetrySink
from .utils import ensure_directory
from .worker import BatchWorker

logger = logging.getLogger(__name__)


@dataclass
class BatchEngine:
    settings: Settings
    store: JobStore
    key_manager: KeyManager
    telemetry: TelemetrySink
    fetcher: Fetcher
    notifier: WebhookNotifier
    group_processor: GroupProcessor
    orchestrator: JobOrchestrator
    worker: BatchWorker
    reaper: Reaper
    job_manager: JobManager

    @classmethod
    def build(cls, settings: Settings) -> "BatchEngine":
        ensure_directory(settings.batch_storage_path)
        store = JobStore(settings.database_path)
        key_manager = KeyManager(str(settings.database_path))
        telemetry = TelemetrySink(store)
        fetcher = Fetcher(
            timeout=settings.request_timeout,
            retries=settings.fetch_retries,
            retry_delay=settings.fetch_retry_delay,
            verify_tls=settings.tls_verify,
            telemetry=telemetry,
        )
        notifier = WebhookNotifier(timeout=settings.webhook_timeout)
        group_processor = GroupProcessor(store, fetcher, concurrency=settings.download_concurrency)
        orchestrator = JobOrchestrator(
            store=store,
            group_processor=group_processor,
            notifier=notifier,
            storage_root=settings.batch_storage_path,
            file_ttl=timedelta(seconds=settings.batch_file_ttl),
            base_url=settings.base_url,
        )
        worker = BatchWorker(store, orchestrator, poll_interval=settings.worker_poll_interval)
        reaper = Reaper(
            store,
            settings.batch_storage_path,
            interval=settings.batch_cleanup_interval,
            stale_after=timedelta(seconds=settings.stale_processing_after),
        )
        job_manager = JobManager(
            store,
            fetcher,
            base_url=settings.base_url,
            concurrency=settings.download_concurrency,
        )
        return cls(
            settings=settings,
            store=store,
            key_manager=key_manager,
            telemetry=telemetry,
            fetcher=fetcher,
            notifier=notifier,
            group_processor=group_processor,
            orchestrator=orchestrator,
            worker=worker,
            reaper=reaper,
            job_manager=job_manager,
        )

    def start(self) -> None:
        """Recover abandoned jobs, then start the reaper and worker threads."""
        if not self.settings.worker_enabled:
            logger.info("Batch worker disabled by configuration")
            return
        recovered = self.reaper.recover_stale_jobs()
        if recovered:
            logger.warning(f"Requeued {len(recovered)} job(s) left in processing")
        self.reaper.start()
        self.worker.start()

    def stop(self) -> None:
        self.worker.stop()
        self.reaper.stop()
        self.notifier.shutdown(wait=True)
        self.telemetry.shutdown(wait=True)

"""
Batch job state machine.

A claimed job moves queued -> processing, runs its groups one at a time
through the GroupProcessor, and ends in completed, partial or failed. The
terminal status is computed from the in-memory group results, so counter
bookkeeping failures cannot skip it. The webhook is triggered exactly once per
processed job.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from .database import JobStore
from .group_processor import GroupProcessor, GroupResult
from .models import GroupStatus, JobStatus
from .notifier import WebhookNotifier, build_webhook_payload
from .utils import ensure_directory, utc_now

logger = logging.getLogger(__name__)


def classify_job_status(succeeded: int, failed: int) -> JobStatus:
    """
    Derive the terminal status of a job from its group outcomes.

    Args:
        succeeded: Number of completed groups
        failed: Number of failed groups

    Returns:
        COMPLETED when nothing failed, FAILED when nothing succeeded,
        PARTIAL otherwise
    """
    if failed == 0:
        return JobStatus.COMPLETED
    if succeeded == 0:
        return JobStatus.FAILED
    return JobStatus.PARTIAL


class JobOrchestrator:
    """
    Drives a single job from queued to its terminal status.

    Attributes:
        storage_root: Directory holding one sub-directory per job
        file_ttl: Retention after completion before the Reaper reclaims files
        base_url: Public URL used for download links in the webhook
    """

    def __init__(
        self,
        store: JobStore,
        group_processor: GroupProcessor,
        notifier: WebhookNotifier,
        storage_root: Path,
        file_ttl: timedelta,
        base_url: str,
    ) -> None:
        self._store = store
        self._group_processor = group_processor
        self._notifier = notifier
        self.storage_root = Path(storage_root)
        self.file_ttl = file_ttl
        self.base_url = base_url

    def job_dir(self, job_id: str) -> Path:
        return self.storage_root / job_id

    def process_job(self, job_id: str) -> Optional[JobStatus]:
        """
        Process every group of a queued job and publish the outcome.

        Args:
            job_id: The job to process

        Returns:
            The terminal status, or None if the job was missing or already
            claimed elsewhere
        """
        claimed = self._store.transition_job(
            job_id, [JobStatus.QUEUED], JobStatus.PROCESSING, started_at=utc_now()
        )
        if not claimed:
            logger.warning(f"[Orchestrator] Job {job_id} is missing or no longer queued")
            return None

        job = self._store.get_job(job_id)
        if job is None:
            logger.error(f"[Orchestrator] Job {job_id} not found after claim")
            return None

        metadata = job["metadata"]
        job_dir = ensure_directory(self.job_dir(job_id))
        logger.info(f"[Orchestrator] Job {job_id} processing {len(job['groups'])} group(s)")

        results: List[GroupResult] = []
        for group in job["groups"]:
            result = self._run_group(group, job_dir, metadata)
            results.append(result)
            self._count(job_id, result)

        succeeded = sum(1 for result in results if result.success)
        status = classify_job_status(succeeded, len(results) - succeeded)

        completed_at = utc_now()
        expires_at = completed_at + self.file_ttl
        try:
            self._store.transition_job(
                job_id,
                [JobStatus.PROCESSING],
                status,
                completed_at=completed_at,
                expires_at=expires_at,
            )
        except Exception:
            logger.exception(f"[Orchestrator] Failed to store final status {status.value} for job {job_id}")

        logger.info(
            f"[Orchestrator] Job {job_id} finished as {status.value} "
            f"({succeeded}/{len(results)} group(s) succeeded)"
        )

        payload = build_webhook_payload(
            job_id,
            status,
            results,
            self.base_url,
            expires_at=expires_at,
            completed_at=completed_at,
        )
        self._notifier.notify(job["webhook_url"], payload)
        return status

    def _run_group(self, group, job_dir: Path, metadata) -> GroupResult:
        try:
            return self._group_processor.process(group, job_dir, metadata)
        except Exception as exc:
            error_message = str(exc) or "Processing failed"
            logger.exception(f"[Orchestrator] Group {group['name']} raised while processing")
            try:
                self._store.transition_group(
                    group["id"],
                    [GroupStatus.PENDING, GroupStatus.PROCESSING],
                    GroupStatus.FAILED,
                    error_message=error_message,
                    completed_at=utc_now(),
                )
            except Exception:
                logger.exception(f"[Orchestrator] Could not record failure of group {group['name']}")
            return GroupResult(group_id=group["id"], name=group["name"], success=False, error=error_message)

    def _count(self, job_id: str, result: GroupResult) -> None:
        counter = "completed" if result.success else "failed"
        try:
            if not self._store.increment_job_counter(job_id, counter):
                logger.warning(f"[Orchestrator] Counter {counter} of job {job_id} not incremented")
        except Exception:
            logger.exception(f"[Orchestrator] Failed to update progress of job {job_id}")

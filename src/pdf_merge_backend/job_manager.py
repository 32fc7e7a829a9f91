"""
Caller-facing batch operations.

This module is the boundary between the HTTP routes and the batch engine:
- Job submission (creates the job and its groups in the queued state)
- Status queries with per-group download links and errors
- Download resolution, distinguishing expired jobs from unknown ones
- Job deletion, which is refused once any group has been processed
- Synchronous merging of a single source list

The JobManager never processes jobs itself; the BatchWorker picks up what is
queued here.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .database import JobStore
from .fetcher import Fetcher
from .group_processor import SourceOutcome, fetch_in_order
from .models import (
    BatchStatusResponse,
    BatchSubmitRequest,
    BatchSubmitResponse,
    GroupStatus,
    GroupStatusResponse,
    JobProgress,
    JobStatus,
    MergeRequest,
    SourceFailure,
)
from .notifier import download_url
from .pdf_merger import PdfMergeError, PdfMerger
from .utils import utc_now


class JobExpiredError(RuntimeError):
    """Raised when a job's files have been (or are about to be) reclaimed."""


class SourceDownloadError(RuntimeError):
    """Raised by the synchronous merge when any source cannot be used."""

    def __init__(self, failures: List[SourceFailure]) -> None:
        super().__init__(f"{len(failures)} source(s) could not be merged")
        self.failures = failures


class JobManager:
    """
    Central coordinator for the batch API.

    Attributes:
        base_url: Public base URL used to build download links
        concurrency: Download concurrency for synchronous merges
    """

    def __init__(
        self,
        store: JobStore,
        fetcher: Fetcher,
        base_url: str,
        concurrency: int = 1,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self.base_url = base_url
        self.concurrency = concurrency

    def submit(self, owner_id: str, request: BatchSubmitRequest) -> BatchSubmitResponse:
        """
        Create a queued job for an app.

        Args:
            owner_id: The authenticated app ID
            request: The validated submission

        Returns:
            BatchSubmitResponse with the new job ID and group count
        """
        metadata = request.metadata.model_dump(exclude_none=True) if request.metadata else None
        job = self._store.create_job(
            owner_id=owner_id,
            webhook_url=request.webhook_url,
            groups=[(group.name, group.sources) for group in request.groups],
            metadata=metadata or None,
        )
        return BatchSubmitResponse(
            job_id=job["id"],
            status=job["status"],
            group_count=len(job["groups"]),
            created_at=job["created_at"],
        )

    def get_status(self, job_id: str, owner_id: str) -> Optional[BatchStatusResponse]:
        """
        Get the current state of a job owned by an app.

        Returns:
            BatchStatusResponse if found, None otherwise
        """
        job = self._store.get_job(job_id, owner_id=owner_id)
        if job is None:
            return None

        groups = []
        for group in job["groups"]:
            response = GroupStatusResponse(
                name=group["name"],
                status=group["status"],
                failed_sources=[SourceFailure(**failure) for failure in group["source_errors"]],
            )
            if group["status"] == GroupStatus.COMPLETED and group["file_path"]:
                response.download_url = download_url(self.base_url, job_id, group["name"])
            if group["status"] == GroupStatus.FAILED and group["error_message"]:
                response.error = group["error_message"]
            groups.append(response)

        return BatchStatusResponse(
            id=job["id"],
            status=job["status"],
            progress=JobProgress(
                total=job["total_groups"],
                completed=job["completed"],
                failed=job["failed"],
            ),
            groups=groups,
            created_at=job["created_at"],
            started_at=job["started_at"],
            completed_at=job["completed_at"],
            expires_at=job["expires_at"],
        )

    def resolve_download(
        self,
        job_id: str,
        group_name: str,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Path]:
        """
        Locate the output file of a completed group.

        Args:
            job_id: The job ID
            group_name: The group whose output is requested
            owner_id: The authenticated app ID
            now: Reference time for the expiry check

        Returns:
            Path to the merged PDF, or None if the job, group or file is not
            available

        Raises:
            JobExpiredError: If the job has expired or is past its retention
        """
        job = self._store.get_job(job_id, owner_id=owner_id, include_groups=False)
        if job is None:
            return None

        now = now or utc_now()
        if job["status"] == JobStatus.EXPIRED or (job["expires_at"] and job["expires_at"] <= now):
            raise JobExpiredError("This batch has expired and the file is no longer available")

        group = self._store.get_group(job_id, group_name)
        if group is None or group["status"] != GroupStatus.COMPLETED or not group["file_path"]:
            return None

        file_path: Path = group["file_path"]
        if not file_path.is_file():
            return None
        return file_path

    def delete_job(self, job_id: str, owner_id: str) -> bool:
        """
        Delete a job that has not been processed yet.

        Returns:
            True if deleted, False if not found

        Raises:
            JobDeletionError: If any group has already been processed
        """
        if self._store.get_job(job_id, owner_id=owner_id, include_groups=False) is None:
            return False
        return self._store.delete_job(job_id)

    def group_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in GroupStatus}
        counts.update(self._store.count_groups_by_status())
        return counts

    def merge_sources(self, request: MergeRequest) -> bytes:
        """
        Fetch and merge a list of sources in one request.

        Unlike batch groups, the synchronous merge is strict: every source must
        be fetched and merged.

        Returns:
            The merged PDF bytes

        Raises:
            SourceDownloadError: If any source failed, listing every failure
        """
        outcomes: List[SourceOutcome] = fetch_in_order(self._fetcher, request.sources, self.concurrency)
        failures = [SourceFailure(**outcome.to_failure()) for outcome in outcomes if not outcome.ok]
        if failures:
            raise SourceDownloadError(failures)

        merger = PdfMerger()
        merger.set_metadata(
            title=request.title,
            author=request.author,
            subject=request.subject,
            keywords=request.keywords,
        )
        for outcome in outcomes:
            try:
                merger.add_pdf_from_buffer(outcome.content)  # type: ignore[arg-type]
            except PdfMergeError as exc:
                failures.append(SourceFailure(index=outcome.index, url=outcome.url, error=str(exc)))

        if failures:
            raise SourceDownloadError(failures)
        return merger.get_bytes()

"""
Webhook delivery for finished batch jobs.

One payload is posted per job after it reaches a terminal status. Delivery
runs on a dedicated executor with a fixed timeout; failures are logged and
never retried or reflected in the job status.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Optional, Sequence

import requests

from .group_processor import GroupResult
from .models import JobStatus, SourceFailure, WebhookPayload, WebhookResult, WebhookSummary
from .utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TIMEOUT = 10.0


def download_url(base_url: str, job_id: str, group_name: str) -> str:
    return f"{base_url}/batch/{job_id}/download/{group_name}"


def build_webhook_payload(
    job_id: str,
    status: JobStatus,
    results: Sequence[GroupResult],
    base_url: str,
    expires_at: Optional[datetime] = None,
    completed_at: Optional[datetime] = None,
) -> WebhookPayload:
    """
    Build the completion payload for a job.

    Args:
        job_id: The finished job
        status: Its terminal status
        results: Per-group outcomes in processing order
        base_url: Public base URL used for download links
        expires_at: When the job's files will be reclaimed
        completed_at: Completion timestamp (defaults to now)

    Returns:
        The payload model; serialize with ``model_dump(mode="json", exclude_none=True)``
    """
    webhook_results = []
    for result in results:
        if result.success:
            webhook_results.append(WebhookResult(
                name=result.name,
                download_url=download_url(base_url, job_id, result.name),
                expires_at=expires_at,
                failed_sources=[SourceFailure(**failure) for failure in result.source_failures] or None,
            ))
        else:
            webhook_results.append(WebhookResult(name=result.name, error=result.error))

    succeeded = sum(1 for result in results if result.success)
    return WebhookPayload(
        job_id=job_id,
        status=status,
        results=webhook_results,
        summary=WebhookSummary(total=len(results), success=succeeded, failed=len(results) - succeeded),
        completed_at=completed_at or utc_now(),
    )


class WebhookNotifier:
    """Posts completion payloads without blocking the caller."""

    def __init__(
        self,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        session: Optional[requests.Session] = None,
        max_workers: int = 2,
    ) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")

    def notify(self, webhook_url: str, payload: WebhookPayload) -> Optional[Future]:
        """
        Schedule delivery of a payload.

        Returns:
            A future resolving to True on a 2xx response, or None if the
            notifier has been shut down
        """
        try:
            return self._executor.submit(self.deliver, webhook_url, payload)
        except RuntimeError as exc:
            logger.error(f"Cannot schedule webhook for job {payload.job_id}: {exc}")
            return None

    def deliver(self, webhook_url: str, payload: WebhookPayload) -> bool:
        """Send the payload once. Returns False instead of raising on failure."""
        body = payload.model_dump(mode="json", exclude_none=True)
        try:
            response = self.session.post(
                webhook_url,
                json=body,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error(f"Failed to send webhook to {webhook_url}: {exc}")
            return False

        logger.info(f"Webhook sent successfully to {webhook_url}")
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

"""Fire-and-forget recording of download attempts."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .database import JobStore

logger = logging.getLogger(__name__)


class TelemetrySink:
    """
    Records download events on a background executor.

    Recording never raises into the caller: submission and storage errors are
    logged and dropped.
    """

    def __init__(self, store: "JobStore", max_workers: int = 1) -> None:
        self._store = store
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="telemetry")

    def record_download(
        self,
        url: str,
        status_code: int,
        response_time_ms: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Future]:
        try:
            return self._executor.submit(self._write, url, status_code, response_time_ms, error_message)
        except RuntimeError as exc:
            # Executor already shut down
            logger.warning(f"Dropping download event for {url}: {exc}")
            return None

    def _write(
        self,
        url: str,
        status_code: int,
        response_time_ms: Optional[int],
        error_message: Optional[str],
    ) -> None:
        try:
            self._store.record_download_event(
                url=url,
                status_code=status_code,
                response_time_ms=response_time_ms,
                error_message=error_message,
            )
        except Exception as exc:
            logger.error(f"Failed to record download event for {url}: {exc}")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

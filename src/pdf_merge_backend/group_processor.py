"""
Builds one group's merged output.

Sources are fetched through a bounded thread pool, then appended to a fresh
``PdfMerger`` strictly in submission order. A source that cannot be fetched or
merged only fails itself; the group fails when no source survives.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .configuration import MAX_DOWNLOAD_CONCURRENCY
from .database import JobStore
from .fetcher import FetchError, Fetcher
from .models import GroupStatus
from .pdf_merger import PdfMergeError, PdfMerger
from .utils import utc_now

logger = logging.getLogger(__name__)


class GroupProcessingError(RuntimeError):
    """Raised when a group cannot produce any output."""


@dataclass
class SourceOutcome:
    """Result of fetching one source; failures keep their index for diagnostics."""

    index: int
    url: str
    content: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.content is not None

    def to_failure(self) -> Dict[str, Any]:
        return {"index": self.index, "url": self.url, "error": self.error or "Download failed"}


@dataclass
class GroupResult:
    """Outcome of processing one group, as reported to the orchestrator."""

    group_id: str
    name: str
    success: bool
    file_path: Optional[Path] = None
    file_size: Optional[int] = None
    page_count: int = 0
    error: Optional[str] = None
    source_failures: List[Dict[str, Any]] = field(default_factory=list)


def fetch_in_order(fetcher: Fetcher, urls: Sequence[str], concurrency: int = 1) -> List[SourceOutcome]:
    """
    Fetch every URL through a bounded pool and return outcomes in input order.

    Args:
        fetcher: The fetcher used for each download
        urls: Source URLs in submission order
        concurrency: Maximum number of simultaneous downloads (capped)

    Returns:
        One SourceOutcome per URL, sorted by original index
    """
    if not urls:
        return []

    def _fetch(index: int, url: str) -> SourceOutcome:
        try:
            return SourceOutcome(index=index, url=url, content=fetcher.fetch(url))
        except FetchError as exc:
            return SourceOutcome(index=index, url=url, error=exc.message)
        except Exception as exc:
            logger.exception(f"Unexpected error downloading {url}")
            return SourceOutcome(index=index, url=url, error=str(exc) or "Download failed")

    workers = max(1, min(concurrency, MAX_DOWNLOAD_CONCURRENCY, len(urls)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
        futures = [pool.submit(_fetch, index, url) for index, url in enumerate(urls)]
        outcomes = [future.result() for future in futures]

    return sorted(outcomes, key=lambda outcome: outcome.index)


class GroupProcessor:
    """
    Runs one group through fetch, merge and write, and records the outcome.

    Attributes:
        concurrency: Number of sources downloaded at once within a group
    """

    def __init__(self, store: JobStore, fetcher: Fetcher, concurrency: int = 1) -> None:
        self._store = store
        self._fetcher = fetcher
        self.concurrency = max(1, min(concurrency, MAX_DOWNLOAD_CONCURRENCY))

    def process(
        self,
        group: Dict[str, Any],
        job_dir: Path,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GroupResult:
        """
        Build the merged PDF for a group.

        Args:
            group: Group record from the store
            job_dir: Directory that receives the job's output files
            metadata: Optional author/subject/keywords for the output document

        Returns:
            GroupResult describing success (with file reference) or failure
        """
        group_id = group["id"]
        name = group["name"]
        metadata = metadata or {}
        output_path = job_dir / f"{name}.pdf"

        if not self._store.transition_group(group_id, [GroupStatus.PENDING], GroupStatus.PROCESSING):
            logger.warning(f"[GroupProcessor] Group {name} ({group_id}) was not pending; processing anyway")

        try:
            outcomes = fetch_in_order(self._fetcher, group["sources"], self.concurrency)
            fetched = [outcome for outcome in outcomes if outcome.ok]
            failures = [outcome.to_failure() for outcome in outcomes if not outcome.ok]

            if not fetched:
                raise GroupProcessingError("All source downloads failed")

            merger = PdfMerger()
            if metadata.get("author") or metadata.get("subject") or metadata.get("keywords"):
                merger.set_metadata(
                    title=name,
                    author=metadata.get("author"),
                    subject=metadata.get("subject"),
                    keywords=metadata.get("keywords"),
                )

            # The accumulator is a single mutable document: append sequentially
            merged_any = False
            for outcome in fetched:
                try:
                    merger.add_pdf_from_buffer(outcome.content)  # type: ignore[arg-type]
                    merged_any = True
                except PdfMergeError as exc:
                    logger.warning(f"[GroupProcessor] Skipping source {outcome.index} of {name}: {exc}")
                    failures.append({"index": outcome.index, "url": outcome.url, "error": str(exc)})

            if not merged_any:
                raise GroupProcessingError("No source could be merged")

            failures.sort(key=lambda failure: failure["index"])
            file_size = merger.save_to_file(output_path)

            self._store.transition_group(
                group_id,
                [GroupStatus.PROCESSING, GroupStatus.PENDING],
                GroupStatus.COMPLETED,
                file_path=output_path,
                file_size=file_size,
                source_errors=failures,
                completed_at=utc_now(),
            )
            logger.info(
                f"[GroupProcessor] Group {name} completed: {merger.page_count} pages, "
                f"{file_size} bytes, {len(failures)} source failure(s)"
            )
            return GroupResult(
                group_id=group_id,
                name=name,
                success=True,
                file_path=output_path,
                file_size=file_size,
                page_count=merger.page_count,
                source_failures=failures,
            )
        except Exception as exc:
            error_message = str(exc) or "Processing failed"
            logger.error(f"[GroupProcessor] Group {name} failed: {error_message}")
            self._discard_output(output_path)
            self._store.transition_group(
                group_id,
                [GroupStatus.PROCESSING, GroupStatus.PENDING],
                GroupStatus.FAILED,
                error_message=error_message,
                completed_at=utc_now(),
            )
            return GroupResult(group_id=group_id, name=name, success=False, error=error_message)

    @staticmethod
    def _discard_output(output_path: Path) -> None:
        """Remove a file written before the group failed; it has no record to expire it."""
        try:
            if output_path.exists():
                output_path.unlink()
                logger.info(f"[GroupProcessor] Removed unrecorded output {output_path}")
        except OSError as exc:
            logger.error(f"[GroupProcessor] Could not remove {output_path}: {exc}")

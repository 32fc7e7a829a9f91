"""Command-line merge of local PDF files into one document."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional, Sequence
from uuid import uuid4

from .pdf_merger import PdfMergeError, PdfMerger

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def collect_sources(target: Path) -> List[Path]:
    """
    Resolve the input argument to the files that will be merged.

    A directory contributes its ``.pdf`` files (any case) sorted by name; a
    file is merged on its own.

    Raises:
        FileNotFoundError: If the target does not exist or the directory holds no PDF
    """
    if target.is_dir():
        sources = sorted(path for path in target.iterdir() if path.is_file() and path.suffix.lower() == ".pdf")
        if not sources:
            raise FileNotFoundError(f"No PDF files found in {target}")
        return sources
    if target.is_file():
        return [target]
    raise FileNotFoundError(f"Input does not exist: {target}")


def merge_files(sources: Sequence[Path], output: Path, title: Optional[str] = None) -> int:
    """Merge the files in order, write the result and return its size in bytes."""
    merger = PdfMerger()
    if title:
        merger.set_metadata(title=title)
    for source in sources:
        logger.debug(f"Adding {source}")
        merger.add_pdf_from_file(source)
    return merger.save_to_file(output)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Merge a PDF file, or every PDF in a directory, into a single PDF."
    )
    parser.add_argument(
        "input",
        type=Path,
        help="A PDF file or a directory containing PDF files",
    )
    parser.add_argument(
        "output",
        type=Path,
        nargs="?",
        help="Output file (defaults to a random name in the current directory)",
    )
    parser.add_argument("--title", help="Title stored in the document metadata")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging output",
    )

    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    try:
        sources = collect_sources(args.input.expanduser())
    except FileNotFoundError as exc:
        logger.error(str(exc))
        return 1

    output = args.output or Path.cwd() / f"{uuid4().hex}.pdf"
    try:
        size = merge_files(sources, output, args.title)
    except (OSError, PdfMergeError) as exc:
        logger.error(f"Failed to merge {len(sources)} file(s): {exc}")
        return 1

    logger.info(f"PDF written: {output} ({size} bytes)")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())

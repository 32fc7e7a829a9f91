"""
In-memory PDF accumulator.

Loaded documents are appended page by page to a single ``PdfWriter``. Raster
images (PNG, JPEG, GIF, BMP, TIFF, WebP) are detected by their signature and
converted to one A4 page, centered, before being appended.
"""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path
from typing import Iterable, Optional

from PIL import Image
from pypdf import PasswordType, PdfReader, PdfWriter

logger = logging.getLogger(__name__)

# A4 canvas at 150 dpi (595 x 842 pt)
IMAGE_PAGE_DPI = 150
IMAGE_PAGE_SIZE = (1240, 1754)
IMAGE_PAGE_MARGIN = 36

_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
    (b"BM", "bmp"),
    (b"II*\x00", "tiff"),
    (b"MM\x00*", "tiff"),
)


class PdfMergeError(Exception):
    """Raised when a buffer cannot be appended to the merged document."""


def detect_image_format(buffer: bytes) -> Optional[str]:
    """
    Identify a supported raster image from its leading bytes.

    Returns:
        The image format name, or None if the buffer is not a supported image
    """
    head = bytes(buffer[:16])
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "webp"
    for signature, name in _IMAGE_SIGNATURES:
        if head.startswith(signature):
            return name
    return None


def image_to_pdf(buffer: bytes) -> bytes:
    """
    Render an image centered on a single A4 page.

    Images larger than the printable area are scaled down keeping their aspect
    ratio; smaller images keep their size.

    Raises:
        PdfMergeError: If Pillow cannot decode the image
    """
    try:
        with Image.open(BytesIO(buffer)) as image:
            image.load()
            if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
                rgba = image.convert("RGBA")
                flattened = Image.new("RGB", rgba.size, "white")
                flattened.paste(rgba, mask=rgba.split()[-1])
            else:
                flattened = image.convert("RGB")
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise PdfMergeError(f"Failed to load image: {exc}") from exc

    max_size = (
        IMAGE_PAGE_SIZE[0] - 2 * IMAGE_PAGE_MARGIN,
        IMAGE_PAGE_SIZE[1] - 2 * IMAGE_PAGE_MARGIN,
    )
    flattened.thumbnail(max_size)

    page = Image.new("RGB", IMAGE_PAGE_SIZE, "white")
    offset = (
        (IMAGE_PAGE_SIZE[0] - flattened.width) // 2,
        (IMAGE_PAGE_SIZE[1] - flattened.height) // 2,
    )
    page.paste(flattened, offset)

    output = BytesIO()
    page.save(output, format="PDF", resolution=float(IMAGE_PAGE_DPI))
    return output.getvalue()


class PdfMerger:
    """Accumulates pages from several documents into one PDF."""

    def __init__(self) -> None:
        self._writer = PdfWriter()

    @property
    def page_count(self) -> int:
        return len(self._writer.pages)

    def set_metadata(
        self,
        title: Optional[str] = None,
        author: Optional[str] = None,
        subject: Optional[str] = None,
        keywords: Optional[Iterable[str]] = None,
    ) -> None:
        metadata = {}
        if title:
            metadata["/Title"] = title
        if author:
            metadata["/Author"] = author
        if subject:
            metadata["/Subject"] = subject
        keyword_list = [keyword for keyword in (keywords or []) if keyword]
        if keyword_list:
            metadata["/Keywords"] = ", ".join(keyword_list)
        if metadata:
            self._writer.add_metadata(metadata)

    def add_pdf_from_file(self, file_path: Path) -> int:
        return self.add_pdf_from_buffer(Path(file_path).read_bytes())

    def add_pdf_from_buffer(self, buffer: bytes) -> int:
        """
        Append every page of a document (or a converted image) to the output.

        Encrypted documents are opened with an empty password when possible.

        Args:
            buffer: Raw PDF or image bytes

        Returns:
            Number of pages appended

        Raises:
            PdfMergeError: If the buffer is not a readable PDF or image
        """
        try:
            image_format = detect_image_format(buffer)
            if image_format is not None:
                logger.debug(f"Converting {image_format} image to a PDF page")
                buffer = image_to_pdf(buffer)

            reader = PdfReader(BytesIO(buffer), strict=False)
            if reader.is_encrypted and reader.decrypt("") == PasswordType.NOT_DECRYPTED:
                raise PdfMergeError("Failed to load PDF: document is password protected")

            pages = list(reader.pages)
            if not pages:
                raise PdfMergeError("Failed to load PDF: document has no pages")

            for page in pages:
                self._writer.add_page(page)
        except PdfMergeError:
            raise
        except Exception as exc:
            logger.error(f"Error loading PDF from buffer: {exc}")
            raise PdfMergeError(f"Failed to load PDF: {exc}") from exc

        return len(pages)

    def get_bytes(self) -> bytes:
        output = BytesIO()
        self._writer.write(output)
        return output.getvalue()

    def save_to_file(self, output_path: Path) -> int:
        """Write the merged document and return its size in bytes."""
        data = self.get_bytes()
        Path(output_path).write_bytes(data)
        return len(data)

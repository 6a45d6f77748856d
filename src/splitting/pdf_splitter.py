"""Byte-level PDF splitting for multi-document scans.

Cuts a source PDF into one output PDF per page range, and converts
scanned images (including multi-frame TIFFs) into a PDF so they can be
split the same way.
"""

import io
from collections.abc import Iterator, Sequence

from PIL import Image, ImageSequence, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from src.errors import ValidationError
from src.utils.logger import get_logger

from .ranges import PageRange

logger = get_logger(__name__)

PDF_MAGIC = b"%PDF"


def is_pdf(data: bytes) -> bool:
    """Return True if the bytes start with the PDF header."""
    return data[:4] == PDF_MAGIC


class PDFSplitter:
    """Splits PDF documents into page-range fragments.

    Args:
        image_resolution: DPI recorded in PDFs produced from scanned images.
    """

    def __init__(self, image_resolution: float = 300.0) -> None:
        self.image_resolution = image_resolution

    def _open(self, source: bytes) -> PdfReader:
        """Parse PDF bytes into a reader.

        Raises:
            ValidationError: If the bytes are not a readable PDF.
        """
        try:
            reader = PdfReader(io.BytesIO(source))
            if reader.is_encrypted:
                raise ValidationError("PDF is password-protected and cannot be split")
            # Touch the page tree so structural errors surface here.
            len(reader.pages)
            return reader
        except (PdfReadError, ValueError) as exc:
            raise ValidationError(f"Invalid PDF: {exc}") from exc

    def get_page_count(self, source: bytes) -> int:
        """Get the number of pages in a PDF.

        Args:
            source: Raw PDF bytes.

        Returns:
            Number of pages in the PDF.
        """
        count = len(self._open(source).pages)
        logger.debug("PDF has %d pages", count)
        return count

    def split(self, source: bytes, ranges: Sequence[PageRange]) -> Iterator[bytes]:
        """Split a PDF into one output document per range.

        Ranges are validated before the first fragment is produced, so an
        invalid range never yields partial output. Fragments are built
        lazily: each is rendered only when the caller asks for it, so a
        consumer that persists and discards them holds one at a time.

        Args:
            source: Raw PDF bytes.
            ranges: 1-based inclusive page ranges.

        Returns:
            Iterator of PDF byte buffers, one per range, in range order.

        Raises:
            ValidationError: If the PDF is unreadable or a range is invalid.
        """
        if not ranges:
            raise ValidationError("At least one page range is required")

        reader = self._open(source)
        total = len(reader.pages)
        for r in ranges:
            if r.start < 1 or r.end > total or r.start > r.end:
                raise ValidationError(
                    f"Page range {r.start}-{r.end} is outside 1-{total}",
                    {"start": r.start, "end": r.end, "total_pages": total},
                )

        logger.info("Splitting %d-page PDF into %d fragments", total, len(ranges))
        return self._iter_fragments(reader, ranges)

    def _iter_fragments(
        self, reader: PdfReader, ranges: Sequence[PageRange]
    ) -> Iterator[bytes]:
        for r in ranges:
            writer = PdfWriter()
            for page_index in range(r.start - 1, r.end):
                writer.add_page(reader.pages[page_index])
            buf = io.BytesIO()
            writer.write(buf)
            logger.debug("Built fragment for pages %d-%d", r.start, r.end)
            yield buf.getvalue()

    def split_all(self, source: bytes, ranges: Sequence[PageRange]) -> list[bytes]:
        """Split a PDF and materialize every fragment.

        Convenience wrapper around :meth:`split` for small documents.
        """
        return list(self.split(source, ranges))

    def images_to_pdf(self, source: bytes) -> bytes:
        """Convert a scanned image into a PDF with one page per frame.

        Args:
            source: Raw image bytes (TIFF, PNG, JPEG).

        Returns:
            PDF bytes.

        Raises:
            ValidationError: If the bytes are not a readable image.
        """
        try:
            image = Image.open(io.BytesIO(source))
            frames = [frame.convert("RGB") for frame in ImageSequence.Iterator(image)]
        except (UnidentifiedImageError, OSError) as exc:
            raise ValidationError(f"Unsupported or corrupted image: {exc}") from exc

        buf = io.BytesIO()
        frames[0].save(
            buf,
            format="PDF",
            save_all=True,
            append_images=frames[1:],
            resolution=self.image_resolution,
        )
        logger.info("Converted %d image frames to PDF", len(frames))
        return buf.getvalue()

    def ensure_pdf(self, source: bytes) -> bytes:
        """Return the source unchanged if it is a PDF, else convert it."""
        if is_pdf(source):
            return source
        return self.images_to_pdf(source)

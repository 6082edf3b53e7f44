"""PDF inspection and page truncation."""
import logging

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)


class PDFDocument:
    """Open a PDF held in memory."""

    def __init__(self, pdf_bytes: bytes):
        """Initialize with raw PDF bytes."""
        self.pdf_bytes = pdf_bytes
        self.doc = None

    def __enter__(self):
        """Context manager entry."""
        self.doc = fitz.open(stream=self.pdf_bytes, filetype="pdf")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        if self.doc:
            self.doc.close()

    @property
    def page_count(self) -> int:
        return self.doc.page_count

    def first_pages(self, max_pages: int) -> bytes:
        """
        Serialize the first ``max_pages`` pages as a new PDF.

        Returns the original bytes when the document is already short enough.
        """
        if self.page_count <= max_pages:
            return self.pdf_bytes

        truncated = fitz.open()
        try:
            truncated.insert_pdf(self.doc, from_page=0, to_page=max_pages - 1)
            return truncated.tobytes(garbage=3, deflate=True)
        finally:
            truncated.close()


def count_pages(pdf_bytes: bytes) -> int:
    with PDFDocument(pdf_bytes) as pdf:
        return pdf.page_count


def truncate_pdf(pdf_bytes: bytes, max_pages: int) -> bytes:
    """
    Keep only the first ``max_pages`` pages of a PDF.

    A PDF that cannot be parsed is returned unchanged; the model call decides
    whether it is usable.
    """
    try:
        with PDFDocument(pdf_bytes) as pdf:
            original_pages = pdf.page_count
            result = pdf.first_pages(max_pages)
    except Exception as exc:
        logger.warning("PDF truncation failed, using original bytes: %s", exc)
        return pdf_bytes

    if result is not pdf_bytes:
        logger.info(
            "PDF truncated: %d -> %d pages (%d -> %d bytes)",
            original_pages, max_pages, len(pdf_bytes), len(result),
        )
    return result

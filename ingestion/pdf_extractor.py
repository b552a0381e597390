"""PDF text extraction module."""
import fitz  # PyMuPDF
from pathlib import Path
from typing import List

from utils.logger import setup_logger
from ingestion.models import ExtractionResult, PageContent
from ingestion.cleaner import clean_text, remove_running_headers

logger = setup_logger(__name__)


class PDFExtractionError(Exception):
    """Raised when PDF extraction fails."""
    pass


class PDFExtractor:
    """Extracts per-page text from PDF documents."""

    def extract(self, data: bytes, filename: str) -> ExtractionResult:
        """Extract cleaned per-page text.

        Never raises; failures are reported in the result.

        Args:
            data: Raw document bytes
            filename: Original file name, used for format checks and logs

        Returns:
            ExtractionResult with one PageContent per non-empty page
        """
        try:
            pages = self._extract_pages(data, filename)
        except PDFExtractionError as e:
            logger.error(f"Extraction failed for {filename}: {e}")
            return ExtractionResult(success=False, error=str(e))

        logger.info(f"Extracted {len(pages)} pages from {filename}")
        return ExtractionResult(success=True, pages=pages)

    def extract_file(self, pdf_path: str | Path) -> ExtractionResult:
        """Extract a PDF from disk."""
        pdf_path = Path(pdf_path)
        if not pdf_path.exists():
            return ExtractionResult(success=False, error=f"PDF file not found: {pdf_path}")
        return self.extract(pdf_path.read_bytes(), pdf_path.name)

    def _extract_pages(self, data: bytes, filename: str) -> List[PageContent]:
        if not data:
            raise PDFExtractionError("Document is empty")
        if Path(filename).suffix.lower() != ".pdf":
            raise PDFExtractionError(f"Unsupported file type: {filename}")

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise PDFExtractionError(f"Failed to open PDF: {e}")

        try:
            if doc.page_count == 0:
                raise PDFExtractionError("PDF has no pages")
            raw_pages = [doc[page_num].get_text() for page_num in range(doc.page_count)]
        finally:
            doc.close()

        if not ''.join(raw_pages).strip():
            raise PDFExtractionError(
                "PDF appears to contain no extractable text. "
                "This may be a scanned image PDF. Please use an OCR'd version."
            )

        cleaned = remove_running_headers([clean_text(text) for text in raw_pages])

        # Page numbers stay 1-based and keep gaps where pages were blank
        return [
            PageContent(page_number=index + 1, text=text)
            for index, text in enumerate(cleaned)
            if text.strip()
        ]

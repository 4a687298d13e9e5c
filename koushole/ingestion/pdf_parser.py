"""
PDF Parser - Extracts text from PDF bytes.

This module handles direct text extraction using pymupdf (fitz). It knows
nothing about quality: a scanned book simply comes back with little or no
text, and a byte stream that is not a PDF comes back empty rather than
raising.

Key Concepts:
- PDFs store text per page; scanned pages have none
- Page numbers and repeated blank lines are noise for chunking
- A page-limited parse is enough to sniff the table of contents
"""

import re
from dataclasses import dataclass
from pathlib import Path

import fitz  # pymupdf - the library is called 'fitz' historically

from koushole.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PageContent:
    """
    Represents the content of a single PDF page.

    Attributes:
        page_number: 1-indexed page number
        text: Extracted text content
    """
    page_number: int
    text: str


@dataclass
class DocumentContent:
    """
    Represents the extracted content of a PDF.

    Attributes:
        total_pages: Page count of the whole file (0 if unreadable)
        pages: Non-empty pages, in order
        full_text: All page text concatenated
    """
    total_pages: int
    pages: list[PageContent]
    full_text: str

    def prefix_text(self, max_pages: int) -> str:
        """Text of the first `max_pages` pages of the file."""
        return "\n\n".join(
            page.text for page in self.pages if page.page_number <= max_pages
        )

    @property
    def is_empty(self) -> bool:
        return not self.full_text.strip()


class PDFParser:
    """
    Extracts text from a PDF held in memory.

    Example:
        parser = PDFParser()
        content = parser.parse_bytes(pdf_bytes)
        print(content.total_pages, len(content.full_text))
    """

    def __init__(self, clean_text: bool = True):
        """
        Initialize the PDF parser.

        Args:
            clean_text: If True, collapse blank lines and drop page numbers
        """
        self.clean_text = clean_text

    def _clean_extracted_text(self, text: str) -> str:
        if not self.clean_text:
            return text

        # Replace multiple newlines with double newline (paragraph break)
        text = re.sub(r'\n{3,}', '\n\n', text)

        # Replace multiple spaces with single space
        text = re.sub(r' {2,}', ' ', text)

        # Drop lines that are just page numbers (Latin or Bangla digits)
        lines = [
            line for line in text.split('\n')
            if not (line.strip().isdigit() and len(line.strip()) < 4)
        ]
        return '\n'.join(lines).strip()

    def parse_bytes(self, pdf_bytes: bytes, max_pages: int | None = None) -> DocumentContent:
        """
        Extract text from raw PDF bytes.

        Args:
            pdf_bytes: The PDF file contents
            max_pages: Only read this many leading pages (None = all)

        Returns:
            DocumentContent; empty when the bytes are not a readable PDF
        """
        if not pdf_bytes:
            return DocumentContent(total_pages=0, pages=[], full_text="")

        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            # fitz raises FileDataError (a RuntimeError) for garbage input
            logger.warning("pdf_open_failed", error=str(e), byte_size=len(pdf_bytes))
            return DocumentContent(total_pages=0, pages=[], full_text="")

        pages = []
        with doc:
            total_pages = len(doc)
            limit = total_pages if max_pages is None else min(max_pages, total_pages)
            for page_num in range(limit):
                try:
                    text = doc[page_num].get_text()
                except RuntimeError as e:
                    logger.warning("pdf_page_failed", page=page_num + 1, error=str(e))
                    continue
                cleaned = self._clean_extracted_text(text)
                if cleaned:  # Only keep non-empty pages
                    pages.append(PageContent(page_number=page_num + 1, text=cleaned))

        content = DocumentContent(
            total_pages=total_pages,
            pages=pages,
            full_text='\n\n'.join(page.text for page in pages),
        )
        logger.debug(
            "pdf_parsed",
            total_pages=total_pages,
            pages_with_text=len(pages),
            characters=len(content.full_text),
        )
        return content

    def parse_pdf(self, pdf_path: str | Path, max_pages: int | None = None) -> DocumentContent:
        """
        Extract text from a PDF on disk.

        Raises:
            FileNotFoundError: If the PDF file doesn't exist
        """
        pdf_path = Path(pdf_path)
        if not pdf_path.exists():
            raise FileNotFoundError(f"PDF not found: {pdf_path}")
        return self.parse_bytes(pdf_path.read_bytes(), max_pages=max_pages)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def extract_text(pdf_bytes: bytes, max_pages: int | None = None) -> tuple[str, int]:
    """
    Simple function returning (text, page_count) for PDF bytes.

    Example:
        text, pages = extract_text(pdf_bytes, max_pages=10)
    """
    content = PDFParser().parse_bytes(pdf_bytes, max_pages=max_pages)
    return content.full_text, content.total_pages


# =============================================================================
# MAIN - For testing
# =============================================================================

if __name__ == "__main__":
    """
    Parse a PDF and show what direct extraction sees.
    Run: python -m koushole.ingestion.pdf_parser path/to/book.pdf
    """
    import sys

    from koushole.ingestion.quality import is_text_sufficient

    if len(sys.argv) < 2:
        print("Usage: python -m koushole.ingestion.pdf_parser <file.pdf>")
        sys.exit(1)

    content = PDFParser().parse_pdf(sys.argv[1])
    print(f"Pages: {content.total_pages} ({len(content.pages)} with text)")
    print(f"Characters: {len(content.full_text)}")
    print(f"Sufficient for direct use: {is_text_sufficient(content.full_text)}")
    print("\n--- Sample text (first 500 chars) ---")
    print(content.full_text[:500])

"""
Ingestion module - Turns a PDF into chapters and chunks.

This module is responsible for:
1. Fetching the PDF and extracting text directly
2. Deciding whether the text is good enough, and falling back to vision OCR
3. Extracting the chapter list with a language model
4. Splitting the text into overlapping chunks
5. Orchestrating all of the above for one document, or a batch of them
"""

from .pdf_parser import PDFParser, extract_text
from .chunker import TextChunker, chunk_text
from .quality import is_text_sufficient

__all__ = ["PDFParser", "extract_text", "TextChunker", "chunk_text", "is_text_sufficient"]

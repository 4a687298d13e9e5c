"""
Koushole - PDF textbook ingestion and retrieval for an AI tutor.

This package provides:
- PDF text extraction with a vision-OCR fallback for scanned books
- Chapter (table of contents) extraction with a language model
- Text chunking and embedding generation
- Chunk storage in Supabase pgvector (or ChromaDB locally)
- Retrieval of book context for grounded tutor replies
- CLI and HTTP interfaces
"""

__version__ = "0.1.0"

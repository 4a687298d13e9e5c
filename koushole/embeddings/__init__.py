"""
Embeddings module - Handles embedding generation and chunk storage.

This module is responsible for:
1. Converting chunk texts and queries to embeddings
2. Storing chunks and searching them (Supabase pgvector or local ChromaDB)
"""

from .embedder import Embedder, EmbeddingPurpose
from .chunk_store import ChunkStore, ChromaChunkStore, SupabaseChunkStore

__all__ = ["Embedder", "EmbeddingPurpose", "ChunkStore", "ChromaChunkStore", "SupabaseChunkStore"]

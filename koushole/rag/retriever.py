"""
Retriever - Finds the chunks of one book most relevant to a question.

This module handles the retrieval part of RAG:
1. Takes a user question and the book being studied
2. Converts the question to an embedding (same model as at ingestion)
3. Searches that book's chunks for the nearest vectors
4. Returns a context block for the prompt plus lightweight citations

Key Concept:
Zero matches is a normal answer, not an error. Callers fall back to an
ungrounded reply when the context is empty.
"""

from dataclasses import dataclass, field

from koushole.config import PREVIEW_CHARS, TOP_K_CHUNKS
from koushole.embeddings.chunk_store import ChunkStore
from koushole.embeddings.embedder import Embedder
from koushole.models import ChunkMatch, CollectionType
from koushole.utils.errors import ConfigurationError
from koushole.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Citation:
    """
    A short pointer back to a retrieved chunk.

    Attributes:
        index: 1-based source number, matching "[Source N]" in the context
        text: First PREVIEW_CHARS characters of the chunk, followed by "..."
        similarity: Similarity as a whole percentage
    """
    index: int
    text: str
    similarity: int

    def to_dict(self) -> dict:
        return {"index": self.index, "text": self.text, "similarity": self.similarity}


@dataclass
class RetrievalResult:
    """
    Retrieved chunks for one query.

    Attributes:
        query: The original question
        matches: Chunks, most similar first
    """
    query: str
    document_id: str
    matches: list[ChunkMatch] = field(default_factory=list)

    @property
    def has_results(self) -> bool:
        return len(self.matches) > 0

    @property
    def context(self) -> str:
        """
        Context block for the prompt; empty when nothing matched.

        Each chunk is labelled so the model (and the student) can refer to it.
        """
        return "\n\n".join(
            f"[Source {i}] {match.text}" for i, match in enumerate(self.matches, start=1)
        )

    @property
    def citations(self) -> list[Citation]:
        return [
            Citation(
                index=i,
                text=match.text[:PREVIEW_CHARS] + "...",
                similarity=round(match.similarity * 100),
            )
            for i, match in enumerate(self.matches, start=1)
        ]

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "documentId": self.document_id,
            "context": self.context,
            "sources": [citation.to_dict() for citation in self.citations],
            "chunks": [
                {"index": match.index, "text": match.text, "similarity": match.similarity}
                for match in self.matches
            ],
        }


class Retriever:
    """
    Retrieves relevant context from one book's chunks.

    Example:
        retriever = Retriever(embedder, chunk_store)
        result = retriever.retrieve("What is photosynthesis?", book_id, CollectionType.OFFICIAL)
        if result.has_results:
            print(result.context)
    """

    def __init__(self, embedder: Embedder, chunk_store: ChunkStore, top_k: int = TOP_K_CHUNKS):
        self.embedder = embedder
        self.chunk_store = chunk_store
        self.top_k = top_k

        if chunk_store.dimension is not None and chunk_store.dimension != embedder.dimension:
            raise ConfigurationError(
                f"Embedding model produces {embedder.dimension}-d vectors but the chunk index "
                f"stores {chunk_store.dimension}-d vectors"
            )

    def retrieve(
        self,
        query: str,
        document_id: str,
        collection: CollectionType | str = CollectionType.OFFICIAL,
        limit: int | None = None,
    ) -> RetrievalResult:
        """
        Retrieve the chunks of `document_id` most similar to `query`.

        Args:
            query: The user's question
            document_id: Book to search
            collection: official or library
            limit: Number of chunks (default TOP_K_CHUNKS)

        Returns:
            RetrievalResult (empty when the book has no matching chunks)

        Raises:
            ConfigurationError: Query and stored vectors differ in dimension
            EmbeddingError / PersistenceError: provider or storage failures
        """
        collection = CollectionType.parse(collection)
        if not query or not query.strip():
            return RetrievalResult(query=query, document_id=document_id)

        query_vector = self.embedder.embed_query(query)
        matches = self.chunk_store.search(
            query_vector, document_id, collection, limit=limit or self.top_k
        )
        matches.sort(key=lambda match: match.similarity, reverse=True)

        logger.info(
            "chunks_retrieved",
            document_id=document_id,
            collection=collection.value,
            match_count=len(matches),
            top_similarity=round(matches[0].similarity, 4) if matches else None,
        )
        return RetrievalResult(query=query, document_id=document_id, matches=matches)

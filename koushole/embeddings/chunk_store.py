"""
Chunk Store - Persists chunk vectors and answers similarity searches.

Write path (replace_chunks), for one document:
1. clear the document's embedded flag
2. delete every existing chunk
3. insert the new chunks in batches of 50, ordinals 0..N-1
4. set the flag and chunk count, only after every batch succeeded

Readers therefore see either "not embedded" or "embedded with N contiguous
chunks". If a batch fails, the flag stays cleared and the document remains
eligible for the next batch run. The whole sequence runs under a
per-document lock so two reprocessing requests cannot interleave.

clear_chunks runs steps 1-2 only, for a reprocess that produced nothing
to chunk; the document is left not embedded.

Backends:
- SupabaseChunkStore: book_chunks table + search_book_chunks stored procedure
- ChromaChunkStore: one local Chroma collection per collection type
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import chromadb
from chromadb.errors import ChromaError
from supabase import Client

from koushole.config import (
    CHROMA_COLLECTION_PREFIX,
    CHROMA_DB_DIR,
    CHUNKS_TABLE,
    INSERT_BATCH_SIZE,
    SEARCH_CHUNKS_RPC,
    TOP_K_CHUNKS,
)
from koushole.models import ChunkMatch, ChunkRecord, CollectionType
from koushole.storage.documents import DocumentRepository, run_query
from koushole.utils.errors import ConfigurationError, PersistenceError
from koushole.utils.logging import get_logger

logger = get_logger(__name__)


def format_vector(vector: list[float]) -> str:
    """pgvector's text form: "[0.1,0.2,...]"."""
    return "[" + ",".join(str(float(x)) for x in vector) + "]"


@dataclass
class _DocumentLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class ChunkStore(ABC):
    """
    Base class holding the replace-chunks protocol.

    Subclasses supply the storage primitives (_delete_chunks, _insert_batch)
    and the similarity search.
    """

    def __init__(
        self,
        documents: DocumentRepository,
        dimension: int | None = None,
        insert_batch_size: int = INSERT_BATCH_SIZE,
    ):
        self.documents = documents
        self.dimension = dimension
        self.insert_batch_size = insert_batch_size
        self._locks: dict[tuple[str, str], _DocumentLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def document_lock(self, document_id: str, collection: CollectionType):
        """
        Serialize reprocessing of one document.

        An entry lives only while some thread holds or waits for it.
        """
        key = (collection.value, document_id)
        with self._locks_guard:
            entry = self._locks.setdefault(key, _DocumentLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    def _check_dimension(self, vector: list[float]) -> None:
        if self.dimension is not None and len(vector) != self.dimension:
            raise ConfigurationError(
                f"Vector has {len(vector)} dimensions but the index expects {self.dimension}"
            )

    def replace_chunks(
        self,
        document_id: str,
        collection: CollectionType,
        texts: list[str],
        vectors: list[list[float]],
    ) -> int:
        """
        Replace every chunk of a document.

        Args:
            document_id: Owning document
            collection: official or library
            texts: Chunk texts in ordinal order
            vectors: vectors[i] belongs to texts[i]

        Returns:
            Number of chunks stored

        Raises:
            ValueError: If texts and vectors differ in length
            ConfigurationError: If a vector has the wrong dimension
            PersistenceError: If any delete/insert fails (flag left cleared)
        """
        if len(texts) != len(vectors):
            raise ValueError("texts and vectors must have same length")
        for vector in vectors:
            self._check_dimension(vector)

        records = [
            ChunkRecord(index=i, text=text, embedding=list(vector))
            for i, (text, vector) in enumerate(zip(texts, vectors))
        ]

        with self.document_lock(document_id, collection):
            self.documents.set_embedding_status(document_id, collection, False, 0)
            self._delete_chunks(document_id, collection)

            for batch_start in range(0, len(records), self.insert_batch_size):
                batch = records[batch_start:batch_start + self.insert_batch_size]
                self._insert_batch(document_id, collection, batch)
                logger.debug(
                    "chunk_batch_inserted",
                    document_id=document_id,
                    inserted=batch_start + len(batch),
                    total=len(records),
                )

            self.documents.set_embedding_status(document_id, collection, True, len(records))

        logger.info("chunks_replaced", document_id=document_id, chunk_count=len(records))
        return len(records)

    def clear_chunks(self, document_id: str, collection: CollectionType) -> None:
        """
        Remove every chunk of a document and mark it not embedded.

        Used when reprocessing yields no chunkable text: the old chunks
        describe text that is no longer the document's.

        Raises:
            PersistenceError: If the flag update or delete fails
        """
        with self.document_lock(document_id, collection):
            self.documents.set_embedding_status(document_id, collection, False, 0)
            self._delete_chunks(document_id, collection)
        logger.info("chunks_cleared", document_id=document_id)

    @abstractmethod
    def _delete_chunks(self, document_id: str, collection: CollectionType) -> None:
        ...

    @abstractmethod
    def _insert_batch(
        self,
        document_id: str,
        collection: CollectionType,
        records: list[ChunkRecord],
    ) -> None:
        ...

    @abstractmethod
    def search(
        self,
        query_vector: list[float],
        document_id: str,
        collection: CollectionType,
        limit: int = TOP_K_CHUNKS,
    ) -> list[ChunkMatch]:
        """Top `limit` chunks of one document, most similar first."""

    @abstractmethod
    def count_chunks(self, document_id: str, collection: CollectionType) -> int:
        ...


# =============================================================================
# SUPABASE
# =============================================================================


class SupabaseChunkStore(ChunkStore):
    """
    Chunks in the pgvector-backed book_chunks table.

    Example:
        store = SupabaseChunkStore(client, SupabaseDocumentRepository(client), dimension=384)
        matches = store.search(query_vector, book_id, CollectionType.LIBRARY)
    """

    def __init__(self, client: Client, documents: DocumentRepository, **kwargs):
        super().__init__(documents, **kwargs)
        self.client = client

    def _delete_chunks(self, document_id, collection):
        run_query(
            self.client.table(CHUNKS_TABLE).delete().eq(collection.foreign_key, document_id),
            f"delete chunks of {document_id}",
        )

    def _insert_batch(self, document_id, collection, records):
        rows = [
            {
                collection.foreign_key: document_id,
                "chunk_index": record.index,
                "chunk_text": record.text,
                "embedding": format_vector(record.embedding),
            }
            for record in records
        ]
        run_query(
            self.client.table(CHUNKS_TABLE).insert(rows),
            f"insert chunks {records[0].index}-{records[-1].index} of {document_id}",
        )

    def search(self, query_vector, document_id, collection, limit=TOP_K_CHUNKS):
        self._check_dimension(query_vector)
        rows = run_query(
            self.client.rpc(SEARCH_CHUNKS_RPC, {
                "query_embedding": format_vector(query_vector),
                "match_count": limit,
                "book_id": document_id,
                "is_library_book": collection.is_library,
            }),
            f"search chunks of {document_id}",
        ).data or []
        return [
            ChunkMatch(
                index=row.get("chunk_index", i),
                text=row["chunk_text"],
                similarity=float(row.get("similarity", 0.0)),
            )
            for i, row in enumerate(rows)
        ]

    def count_chunks(self, document_id, collection):
        result = run_query(
            self.client.table(CHUNKS_TABLE)
            .select("id", count="exact")
            .eq(collection.foreign_key, document_id),
            f"count chunks of {document_id}",
        )
        return result.count or 0


# =============================================================================
# CHROMA (LOCAL)
# =============================================================================


class ChromaChunkStore(ChunkStore):
    """
    Chunks in ChromaDB, for development without Supabase.

    Collections use COSINE distance, so similarity = 1 - distance.

    Example:
        store = ChromaChunkStore(LocalDocumentRepository())
        store.replace_chunks("book-1", CollectionType.LIBRARY, texts, vectors)
    """

    def __init__(
        self,
        documents: DocumentRepository,
        client=None,
        persist_directory: str | Path | None = None,
        **kwargs,
    ):
        super().__init__(documents, **kwargs)
        if client is None:
            path = Path(persist_directory or CHROMA_DB_DIR)
            path.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(path=str(path))
        self._client = client

    def _collection(self, collection: CollectionType):
        return self._client.get_or_create_collection(
            name=f"{CHROMA_COLLECTION_PREFIX}{collection.value}",
            metadata={
                "description": f"Koushole {collection.value} book chunks",
                "hnsw:space": "cosine",
            },
        )

    def _delete_chunks(self, document_id, collection):
        try:
            self._collection(collection).delete(where={"document_id": document_id})
        except (ChromaError, ValueError) as exc:
            raise PersistenceError(f"Failed to delete chunks of {document_id}: {exc}") from exc

    def _insert_batch(self, document_id, collection, records):
        try:
            self._collection(collection).add(
                ids=[f"{document_id}:{record.index:06d}" for record in records],
                documents=[record.text for record in records],
                embeddings=[record.embedding for record in records],
                metadatas=[
                    {"document_id": document_id, "chunk_index": record.index}
                    for record in records
                ],
            )
        except (ChromaError, ValueError) as exc:
            raise PersistenceError(f"Failed to insert chunks of {document_id}: {exc}") from exc

    def search(self, query_vector, document_id, collection, limit=TOP_K_CHUNKS):
        self._check_dimension(query_vector)
        available = self.count_chunks(document_id, collection)
        if available == 0:
            return []
        try:
            results = self._collection(collection).query(
                query_embeddings=[query_vector],
                n_results=min(limit, available),
                where={"document_id": document_id},
                include=["documents", "metadatas", "distances"],
            )
        except (ChromaError, ValueError) as exc:
            raise PersistenceError(f"Failed to search chunks of {document_id}: {exc}") from exc

        matches = []
        if results and results["documents"] and results["documents"][0]:
            for text, meta, dist in zip(
                results["documents"][0],
                results["metadatas"][0],
                results["distances"][0],
            ):
                matches.append(ChunkMatch(
                    index=int((meta or {}).get("chunk_index", len(matches))),
                    text=text,
                    similarity=1.0 - float(dist),
                ))
        return matches

    def count_chunks(self, document_id, collection):
        try:
            result = self._collection(collection).get(where={"document_id": document_id}, include=[])
        except (ChromaError, ValueError) as exc:
            raise PersistenceError(f"Failed to count chunks of {document_id}: {exc}") from exc
        return len(result["ids"]) if result["ids"] else 0

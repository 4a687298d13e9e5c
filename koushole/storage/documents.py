"""
Document Repository - Documents, chapters and content blocks.

A document's row is the one authoritative place that records whether it has
been chunked (`chunks_generated` + `total_chunks`). Chapters and the content
block are owned by the document and replaced wholesale on reprocessing.

Backends:
- SupabaseDocumentRepository: official_resources / library_books,
  book_chapters and book_content tables
- LocalDocumentRepository: a JSON manifest under data/, for development
"""

import json
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from koushole.config import CHAPTERS_TABLE, CONTENT_TABLE, LOCAL_MANIFEST_PATH
from koushole.models import Chapter, CollectionType, ContentBlock, Document
from koushole.utils.errors import PersistenceError
from koushole.utils.logging import get_logger

logger = get_logger(__name__)


def document_from_row(row: dict[str, Any], collection: CollectionType) -> Document:
    """Map a document row (either table) onto a Document."""
    return Document(
        id=str(row["id"]),
        collection=collection,
        file_url=row.get("file_url") or row.get("pdf_url") or "",
        title=row.get("title") or row.get("title_en") or row.get("name") or "",
        byte_size=row.get("file_size"),
        language=row.get("language"),
        subject=row.get("subject"),
        class_level=row.get("class_level"),
        chunks_generated=bool(row.get("chunks_generated")),
        total_chunks=row.get("total_chunks") or 0,
    )


class DocumentRepository(ABC):
    """Persistence for everything a document owns except its chunks."""

    @abstractmethod
    def get_document(self, document_id: str, collection: CollectionType) -> Document | None:
        """Return the document, or None if it does not exist."""

    @abstractmethod
    def list_pending(self, collection: CollectionType, limit: int | None = None) -> list[Document]:
        """Documents with a file whose chunks have not been generated."""

    @abstractmethod
    def replace_chapters(
        self,
        document_id: str,
        collection: CollectionType,
        chapters: list[Chapter],
    ) -> list[str]:
        """Delete the document's chapters and insert these; return new chapter ids."""

    @abstractmethod
    def replace_content(self, block: ContentBlock) -> None:
        """Replace the document's content block."""

    @abstractmethod
    def get_content(self, document_id: str, collection: CollectionType) -> str | None:
        """Stored raw text, if any."""

    @abstractmethod
    def set_embedding_status(
        self,
        document_id: str,
        collection: CollectionType,
        chunks_generated: bool,
        total_chunks: int,
    ) -> None:
        """Write the embedded flag and chunk count on the document row."""


# =============================================================================
# SUPABASE
# =============================================================================


def run_query(builder, action: str):
    """
    Execute a supabase-py query builder, mapping failures to PersistenceError.

    Example:
        rows = run_query(client.table("library_books").select("*"), "list books").data
    """
    try:
        return builder.execute()
    except PostgrestAPIError as exc:
        raise PersistenceError(f"Failed to {action}: {exc.message}", provider_name="supabase") from exc
    except httpx.HTTPError as exc:
        raise PersistenceError(f"Failed to {action}: {exc}", provider_name="supabase") from exc


class SupabaseDocumentRepository(DocumentRepository):
    """
    Documents in Supabase Postgres.

    Example:
        repo = SupabaseDocumentRepository(create_client(url, key))
        for doc in repo.list_pending(CollectionType.LIBRARY):
            print(doc.id, doc.title)
    """

    def __init__(self, client: Client):
        self.client = client

    def get_document(self, document_id, collection):
        rows = run_query(
            self.client.table(collection.document_table).select("*").eq("id", document_id).limit(1),
            f"load {collection.value} document {document_id}",
        ).data
        return document_from_row(rows[0], collection) if rows else None

    def list_pending(self, collection, limit=None):
        query = (
            self.client.table(collection.document_table)
            .select("*")
            .or_("chunks_generated.is.null,chunks_generated.eq.false")
            .order("created_at")
        )
        if limit:
            query = query.limit(limit)
        rows = run_query(query, f"list pending {collection.value} documents").data or []
        documents = [document_from_row(row, collection) for row in rows]
        return [doc for doc in documents if doc.file_url]

    def replace_chapters(self, document_id, collection, chapters):
        fk = collection.foreign_key
        run_query(
            self.client.table(CHAPTERS_TABLE).delete().eq(fk, document_id),
            f"delete chapters of {document_id}",
        )
        if not chapters:
            return []
        rows = [
            {
                fk: document_id,
                "chapter_number": chapter.number,
                "title_en": chapter.title_en,
                "title_bn": chapter.title_bn,
                "page_start": chapter.page_start,
                "page_end": chapter.page_end,
                "content_extracted": False,
            }
            for chapter in chapters
        ]
        inserted = run_query(
            self.client.table(CHAPTERS_TABLE).insert(rows),
            f"insert chapters of {document_id}",
        ).data or []
        return [str(row["id"]) for row in inserted if "id" in row]

    def replace_content(self, block):
        fk = block.collection.foreign_key
        run_query(
            self.client.table(CONTENT_TABLE).delete().eq(fk, block.document_id),
            f"delete content of {block.document_id}",
        )
        run_query(
            self.client.table(CONTENT_TABLE).insert({
                fk: block.document_id,
                "chapter_id": block.chapter_id,
                "content": block.text,
            }),
            f"insert content of {block.document_id}",
        )

    def get_content(self, document_id, collection):
        rows = run_query(
            self.client.table(CONTENT_TABLE)
            .select("content")
            .eq(collection.foreign_key, document_id)
            .limit(1),
            f"load content of {document_id}",
        ).data
        return rows[0]["content"] if rows else None

    def set_embedding_status(self, document_id, collection, chunks_generated, total_chunks):
        run_query(
            self.client.table(collection.document_table)
            .update({"chunks_generated": chunks_generated, "total_chunks": total_chunks})
            .eq("id", document_id),
            f"update embedding status of {document_id}",
        )


# =============================================================================
# LOCAL JSON MANIFEST
# =============================================================================


class LocalDocumentRepository(DocumentRepository):
    """
    Documents in a JSON file, shaped like:

        {"official": {"<id>": {...document..., "chapters": [...], "content": {...}}},
         "library": {...}}
    """

    def __init__(self, manifest_path: str | Path = LOCAL_MANIFEST_PATH):
        self.manifest_path = Path(manifest_path)
        self._lock = threading.Lock()

    def _load(self) -> dict:
        if not self.manifest_path.exists():
            return {collection.value: {} for collection in CollectionType}
        try:
            data = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Cannot read manifest {self.manifest_path}: {exc}") from exc
        for collection in CollectionType:
            data.setdefault(collection.value, {})
        return data

    def _save(self, data: dict) -> None:
        self.manifest_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.manifest_path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp_path.replace(self.manifest_path)
        except OSError as exc:
            raise PersistenceError(f"Cannot write manifest {self.manifest_path}: {exc}") from exc

    @staticmethod
    def _entry(data: dict, document_id: str, collection: CollectionType) -> dict:
        # Documents processed over HTTP may never have been registered
        return data[collection.value].setdefault(document_id, {"id": document_id})

    def register_document(self, document: Document) -> Document:
        """Add (or overwrite) a document entry; used by the CLI for local PDFs."""
        with self._lock:
            data = self._load()
            existing = data[document.collection.value].get(document.id, {})
            existing.update({
                "id": document.id,
                "file_url": document.file_url,
                "title": document.title,
                "file_size": document.byte_size,
                "language": document.language,
                "subject": document.subject,
                "class_level": document.class_level,
                "chunks_generated": existing.get("chunks_generated", False),
                "total_chunks": existing.get("total_chunks", 0),
            })
            data[document.collection.value][document.id] = existing
            self._save(data)
        return document_from_row(existing, document.collection)

    def get_document(self, document_id, collection):
        with self._lock:
            entry = self._load()[collection.value].get(document_id)
        return document_from_row(entry, collection) if entry else None

    def list_pending(self, collection, limit=None):
        with self._lock:
            entries = list(self._load()[collection.value].values())
        pending = [
            document_from_row(entry, collection)
            for entry in entries
            if not entry.get("chunks_generated") and entry.get("file_url")
        ]
        return pending[:limit] if limit else pending

    def replace_chapters(self, document_id, collection, chapters):
        with self._lock:
            data = self._load()
            entry = self._entry(data, document_id, collection)
            entry["chapters"] = [
                {"id": str(uuid.uuid4()), **chapter.to_dict(), "content_extracted": False}
                for chapter in chapters
            ]
            self._save(data)
        return [row["id"] for row in entry["chapters"]]

    def replace_content(self, block):
        with self._lock:
            data = self._load()
            entry = self._entry(data, block.document_id, block.collection)
            entry["content"] = {"chapter_id": block.chapter_id, "content": block.text}
            self._save(data)

    def get_content(self, document_id, collection):
        with self._lock:
            entry = self._load()[collection.value].get(document_id) or {}
        return (entry.get("content") or {}).get("content")

    def get_chapters(self, document_id: str, collection: CollectionType) -> list[Chapter]:
        with self._lock:
            entry = self._load()[collection.value].get(document_id) or {}
        return [
            Chapter(
                number=row["number"],
                title_en=row["title_en"],
                title_bn=row["title_bn"],
                page_start=row.get("page_start"),
                page_end=row.get("page_end"),
            )
            for row in entry.get("chapters", [])
        ]

    def set_embedding_status(self, document_id, collection, chunks_generated, total_chunks):
        with self._lock:
            data = self._load()
            entry = self._entry(data, document_id, collection)
            entry["chunks_generated"] = chunks_generated
            entry["total_chunks"] = total_chunks
            self._save(data)

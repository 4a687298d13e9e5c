"""Tests for the document repositories."""

import json
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from koushole.models import Chapter, CollectionType, ContentBlock, Document
from koushole.storage.documents import (
    LocalDocumentRepository,
    SupabaseDocumentRepository,
    document_from_row,
    run_query,
)
from koushole.utils.errors import PersistenceError

OFFICIAL = CollectionType.OFFICIAL
LIBRARY = CollectionType.LIBRARY

CHAPTERS = [
    Chapter(1, "Our Environment", "আমাদের পরিবেশ", page_start=1, page_end=12),
    Chapter(2, "Water", "পানি"),
]


# ── Local manifest ──────────────────────────────────────────────────────────


@pytest.fixture()
def repo(tmp_path):
    return LocalDocumentRepository(tmp_path / "library.json")


class TestLocalDocumentRepository:
    def test_register_and_get(self, repo):
        repo.register_document(Document(id="env-3", collection=LIBRARY, file_url="/books/env.pdf", title="Environment"))

        document = repo.get_document("env-3", LIBRARY)
        assert document.title == "Environment"
        assert document.file_url == "/books/env.pdf"
        assert not document.chunks_generated
        assert repo.get_document("env-3", OFFICIAL) is None

    def test_pending_until_flag_is_set(self, repo):
        repo.register_document(Document(id="a", collection=OFFICIAL, file_url="/a.pdf"))
        repo.register_document(Document(id="b", collection=OFFICIAL, file_url="/b.pdf"))
        repo.register_document(Document(id="no-file", collection=OFFICIAL))

        repo.set_embedding_status("a", OFFICIAL, True, 12)

        assert [doc.id for doc in repo.list_pending(OFFICIAL)] == ["b"]
        assert repo.get_document("a", OFFICIAL).total_chunks == 12

    def test_reregistering_keeps_status(self, repo):
        repo.register_document(Document(id="a", collection=OFFICIAL, file_url="/a.pdf"))
        repo.set_embedding_status("a", OFFICIAL, True, 4)
        repo.register_document(Document(id="a", collection=OFFICIAL, file_url="/a.pdf", title="New"))
        assert repo.get_document("a", OFFICIAL).chunks_generated

    def test_chapters_are_replaced(self, repo):
        ids = repo.replace_chapters("env-3", LIBRARY, CHAPTERS)
        assert len(ids) == 2 and len(set(ids)) == 2

        repo.replace_chapters("env-3", LIBRARY, CHAPTERS[:1])
        assert repo.get_chapters("env-3", LIBRARY) == CHAPTERS[:1]

    def test_content_round_trip_keeps_bangla(self, repo, tmp_path):
        repo.replace_content(ContentBlock("env-3", LIBRARY, "পরিবেশ আমাদের চারপাশ", chapter_id="c1"))

        assert repo.get_content("env-3", LIBRARY) == "পরিবেশ আমাদের চারপাশ"
        raw = (tmp_path / "library.json").read_text(encoding="utf-8")
        assert "পরিবেশ" in raw

    def test_missing_manifest_is_empty(self, repo):
        assert repo.list_pending(LIBRARY) == []
        assert repo.get_content("x", LIBRARY) is None

    def test_corrupt_manifest(self, tmp_path):
        path = tmp_path / "library.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(PersistenceError):
            LocalDocumentRepository(path).list_pending(OFFICIAL)

    def test_manifest_layout(self, repo, tmp_path):
        repo.set_embedding_status("x", OFFICIAL, False, 0)
        data = json.loads((tmp_path / "library.json").read_text(encoding="utf-8"))
        assert set(data) == {"official", "library"}
        assert data["official"]["x"]["chunks_generated"] is False


# ── Supabase ────────────────────────────────────────────────────────────────


class TestSupabaseDocumentRepository:
    def test_replace_chapters_uses_collection_foreign_key(self):
        client = MagicMock()
        client.table.return_value.insert.return_value.execute.return_value.data = [
            {"id": "c-1"}, {"id": "c-2"},
        ]
        repo = SupabaseDocumentRepository(client)

        ids = repo.replace_chapters("book-7", LIBRARY, CHAPTERS)

        table = client.table.return_value
        table.delete.return_value.eq.assert_called_once_with("library_book_id", "book-7")
        rows = table.insert.call_args.args[0]
        assert rows[0]["chapter_number"] == 1
        assert rows[0]["title_bn"] == "আমাদের পরিবেশ"
        assert rows[1]["library_book_id"] == "book-7"
        assert ids == ["c-1", "c-2"]

    def test_no_chapters_only_deletes(self):
        client = MagicMock()
        assert SupabaseDocumentRepository(client).replace_chapters("r-1", OFFICIAL, []) == []
        client.table.return_value.insert.assert_not_called()

    def test_set_embedding_status_updates_document_row(self):
        client = MagicMock()
        SupabaseDocumentRepository(client).set_embedding_status("r-1", OFFICIAL, True, 30)

        client.table.assert_called_with("official_resources")
        client.table.return_value.update.assert_called_once_with(
            {"chunks_generated": True, "total_chunks": 30}
        )

    def test_get_document_missing(self):
        client = MagicMock()
        client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = []
        assert SupabaseDocumentRepository(client).get_document("nope", LIBRARY) is None


def test_run_query_maps_api_errors():
    builder = MagicMock()
    builder.execute.side_effect = APIError({"message": "relation does not exist", "code": "42P01"})
    with pytest.raises(PersistenceError) as excinfo:
        run_query(builder, "list books")
    assert "relation does not exist" in str(excinfo.value)


def test_document_from_row_accepts_either_table_shape():
    document = document_from_row(
        {"id": 9, "pdf_url": "https://x/b.pdf", "title_en": "Physics", "chunks_generated": None},
        OFFICIAL,
    )
    assert document.id == "9"
    assert document.file_url == "https://x/b.pdf"
    assert document.title == "Physics"
    assert document.chunks_generated is False

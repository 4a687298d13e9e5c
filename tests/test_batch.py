"""Tests for the batch driver."""

import pytest

from koushole.ingestion.batch import BatchRunner
from koushole.models import CollectionType, Document, IngestionStatus
from koushole.utils.errors import ConfigurationError

OFFICIAL = CollectionType.OFFICIAL
LIBRARY = CollectionType.LIBRARY


@pytest.fixture()
def library(tmp_path, documents, text_pdf, scanned_pdf):
    """Three pending books: a good one, a scanned one and a missing file."""
    for doc in (
        Document(id="good", collection=OFFICIAL, file_url=str(text_pdf), title="Science"),
        Document(id="scan", collection=LIBRARY, file_url=str(scanned_pdf), title="Old Scan"),
        Document(id="gone", collection=LIBRARY, file_url=str(tmp_path / "gone.pdf"), title="Gone"),
        Document(id="done", collection=LIBRARY, file_url=str(text_pdf), chunks_generated=True),
    ):
        documents.documents[(doc.collection, doc.id)] = doc
    return documents


class TestBatchRunner:
    def test_tallies_success_empty_and_failure(self, make_orchestrator, library):
        pauses = []
        runner = BatchRunner(make_orchestrator(), library, delay_seconds=35, sleep=pauses.append)

        report = runner.run()

        assert report.total == 3
        assert (report.succeeded, report.empty, report.failed) == (1, 1, 1)
        # pause between documents, not after the last one
        assert pauses == [35, 35]

    def test_only_pending_documents(self, make_orchestrator, library):
        runner = BatchRunner(make_orchestrator(), library, delay_seconds=0)
        ids = [doc.id for doc in runner.pending([LIBRARY])]
        assert "done" not in ids
        assert set(ids) == {"scan", "gone"}

    def test_limit(self, make_orchestrator, library):
        runner = BatchRunner(make_orchestrator(), library, delay_seconds=0)
        assert runner.run(limit=1).total == 1

    def test_processed_documents_are_not_pending_again(self, make_orchestrator, library):
        runner = BatchRunner(make_orchestrator(), library, delay_seconds=0)
        runner.run([OFFICIAL])
        assert runner.pending([OFFICIAL]) == []

    def test_progress_callback(self, make_orchestrator, library):
        seen = []
        runner = BatchRunner(make_orchestrator(), library, delay_seconds=0)
        runner.run([LIBRARY], on_result=lambda doc, result: seen.append((doc.id, result.status)))
        assert dict(seen) == {"scan": IngestionStatus.IMAGE_BASED, "gone": IngestionStatus.FAILED}

    def test_unexpected_exception_is_counted_not_raised(self, make_orchestrator, library):
        orchestrator = make_orchestrator()
        orchestrator.parser.parse_bytes = lambda data: 1 / 0

        report = BatchRunner(orchestrator, library, delay_seconds=0).run([OFFICIAL])

        assert report.failed == 1
        assert "Unexpected error" in report.results[0].message

    def test_configuration_error_stops_the_run(self, make_orchestrator, library, chunk_store):
        chunk_store.dimension = 999
        runner = BatchRunner(make_orchestrator(), library, delay_seconds=0)
        with pytest.raises(ConfigurationError):
            runner.run([OFFICIAL])

    def test_nothing_pending(self, make_orchestrator, documents):
        pauses = []
        runner = BatchRunner(make_orchestrator(), documents, delay_seconds=35, sleep=pauses.append)
        assert runner.run().total == 0
        assert pauses == []

    def test_run_documents_processes_exactly_the_given_list(self, make_orchestrator, library):
        runner = BatchRunner(make_orchestrator(), library, delay_seconds=0)
        listed = runner.pending([OFFICIAL, LIBRARY], limit=1)

        report = runner.run_documents(listed)

        assert [r.document_id for r in report.results] == [listed[0].id]
        assert {doc.id for doc in runner.pending([LIBRARY])} == {"scan", "gone"}

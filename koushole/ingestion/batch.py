"""
Batch driver - Processes every document that still lacks embeddings.

Documents are handled one at a time with a fixed pause in between (the
vision and embedding free tiers are rate limited). A document that fails,
or raises something unexpected, is tallied and the run moves on; only a
ConfigurationError stops the batch.
"""

import time
from dataclasses import dataclass, field
from typing import Callable

from koushole.config import BATCH_DELAY_SECONDS, BATCH_TIMEOUT_SECONDS
from koushole.ingestion.orchestrator import IngestionOrchestrator
from koushole.models import CollectionType, Document, IngestionResult, IngestionStatus
from koushole.storage.documents import DocumentRepository
from koushole.utils.errors import ConfigurationError
from koushole.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class BatchReport:
    """Tally of one batch run."""

    results: list[IngestionResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success and not r.is_empty)

    @property
    def empty(self) -> int:
        """Processed without error but nothing searchable came out."""
        return sum(1 for r in self.results if r.is_empty)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def total(self) -> int:
        return len(self.results)


class BatchRunner:
    """
    Runs the orchestrator over pending documents.

    Example:
        runner = BatchRunner(orchestrator, documents)
        report = runner.run([CollectionType.LIBRARY])
        print(report.succeeded, report.empty, report.failed)
    """

    def __init__(
        self,
        orchestrator: IngestionOrchestrator,
        documents: DocumentRepository,
        delay_seconds: float = BATCH_DELAY_SECONDS,
        timeout_seconds: float = BATCH_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.orchestrator = orchestrator
        self.documents = documents
        self.delay_seconds = delay_seconds
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep

    def pending(
        self,
        collections: list[CollectionType],
        limit: int | None = None,
    ) -> list[Document]:
        pending: list[Document] = []
        for collection in collections:
            pending.extend(self.documents.list_pending(collection))
        return pending[:limit] if limit else pending

    def run(
        self,
        collections: list[CollectionType] | None = None,
        limit: int | None = None,
        on_result: Callable[[Document, IngestionResult], None] | None = None,
    ) -> BatchReport:
        """
        Process pending documents of the given collections.

        Args:
            collections: Which collections to scan (default: both)
            limit: Stop after this many documents
            on_result: Called after each document (progress output)

        Raises:
            ConfigurationError: fatal, stops the run
        """
        collections = collections or list(CollectionType)
        return self.run_documents(self.pending(collections, limit), on_result=on_result)

    def run_documents(
        self,
        documents: list[Document],
        on_result: Callable[[Document, IngestionResult], None] | None = None,
    ) -> BatchReport:
        """
        Process an already listed set of documents, in order.

        Lets a caller show the pending list and then work through exactly
        that list.

        Raises:
            ConfigurationError: fatal, stops the run
        """
        report = BatchReport()
        logger.info("batch_started", document_count=len(documents))

        for position, document in enumerate(documents):
            try:
                result = self.orchestrator.process_document(
                    document.id,
                    document.file_url,
                    document.collection,
                    title=document.title,
                    timeout_seconds=self.timeout_seconds,
                )
            except ConfigurationError:
                raise
            except Exception as exc:  # one bad document must not stop the batch
                logger.exception("batch_document_crashed", document_id=document.id)
                result = IngestionResult(
                    document_id=document.id,
                    collection=document.collection,
                    status=IngestionStatus.FAILED,
                    message=f"Unexpected error: {exc}",
                )
            report.results.append(result)
            if on_result:
                on_result(document, result)

            if position < len(documents) - 1 and self.delay_seconds > 0:
                self.sleep(self.delay_seconds)

        logger.info(
            "batch_finished",
            succeeded=report.succeeded,
            empty=report.empty,
            failed=report.failed,
        )
        return report

#!/usr/bin/env python3
"""
CLI Interface - Process books and check retrieval from the terminal.

Commands:
- process: ingest one PDF (URL or local path)
- batch:   ingest every document that still lacks embeddings
- search:  show the chunks retrieved for a question
- ask:     ask the tutor, optionally grounded in a book

Run with:
    koushole batch --collection library
    python -m koushole process ./books/physics.pdf --collection official
"""

import argparse
import sys
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from koushole.config import BATCH_DELAY_SECONDS, BATCH_TIMEOUT_SECONDS, TOP_K_CHUNKS, Settings
from koushole.factory import build_chat, build_orchestrator, build_retriever, build_storage
from koushole.ingestion.batch import BatchReport, BatchRunner
from koushole.models import CollectionType, Document, IngestionResult, IngestionStatus
from koushole.storage.documents import LocalDocumentRepository
from koushole.utils.errors import ConfigurationError, KousholeError
from koushole.utils.logging import configure_logging

# Rich console for human-facing output (logs go to stderr via structlog)
console = Console()

STATUS_STYLES = {
    IngestionStatus.COMPLETED: "green",
    IngestionStatus.NO_CHAPTERS: "yellow",
    IngestionStatus.IMAGE_BASED: "yellow",
    IngestionStatus.FAILED: "red",
}


def print_result(result: IngestionResult, title: str = "") -> None:
    """One line per document, coloured by outcome."""
    style = STATUS_STYLES[result.status]
    label = title or result.document_id
    console.print(
        f"[{style}]{result.status.value:>12}[/{style}]  {label}: {result.message}"
    )


def print_chapters(result: IngestionResult) -> None:
    if not result.chapters:
        return
    table = Table(title="Chapters", show_header=True, header_style="bold cyan")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("English", style="white")
    table.add_column("বাংলা", style="white")
    table.add_column("Pages", style="dim")
    for chapter in result.chapters:
        pages = ""
        if chapter.page_start is not None:
            pages = f"{chapter.page_start}" + (f"-{chapter.page_end}" if chapter.page_end else "")
        table.add_row(str(chapter.number), chapter.title_en, chapter.title_bn, pages)
    console.print(table)


def print_report(report: BatchReport) -> None:
    table = Table(title="Batch Summary", show_header=True, header_style="bold cyan")
    table.add_column("Outcome", style="white")
    table.add_column("Documents", style="green", justify="right")
    table.add_row("Succeeded", str(report.succeeded))
    table.add_row("Processed, empty", str(report.empty))
    table.add_row("Failed", f"[red]{report.failed}[/red]" if report.failed else "0")
    table.add_row("Total", str(report.total))
    console.print(table)


def _collections(value: str) -> list[CollectionType]:
    if value == "all":
        return list(CollectionType)
    return [CollectionType.parse(value)]


# =============================================================================
# COMMANDS
# =============================================================================


def cmd_process(args, settings: Settings) -> int:
    collection = CollectionType.parse(args.collection)
    storage = build_storage(settings)
    orchestrator = build_orchestrator(settings, storage=storage, timeout_seconds=args.timeout)

    location = args.source
    is_local_file = not location.startswith(("http://", "https://"))
    document_id = args.id or (Path(location).stem if is_local_file else None)
    if not document_id:
        console.print("[red]--id is required when processing a URL[/red]")
        return 2

    if isinstance(storage.documents, LocalDocumentRepository):
        storage.documents.register_document(Document(
            id=document_id,
            collection=collection,
            file_url=str(Path(location).resolve()) if is_local_file else location,
            title=args.title or document_id,
        ))

    with console.status("[bold green]Processing...", spinner="dots"):
        result = orchestrator.process_document(
            document_id,
            str(Path(location).resolve()) if is_local_file else location,
            collection,
            title=args.title or "",
        )
    print_result(result, args.title)
    print_chapters(result)
    return 0


def cmd_batch(args, settings: Settings) -> int:
    storage = build_storage(settings)
    orchestrator = build_orchestrator(settings, storage=storage, timeout_seconds=args.timeout)
    runner = BatchRunner(orchestrator, storage.documents, delay_seconds=args.delay)

    pending = runner.pending(_collections(args.collection), args.limit)
    if not pending:
        console.print("[green]Nothing to do: every document already has embeddings.[/green]")
        return 0
    console.print(
        f"[cyan]{len(pending)} documents to process, {args.delay:.0f}s between documents[/cyan]\n"
    )

    done = 0

    def on_result(document: Document, result: IngestionResult) -> None:
        nonlocal done
        done += 1
        console.print(f"[dim][{done}/{len(pending)}][/dim]", end=" ")
        print_result(result, document.title)

    report = runner.run_documents(pending, on_result=on_result)
    console.print()
    print_report(report)
    return 0


def cmd_search(args, settings: Settings) -> int:
    retriever = build_retriever(settings)
    result = retriever.retrieve(args.query, args.document_id, args.collection, limit=args.limit)
    if not result.has_results:
        console.print("[yellow]No chunks found for this book.[/yellow]")
        return 0
    for citation, match in zip(result.citations, result.matches):
        console.print(Panel(
            match.text[:600],
            title=f"Source {citation.index} (chunk {match.index}, {citation.similarity}%)",
            border_style="blue",
        ))
    return 0


def cmd_ask(args, settings: Settings) -> int:
    chat = build_chat(settings)
    with console.status("[bold green]Thinking...", spinner="dots"):
        reply = chat.reply(args.message, document_id=args.book, collection=args.collection)
    console.print("\n[bold green]Koushole:[/bold green]")
    console.print(Markdown(reply.reply))
    if reply.sources:
        console.print(
            "[dim]Sources: "
            + ", ".join(f"[{s.index}] {s.similarity}%" for s in reply.sources)
            + "[/dim]"
        )
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="koushole",
        description="Ingest textbook PDFs and query them for grounded tutoring",
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    sub = parser.add_subparsers(dest="command", required=True)

    process = sub.add_parser("process", help="Ingest one PDF")
    process.add_argument("source", help="PDF URL or local path")
    process.add_argument("--id", help="Document id (defaults to the file name for local files)")
    process.add_argument("--collection", default="official", choices=["official", "library"])
    process.add_argument("--title", default="", help="Book title for prompt context")
    process.add_argument("--timeout", type=float, default=BATCH_TIMEOUT_SECONDS,
                         help="Time budget in seconds")
    process.set_defaults(handler=cmd_process)

    batch = sub.add_parser("batch", help="Ingest every document without embeddings")
    batch.add_argument("--collection", default="all", choices=["official", "library", "all"])
    batch.add_argument("--limit", type=int, default=None, help="Process at most N documents")
    batch.add_argument("--delay", type=float, default=BATCH_DELAY_SECONDS,
                       help="Seconds to wait between documents")
    batch.add_argument("--timeout", type=float, default=BATCH_TIMEOUT_SECONDS,
                       help="Time budget per document in seconds")
    batch.set_defaults(handler=cmd_batch)

    search = sub.add_parser("search", help="Show chunks retrieved for a question")
    search.add_argument("document_id")
    search.add_argument("query")
    search.add_argument("--collection", default="official", choices=["official", "library"])
    search.add_argument("--limit", type=int, default=TOP_K_CHUNKS)
    search.set_defaults(handler=cmd_search)

    ask = sub.add_parser("ask", help="Ask the tutor a question")
    ask.add_argument("message")
    ask.add_argument("--book", default=None, help="Ground the answer in this document")
    ask.add_argument("--collection", default="library", choices=["official", "library"])
    ask.set_defaults(handler=cmd_ask)

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Run the CLI.

    Returns:
        0 on completion (including per-document failures), 1 on a
        configuration error, 2 on bad usage
    """
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
        configure_logging(args.log_level or settings.log_level)
        return args.handler(args, settings)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        return 1
    except KousholeError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        return 0 if args.command == "batch" else 1
    except KeyboardInterrupt:
        console.print("\n[bold blue]Interrupted.[/bold blue]")
        return 130


if __name__ == "__main__":
    sys.exit(main())

# /notebookrag/app.py
"""
Interactive CLI for the notebook RAG service.
Ingests extracted text files into a notebook, streams grounded answers, and
manages conversation memory and notebook contents.
"""
import asyncio
import os
import sys
from pathlib import Path

# Rich UI Components
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table, box

from langchain_community.document_loaders import TextLoader

from .config import CHUNK_OVERLAP, CHUNK_SIZE, console
from .errors import InvalidInput, RAGError
from .observability import get_logger
from .rag_service import (
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    IngestDocument,
    MetadataEvent,
    RetrievalOrchestrator,
    build_orchestrator,
)
from .vector_store import TenantKey

logger = get_logger(__name__)


# --- UI & Formatting Functions ---

def display_welcome_banner():
    console.print(Panel(
        "[bold cyan]Notebook RAG[/bold cyan]\n"
        "Ask questions about your own documents, one notebook at a time.\n"
        f"[dim]Chunking: {CHUNK_SIZE} chars with {CHUNK_OVERLAP} chars of overlap[/dim]",
        title="Welcome",
        border_style="cyan",
    ))


def format_sources(sources, confidence: float):
    if not sources:
        console.print(f"[yellow]No matching passages (confidence {confidence:.2f}).[/yellow]")
        return
    table = Table(title=f"Sources (confidence {confidence:.2f})", box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Score", justify="right")
    table.add_column("Excerpt", overflow="fold")
    for idx, source in enumerate(sources, start=1):
        score = "text" if source.score is None else f"{source.score:.3f}"
        table.add_row(str(idx), source.title or source.source_name, score, source.excerpt)
    console.print(table)


def choose_tenant() -> TenantKey:
    console.print("\n[bold]Select knowledge base[/bold] [dim](leave notebook blank for the global base)[/dim]")
    while True:
        notebook_id = Prompt.ask("Notebook id", default="").strip()
        if not notebook_id:
            return TenantKey.global_scope()
        user_id = Prompt.ask("User id", default=os.getenv("USER", "local")).strip()
        try:
            return TenantKey.notebook(notebook_id, user_id)
        except InvalidInput as exc:
            console.print(f"[red]{exc.message}[/red]")


# --- Main Application Flow ---

def _resolve_upload_path(raw_input: str) -> tuple[Path | None, str | None]:
    """Normalizes and validates user-provided file path."""
    cleaned = str(raw_input or "").strip().strip('"').strip("'")
    if not cleaned:
        return None, "Error: Empty path provided."
    try:
        resolved = Path(cleaned).expanduser().resolve(strict=True)
    except FileNotFoundError:
        return None, f"Error: File not found at '{cleaned}'"
    except OSError as exc:
        return None, f"Error: Invalid path '{cleaned}' ({exc})"
    if not resolved.is_file():
        return None, f"Error: Path is not a regular file: '{resolved}'"
    return resolved, None


def load_text_file(path: Path) -> str:
    docs = TextLoader(str(path), autodetect_encoding=True).load()
    return "\n\n".join(doc.page_content for doc in docs)


def handle_ingest(loop, service: RetrievalOrchestrator, tenant: TenantKey):
    """CLI flow for ingesting one extracted-text file."""
    file_path, error_message = _resolve_upload_path(Prompt.ask("Enter the full path to a text file"))
    if file_path is None:
        console.print(f"[bold red]{error_message}[/bold red]")
        return
    title = Prompt.ask("Enter a custom title (optional)", default=file_path.stem)
    skip_duplicates = Confirm.ask("Skip near-duplicate chunks?", default=False)
    document = IngestDocument(text=load_text_file(file_path), title=title, source_name=file_path.name)

    with console.status("[bold cyan]Chunking and embedding...[/bold cyan]", spinner="dots"):
        report = loop.run_until_complete(service.ingest(tenant, [document], skip_duplicates=skip_duplicates))
    if report.errors:
        for error in report.errors:
            console.print(f"[bold red]Failed to ingest '{error['title']}': {error['error']}[/bold red]")
        return
    console.print(
        f"[green]Stored {report.chunks_added} of {report.chunk_count} chunks from '{title}'"
        f" ({report.skipped_duplicates} duplicates skipped).[/green]"
    )


async def _stream_answer(service: RetrievalOrchestrator, tenant: TenantKey, question: str):
    stream = await service.stream_query(tenant, question)
    sources = ()
    confidence = 0.0
    async with stream:
        async for event in stream:
            if isinstance(event, MetadataEvent):
                sources, confidence = event.sources, event.confidence
            elif isinstance(event, ChunkEvent):
                console.print(event.text, end="", markup=False, highlight=False, soft_wrap=True)
            elif isinstance(event, CompleteEvent):
                console.print()
            elif isinstance(event, ErrorEvent):
                console.print()
                console.print(f"[yellow]{event.message}[/yellow]")
                console.print(event.fallback_answer, markup=False)
    format_sources(sources, confidence)


def handle_qa_session(loop, service: RetrievalOrchestrator, tenant: TenantKey):
    """Q&A loop with streamed answers."""
    console.print(f"\n[bold green]Q&A Session Started[/bold green] for [cyan]{tenant.storage_key}[/cyan]. "
                  "[italic]Type 'back' to return to menu.[/italic]")
    while True:
        query = Prompt.ask("[bold cyan]Ask a question (or type 'back' to go back to the menu)[/bold cyan]")
        if query.strip().lower() == "back":
            break
        if not query.strip():
            continue
        try:
            loop.run_until_complete(_stream_answer(service, tenant, query))
        except RAGError as exc:
            console.print(f"[bold red]{exc.message}[/bold red]")
            logger.warning("cli_query_failed", error_type=type(exc).__name__, error=str(exc))


def show_memory(service: RetrievalOrchestrator, tenant: TenantKey):
    turns = service.memory_turns(tenant.storage_key)
    if not turns:
        console.print("[yellow]No conversation yet.[/yellow]")
        return
    table = Table(title="Conversation memory", box=box.SIMPLE)
    table.add_column("Role")
    table.add_column("Text", overflow="fold")
    for turn in turns:
        table.add_row(turn["role"], turn["text"])
    console.print(table)


def show_stats(loop, service: RetrievalOrchestrator, tenant: TenantKey):
    stats = loop.run_until_complete(service.tenant_stats(tenant))
    table = Table(title=f"Notebook {stats['tenant']}", box=box.SIMPLE)
    table.add_column("Source")
    table.add_column("Chunks", justify="right")
    for source, count in sorted(stats["sources"].items()):
        table.add_row(source or "-", str(count))
    console.print(table)
    console.print(f"[dim]total={stats['total_chunks']} native_index={stats['native_index']} fts5={stats['fts5']}[/dim]")


def main():
    """Main application loop."""
    display_welcome_banner()
    loop = asyncio.new_event_loop()
    service = build_orchestrator()
    tenant = choose_tenant()

    try:
        while True:
            try:
                console.print(f"\n[bold]Main Menu[/bold] [dim]({tenant.storage_key})[/dim]")
                console.print("[green]1. Ingest a text file[/green]")
                console.print("[blue]2. Start Q&A Session[/blue]")
                console.print("[cyan]3. Show conversation memory[/cyan]")
                console.print("[cyan]4. Clear conversation memory[/cyan]")
                console.print("[cyan]5. Notebook statistics[/cyan]")
                console.print("[magenta]6. Switch notebook[/magenta]")
                console.print("[red]7. Delete this notebook's chunks[/red]")
                console.print("[red]8. Exit[/red]")

                choice = Prompt.ask("Choose an option", choices=[str(n) for n in range(1, 9)])

                if choice == "1":
                    handle_ingest(loop, service, tenant)
                elif choice == "2":
                    handle_qa_session(loop, service, tenant)
                elif choice == "3":
                    show_memory(service, tenant)
                elif choice == "4":
                    service.clear_memory(tenant.storage_key)
                    console.print("[green]Memory cleared.[/green]")
                elif choice == "5":
                    show_stats(loop, service, tenant)
                elif choice == "6":
                    tenant = choose_tenant()
                elif choice == "7":
                    if Confirm.ask(f"Delete every chunk in {tenant.storage_key}?", default=False):
                        deleted = loop.run_until_complete(service.delete_tenant(tenant))
                        console.print(f"[green]Deleted {deleted} chunks.[/green]")
                elif choice == "8":
                    break
            except KeyboardInterrupt:
                break
    finally:
        service.close()
        loop.close()

    console.print("\n[bold magenta]Goodbye! Hope you had a productive session.[/bold magenta]")
    sys.exit(0)

if __name__ == "__main__":
    main()

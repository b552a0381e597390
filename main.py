"""Main CLI entry point for the document QA pipeline."""
import asyncio
import hashlib
import uuid
from pathlib import Path

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from utils.logger import setup_logger
from execution.job_queue import IngestionQueue
from execution.models import IngestionJob, ProcessingStatus, calculate_progress
from execution.pipeline import DocumentPipeline, build_chunker
from ingestion.pdf_extractor import PDFExtractor
from providers.factory import EmbeddingProviderFactory, GenerationProviderFactory
from retrieval.orchestrator import RAGOrchestrator
from storage.database import Database
from storage.file_store import LocalFileStore
from storage.vector_store import VectorStore

logger = setup_logger(__name__)
console = Console()

DEFAULT_USER = "local"


def compute_file_hash(file_path: Path) -> str:
    """Compute SHA256 hash of a file.

    Args:
        file_path: Path to file

    Returns:
        Hex digest of hash
    """
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for byte_block in iter(lambda: f.read(4096), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


def reset_failed_document(db: Database, vector_store: VectorStore, document_id: str, file_path: str) -> None:
    """Clear a failed document's vectors and chunk records and point it at the new upload."""
    vector_store.delete_document(document_id)
    db.reset_document(document_id, file_path=file_path)


def _status_style(status: str) -> str:
    return {
        ProcessingStatus.COMPLETED.value: "green",
        ProcessingStatus.FAILED.value: "red",
        ProcessingStatus.PROCESSING.value: "yellow",
    }.get(status, "dim")


@click.group()
def cli():
    """Page-cited document QA: ingest PDFs, then ask questions about them."""
    pass


@cli.command()
@click.option('--pdf', required=True, type=click.Path(exists=True, dir_okay=False), help='Path to PDF document')
@click.option('--user', default=DEFAULT_USER, show_default=True, help='Owner of the document')
def ingest(pdf, user):
    """Ingest a PDF: extract, chunk, embed and store it."""
    console.print("\n[bold cyan]Document Ingestion[/bold cyan]\n")
    asyncio.run(_ingest(Path(pdf), user))


async def _ingest(pdf_path: Path, user: str):
    db = Database()

    file_hash = compute_file_hash(pdf_path)
    existing = db.get_document_by_hash(user, file_hash)
    if existing and existing['status'] != ProcessingStatus.FAILED.value:
        console.print(
            f"[yellow]Document already ingested: {existing['filename']} "
            f"(ID: {existing['id']}, status: {existing['status']})[/yellow]"
        )
        return

    file_store = LocalFileStore()
    file_path = await file_store.save(pdf_path.read_bytes(), user, pdf_path.name)

    vector_store = VectorStore(database=db)
    if existing:
        document_id = existing['id']
        reset_failed_document(db, vector_store, document_id, file_path)
        console.print(f"Retrying previously failed document [cyan]{document_id}[/cyan]")
    else:
        document_id = db.create_document(user, pdf_path.name, file_path, file_hash=file_hash)

    embedding_provider = EmbeddingProviderFactory().create()
    pipeline = DocumentPipeline(
        file_store=file_store,
        extractor=PDFExtractor(),
        chunker=build_chunker(),
        embedding_provider=embedding_provider,
        chunk_store=vector_store,
        status_store=db
    )
    queue = IngestionQueue(pipeline, db)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        progress.add_task(f"Processing {pdf_path.name}...", total=None)
        queue.start(workers=1)
        await queue.enqueue(IngestionJob(
            document_id=document_id,
            user_id=user,
            file_path=file_path,
            filename=pdf_path.name
        ))
        await queue.join()
        await queue.stop()

    state = db.get_state(document_id)
    if state.status == ProcessingStatus.COMPLETED:
        console.print(f"\n[green]✓ Ingestion complete![/green]")
        console.print(f"Document ID: [cyan]{document_id}[/cyan]")
        console.print(f"Pages: {state.total_pages}")
        console.print(f"Chunks: {state.total_chunks}")
    else:
        console.print(f"\n[red]✗ Ingestion failed at {state.stage}[/red]")
        console.print(f"Error: {state.error_message}")


@cli.command()
@click.option('--question', '-q', required=True, help='Question to ask')
@click.option('--user', default=DEFAULT_USER, show_default=True, help='Whose documents to search')
@click.option('--document-id', 'document_ids', multiple=True, help='Restrict to these documents (repeatable)')
@click.option('--max-results', type=int, default=None, help='Number of chunks to retrieve')
def ask(question, user, document_ids, max_results):
    """Answer a question from ingested documents, with page citations."""
    db = Database()
    vector_store = VectorStore(database=db)
    orchestrator = RAGOrchestrator(
        embedding_provider=EmbeddingProviderFactory().create(),
        generation_provider=GenerationProviderFactory().create(),
        search=vector_store.search
    )

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        progress.add_task("Searching documents and generating answer...", total=None)
        answer = asyncio.run(orchestrator.answer(question, user, list(document_ids) or None, max_results))

    console.print(f"\n[bold]Answer[/bold] (confidence {answer.confidence:.0%})\n")
    console.print(answer.text)

    if answer.metadata.error:
        console.print(f"\n[red]Error: {answer.metadata.error}[/red]")

    if answer.sources:
        table = Table(title="\nSources")
        table.add_column("Document", style="cyan")
        table.add_column("Page", justify="right")
        table.add_column("Section")
        table.add_column("Similarity", justify="right")
        table.add_column("Excerpt", style="dim")
        for source in answer.sources:
            table.add_row(
                source.document_name,
                str(source.page_number),
                source.section_title or "",
                f"{source.similarity_score:.2f}",
                source.excerpt or ""
            )
        console.print(table)

    meta = answer.metadata
    console.print(
        f"\n[dim]{meta.results_found} chunks found | search {meta.search_time:.2f}s | "
        f"generation {meta.generation_time:.2f}s | {meta.tokens_used} tokens | {meta.model_used}[/dim]"
    )


@cli.command()
@click.option('--document-id', required=True, help='Document UUID')
def status(document_id):
    """Show a document's processing status."""
    db = Database()
    state = db.get_state(document_id)
    if state is None:
        console.print(f"[red]Document not found: {document_id}[/red]")
        return

    progress = calculate_progress(state)
    style = _status_style(state.status.value)
    console.print(f"\nDocument: [cyan]{document_id}[/cyan]")
    console.print(f"Status: [{style}]{state.status.value}[/{style}]")
    console.print(f"Stage: {progress.stage_label} ({progress.percentage}%)")
    if state.error_message:
        console.print(f"Error: [red]{state.error_message}[/red]")
    if state.status == ProcessingStatus.COMPLETED:
        console.print(f"Pages: {state.total_pages}")
        console.print(f"Chunks: {state.total_chunks}")


@cli.command()
@click.option('--user', default=None, help='Only this user\'s documents')
def documents(user):
    """List ingested documents."""
    db = Database()
    rows = db.list_documents(user)
    if not rows:
        console.print("[yellow]No documents found.[/yellow]")
        return

    table = Table(title="Documents")
    table.add_column("ID", style="cyan")
    table.add_column("Filename")
    table.add_column("User")
    table.add_column("Status")
    table.add_column("Pages", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Created")
    for row in rows:
        style = _status_style(row['status'])
        table.add_row(
            row['id'],
            row['filename'],
            row['user_id'],
            f"[{style}]{row['status']}[/{style}]",
            str(row['total_pages']),
            str(row['total_chunks']),
            row['created_at'][:19]
        )
    console.print(table)


@cli.command()
def providers():
    """Test connectivity of the configured embedding and generation providers."""
    console.print("\n[bold cyan]Provider Health[/bold cyan]\n")
    embedding_factory = EmbeddingProviderFactory()
    generation_factory = GenerationProviderFactory()

    table = Table()
    table.add_column("Role", style="cyan")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Status")

    for role, factory in (("embedding", embedding_factory), ("generation", generation_factory)):
        try:
            provider = factory.create()
        except Exception as e:
            table.add_row(role, "-", "-", f"[red]{e}[/red]")
            continue
        healthy = asyncio.run(provider.test_connection())
        table.add_row(
            role,
            provider.provider_name,
            provider.model,
            "[green]available[/green]" if healthy else "[red]unavailable[/red]"
        )
    console.print(table)

    for role, factory in (("embedding", embedding_factory), ("generation", generation_factory)):
        for key, stats in factory.get_service_stats().items():
            console.print(
                f"[dim]{role} {key}: {stats.total_requests} requests, "
                f"avg {stats.avg_processing_time:.2f}s, error rate {stats.error_rate:.0%}[/dim]"
            )


@cli.command()
@click.option('--pdf', required=True, type=click.Path(exists=True, dir_okay=False), help='Path to PDF document')
@click.option('--standard', is_flag=True, help='Use the standard chunker instead of the hierarchical one')
def chunk(pdf, standard):
    """Dry-run chunking of a PDF and report on the result."""
    pdf_path = Path(pdf)
    result = PDFExtractor().extract_file(pdf_path)
    if not result.success:
        console.print(f"[red]Error: {result.error}[/red]")
        return

    chunker = build_chunker("standard" if standard else "hierarchical")
    chunking = chunker.chunk(result.pages, f"dry-run-{uuid.uuid4().hex[:8]}")
    validation = chunker.validate_chunking(chunking.chunks)
    stats = validation.stats

    console.print(f"\n[bold cyan]Chunking report: {pdf_path.name}[/bold cyan]\n")
    table = Table(show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Pages extracted", str(len(result.pages)))
    table.add_row("Chunks", str(stats.total_chunks))
    table.add_row("Total tokens", str(chunking.total_tokens))
    table.add_row("Avg tokens", f"{stats.avg_tokens:.1f}")
    table.add_row("Min / max tokens", f"{stats.min_tokens} / {stats.max_tokens}")
    table.add_row("Pages spanned", str(stats.pages_spanned))
    table.add_row("Time", f"{chunking.processing_time:.2f}s")
    section_map = getattr(chunking, 'section_map', None)
    if section_map is not None:
        table.add_row("Sections", str(len(section_map)))
    console.print(table)

    if validation.is_valid:
        console.print("\n[green]✓ Chunk sequence is valid[/green]")
    else:
        console.print("\n[red]Validation issues:[/red]")
        for issue in validation.issues:
            console.print(f"  • {issue}")


if __name__ == '__main__':
    cli()

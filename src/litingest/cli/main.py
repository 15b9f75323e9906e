"""CLI application using Typer for bibliographic ingestion."""

import asyncio
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from ..config.settings import settings
from ..core.errors import IngestError
from ..dedup.deduplicator import Deduplicator, dedupe_summary
from ..extraction.references import assess_confidence, find_references_section, parse_references
from ..io.cache import SQLiteCache
from ..io.parsers import STRUCTURED_FORMATS, detect_format, parse_import_file
from ..io.store import SQLiteProjectStore
from ..jobs.models import JobSnapshot
from ..jobs.progress import ProgressTracker
from ..jobs.service import IngestionService, build_ingestion_service
from ..search.base import SearchFilters
from ..search.registry import build_providers
from ..utils.logging import get_logger

app = typer.Typer(
    name="litingest",
    help="Bibliographic ingestion - search providers, import files, extract and deduplicate references",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


def _build_service(provider_names: Optional[List[str]] = None) -> IngestionService:
    providers = build_providers(provider_names or settings.search_providers, settings)
    return build_ingestion_service(
        settings,
        providers={p.name: p for p in providers},
        store=SQLiteProjectStore(settings.data_dir),
        cache=SQLiteCache(settings.cache_dir),
    )


def _print_snapshot(snapshot: JobSnapshot) -> None:
    color = "green" if snapshot.state == "completed" else "red"
    console.print(f"Job {snapshot.job_id[:8]}: [{color}]{snapshot.state}[/{color}]")
    if snapshot.error:
        console.print(f"[red]Error:[/red] {snapshot.error}")
    result = snapshot.result or {}
    if not result:
        return
    table = Table(title="Result", show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="magenta")
    for key in ("imported", "duplicates", "confidence", "warning", "total_records", "unique_records"):
        if key in result:
            table.add_row(key, str(result[key]))
    for name, err in (result.get("provider_errors") or {}).items():
        table.add_row(f"error: {name}", err)
    console.print(table)


async def _run_single(submit, provider_names: Optional[List[str]] = None) -> JobSnapshot:
    service = _build_service(provider_names)
    async with service:
        job_id = await submit(service)
        await service.wait_until_complete()
        ProgressTracker(service.queue, console).print_summary()
        return service.poll(job_id)


@app.command()
def search(
    project: str = typer.Option(..., "--project", "-p", help="Project identifier"),
    query: str = typer.Option(..., "--query", "-q", help="Provider query string"),
    limit: int = typer.Option(50, "--limit", "-n", min=1, max=200, help="Maximum records per provider"),
    providers: Optional[str] = typer.Option(None, "--providers", help="Comma-separated providers (pubmed,openalex)"),
    mindate: Optional[str] = typer.Option(None, "--mindate", help="Earliest publication date (YYYY/MM/DD)"),
    maxdate: Optional[str] = typer.Option(None, "--maxdate", help="Latest publication date (YYYY/MM/DD)"),
    sort: Optional[str] = typer.Option(None, "--sort", help="relevance or pub_date"),
):
    """Search providers and add new records to a project."""
    names: Optional[List[str]] = [p.strip() for p in providers.split(",") if p.strip()] if providers else None
    try:
        filters = SearchFilters(mindate=mindate, maxdate=maxdate, sort=sort)
        snapshot = asyncio.run(
            _run_single(
                lambda s: s.submit_search(project, query, limit=limit, filters=filters, providers=names),
                provider_names=names,
            )
        )
    except (IngestError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    _print_snapshot(snapshot)
    if snapshot.state != "completed":
        raise typer.Exit(1)


@app.command("import-file")
def import_file(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="RIS or BibTeX file (.ris, .bib)"),
    project: str = typer.Option(..., "--project", "-p", help="Project identifier"),
):
    """Import references from an RIS or BibTeX file into a project."""
    try:
        fmt = detect_format(path.name)
    except IngestError as e:
        console.print(f"[red]Error: {e.describe()}[/red]")
        raise typer.Exit(1)
    if fmt not in STRUCTURED_FORMATS:
        # The CLI wires no PDF/DOCX text extractor
        console.print(
            f"[red]Error: {fmt.value.upper()} import needs a text extractor; "
            f"use `litingest extract` on the document's text instead[/red]"
        )
        raise typer.Exit(1)
    content = path.read_bytes()
    try:
        snapshot = asyncio.run(
            _run_single(lambda s: s.submit_file_import(project, path.name, content))
        )
    except IngestError as e:
        console.print(f"[red]Error: {e.describe()}[/red]")
        raise typer.Exit(1)
    _print_snapshot(snapshot)
    if snapshot.state != "completed":
        raise typer.Exit(1)


@app.command()
def extract(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plain-text document"),
    show: int = typer.Option(20, "--show", help="Number of references to list"),
):
    """Extract references from a plain-text document and grade the result."""
    text = path.read_text(encoding="utf-8", errors="replace")
    section = find_references_section(text, settings.reference_headers)
    if section is None:
        console.print("[yellow]No references section detected[/yellow]")
        raise typer.Exit(0)

    refs = parse_references(section)
    confidence = assess_confidence(refs)
    table = Table(title=f"{len(refs)} references (confidence: {confidence})", show_header=True)
    table.add_column("Conf", justify="right")
    table.add_column("DOI / PMID", style="cyan")
    table.add_column("Year", justify="right")
    table.add_column("Title", style="magenta")
    for ref in refs[:show]:
        table.add_row(
            f"{ref.confidence:.1f}",
            ref.doi or (f"PMID {ref.pmid}" if ref.pmid else "-"),
            str(ref.year) if ref.year is not None else "-",
            (ref.title or ref.raw_text or "")[:80],
        )
    console.print(table)
    if confidence == "low":
        console.print("[yellow]Low confidence; prefer RIS/BibTeX for accuracy[/yellow]")


@app.command()
def dedupe(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="RIS or BibTeX file"),
):
    """Deduplicate an RIS/BibTeX file and print statistics."""
    try:
        refs = parse_import_file(path.read_bytes(), path.name)
    except IngestError as e:
        console.print(f"[red]Error: {e.describe()}[/red]")
        raise typer.Exit(1)

    result = Deduplicator().dedupe(refs)
    summary = dedupe_summary(result)
    table = Table(title="Deduplication Summary", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta", justify="right")
    table.add_row("Total Records", str(summary["total_records"]))
    table.add_row("Unique Records", str(summary["unique_records"]))
    table.add_row("Duplicates", str(summary["duplicate_records"]))
    table.add_row("Duplicate Groups", str(summary["duplicate_groups"]))
    table.add_row("Deduplication Rate", f"{summary['deduplication_rate']:.2f}%")
    console.print(table)

    for group in result.duplicate_groups:
        console.print(f"[bold]{group.canonical.title[:80]}[/bold]")
        for dup in group.duplicates:
            console.print(f"  [dim]duplicate:[/dim] {dup.title[:80]}")


if __name__ == "__main__":
    app()

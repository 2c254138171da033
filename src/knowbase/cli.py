"""Command line interface for KnowBase."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from knowbase.config import AppConfig
from knowbase.errors import KnowBaseError
from knowbase.ingestion.loaders import preview
from knowbase.service import KnowledgeBase


console = Console()
app = typer.Typer(help="KnowBase - knowledge retrieval for the chat assistant")

DIR_HELP = "Knowledge directory"
PROVIDER_HELP = "Embedding provider: openai, local or none"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _build_kb(knowledge_dir: Optional[Path], provider: Optional[str] = None) -> KnowledgeBase:
    config = AppConfig(knowledge_dir=knowledge_dir)
    if provider is not None:
        if provider not in ("openai", "local", "none"):
            raise typer.BadParameter(f"Unknown provider: {provider}")
        config.provider = provider
    return KnowledgeBase(config, base_dir=Path.cwd())


async def _loaded_search(kb: KnowledgeBase, query: str, max_results: int):
    # A one-shot process has no earlier snapshot to fall back on; embed first
    await kb.reload()
    return await kb.retrieve(query, max_results)


@app.command()
def upload(
    paths: List[Path] = typer.Argument(..., help="Text, Markdown or PDF files to add.", exists=True, dir_okay=False),
    stage: Optional[str] = typer.Option(None, "--stage", help="Stage id to file the documents under"),
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Add documents to the knowledge base."""
    _setup_logging(verbose)
    kb = _build_kb(knowledge_dir, "none")

    failed = 0
    for path in paths:
        try:
            record = asyncio.run(kb.upload(path.read_bytes(), path.name, stage))
        except (KnowBaseError, OSError) as exc:
            failed += 1
            console.print(f"[red]Failed to add {path.name}: {exc}[/red]")
            continue
        console.print(f"Added [bold]{record.original_name}[/bold] ({record.chunk_count} chunks, id {record.id})")

    if failed:
        raise typer.Exit(code=1)


@app.command("list")
def list_files(
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
) -> None:
    """List stored documents."""
    kb = _build_kb(knowledge_dir, "none")
    files = kb.list_files()
    if not files:
        console.print("[yellow]No documents stored.[/yellow]")
        return

    stages = {stage.id: stage for stage in kb.list_stages()}
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Chunks")
    table.add_column("Stage")
    table.add_column("Uploaded")

    for record in files:
        stage = stages.get(record.stage_id) if record.stage_id else None
        stage_label = stage.name if stage else (f"{record.stage_id} (deleted)" if record.stage_id else "-")
        table.add_row(record.id, record.original_name, record.type, str(record.chunk_count), stage_label, record.upload_date)

    console.print(table)


@app.command()
def delete(
    file_id: str = typer.Argument(..., help="Document id"),
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
) -> None:
    """Remove a document and its chunks."""
    kb = _build_kb(knowledge_dir, "none")
    if not asyncio.run(kb.delete(file_id)):
        console.print(f"[yellow]Document not found: {file_id}[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"Deleted {file_id}.")


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
    provider: Optional[str] = typer.Option(None, "--provider", help=PROVIDER_HELP),
    max_results: int = typer.Option(5, "--max-results", "-n", help="Number of results to display"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Run a hybrid keyword and semantic search."""
    _setup_logging(verbose)
    kb = _build_kb(knowledge_dir, provider)
    outcome = asyncio.run(_loaded_search(kb, query, max_results))
    if outcome.error == "query_too_short":
        console.print("[yellow]Query too short.[/yellow]")
        raise typer.Exit(code=1)
    if not outcome.results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Rank")
    table.add_column("Score")
    table.add_column("Similarity")
    table.add_column("Document")
    table.add_column("Snippet")

    for result in outcome.results:
        similarity = f"{result.similarity:.4f}" if result.similarity is not None else "-"
        score = str(result.score) if result.score is not None else "-"
        if result.is_partial:
            score += " (partial)"
        table.add_row(f"{result.rank:.4f}", score, similarity, result.source_file_name, preview(result.text))

    console.print(table)
    console.print(
        f"Quality: [bold]{outcome.quality}[/bold] "
        f"(top similarity {outcome.top_similarity:.3f}, average {outcome.avg_similarity:.3f})"
    )


@app.command()
def context(
    query: str = typer.Argument(..., help="Query text"),
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
    provider: Optional[str] = typer.Option(None, "--provider", help=PROVIDER_HELP),
    max_results: int = typer.Option(5, "--max-results", "-n", help="Number of fragments"),
) -> None:
    """Print the knowledge block a chat prompt would receive."""
    kb = _build_kb(knowledge_dir, provider)
    results = asyncio.run(_loaded_search(kb, query, max_results)).results
    if not results:
        console.print("[yellow]No relevant knowledge found.[/yellow]")
        return
    console.print(kb.search_engine.format_context(results), markup=False)


@app.command()
def stages(
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
) -> None:
    """List stages and whether their documents are searchable."""
    kb = _build_kb(knowledge_dir, "none")
    items = kb.list_stages()
    if not items:
        console.print("[yellow]No stages defined.[/yellow]")
        return

    counts: dict = {}
    for record in kb.list_files():
        if record.stage_id:
            counts[record.stage_id] = counts.get(record.stage_id, 0) + 1

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Order")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Active")
    table.add_column("Documents")
    for stage in items:
        active = "[green]yes[/green]" if stage.is_active else "[red]no[/red]"
        table.add_row(str(stage.order), stage.id, stage.name, active, str(counts.get(stage.id, 0)))
    console.print(table)


@app.command("stage-create")
def stage_create(
    name: str = typer.Argument(..., help="Stage name"),
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
) -> None:
    """Create a new, active stage."""
    kb = _build_kb(knowledge_dir, "none")
    stage = kb.create_stage(name)
    console.print(f"Created stage [bold]{stage.name}[/bold] ({stage.id})")


@app.command("stage-toggle")
def stage_toggle(
    stage_id: str = typer.Argument(..., help="Stage id"),
    active: Optional[bool] = typer.Option(None, "--active/--inactive", help="Set explicitly instead of flipping"),
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
) -> None:
    """Activate or deactivate a stage."""
    kb = _build_kb(knowledge_dir, "none")
    try:
        stage = kb.toggle_stage(stage_id, active)
    except KeyError:
        console.print(f"[red]Stage not found: {stage_id}[/red]")
        raise typer.Exit(code=1)
    state = "active" if stage.is_active else "inactive"
    console.print(f"Stage [bold]{stage.name}[/bold] is now {state}.")


@app.command("stage-delete")
def stage_delete(
    stage_id: str = typer.Argument(..., help="Stage id"),
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
) -> None:
    """Delete a stage; its documents stay searchable."""
    kb = _build_kb(knowledge_dir, "none")
    if not kb.delete_stage(stage_id):
        console.print(f"[yellow]Stage not found: {stage_id}[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"Deleted stage {stage_id}.")


@app.command()
def reembed(
    file_ids: Optional[List[str]] = typer.Argument(None, help="Document ids (default: all)"),
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
    provider: Optional[str] = typer.Option(None, "--provider", help=PROVIDER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Recompute embeddings with the configured provider."""
    _setup_logging(verbose)
    kb = _build_kb(knowledge_dir, provider)
    if kb.provider is None:
        console.print("[yellow]No embedding provider available; embeddings were not regenerated.[/yellow]")
        raise typer.Exit(code=1)

    report = asyncio.run(kb.regenerate_embeddings(file_ids or None))
    console.print(
        f"Requested: {report.requested}, embedded: {report.embedded}, "
        f"failed: {report.failed}, skipped: {report.skipped}"
    )
    for error in report.errors:
        console.print(error, style="red", markup=False)
    if not report.complete:
        raise typer.Exit(code=1)


@app.command()
def stats(
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
    provider: Optional[str] = typer.Option(None, "--provider", help=PROVIDER_HELP),
) -> None:
    """Load the knowledge cache and show its statistics."""
    kb = _build_kb(knowledge_dir, provider)
    asyncio.run(kb.reload())
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Metric")
    table.add_column("Value")
    for key, value in kb.stats().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def warmup(
    knowledge_dir: Path = typer.Option(None, "--dir", help=DIR_HELP),
    provider: Optional[str] = typer.Option(None, "--provider", help=PROVIDER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Load the embedding model ahead of the first query."""
    _setup_logging(verbose)
    kb = _build_kb(knowledge_dir, provider)
    if not asyncio.run(kb.warmup()):
        console.print("[yellow]Embedding provider unavailable; searches will be keyword-only.[/yellow]")
        raise typer.Exit(code=1)
    console.print("Embedding provider ready.")

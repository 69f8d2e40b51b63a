"""
Legal Ingestion Pipeline - CLI Entry Point
-------------------------------------------
Exposes Typer commands for the offline tools and the job pipeline.

Usage:
    python -m legal_ingest.main audit data/sources.json       # Chunk integrity gate
    python -m legal_ingest.main chunk data/docs/law.txt       # Structural chunking
    python -m legal_ingest.main match a.json b.json           # Compare two sources
    python -m legal_ingest.main merge a.json b.json -o out.json
    python -m legal_ingest.main pairs data/sources.json       # Group a batch by identity
    python -m legal_ingest.main enqueue DOC_ID [DOC_ID ...]   # Put documents on the chunk stage
    python -m legal_ingest.main tick                          # One orchestrator tick
    python -m legal_ingest.main work chunk --docs-dir data/docs
    python -m legal_ingest.main status                        # Job counts per stage
"""
from __future__ import annotations

import sys

# Windows cp1252 terminal fix: Armenian text must not crash the Rich renderer.
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from legal_ingest.chunking.chunker import LegalChunker
from legal_ingest.config import PipelineSettings, load_settings
from legal_ingest.jobs.repository import SqlJobRepository, create_session_factory
from legal_ingest.merging.matcher import find_matching_pairs, match_sources
from legal_ingest.merging.merger import SourceMismatchError, merge_sources
from legal_ingest.orchestration.orchestrator import PipelineOrchestrator
from legal_ingest.orchestration.stage_worker import ChunkStageHandler, StageWorker
from legal_ingest.orchestration.worker_client import StageWorkerRequest, WorkerClient
from legal_ingest.schemas import Chunk, JobType, SourceRecord
from legal_ingest.utils.helpers import load_json, save_json, truncate_text
from legal_ingest.utils.logger import setup_logger
from legal_ingest.validation.chunk_audit import audit_document
from legal_ingest.validation.report import AuditReportGenerator

app = typer.Typer(
    name="legal-ingest",
    help="Legal document ingestion pipeline - audit, merge and job orchestration CLI",
    add_completion=False,
)
console = Console()

CONFIG_OPTION = typer.Option(
    "config/config.yaml", "--config", "-c", help="Path to pipeline config YAML"
)


# --- Helpers ------------------------------------------------------------------

def _settings(config: str) -> PipelineSettings:
    settings = load_settings(config)
    setup_logger(log_level=settings.log_level, log_file=settings.log_file, serialize=settings.log_json)
    return settings


def _repository(settings: PipelineSettings) -> SqlJobRepository:
    return SqlJobRepository(
        create_session_factory(settings.database_url),
        max_attempts=settings.max_attempts,
    )


def _load_sources(path: str) -> list[SourceRecord]:
    """Read one SourceRecord or a list of them from a JSON file."""
    try:
        data = load_json(path)
        items = data if isinstance(data, list) else [data]
        return [SourceRecord.model_validate(item) for item in items]
    except FileNotFoundError:
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(1)
    except (ValueError, ValidationError) as exc:
        console.print(f"[red]Invalid source file {path}:[/red] {exc}")
        raise typer.Exit(1)


def _load_one_source(path: str) -> SourceRecord:
    sources = _load_sources(path)
    if len(sources) != 1:
        console.print(f"[red]{path} must hold exactly one source, found {len(sources)}[/red]")
        raise typer.Exit(1)
    return sources[0]


def _chunk_table(chunks: list[Chunk], title: str) -> Table:
    table = Table(
        "Idx", "Type", "Label", "Start", "End", "Preview",
        title=title,
        box=box.SIMPLE,
        show_header=True,
        header_style="bold dim",
    )
    for c in chunks:
        table.add_row(
            str(c.chunk_index),
            c.chunk_type.value,
            c.label or "",
            str(c.char_start),
            str(c.char_end),
            truncate_text(" ".join(c.chunk_text.split()), 60),
        )
    return table


class FileDocumentStore:
    """
    Document text and chunk sets on disk, for running the chunk stage locally.

    <docs_dir>/<document_id>.txt            normalized content text
    <docs_dir>/<document_id>.meta.json      optional {"doc_type": "..."}
    <docs_dir>/chunks/<document_id>.json    chunk set written by the worker
    """

    def __init__(self, docs_dir: str, default_doc_type: str = "law") -> None:
        self.docs_dir = Path(docs_dir)
        self.default_doc_type = default_doc_type

    def load_text(self, document_id: str) -> str:
        return (self.docs_dir / f"{document_id}.txt").read_text(encoding="utf-8")

    def doc_type_for(self, document_id: str) -> str:
        meta_path = self.docs_dir / f"{document_id}.meta.json"
        if not meta_path.exists():
            return self.default_doc_type
        return load_json(meta_path).get("doc_type") or self.default_doc_type

    def save_chunks(self, document_id: str, chunks: list[Chunk]) -> None:
        save_json(
            [c.model_dump(mode="json") for c in chunks],
            self.docs_dir / "chunks" / f"{document_id}.json",
        )


# --- Offline tools ------------------------------------------------------------

@app.command()
def audit(
    input_path: str = typer.Argument(..., help="JSON file with one source or a list of sources"),
    source_table: str = typer.Option("legal_documents", "--table", help="Table name for the report"),
    output_dir: str = typer.Option("data", "--output-dir", help="Where the JSON report is written"),
    no_save: bool = typer.Option(False, "--no-save", help="Print the report without saving it"),
) -> None:
    """
    Audit stored chunk sets against their source text.

    Exits with code 1 when any chunk set is not indexable, so the command can
    gate a change to extraction or chunking logic.
    """
    setup_logger(log_file=None)
    sources = _load_sources(input_path)

    metrics = [
        audit_document(s.source_key, source_table, s.content_text, s.chunks)
        for s in sources
    ]
    reporter = AuditReportGenerator(output_dir=output_dir)
    report = reporter.generate(metrics, save=not no_save)
    reporter.print_report(report)

    if report["summary"]["rejected"]:
        raise typer.Exit(1)


@app.command()
def chunk(
    text_path: str = typer.Argument(..., help="UTF-8 text file with the normalized document"),
    doc_type: str = typer.Option("law", "--doc-type", help="law | code | regulation | other"),
    max_chars: int = typer.Option(8000, "--max-chars", help="Maximum characters per chunk"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write chunks as JSON"),
) -> None:
    """Chunk one document and audit the result."""
    setup_logger(log_file=None)
    path = Path(text_path)
    if not path.exists():
        console.print(f"[red]File not found: {text_path}[/red]")
        raise typer.Exit(1)

    text = path.read_text(encoding="utf-8")
    chunks = LegalChunker(max_chunk_chars=max_chars).chunk_document(text, doc_type)
    metrics = audit_document(path.stem, "local", text, chunks)

    console.print(_chunk_table(chunks, f"{path.name} - {len(chunks)} chunk(s)"))
    verdict = "[green]indexable[/green]" if metrics.is_indexable else "[red]rejected[/red]"
    console.print(f"coverage={metrics.coverage_ratio:.3f} | {verdict}")

    if output:
        save_json([c.model_dump(mode="json") for c in chunks], output)
        console.print(f"[green][OK] Chunks written -> {output}[/green]")


@app.command()
def match(
    a_path: str = typer.Argument(..., help="First source JSON"),
    b_path: str = typer.Argument(..., help="Second source JSON"),
) -> None:
    """Decide whether two sources describe the same legal document."""
    a, b = _load_one_source(a_path), _load_one_source(b_path)
    result = match_sources(a, b)

    colour = "green" if result.matched else "yellow"
    body = (
        f"[bold {colour}]matched={result.matched}[/bold {colour}]\n"
        f"rule      : {result.rule.value}\n"
        f"match_key : {result.match_key or '-'}\n"
        f"fields    : {'; '.join(result.fields_used)}"
    )
    console.print(Panel(body, title=f"{a.source_key} vs {b.source_key}", expand=False))


@app.command()
def merge(
    a_path: str = typer.Argument(..., help="First source JSON"),
    b_path: str = typer.Argument(..., help="Second source JSON"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write the merged document as JSON"),
) -> None:
    """Merge a matched TXT/PDF pair into one canonical chunk set."""
    setup_logger(log_file=None)
    a, b = _load_one_source(a_path), _load_one_source(b_path)
    try:
        merged = merge_sources(a, b)
    except SourceMismatchError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    console.print(
        f"[bold]{merged.title or '(untitled)'}[/bold] "
        f"[dim]({merged.match.rule.value}: {merged.match.match_key})[/dim]"
    )
    console.print(_chunk_table(merged.all_chunks, "Merged chunks"))
    console.print(
        f"[green]{len(merged.text_chunks)} text[/green] + "
        f"[cyan]{len(merged.table_chunks)} table[/cyan] chunk(s)"
    )

    if output:
        save_json(merged.model_dump(mode="json"), output)
        console.print(f"[green][OK] Merged document written -> {output}[/green]")


@app.command()
def pairs(
    input_path: str = typer.Argument(..., help="JSON file with a list of sources"),
) -> None:
    """Group a batch of sources by identity."""
    sources = _load_sources(input_path)
    groups = find_matching_pairs(sources)

    table = Table("Match key", "Sources", title=f"{len(groups)} group(s)", box=box.ROUNDED)
    for key, members in groups.items():
        table.add_row(key, ", ".join(s.file_name for s in members))
    console.print(table)

    grouped = {s.source_key for members in groups.values() for s in members}
    unmatched = [s.file_name for s in sources if s.source_key not in grouped]
    if unmatched:
        console.print(f"[yellow]Unmatched:[/yellow] {', '.join(unmatched)}")


# --- Job pipeline -------------------------------------------------------------

@app.command()
def enqueue(
    document_ids: list[str] = typer.Argument(..., help="Document ids to enqueue"),
    stage: JobType = typer.Option(JobType.CHUNK, "--stage", help="Stage to enqueue for"),
    config: str = CONFIG_OPTION,
) -> None:
    """Create (or re-arm) jobs for documents entering a stage."""
    settings = _settings(config)
    repository = _repository(settings)
    for document_id in document_ids:
        job = repository.enqueue(document_id, stage)
        console.print(f"[green][OK][/green] {stage.value}:{document_id} -> {job.status.value}")


@app.command()
def tick(
    config: str = CONFIG_OPTION,
    json_out: bool = typer.Option(False, "--json", help="Print the tick result as JSON"),
) -> None:
    """Run one orchestrator tick: dispatch the highest-priority stage with a backlog."""
    settings = _settings(config)
    orchestrator = PipelineOrchestrator(
        _repository(settings),
        WorkerClient(settings),
        concurrency_docs=settings.concurrency_docs,
    )
    result = orchestrator.tick()

    if json_out:
        console.print_json(result.model_dump_json())
        return

    table = Table(title="Pipeline Tick", box=box.ROUNDED)
    table.add_column("Stage", style="cyan")
    table.add_column("Backlog", style="bold white", justify="right")
    table.add_row("chunk", str(result.chunk_pending))
    table.add_row("embed", str(result.embed_pending))
    table.add_row("enrich", str(result.enrich_pending))
    console.print(table)
    console.print(f"Triggered: [bold]{result.stage_triggered}[/bold] ({result.duration_ms}ms)")
    if result.worker_result is not None:
        console.print_json(json.dumps(result.worker_result, default=str))


@app.command()
def work(
    stage: JobType = typer.Argument(..., help="Stage to process"),
    docs_dir: str = typer.Option("data/docs", "--docs-dir", help="Directory with <document_id>.txt files"),
    concurrency: int = typer.Option(10, "--concurrency", help="Jobs to claim in this batch"),
    doc_type: str = typer.Option(
        "law", "--doc-type", help="Doc type for documents without a <id>.meta.json"
    ),
    config: str = CONFIG_OPTION,
) -> None:
    """
    Process one batch of a stage in-process.

    \b
    Only the chunk stage ships a local handler; embedding and enrichment need
    model clients and run behind the worker endpoints.
    """
    settings = _settings(config)
    if stage is not JobType.CHUNK:
        console.print(f"[red]No local handler for the {stage.value} stage[/red]")
        raise typer.Exit(1)

    store = FileDocumentStore(docs_dir, default_doc_type=doc_type)
    worker = StageWorker(
        stage,
        _repository(settings),
        ChunkStageHandler(store.load_text, store.save_chunks, resolve_doc_type=store.doc_type_for),
        lease=settings.lease,
        max_concurrency_docs=settings.max_concurrency_docs,
        backoff_base=settings.backoff_base,
        backoff_max=settings.backoff_max,
    )
    response = worker.run(StageWorkerRequest(concurrency_docs=concurrency))

    console.print(
        f"[green]processed={response.processed}[/green]  "
        f"[red]failed={response.failed}[/red]  "
        f"[yellow]qa_rejected={response.qa_rejected}[/yellow]  "
        f"chunks={response.total_units}  remaining={response.remaining}"
    )
    for error in response.errors:
        console.print(f"  [dim]{error}[/dim]")


@app.command()
def status(
    job_id: Optional[str] = typer.Option(None, "--job", help="Show a single job by id"),
    config: str = CONFIG_OPTION,
) -> None:
    """Show job counts per stage and status, or one job's details."""
    settings = _settings(config)
    repository = _repository(settings)

    if job_id:
        job = repository.get(job_id)
        if job is None:
            console.print(f"[red]Job not found: {job_id}[/red]")
            raise typer.Exit(1)
        body = (
            f"document   : {job.document_id}\n"
            f"stage      : {job.job_type.value}\n"
            f"status     : {job.status.value}\n"
            f"attempts   : {job.attempts}/{settings.max_attempts}\n"
            f"next run   : {job.next_run_at:%Y-%m-%d %H:%M:%S}\n"
            f"lease until: {job.lease_expires_at or '-'}\n"
            f"last error : {job.last_error or '-'}"
        )
        console.print(Panel(body, title=f"Job {job.id}", expand=False))
        return

    counts = repository.status_counts()

    table = Table(title="Pipeline Jobs", box=box.ROUNDED)
    table.add_column("Stage", style="cyan")
    statuses = list(next(iter(counts.values())).keys())
    for name in statuses:
        table.add_column(name, justify="right")
    for stage_name, per_status in counts.items():
        table.add_row(stage_name, *(str(per_status[s]) for s in statuses))
    console.print(table)


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()

"""
Chunk Audit Report Generator
-----------------------------
Aggregates ChunkAuditMetrics for a batch of documents into a machine-readable
JSON report + a Rich-formatted console summary.  This is what the `audit`
CLI command prints after a change to extraction or chunking logic.
"""
from __future__ import annotations

from pathlib import Path

from loguru import logger
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from legal_ingest.schemas import ChunkAuditMetrics
from legal_ingest.utils.helpers import save_json, utc_now

console = Console()


class AuditReportGenerator:
    """Builds, saves and prints the chunk integrity report."""

    def __init__(self, output_dir: str = "data") -> None:
        self.output_dir = Path(output_dir)

    # --- Public API -----------------------------------------------------------

    def generate(self, metrics: list[ChunkAuditMetrics], save: bool = True) -> dict:
        """Build the full report dict and (optionally) save it to disk."""
        total = max(len(metrics), 1)
        indexable = [m for m in metrics if m.is_indexable]
        generated_at = utc_now()
        report = {
            "generated_at": generated_at.isoformat(),
            "summary": {
                "documents": len(metrics),
                "indexable": len(indexable),
                "rejected": len(metrics) - len(indexable),
                "pass_rate": f"{len(indexable) / total * 100:.1f}%",
                "total_chunks": sum(m.chunk_count for m in metrics),
            },
            "coverage_statistics": self._coverage_stats(metrics),
            "violation_counts": self._violation_counts(metrics),
            "rejected_documents": [self._row(m) for m in metrics if not m.is_indexable],
            "documents": [m.model_dump(mode="json") for m in metrics],
        }

        if save:
            path = self.output_dir / f"chunk_audit_{generated_at:%Y%m%d_%H%M%S}.json"
            save_json(report, path)
            logger.info(f"Chunk audit report saved -> {path}")
        return report

    def print_report(self, report: dict) -> None:
        """Print a formatted summary to the console."""
        c = console
        s = report["summary"]

        c.print()
        c.print(
            Panel(
                "[bold cyan]Legal Ingestion Pipeline[/bold cyan]\n"
                "[white]Chunk Integrity Audit[/white]",
                subtitle=f"[dim]{report['generated_at']}[/dim]",
                box=box.DOUBLE_EDGE,
                expand=False,
            )
        )

        t = Table(title="Audit Summary", box=box.ROUNDED, show_header=True)
        t.add_column("Metric", style="cyan", no_wrap=True)
        t.add_column("Value", style="bold white")
        t.add_row("Documents audited", str(s["documents"]))
        t.add_row("Indexable", f"[green]{s['indexable']}[/green]")
        t.add_row("Rejected", f"[red]{s['rejected']}[/red]")
        t.add_row("Pass rate", f"[bold]{s['pass_rate']}[/bold]")
        t.add_row("Total chunks", str(s["total_chunks"]))
        c.print(t)

        cs = report["coverage_statistics"]
        if cs:
            c.print()
            c.print(
                Panel(
                    f"Coverage - "
                    f"Min: [red]{cs['min']:.3f}[/red]  "
                    f"Max: [green]{cs['max']:.3f}[/green]  "
                    f"Avg: [yellow]{cs['avg']:.3f}[/yellow]",
                    box=box.ROUNDED,
                    expand=False,
                )
            )

        vc = report["violation_counts"]
        if any(vc.values()):
            c.print()
            t2 = Table(title="Violations", box=box.ROUNDED)
            t2.add_column("Check", style="red")
            t2.add_column("Count", style="bold white", justify="right")
            for check, count in vc.items():
                if count:
                    t2.add_row(check, str(count))
            c.print(t2)

        if report["rejected_documents"]:
            c.print()
            t3 = Table(title="Rejected Chunk Sets", box=box.SIMPLE, header_style="bold dim")
            for col in ("Document", "Table", "Chunks", "Coverage", "Problems"):
                t3.add_column(col)
            for row in report["rejected_documents"][:25]:
                t3.add_row(
                    row["document_id"],
                    row["source_table"],
                    str(row["chunk_count"]),
                    f"{row['coverage_ratio']:.3f}",
                    ", ".join(row["problems"]),
                )
            c.print(t3)

    # --- Helpers --------------------------------------------------------------

    @staticmethod
    def _coverage_stats(metrics: list[ChunkAuditMetrics]) -> dict:
        if not metrics:
            return {}
        ratios = [m.coverage_ratio for m in metrics]
        return {
            "min": round(min(ratios), 4),
            "max": round(max(ratios), 4),
            "avg": round(sum(ratios) / len(ratios), 4),
        }

    @staticmethod
    def _violation_counts(metrics: list[ChunkAuditMetrics]) -> dict:
        return {
            "gaps": sum(len(m.gap_violations) for m in metrics),
            "overlaps": sum(len(m.overlap_violations) for m in metrics),
            "boundary": sum(len(m.boundary_violations) for m in metrics),
            "missing_indices": sum(len(m.missing_indices) for m in metrics),
            "duplicate_hashes": sum(len(m.duplicate_hashes) for m in metrics),
            "empty_chunks": sum(len(m.empty_chunks) for m in metrics),
            "low_coverage": sum(1 for m in metrics if not m.coverage_ok),
        }

    @staticmethod
    def _row(m: ChunkAuditMetrics) -> dict:
        problems: list[str] = []
        if not m.coverage_ok:
            problems.append("coverage")
        if m.gap_violations:
            problems.append("gaps")
        if m.overlap_violations:
            problems.append("overlaps")
        if m.boundary_violations:
            problems.append("boundary")
        if not m.index_continuity_ok:
            problems.append("index")
        if m.duplicate_hashes:
            problems.append("duplicates")
        if m.empty_chunks:
            problems.append("empty")
        return {
            "document_id": m.document_id,
            "source_table": m.source_table,
            "chunk_count": m.chunk_count,
            "coverage_ratio": m.coverage_ratio,
            "problems": problems,
        }

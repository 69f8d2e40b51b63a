"""
Chunk Integrity Auditor
------------------------
Deterministic checks proving that a chunk set faithfully covers its source
document.  Used as the regression gate after any change to extraction or
chunking logic, and as the QA gate inside the chunk stage worker.

Checks (in order):
    1. Index continuity   (0..n-1, no holes)
    2. Boundary           (offsets inside the document)
    3. Gaps / overlaps    (consecutive chunks by index)
    4. Coverage ratio     (union of intervals / document length)
    5. Duplicate hashes
    6. Empty chunks

The auditor never raises: every anomaly is reported in the returned
ChunkAuditMetrics and the caller decides the policy.
"""
from __future__ import annotations

from typing import Iterable

from loguru import logger

from legal_ingest.schemas import (
    BoundaryViolation,
    Chunk,
    ChunkAuditMetrics,
    GapViolation,
    OverlapViolation,
)

# ── Constants ─────────────────────────────────────────────────────────────────

OVERLAP_TOLERANCE = 0.15    # Context overlap up to 15% of the shorter chunk is intentional
COVERAGE_EPSILON = 1e-6


# --- Individual Checks --------------------------------------------------------

def find_missing_indices(chunks: list[Chunk]) -> list[int]:
    present = {c.chunk_index for c in chunks}
    return [i for i in range(len(chunks)) if i not in present]


def find_boundary_violations(chunks: list[Chunk], doc_chars: int) -> list[BoundaryViolation]:
    violations: list[BoundaryViolation] = []
    for c in chunks:
        if c.char_start < 0:
            violations.append(
                BoundaryViolation(chunk_index=c.chunk_index, issue=f"char_start < 0 ({c.char_start})")
            )
        if c.char_end > doc_chars:
            violations.append(
                BoundaryViolation(
                    chunk_index=c.chunk_index,
                    issue=f"char_end ({c.char_end}) > doc length ({doc_chars})",
                )
            )
        if c.char_end < c.char_start:
            violations.append(
                BoundaryViolation(
                    chunk_index=c.chunk_index,
                    issue=f"char_end ({c.char_end}) < char_start ({c.char_start})",
                )
            )
    return violations


def scan_gaps_and_overlaps(
    chunks: list[Chunk],
    tolerance: float = OVERLAP_TOLERANCE,
) -> tuple[list[GapViolation], list[OverlapViolation]]:
    """Walk consecutive chunks (already sorted by index) and flag gaps and heavy overlaps."""
    gaps: list[GapViolation] = []
    overlaps: list[OverlapViolation] = []

    for prev, nxt in zip(chunks, chunks[1:]):
        delta = nxt.char_start - prev.char_end
        pair = (prev.chunk_index, nxt.chunk_index)

        if delta > 0:
            gaps.append(
                GapViolation(
                    between=pair,
                    gap_start=prev.char_end,
                    gap_end=nxt.char_start,
                    gap_size=delta,
                )
            )
        elif delta < 0:
            overlap = -delta
            shorter = min(prev.length, nxt.length)
            ratio = overlap / shorter if shorter > 0 else 1.0
            if ratio > tolerance:
                overlaps.append(
                    OverlapViolation(
                        between=pair,
                        overlap_start=nxt.char_start,
                        overlap_end=prev.char_end,
                        overlap_size=overlap,
                        overlap_ratio=round(ratio, 4),
                    )
                )
    return gaps, overlaps


def covered_length(chunks: Iterable[Chunk], doc_chars: int) -> int:
    """Length of the union of [char_start, char_end) intervals clipped to the document."""
    intervals = sorted(
        (max(c.char_start, 0), min(c.char_end, doc_chars))
        for c in chunks
        if min(c.char_end, doc_chars) > max(c.char_start, 0)
    )
    total = 0
    cur_start, cur_end = None, None
    for start, end in intervals:
        if cur_end is None or start > cur_end:
            if cur_end is not None:
                total += cur_end - cur_start
            cur_start, cur_end = start, end
        else:
            cur_end = max(cur_end, end)
    if cur_end is not None:
        total += cur_end - cur_start
    return total


def find_duplicate_hashes(chunks: list[Chunk]) -> list[str]:
    counts: dict[str, int] = {}
    for c in chunks:
        if c.chunk_hash:
            counts[c.chunk_hash] = counts.get(c.chunk_hash, 0) + 1
    return [h for h, n in counts.items() if n > 1]


def find_empty_chunks(chunks: list[Chunk]) -> list[int]:
    return [c.chunk_index for c in chunks if not c.chunk_text.strip()]


# --- Composite Metrics --------------------------------------------------------

def compute_metrics(
    document_id: str,
    source_table: str,
    full_text: str,
    chunks: Iterable[Chunk],
) -> ChunkAuditMetrics:
    """Run every check over one chunk set and return the metrics object."""
    ordered = sorted(chunks, key=lambda c: c.chunk_index)
    doc_chars = len(full_text)

    if not ordered:
        return ChunkAuditMetrics(
            document_id=document_id,
            source_table=source_table,
            document_chars=doc_chars,
        )

    sizes = [len(c.chunk_text) for c in ordered]
    missing = find_missing_indices(ordered)
    gaps, overlaps = scan_gaps_and_overlaps(ordered)
    coverage = covered_length(ordered, doc_chars) / doc_chars if doc_chars > 0 else 0.0

    return ChunkAuditMetrics(
        document_id=document_id,
        source_table=source_table,
        chunk_count=len(ordered),
        document_chars=doc_chars,
        total_chunk_chars=sum(sizes),
        avg_size=round(sum(sizes) / len(sizes)),
        min_size=min(sizes),
        max_size=max(sizes),
        coverage_ratio=round(coverage, 6),
        coverage_ok=not gaps and abs(coverage - 1.0) <= COVERAGE_EPSILON,
        gap_violations=gaps,
        overlap_violations=overlaps,
        boundary_violations=find_boundary_violations(ordered, doc_chars),
        index_continuity_ok=not missing,
        missing_indices=missing,
        duplicate_hashes=find_duplicate_hashes(ordered),
        empty_chunks=find_empty_chunks(ordered),
    )


def audit_document(
    document_id: str,
    source_table: str,
    full_text: str,
    chunks: Iterable[Chunk],
) -> ChunkAuditMetrics:
    """compute_metrics() plus a one-line verdict in the log."""
    metrics = compute_metrics(document_id, source_table, full_text, chunks)
    level = "DEBUG" if metrics.is_indexable else "WARNING"
    logger.log(
        level,
        f"[Auditor] {document_id} ({source_table}) | {metrics.chunk_count} chunks | "
        f"coverage={metrics.coverage_ratio:.3f} gaps={len(metrics.gap_violations)} "
        f"overlaps={len(metrics.overlap_violations)} "
        f"boundary={len(metrics.boundary_violations)} "
        f"missing={len(metrics.missing_indices)} dupes={len(metrics.duplicate_hashes)} "
        f"empty={len(metrics.empty_chunks)} -> {'OK' if metrics.is_indexable else 'REJECT'}",
    )
    return metrics

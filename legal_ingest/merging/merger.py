"""
Source Merger
--------------
Combines two matched extractions of the same legal document into one
canonical chunk set.

The two sources play different roles:
  - PRIMARY (plain-text extraction): authoritative prose, all text/article chunks
  - SECONDARY (PDF extraction): only tables, which the text extraction cannot
    represent; its headers and prose are dropped to avoid duplicate text

The merged chunk set is indexed contiguously from 0: text chunks keep their
relative order, retained tables follow them and carry a provenance marker
so downstream consumers can tell merged-in content apart.
"""
from __future__ import annotations

from typing import Iterable, Sequence

from loguru import logger

from legal_ingest.merging.matcher import DEFAULT_RULES, MatchRule, find_matching_pairs, match_sources
from legal_ingest.schemas import ChunkType, MergedDocument, MergedSources, SourceRecord

TABLE_LABEL_PREFIX = "[PDF table] "

PRIMARY_CHUNK_TYPES = {ChunkType.TEXT, ChunkType.ARTICLE}
SECONDARY_CHUNK_TYPES = {ChunkType.TABLE}


class SourceMismatchError(ValueError):
    """Raised when merge_sources() is called on a pair that does not match."""


def assign_roles(a: SourceRecord, b: SourceRecord) -> tuple[SourceRecord, SourceRecord]:
    """Return (primary, secondary): the PDF is secondary, otherwise keep declared order."""
    if a.is_pdf and not b.is_pdf:
        return b, a
    return a, b


def merge_sources(
    a: SourceRecord,
    b: SourceRecord,
    rules: Sequence[MatchRule] = DEFAULT_RULES,
) -> MergedDocument:
    """
    Merge two matched sources into a MergedDocument.

    Raises:
        SourceMismatchError: the pair does not match under any rule.
    """
    match = match_sources(a, b, rules)
    if not match.matched:
        raise SourceMismatchError(
            f"Sources do not match ({a.source_key} vs {b.source_key}). "
            f"Rule: {match.rule.value}. Fields: {'; '.join(match.fields_used)}"
        )

    primary, secondary = assign_roles(a, b)

    # Primary headers are dropped, so text chunks are renumbered 0..n-1 in order
    text_chunks = [
        c.model_copy(update={"chunk_index": i})
        for i, c in enumerate(
            sorted(
                (c for c in primary.chunks if c.chunk_type in PRIMARY_CHUNK_TYPES),
                key=lambda c: c.chunk_index,
            )
        )
    ]
    next_index = len(text_chunks)

    tables = sorted(
        (c for c in secondary.chunks if c.chunk_type in SECONDARY_CHUNK_TYPES),
        key=lambda c: c.chunk_index,
    )
    table_chunks = [
        c.model_copy(
            update={
                "chunk_index": next_index + i,
                "label": f"{TABLE_LABEL_PREFIX}{c.label}" if c.label else TABLE_LABEL_PREFIX.rstrip(),
            }
        )
        for i, c in enumerate(tables)
    ]

    dropped = len(secondary.chunks) - len(table_chunks)
    logger.info(
        f"[Merger] {match.match_key} ({match.rule.value}) | "
        f"{primary.file_name} -> {len(text_chunks)} text chunk(s), "
        f"{secondary.file_name} -> {len(table_chunks)} table chunk(s), {dropped} dropped"
    )

    return MergedDocument(
        title=primary.title or secondary.title,
        primary_text=primary.content_text,
        text_chunks=text_chunks,
        table_chunks=table_chunks,
        all_chunks=text_chunks + table_chunks,
        match=match,
        sources=MergedSources(primary=primary, secondary=secondary),
    )


def merge_matching_sources(
    sources: Iterable[SourceRecord],
    rules: Sequence[MatchRule] = DEFAULT_RULES,
) -> list[MergedDocument]:
    """Group a batch of sources and merge the first two members of every group."""
    merged: list[MergedDocument] = []
    for key, group in find_matching_pairs(sources, rules).items():
        if len(group) > 2:
            logger.warning(
                f"[Merger] {key}: {len(group)} sources share the key, merging the first two"
            )
        try:
            merged.append(merge_sources(group[0], group[1], rules))
        except SourceMismatchError as exc:
            logger.error(f"[Merger] {key}: {exc}")
    return merged

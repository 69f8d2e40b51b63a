"""
Legal Structural Chunker
-------------------------
Splits a legal document's normalized text into offset-addressed chunks.

Strategy selection:
  - LEGISLATION (law / code / regulation):
      ARTICLE -- one chunk per article, cut at article headers
      (Armenian "Hodvats 12." or "Article 12."); any text before the first header
      becomes a HEADER chunk.  Oversized articles are re-split with the
      fixed window.

  - EVERYTHING ELSE, or legislation without article headers:
      FIXED_WINDOW -- windows of at most MAX_CHUNK_CHARS, cut at the last
      paragraph break (else line break) inside the window.

Chunks tile the text exactly: chunk_text == text[char_start:char_end] and
every chunk starts where the previous one ends, so chunker output always
passes the integrity auditor.
"""
from __future__ import annotations

import re
from typing import Iterator

from loguru import logger

from legal_ingest.schemas import Chunk, ChunkLocator, ChunkType

# ── Constants ─────────────────────────────────────────────────────────────────

MAX_CHUNK_CHARS = 8000      # Hard ceiling per chunk
MIN_CHUNK_CHARS = 200       # A break closer than this to the window start is ignored

LEGISLATION_DOC_TYPES = {"law", "code", "regulation"}

# "Hodvats 85." (Armenian), "Article 12."; the number may carry sub-articles (345.2)
ARTICLE_HEADER_RE = re.compile(
    "(?:\u0540\u0578\u0564\u057e\u0561\u056e|Article)\\s+(\\d+(?:[.-]\\d+)*)\\s*[.\u0589]",
    re.IGNORECASE,
)


class LegalChunker:
    """
    Usage:
        chunker = LegalChunker()
        chunks = chunker.chunk_document(text, doc_type="law")
    """

    def __init__(
        self,
        max_chunk_chars: int = MAX_CHUNK_CHARS,
        min_chunk_chars: int = MIN_CHUNK_CHARS,
    ) -> None:
        self.max_chunk_chars = max_chunk_chars
        self.min_chunk_chars = min_chunk_chars

    def chunk_document(self, text: str, doc_type: str = "law") -> list[Chunk]:
        if not text or not text.strip():
            return []

        if doc_type in LEGISLATION_DOC_TYPES:
            strategy = "article"
            chunks = self._chunk_legislation(text)
        else:
            strategy = "fixed_window"
            chunks = self._reindex(self._fixed_window(text, 0, len(text), ChunkType.TEXT))

        logger.debug(
            f"[Chunker] {doc_type} | {len(text):,} chars | {strategy} -> {len(chunks)} chunk(s)"
        )
        return chunks

    # --- Strategy: Articles --------------------------------------------------

    def _chunk_legislation(self, text: str) -> list[Chunk]:
        headers = self._article_headers(text)
        if not headers:
            return self._reindex(self._fixed_window(text, 0, len(text), ChunkType.TEXT))

        pieces: list[Chunk] = []
        first = headers[0][0]
        if text[:first].strip():
            pieces.extend(self._fixed_window(text, 0, first, ChunkType.HEADER))
        else:
            headers[0] = (0, headers[0][1])  # blank lead-in joins the first article

        for i, (start, number) in enumerate(headers):
            end = headers[i + 1][0] if i + 1 < len(headers) else len(text)
            label = f"Art. {number}"
            locator = ChunkLocator(article=number, section_title=label)
            for piece in self._fixed_window(text, start, end, ChunkType.ARTICLE):
                pieces.append(piece.model_copy(update={"label": label, "locator": locator}))

        return self._reindex(pieces)

    @staticmethod
    def _article_headers(text: str) -> list[tuple[int, str]]:
        """(offset, article number) of every header that starts a line."""
        headers: list[tuple[int, str]] = []
        for m in ARTICLE_HEADER_RE.finditer(text):
            line_start = text.rfind("\n", 0, m.start()) + 1
            if text[line_start:m.start()].strip():
                continue  # cross-reference inside a sentence, not a header
            headers.append((m.start(), m.group(1)))
        return headers

    # --- Strategy: Fixed Window ----------------------------------------------

    def _fixed_window(self, text: str, start: int, end: int, chunk_type: ChunkType) -> Iterator[Chunk]:
        pos = start
        while pos < end:
            cut = min(pos + self.max_chunk_chars, end)
            if cut < end:
                cut = self._best_break(text, pos, cut)
                if not text[cut:end].strip():
                    cut = end
            yield Chunk.build(0, chunk_type, text[pos:cut], pos)
            pos = cut

    def _best_break(self, text: str, pos: int, cut: int) -> int:
        floor = pos + self.min_chunk_chars
        for sep in ("\n\n", "\n"):
            idx = text.rfind(sep, floor, cut)
            if idx != -1:
                return idx + len(sep)
        return cut

    @staticmethod
    def _reindex(chunks) -> list[Chunk]:
        return [c.model_copy(update={"chunk_index": i}) for i, c in enumerate(chunks)]

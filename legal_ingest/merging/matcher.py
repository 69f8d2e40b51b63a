"""
Source Matcher
---------------
Decides whether two independently extracted sources (e.g. the TXT and the
PDF download of the same ARLIS act) represent the same legal document.

Rules are evaluated in a fixed priority order, first match wins:
  1. ArlisIdRule    - same numeric ARLIS document id (URL, then file name)
  2. TitleDateRule  - identical normalized title AND identical date adopted

Matching never raises: malformed or missing identity fields simply produce
matched=False.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Sequence

from loguru import logger

from legal_ingest.schemas import MatchResult, MatchRuleName, SourceRecord
from legal_ingest.utils.helpers import collapse_whitespace

ARLIS_URL_RE = re.compile(r"(?:DocumentView|docview)\.aspx\?.*?docid=(\d+)", re.IGNORECASE)
ARLIS_FILENAME_RE = re.compile(r"arlis[_-]?id[_=:.-]?\s*(\d+)", re.IGNORECASE)


def extract_arlis_id(source_url: Optional[str] = None, file_name: Optional[str] = None) -> Optional[str]:
    """Numeric ARLIS document id from a source URL, falling back to the file name."""
    if source_url:
        m = ARLIS_URL_RE.search(source_url)
        if m:
            return m.group(1)
    if file_name:
        m = ARLIS_FILENAME_RE.search(file_name)
        if m:
            return m.group(1)
    return None


def normalize_title(title: Optional[str]) -> str:
    """Trim and collapse whitespace; comparison stays case-sensitive."""
    return collapse_whitespace(title or "")


# --- Rules --------------------------------------------------------------------

class MatchRule(ABC):
    """
    One identity heuristic.

    A rule maps each source to a canonical key (or None when the source lacks
    the identity fields); two sources match under the rule when their keys are
    equal.  Adding a new heuristic means adding a subclass to the rule list.
    """

    name: MatchRuleName

    @abstractmethod
    def key_for(self, source: SourceRecord) -> Optional[str]:
        ...

    def try_match(self, a: SourceRecord, b: SourceRecord) -> Optional[str]:
        key_a = self.key_for(a)
        if key_a is None:
            return None
        return key_a if key_a == self.key_for(b) else None

    def describe(self, a: SourceRecord, b: SourceRecord) -> list[str]:
        return [f"{self.name.value}_a={self.key_for(a)}", f"{self.name.value}_b={self.key_for(b)}"]


class ArlisIdRule(MatchRule):
    name = MatchRuleName.ARLIS_ID

    def key_for(self, source: SourceRecord) -> Optional[str]:
        arlis_id = extract_arlis_id(source.source_url, source.file_name)
        return f"arlis:{arlis_id}" if arlis_id else None

    def describe(self, a: SourceRecord, b: SourceRecord) -> list[str]:
        return [
            f"a.sourceUrl={a.source_url or 'null'}",
            f"b.sourceUrl={b.source_url or 'null'}",
            f"a.fileName={a.file_name}",
            f"b.fileName={b.file_name}",
        ]


class TitleDateRule(MatchRule):
    name = MatchRuleName.TITLE_DATE

    def key_for(self, source: SourceRecord) -> Optional[str]:
        title = normalize_title(source.title)
        date = (source.date_adopted or "").strip()
        if not title or not date:
            return None
        return f"title_date:{title}|{date}"

    def describe(self, a: SourceRecord, b: SourceRecord) -> list[str]:
        return [
            f'a.title="{normalize_title(a.title)}"',
            f'b.title="{normalize_title(b.title)}"',
            f"a.dateAdopted={a.date_adopted or 'null'}",
            f"b.dateAdopted={b.date_adopted or 'null'}",
        ]


DEFAULT_RULES: tuple[MatchRule, ...] = (ArlisIdRule(), TitleDateRule())


# --- Matching -----------------------------------------------------------------

def match_sources(
    a: SourceRecord,
    b: SourceRecord,
    rules: Sequence[MatchRule] = DEFAULT_RULES,
) -> MatchResult:
    """Compare two sources rule by rule; the first rule that matches wins."""
    for rule in rules:
        key = rule.try_match(a, b)
        if key is not None:
            return MatchResult(
                matched=True,
                rule=rule.name,
                match_key=key,
                fields_used=rule.describe(a, b),
            )

    fields: list[str] = []
    for rule in rules:
        fields.extend(rule.describe(a, b))
    return MatchResult(matched=False, rule=MatchRuleName.NONE, match_key=None, fields_used=fields)


def find_matching_pairs(
    sources: Iterable[SourceRecord],
    rules: Sequence[MatchRule] = DEFAULT_RULES,
) -> dict[str, list[SourceRecord]]:
    """
    Group sources that represent the same document.

    Returns match_key -> sources (two or more per group).  Rules are applied in
    priority order and a source grouped by an earlier rule is never grouped
    again by a later one, so a pair sharing an ARLIS id is not double-counted
    under its title+date key.
    """
    sources = list(sources)
    result: dict[str, list[SourceRecord]] = {}
    consumed: set[str] = set()

    for rule in rules:
        groups: dict[str, list[SourceRecord]] = {}
        for s in sources:
            if s.source_key in consumed:
                continue
            key = rule.key_for(s)
            if key is not None:
                groups.setdefault(key, []).append(s)

        for key, group in groups.items():
            if len(group) >= 2:
                result[key] = group
                consumed.update(s.source_key for s in group)

    logger.debug(
        f"[Matcher] {len(sources)} source(s) -> {len(result)} matched group(s), "
        f"{len(sources) - len(consumed)} unmatched"
    )
    return result

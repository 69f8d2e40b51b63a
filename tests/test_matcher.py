"""Tests for source identity matching."""

from typing import Optional

import pytest

from legal_ingest.merging.matcher import (
    DEFAULT_RULES,
    ArlisIdRule,
    MatchRule,
    TitleDateRule,
    extract_arlis_id,
    find_matching_pairs,
    match_sources,
    normalize_title,
)
from legal_ingest.schemas import MatchRuleName, SourceRecord


def _source(key, file_name="doc.txt", title="", date=None, url=None, mime="text/plain"):
    return SourceRecord(
        source_key=key,
        file_name=file_name,
        mime_type=mime,
        title=title,
        date_adopted=date,
        source_url=url,
    )


class TestExtractArlisId:

    @pytest.mark.parametrize(
        "url",
        [
            "https://www.arlis.am/DocumentView.aspx?docid=75863",
            "https://www.arlis.am/docview.aspx?docid=75863",
            "http://ARLIS.AM/DOCUMENTVIEW.ASPX?DOCID=75863",
            "https://www.arlis.am/DocumentView.aspx?lang=arm&docid=75863",
        ],
    )
    def test_url_variants(self, url):
        assert extract_arlis_id(url, None) == "75863"

    def test_filename_fallback(self):
        assert extract_arlis_id(None, "arlis_id_99001.txt") == "99001"
        assert extract_arlis_id("https://example.com/law.pdf", "ARLIS-ID-42.pdf") == "42"

    def test_url_wins_over_filename(self):
        assert extract_arlis_id("https://arlis.am/docview.aspx?docid=1", "arlis_id_2.txt") == "1"

    @pytest.mark.parametrize(
        "url,file_name",
        [
            (None, None),
            ("https://example.com/laws/123", "law_123.txt"),
            ("https://www.arlis.am/Search.aspx?q=tax", "tax_code.pdf"),
            ("", ""),
        ],
    )
    def test_no_reference(self, url, file_name):
        assert extract_arlis_id(url, file_name) is None


class TestNormalizeTitle:

    def test_collapses_whitespace(self):
        assert normalize_title("  On   Tax\tCode \n") == "On Tax Code"

    def test_non_breaking_space(self):
        assert normalize_title("On\u00a0Tax\u00a0 Code") == "On Tax Code"

    def test_case_is_preserved(self):
        assert normalize_title("ON TAX CODE") != normalize_title("On Tax Code")

    def test_none(self):
        assert normalize_title(None) == ""


class TestMatchSources:

    def test_arlis_id_match(self, txt_source, pdf_source):
        result = match_sources(txt_source, pdf_source)
        assert result.matched is True
        assert result.rule == MatchRuleName.ARLIS_ID
        assert result.match_key == "arlis:75863"
        assert result.fields_used

    def test_arlis_id_wins_when_title_and_date_also_match(self):
        a = _source("a", title="Tax Code", date="2016-10-04", url="https://arlis.am/docview.aspx?docid=7")
        b = _source("b", title="Tax Code", date="2016-10-04", file_name="arlis_id_7.pdf")
        result = match_sources(a, b)
        assert result.rule == MatchRuleName.ARLIS_ID
        assert result.match_key == "arlis:7"

    def test_title_date_match(self):
        a = _source("a", title="On  Tax Code", date="2016-10-04")
        b = _source("b", title="On Tax Code ", date="2016-10-04")
        result = match_sources(a, b)
        assert result.matched is True
        assert result.rule == MatchRuleName.TITLE_DATE
        assert result.match_key == "title_date:On Tax Code|2016-10-04"

    def test_different_dates_do_not_match(self):
        a = _source("a", title="On Tax Code", date="2016-10-04")
        b = _source("b", title="On Tax Code", date="2017-01-01")
        result = match_sources(a, b)
        assert result.matched is False
        assert result.rule == MatchRuleName.NONE
        assert result.match_key is None

    def test_different_arlis_ids_fall_through_to_title(self):
        a = _source("a", title="Tax Code", date="2016-10-04", url="https://arlis.am/docview.aspx?docid=1")
        b = _source("b", title="Tax Code", date="2016-10-04", url="https://arlis.am/docview.aspx?docid=2")
        assert match_sources(a, b).rule == MatchRuleName.TITLE_DATE

    def test_missing_fields_never_match(self):
        a = _source("a")
        b = _source("b")
        result = match_sources(a, b)
        assert result.matched is False
        # Both rules report what they compared
        assert any("sourceUrl" in f for f in result.fields_used)
        assert any("title" in f for f in result.fields_used)

    def test_custom_rule_list(self):
        class SameFileRule(MatchRule):
            name = MatchRuleName.TITLE_DATE

            def key_for(self, source: SourceRecord) -> Optional[str]:
                return f"file:{source.file_name.rsplit('.', 1)[0]}"

        a = _source("a", file_name="law.txt")
        b = _source("b", file_name="law.pdf")
        assert match_sources(a, b).matched is False
        assert match_sources(a, b, rules=[SameFileRule()]).match_key == "file:law"


class TestFindMatchingPairs:

    def test_groups_by_arlis_then_title(self):
        sources = [
            _source("t1", title="Tax Code", date="2016-10-04", url="https://arlis.am/docview.aspx?docid=7"),
            _source("p1", title="Tax Code", date="2016-10-04", file_name="arlis_id_7.pdf"),
            _source("t2", title="Civil Code", date="1998-05-05"),
            _source("p2", title="Civil  Code", date="1998-05-05", file_name="civil.pdf"),
            _source("lonely", title="Lonely Act", date="2000-01-01"),
        ]
        groups = find_matching_pairs(sources)

        assert set(groups) == {"arlis:7", "title_date:Civil Code|1998-05-05"}
        assert [s.source_key for s in groups["arlis:7"]] == ["t1", "p1"]
        assert [s.source_key for s in groups["title_date:Civil Code|1998-05-05"]] == ["t2", "p2"]

    def test_pair_is_never_double_counted(self):
        sources = [
            _source("a", title="Tax Code", date="2016-10-04", url="https://arlis.am/docview.aspx?docid=7"),
            _source("b", title="Tax Code", date="2016-10-04", url="https://arlis.am/DocumentView.aspx?docid=7"),
        ]
        groups = find_matching_pairs(sources)
        assert list(groups) == ["arlis:7"]

    def test_singletons_are_dropped(self):
        sources = [_source("a", title="A", date="2020-01-01"), _source("b", title="B", date="2020-01-01")]
        assert find_matching_pairs(sources) == {}

    def test_default_rule_order(self):
        assert isinstance(DEFAULT_RULES[0], ArlisIdRule)
        assert isinstance(DEFAULT_RULES[1], TitleDateRule)

"""Tests for tokenization, BM25 scoring and snippets."""

import pytest

from ai_sessions.search.text import bm25, idf, make_snippet, normalize_scores, term_frequencies, tokenize


class TestTokenize:
    """Tests for tokenize."""

    def test_lowercases_and_splits(self) -> None:
        """Words are split on non-word characters and lowercased."""
        assert tokenize("Fix the SQLite-backend, now!") == ["fix", "the", "sqlite", "backend", "now"]

    def test_drops_single_ascii_characters(self) -> None:
        """Single ASCII characters are noise."""
        assert tokenize("a b cd 1 22") == ["cd", "22"]

    def test_keeps_single_non_ascii_characters(self) -> None:
        """Single CJK characters carry meaning."""
        assert tokenize("修 bug") == ["修", "bug"]

    def test_term_frequencies(self) -> None:
        """Frequencies count repeated tokens."""
        assert term_frequencies(["aa", "bb", "aa"]) == {"aa": 2, "bb": 1}


class TestBM25:
    """Tests for the BM25 term score."""

    def test_idf_positive(self) -> None:
        """IDF stays positive even for terms in every document."""
        assert idf(10, 10) > 0
        assert idf(1, 10) > idf(5, 10)

    def test_zero_when_absent(self) -> None:
        """A term that does not occur contributes nothing."""
        assert bm25(tf=0, doc_len=10, avg_len=10.0, df=1, num_docs=5) == 0.0

    def test_monotonic_in_term_frequency(self) -> None:
        """More occurrences never lower the score."""
        scores = [bm25(tf=tf, doc_len=20, avg_len=20.0, df=2, num_docs=10) for tf in range(1, 8)]
        assert scores == sorted(scores)

    def test_saturates(self) -> None:
        """Doubling the term frequency never doubles the score."""
        for tf in (1, 2, 5, 10):
            single = bm25(tf=tf, doc_len=20, avg_len=20.0, df=2, num_docs=10)
            double = bm25(tf=tf * 2, doc_len=20, avg_len=20.0, df=2, num_docs=10)
            assert double < 2 * single

    def test_longer_documents_score_lower(self) -> None:
        """Length normalization favours shorter documents."""
        short = bm25(tf=2, doc_len=10, avg_len=20.0, df=2, num_docs=10)
        long = bm25(tf=2, doc_len=40, avg_len=20.0, df=2, num_docs=10)
        assert short > long

    def test_rare_terms_score_higher(self) -> None:
        """Rarer terms contribute more."""
        rare = bm25(tf=1, doc_len=20, avg_len=20.0, df=1, num_docs=10)
        common = bm25(tf=1, doc_len=20, avg_len=20.0, df=9, num_docs=10)
        assert rare > common

    def test_b_zero_disables_length_normalization(self) -> None:
        """With b=0 document length is ignored."""
        short = bm25(tf=2, doc_len=10, avg_len=20.0, df=2, num_docs=10, b=0.0)
        long = bm25(tf=2, doc_len=40, avg_len=20.0, df=2, num_docs=10, b=0.0)
        assert short == pytest.approx(long)


class TestNormalizeScores:
    """Tests for normalize_scores."""

    def test_top_is_one(self) -> None:
        """Scores are divided by the top score."""
        assert normalize_scores({"a": 4.0, "b": 1.0}) == {"a": 1.0, "b": 0.25}

    def test_lowest_stays_positive(self) -> None:
        """The weakest hit keeps a non-zero score."""
        assert normalize_scores({"a": 3.0, "b": 2.0, "c": 1.0})["c"] > 0.0

    def test_empty(self) -> None:
        assert normalize_scores({}) == {}


class TestMakeSnippet:
    """Tests for make_snippet."""

    def test_short_text_collapsed(self) -> None:
        """Short text is returned whole with whitespace collapsed."""
        assert make_snippet("Fix   the\n\nparser ", ["parser"], 160) == "Fix the parser"

    def test_centered_on_match(self) -> None:
        """Long text is clipped around the first match."""
        text = "lorem " * 50 + "migration failed here " + "ipsum " * 50

        snippet = make_snippet(text, ["migration"], 40)

        assert snippet.startswith("...")
        assert snippet.endswith("...")
        assert "migration" in snippet
        assert len(snippet) <= 40 + 6

    def test_match_at_start(self) -> None:
        """A match at the start is not prefixed with an ellipsis."""
        snippet = make_snippet("migration " + "x" * 300, ["migration"], 40)
        assert snippet.startswith("migration")
        assert snippet.endswith("...")

    def test_match_at_end(self) -> None:
        """A match near the end shows the tail of the text."""
        snippet = make_snippet("x" * 300 + " migration", ["migration"], 40)
        assert snippet.startswith("...")
        assert snippet.endswith("migration")

    def test_match_is_case_insensitive(self) -> None:
        """Query tokens match regardless of case in the text."""
        snippet = make_snippet("y " * 100 + "SQLite " + "z " * 100, ["sqlite"], 30)
        assert "SQLite" in snippet

    def test_no_match_starts_at_beginning(self) -> None:
        """Without a match the snippet starts at the text start."""
        snippet = make_snippet("abc " * 100, ["zzz"], 20)
        assert snippet.startswith("abc")
        assert snippet.endswith("...")

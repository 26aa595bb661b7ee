"""Tests for text normalization, similarity and deduplication."""

import pytest

from bhasha.curation.text import (
    dedup_key,
    deduplicate_records,
    detect_language,
    find_near_duplicate,
    normalize_text,
    similarity,
)


# ============================================
# Normalization
# ============================================


class TestNormalizeText:
    """Tests for whitespace normalization."""

    def test_collapses_runs(self):
        assert normalize_text("  नमस्ते   दुनिया \n\t फिर ") == "नमस्ते दुनिया फिर"

    def test_newlines_become_spaces(self):
        assert normalize_text("line one\nline two\r\nthree") == "line one line two three"

    def test_empty(self):
        assert normalize_text("   ") == ""

    def test_dedup_key_lowercases(self):
        assert dedup_key("  Hello   World ") == "hello world"


# ============================================
# Similarity
# ============================================


class TestSimilarity:
    """Tests for Jaccard token similarity."""

    @pytest.mark.parametrize(
        "a,b",
        [
            ("The quick brown fox", "the  QUICK brown   fox"),
            ("मेरा भारत महान", "मेरा  भारत\nमहान"),
            ("  single  ", "SINGLE"),
        ],
    )
    def test_identical_normalized_text_is_one(self, a, b):
        assert similarity(a, b) == 1.0

    def test_disjoint_is_zero(self):
        assert similarity("alpha beta", "gamma delta") == 0.0

    def test_partial_overlap(self):
        # {a, b, c} vs {b, c, d}: 2 shared of 4
        assert similarity("a b c", "b c d") == 0.5

    def test_both_empty(self):
        assert similarity("", "   ") == 0.0

    def test_near_duplicate_found_at_threshold(self):
        candidates = [
            {"id": "x", "text": "completely different words here"},
            {"id": "y", "text": "one two three four five six seven"},
        ]
        # 6 shared tokens of 7
        match = find_near_duplicate("one two three four five six", candidates, 0.85)

        assert match is not None
        assert match[0] == "y"
        assert match[1] == pytest.approx(6 / 7)

    def test_near_duplicate_below_threshold(self):
        candidates = [{"id": "y", "text": "one two three four"}]

        assert find_near_duplicate("one two five six", candidates, 0.85) is None


# ============================================
# Deduplication
# ============================================


class TestDeduplicate:
    """Tests for exact-text deduplication."""

    def test_first_occurrence_wins(self):
        records = [
            {"id": 1, "text": "Hello world"},
            {"id": 2, "text": "  hello   WORLD "},
            {"id": 3, "text": "Something else"},
        ]

        unique = deduplicate_records(records)

        assert [r["id"] for r in unique] == [1, 3]

    def test_empty_text_dropped(self):
        records = [{"text": ""}, {"text": None}, {"text": "kept text"}]

        assert deduplicate_records(records) == [{"text": "kept text"}]

    def test_idempotent(self):
        records = [{"text": t} for t in ["a b", "A  B", "c", "d", "c", "e"]]

        once = deduplicate_records(records)
        twice = deduplicate_records(once)

        assert twice == once

    def test_custom_accessor(self):
        items = ["x y", "X Y", "z"]

        assert deduplicate_records(items, lambda s: s) == ["x y", "z"]


# ============================================
# Language detection
# ============================================


class TestDetectLanguage:
    """Tests for script-based language detection."""

    @pytest.mark.parametrize(
        "text,language",
        [
            ("नमस्ते दुनिया", "hindi"),
            ("আমার সোনার বাংলা", "bengali"),
            ("வணக்கம் உலகம்", "tamil"),
            ("నమస్కారం", "telugu"),
            ("ಕನ್ನಡ ಭಾಷೆ", "kannada"),
            ("മലയാളം", "malayalam"),
            ("ਪੰਜਾਬੀ", "punjabi"),
            ("ગુજરાતી", "gujarati"),
            ("ଓଡ଼ିଆ", "odia"),
        ],
    )
    def test_scripts(self, text, language):
        assert detect_language(text) == language

    def test_dominant_script_wins(self):
        assert detect_language("hello नमस्ते दुनिया வ") == "hindi"

    def test_latin_only(self):
        assert detect_language("plain english text") is None

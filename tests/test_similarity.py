"""Tests for the deterministic string similarity scorer."""

import pytest

from factloom.similarity import calculate_similarity, jaro, jaro_winkler, normalize


class TestNormalize:
    """Tests for text normalisation ahead of scoring."""

    def test_lowercases_and_collapses_punctuation(self):
        """Should lowercase and turn punctuation runs into single spaces."""
        assert normalize("Hello,   World!") == "hello world"

    def test_empty_and_none(self):
        """Should map empty input and None to the empty string."""
        assert normalize("") == ""
        assert normalize(None) == ""


class TestJaroWinkler:
    """Tests for the raw Jaro and Jaro-Winkler scores."""

    def test_classic_reference_pair(self):
        """Should reproduce the textbook MARTHA/MARHTA scores."""
        assert jaro("martha", "marhta") == pytest.approx(0.9444, abs=1e-4)
        assert jaro_winkler("martha", "marhta") == pytest.approx(0.9611, abs=1e-4)

    def test_no_common_characters(self):
        """Should score strings sharing no characters as zero."""
        assert jaro("abc", "xyz") == 0.0

    def test_empty_string_scores_zero(self):
        """Should score an empty string as zero."""
        assert jaro("", "abc") == 0.0


class TestCalculateSimilarity:
    """Tests for the similarity score used by consolidation and linking."""

    def test_identical_after_normalization_is_one(self):
        """Should score texts differing only in case and punctuation as identical."""
        assert calculate_similarity("The sky is blue.", "the sky is BLUE") == 1.0

    def test_is_symmetric_and_bounded(self):
        """Should give the same score in both directions, within (0.85, 1]."""
        a = "Water boils at 100 degrees"
        b = "Water boils at 100 degrees Celsius"
        score = calculate_similarity(a, b)
        assert score == calculate_similarity(b, a)
        assert 0.85 < score <= 1.0

    def test_unrelated_text_scores_low(self):
        """Should keep unrelated text below the linking threshold."""
        assert calculate_similarity("The sky is blue", "4321 808") < 0.75

    def test_empty_against_text_is_zero(self):
        """Should score empty text against anything as zero."""
        assert calculate_similarity("", "anything") == 0.0

    def test_deterministic(self):
        """Should return the same score on every call."""
        a, b = "Paris is the capital of France", "Paris is a city in France"
        assert calculate_similarity(a, b) == calculate_similarity(a, b)

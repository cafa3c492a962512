"""Tests for utility helpers."""
import pytest

from todo_mcp.exceptions import TransientNetworkError, VersionConflictError
from todo_mcp.utils import (escape_like_pattern, normalize_query,
                            retry_with_backoff, split_keywords,
                            trigram_similarity, trigrams)


class TestEscapeLikePattern:
    """Tests for escape_like_pattern."""

    @pytest.mark.parametrize("raw,escaped", [
        ("plain", "plain"),
        ("100%", "100\\%"),
        ("file_name", "file\\_name"),
        ("back\\slash", "back\\\\slash"),
        ("%_\\", "\\%\\_\\\\"),
    ])
    def test_escapes(self, raw, escaped):
        assert escape_like_pattern(raw) == escaped


class TestQueryNormalization:
    """Tests for normalize_query and split_keywords."""

    @pytest.mark.parametrize("raw,expected", [
        (None, ""),
        ("", ""),
        ("  Buy MILK  ", "buy milk"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_query(raw) == expected

    def test_split(self):
        assert split_keywords("  Buy   fresh\tMILK ") == ["buy", "fresh", "milk"]

    def test_split_blank(self):
        assert split_keywords("   ") == []
        assert split_keywords(None) == []


class TestTrigrams:
    """Tests for trigram extraction and similarity."""

    def test_word_padding(self):
        assert trigrams("cat") == {"  c", " ca", "cat", "at "}

    def test_words_split_on_punctuation(self):
        assert trigrams("a-b") == {"  a", " a ", "  b", " b "}

    def test_case_insensitive(self):
        assert trigrams("MILK") == trigrams("milk")

    def test_empty(self):
        assert trigrams("") == frozenset()
        assert trigrams("!!!") == frozenset()

    def test_identical_strings(self):
        assert trigram_similarity("milk", "milk") == 1.0

    def test_near_miss(self):
        assert trigram_similarity("milk", "milks") == pytest.approx(4 / 7)

    def test_unrelated(self):
        assert trigram_similarity("milk", "bread") == 0.0

    def test_symmetric(self):
        assert trigram_similarity("buy milk", "milk run") == trigram_similarity(
            "milk run", "buy milk"
        )

    @pytest.mark.parametrize("left,right", [(None, "milk"), ("milk", None), ("", "milk")])
    def test_missing_input(self, left, right):
        assert trigram_similarity(left, right) == 0.0


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    def test_returns_first_success(self):
        delays = []
        assert retry_with_backoff(lambda: 42, sleep=delays.append) == 42
        assert delays == []

    def test_retries_transient_failures(self):
        delays = []
        attempts = {"n": 0}

        def flaky():
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise TransientNetworkError("database is locked")
            return "ok"

        result = retry_with_backoff(flaky, max_retries=3, base_delay=1.0, sleep=delays.append)

        assert result == "ok"
        assert delays == [1.0, 2.0]

    def test_gives_up_after_max_retries(self):
        delays = []

        def always_busy():
            raise TransientNetworkError("database is locked")

        with pytest.raises(TransientNetworkError):
            retry_with_backoff(always_busy, max_retries=2, base_delay=0.5, sleep=delays.append)

        assert delays == [0.5, 1.0]

    def test_does_not_retry_conflicts(self):
        delays = []

        def conflict():
            raise VersionConflictError("t1", 1, 2)

        with pytest.raises(VersionConflictError):
            retry_with_backoff(conflict, sleep=delays.append)

        assert delays == []

    def test_does_not_retry_plain_exceptions(self):
        delays = []

        with pytest.raises(KeyError):
            retry_with_backoff(lambda: {}["missing"], sleep=delays.append)

        assert delays == []

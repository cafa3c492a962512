"""Utility functions for the Todo MCP server."""

import logging
import time
from typing import Callable, FrozenSet, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for safe use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\_name'
    """
    # Use str.translate() for single-pass efficiency
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def fold_case(value: Optional[str]) -> Optional[str]:
    """Unicode-aware lowercase, registered as the SQL function ``unicode_lower``.

    SQLite's built-in ``lower()`` only folds ASCII letters.
    """
    return value.lower() if value is not None else None


def normalize_query(query: Optional[str]) -> str:
    """Trim and lowercase a raw search term. None becomes ''."""
    return (query or "").strip().lower()


def split_keywords(query: Optional[str]) -> List[str]:
    """Split a search term into normalized whitespace-separated keywords."""
    return normalize_query(query).split()


def trigrams(text: str) -> FrozenSet[str]:
    """Extract the trigram set of a string the way pg_trgm does.

    The text is lowercased and split into words on any non-alphanumeric
    character. Each word is padded with two leading spaces and one trailing
    space before its 3-character windows are collected.

    Examples:
        >>> sorted(trigrams("cat"))
        ['  c', ' ca', 'at ', 'cat']
    """
    words: List[str] = []
    current: List[str] = []
    for ch in text.lower():
        if ch.isalnum():
            current.append(ch)
        elif current:
            words.append("".join(current))
            current = []
    if current:
        words.append("".join(current))

    result = set()
    for word in words:
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            result.add(padded[i:i + 3])
    return frozenset(result)


def trigram_similarity(left: Optional[str], right: Optional[str]) -> float:
    """Trigram similarity in [0, 1]: shared trigrams over the union.

    Registered as the SQL function ``similarity`` on every SQLite
    connection so queries can rank fuzzy matches in the database.
    """
    if left is None or right is None:
        return 0.0
    a = trigrams(left)
    b = trigrams(right)
    if not a or not b:
        return 0.0
    shared = len(a & b)
    return shared / float(len(a) + len(b) - shared)


def retry_with_backoff(
    operation: Callable[[], T],
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run an operation, retrying transient failures with exponential backoff.

    Only exceptions whose ``retryable`` attribute is true are retried; the
    delay before attempt ``n`` (0-based) is ``base_delay * 2**n``. Version
    conflicts and permission errors propagate immediately.

    Args:
        operation: Zero-argument callable to run.
        max_retries: Retries after the first attempt.
        base_delay: Delay in seconds before the first retry.
        sleep: Sleep function (injected by tests).

    Returns:
        Whatever the operation returns.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not getattr(e, "retryable", False) or attempt >= max_retries:
                raise
            delay = base_delay * (2 ** attempt)
            logger.info(
                f"Retrying after {delay:.2f}s ({max_retries - attempt} retries left): {e}"
            )
            sleep(delay)
            attempt += 1

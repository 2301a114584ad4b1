"""Tokenization, BM25 scoring and snippet extraction for the search index."""

import math
import re
from collections import Counter

TOKEN_RE = re.compile(r"\w+", re.UNICODE)
WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_K1 = 1.2
DEFAULT_B = 0.75
DEFAULT_SNIPPET_LENGTH = 160

ELLIPSIS = "..."


def tokenize(text: str) -> list[str]:
    """Split text into lowercase word tokens.

    Single-character ASCII tokens are dropped; single non-ASCII characters
    (e.g. CJK ideographs) are kept since they carry meaning on their own.
    """
    tokens: list[str] = []
    for token in TOKEN_RE.findall(text.lower()):
        if len(token) >= 2 or not token.isascii():
            tokens.append(token)
    return tokens


def term_frequencies(tokens: list[str]) -> Counter[str]:
    return Counter(tokens)


def idf(df: int, num_docs: int) -> float:
    """Inverse document frequency, always positive."""
    return math.log(1.0 + (num_docs - df + 0.5) / (df + 0.5))


def bm25(
    tf: int,
    doc_len: int,
    avg_len: float,
    df: int,
    num_docs: int,
    k1: float = DEFAULT_K1,
    b: float = DEFAULT_B,
) -> float:
    """BM25 contribution of one term to one document's score.

    Args:
        tf: Occurrences of the term in the document
        doc_len: Document length in tokens
        avg_len: Average document length across the corpus
        df: Number of documents containing the term
        num_docs: Number of documents in the corpus
        k1: Term frequency saturation
        b: Length normalization strength

    Returns:
        Non-negative score; 0.0 when the term does not occur
    """
    if tf <= 0 or doc_len <= 0 or avg_len <= 0.0 or df <= 0:
        return 0.0
    numer = tf * (k1 + 1.0)
    denom = tf + k1 * (1.0 - b + b * (doc_len / avg_len))
    return idf(df, num_docs) * (numer / denom)


def normalize_scores(scores: dict[str, float]) -> dict[str, float]:
    """Divide every score by the top score so the best hit scores 1.0.

    Unlike min-max scaling this keeps every positive score above zero and
    preserves score ratios.
    """
    if not scores:
        return {}
    top = max(scores.values())
    if top <= 0.0:
        return {key: 1.0 for key in scores}
    return {key: value / top for key, value in scores.items()}


def make_snippet(text: str, query_tokens: list[str], length: int = DEFAULT_SNIPPET_LENGTH) -> str:
    """Cut a window of text around the first query token match.

    Args:
        text: Searchable text of a session
        query_tokens: Tokens of the query, as produced by tokenize()
        length: Maximum snippet length, excluding ellipses

    Returns:
        Whitespace-collapsed excerpt, prefixed and/or suffixed with "..."
        where it was clipped
    """
    flat = WHITESPACE_RE.sub(" ", text).strip()
    if len(flat) <= length:
        return flat

    center = 0
    wanted = set(query_tokens)
    for match in TOKEN_RE.finditer(flat):
        if match.group(0).lower() in wanted:
            center = (match.start() + match.end()) // 2
            break

    start = max(0, center - length // 2)
    end = start + length
    if end > len(flat):
        end = len(flat)
        start = max(0, end - length)

    snippet = flat[start:end].strip()
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(flat):
        snippet = snippet + ELLIPSIS
    return snippet

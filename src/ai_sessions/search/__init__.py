"""Full-text search over normalized sessions."""

from .index import IndexEntry, SearchIndex, file_fingerprint
from .text import bm25, make_snippet, normalize_scores, tokenize

__all__ = [
    "IndexEntry",
    "SearchIndex",
    "bm25",
    "file_fingerprint",
    "make_snippet",
    "normalize_scores",
    "tokenize",
]

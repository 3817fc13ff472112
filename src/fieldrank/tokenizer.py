"""
Tokenization shared by the index and the query path.

A term is a maximal run of alphanumeric characters, case-folded. Everything
else (whitespace, punctuation, underscores, symbols) is a boundary. The same
tokenizer instance must be used at index time and at query time.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable

# Lucene's default English stop set (33 words). Not applied unless requested.
LUCENE_STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if",
        "in", "into", "is", "it", "no", "not", "of", "on", "or", "such",
        "that", "the", "their", "then", "there", "these", "they", "this",
        "to", "was", "will", "with",
    }
)

_TOKEN_PATTERN = re.compile(r"[^\W_]+")


class Tokenizer:
    """
    Case-folding alphanumeric tokenizer.

    Args:
        stopwords: Terms to drop after normalization. Defaults to none.
        min_length: Shortest term kept (in characters).
    """

    def __init__(self, stopwords: Iterable[str] | None = None, min_length: int = 1):
        self.stopwords = frozenset(w.casefold() for w in stopwords) if stopwords else frozenset()
        self.min_length = max(1, int(min_length))

    def __call__(self, text: object) -> list[str]:
        if isinstance(text, bytes):
            try:
                text = text.decode("utf-8")
            except UnicodeDecodeError:
                return []
        if not isinstance(text, str) or not text:
            return []
        terms = _TOKEN_PATTERN.findall(text.casefold())
        if self.stopwords or self.min_length > 1:
            terms = [t for t in terms if len(t) >= self.min_length and t not in self.stopwords]
        return terms

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tokenizer):
            return NotImplemented
        return self.stopwords == other.stopwords and self.min_length == other.min_length

    def __hash__(self) -> int:
        return hash((self.stopwords, self.min_length))

    def __repr__(self) -> str:
        return f"Tokenizer(stopwords={len(self.stopwords)}, min_length={self.min_length})"


_TOKENIZER: Tokenizer | None = None
_TOKENIZER_LOCK = threading.Lock()


def get_tokenizer() -> Tokenizer:
    """Get or create the shared default tokenizer."""
    global _TOKENIZER
    if _TOKENIZER is None:
        with _TOKENIZER_LOCK:
            if _TOKENIZER is None:
                _TOKENIZER = Tokenizer()
    return _TOKENIZER


def tokenize(text: object) -> list[str]:
    """Tokenizes text with the shared default tokenizer. Never raises."""
    return get_tokenizer()(text)

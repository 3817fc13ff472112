"""
Field-aware inverted index with incrementally maintained corpus statistics.

=============================================================================
LAYOUT
=============================================================================

Per term, the index keeps ``path -> counts`` where ``counts`` is a read-only
int64 vector with one slot per schema field (zero slots are implicit in the
sparse term map: a term only has an entry for documents where it occurs in
at least one field).

Per document, the index keeps an immutable ``_DocumentEntry`` holding the
field lengths and the same count vectors keyed by term, so that an update or
removal can retract exactly the postings it added in O(distinct terms).

=============================================================================
CONCURRENCY
=============================================================================

All mutation happens under ``InvertedIndex._lock``. Tokenization runs before
the lock is taken, so ingests of different paths only serialize on the swap.
Readers take the lock just long enough to build an ``IndexSnapshot`` over the
posting lists of the query terms, then score without holding it. Entries and
count vectors are never mutated in place, so a snapshot stays consistent
after the lock is released.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING

import numpy as np

from fieldrank.errors import DocumentNotFoundError
from fieldrank.schema import FieldSchema
from fieldrank.tokenizer import Tokenizer, get_tokenizer

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


def _frozen(array: NDArray[np.int64]) -> NDArray[np.int64]:
    array.setflags(write=False)
    return array


# =============================================================================
# Postings
# =============================================================================


@dataclass(frozen=True)
class Posting:
    """
    Occurrences of one term in one document.

    Attributes:
        path: Document key.
        counts: Per-field occurrence counts, in schema field order.
    """

    path: str
    counts: NDArray[np.int64]

    def count(self, position: int) -> int:
        return int(self.counts[position])

    @property
    def total(self) -> int:
        return int(self.counts.sum())


class PostingList(Sequence[Posting]):
    """All postings of a term, ordered by path."""

    def __init__(self, term: str, postings: Mapping[str, NDArray[np.int64]] | None = None):
        self.term = term
        items = sorted((postings or {}).items())
        self._postings = tuple(Posting(path, counts) for path, counts in items)
        self._index = {p.path: i for i, p in enumerate(self._postings)}

    def __len__(self) -> int:
        return len(self._postings)

    def __iter__(self) -> Iterator[Posting]:
        return iter(self._postings)

    def __getitem__(self, index):
        return self._postings[index]

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Posting):
            item = item.path
        return item in self._index

    def __repr__(self) -> str:
        return f"PostingList({self.term!r}, documents={len(self)})"

    def get(self, path: str) -> Posting | None:
        i = self._index.get(path)
        return None if i is None else self._postings[i]

    def paths(self) -> list[str]:
        return [p.path for p in self._postings]


@dataclass(frozen=True)
class _DocumentEntry:
    path: str
    lengths: NDArray[np.int64]
    terms: dict[str, NDArray[np.int64]]


# =============================================================================
# Corpus statistics
# =============================================================================


class CorpusStatistics:
    """
    Corpus-wide counters: document count, per-field length totals, per-field
    document counts and per-term document frequency.

    These are the only global mutable state of the engine. Every change goes
    through ``apply`` under ``_lock``, so concurrent writers cannot lose
    updates.
    """

    def __init__(self, num_fields: int):
        self._lock = threading.Lock()
        self._document_count = 0
        self._total_lengths = np.zeros(num_fields, dtype=np.int64)
        self._field_documents = np.zeros(num_fields, dtype=np.int64)
        self._document_frequency: Counter[str] = Counter()

    def apply(
        self,
        added: tuple[NDArray[np.int64], Iterable[str]] | None = None,
        retracted: tuple[NDArray[np.int64], Iterable[str]] | None = None,
    ) -> None:
        """
        Atomically account for a document being added, retracted or replaced.

        Args:
            added: (field lengths, distinct terms) of the new version.
            retracted: (field lengths, distinct terms) of the old version.

        Document count changes only when exactly one side is given. Document
        frequencies only move for terms present on one side.
        """
        old_terms = frozenset(retracted[1]) if retracted else frozenset()
        new_terms = frozenset(added[1]) if added else frozenset()
        with self._lock:
            if retracted:
                self._total_lengths -= retracted[0]
                self._field_documents -= (retracted[0] > 0).astype(np.int64)
            if added:
                self._total_lengths += added[0]
                self._field_documents += (added[0] > 0).astype(np.int64)
            self._document_count += int(bool(added)) - int(bool(retracted))

            df = self._document_frequency
            for term in old_terms - new_terms:
                df[term] -= 1
                if df[term] <= 0:
                    del df[term]
            for term in new_terms - old_terms:
                df[term] += 1

    @property
    def document_count(self) -> int:
        return self._document_count

    @property
    def vocabulary_size(self) -> int:
        return len(self._document_frequency)

    def document_frequency(self, term: str) -> int:
        return self._document_frequency.get(term, 0)

    def document_frequencies(self, terms: Sequence[str]) -> NDArray[np.float64]:
        with self._lock:
            return np.array([self._document_frequency.get(t, 0) for t in terms], dtype=np.float64)

    def total_field_length(self, position: int) -> int:
        return int(self._total_lengths[position])

    def field_document_count(self, position: int) -> int:
        return int(self._field_documents[position])

    def average_field_lengths(self) -> NDArray[np.float64]:
        """Mean field length over all indexed documents; zeros for an empty corpus."""
        with self._lock:
            if self._document_count == 0:
                return np.zeros(len(self._total_lengths), dtype=np.float64)
            return self._total_lengths.astype(np.float64) / self._document_count

    def average_field_length(self, position: int) -> float:
        return float(self.average_field_lengths()[position])


# =============================================================================
# Read snapshot
# =============================================================================


@dataclass(frozen=True)
class IndexSnapshot:
    """
    Consistent read view over the posting lists of a set of query terms.

    Attributes:
        schema: Field schema of the index.
        terms: The query terms the view was taken for.
        document_count: N at snapshot time.
        average_lengths: Per-field average length at snapshot time.
        document_frequencies: df of each term in ``terms``.
        postings: ``term -> {path -> counts}`` for each term in ``terms``.
        paths: Candidate documents (union of the postings), sorted.
        lengths: Field lengths of the candidates, shape (len(paths), fields).
    """

    schema: FieldSchema
    terms: tuple[str, ...]
    document_count: int
    average_lengths: NDArray[np.float64]
    document_frequencies: NDArray[np.float64]
    postings: dict[str, dict[str, NDArray[np.int64]]]
    paths: tuple[str, ...]
    lengths: NDArray[np.float64] = field(repr=False)

    @cached_property
    def rows(self) -> dict[str, int]:
        return {path: i for i, path in enumerate(self.paths)}

    def __len__(self) -> int:
        return len(self.paths)

    def term_frequencies(self, term: str) -> NDArray[np.float64]:
        """Per-field counts of ``term`` for every candidate, shape (candidates, fields)."""
        tf = np.zeros((len(self.paths), len(self.schema)), dtype=np.float64)
        rows = self.rows
        for path, counts in self.postings.get(term, {}).items():
            tf[rows[path]] = counts
        return tf

    def document_frequency(self, term: str) -> int:
        try:
            return int(self.document_frequencies[self.terms.index(term)])
        except ValueError:
            return 0


# =============================================================================
# Inverted index
# =============================================================================


class InvertedIndex:
    """
    Thread-safe in-memory inverted index over multi-field documents.

    Args:
        schema: Field schema; fixes the field set and count vector layout.
        tokenizer: Tokenizer used for field text. Query engines built on this
            index must use the same instance.
    """

    def __init__(self, schema: FieldSchema | None = None, tokenizer: Tokenizer | None = None):
        self.schema = schema or FieldSchema.default()
        self.tokenizer = tokenizer or get_tokenizer()
        self.statistics = CorpusStatistics(len(self.schema))
        self._lock = threading.RLock()
        self._documents: dict[str, _DocumentEntry] = {}
        self._postings: dict[str, dict[str, NDArray[np.int64]]] = {}

    # ----- Write path -----

    def analyze(self, field_texts: Mapping[str, object]) -> tuple[dict[str, Counter[str]], list[str]]:
        """Tokenizes known fields; returns (field -> term counts, rejected field names)."""
        counts: dict[str, Counter[str]] = {}
        rejected: list[str] = []
        known = self.schema.fields()
        for name, text in field_texts.items():
            if name not in known:
                rejected.append(name)
                continue
            counts[name] = Counter(self.tokenizer(text))
        return counts, rejected

    def upsert(self, path: str, field_texts: Mapping[str, object]) -> tuple[str, ...]:
        """
        Indexes ``path`` with the given field texts, replacing any previous
        version. Fields missing from ``field_texts`` become absent.

        Unknown fields are skipped and returned; the known ones are indexed.
        """
        return self.upsert_texts(path, field_texts)[2]

    def upsert_texts(
        self, path: str, field_texts: Mapping[str, object]
    ) -> tuple[bool, tuple[str, ...], tuple[str, ...]]:
        """Like ``upsert``; returns (created, indexed field names, rejected field names)."""
        counts, rejected = self.analyze(field_texts)
        if rejected:
            logger.warning("Rejected unknown fields %s for %s", sorted(rejected), path)
        created = self.upsert_counts(path, counts)
        return created, tuple(counts), tuple(rejected)

    def upsert_counts(self, path: str, field_counts: Mapping[str, Mapping[str, int]]) -> bool:
        """
        Indexes pre-tokenized term counts for ``path``. Returns True when the
        path was not indexed before.

        Raises:
            UnknownFieldError: a field is not part of the schema.
            ValueError: invalid path or negative count.
        """
        entry = self._build_entry(path, field_counts)
        with self._lock:
            previous = self._documents.get(path)
            if previous is not None:
                self._retract_postings(previous)
            for term, counts in entry.terms.items():
                self._postings.setdefault(term, {})[path] = counts
            self._documents[path] = entry
            self.statistics.apply(
                added=(entry.lengths, entry.terms.keys()),
                retracted=(previous.lengths, previous.terms.keys()) if previous else None,
            )
        logger.debug(
            "%s %s (%d terms, lengths %s)",
            "Indexed" if previous is None else "Reindexed",
            path,
            len(entry.terms),
            entry.lengths.tolist(),
        )
        return previous is None

    def remove(self, path: str) -> bool:
        """Retracts every posting of ``path``. Unknown paths are a no-op (False)."""
        with self._lock:
            entry = self._documents.pop(path, None)
            if entry is None:
                return False
            self._retract_postings(entry)
            self.statistics.apply(retracted=(entry.lengths, entry.terms.keys()))
        logger.debug("Removed %s", path)
        return True

    def _build_entry(self, path: str, field_counts: Mapping[str, Mapping[str, int]]) -> _DocumentEntry:
        if not isinstance(path, str) or not path:
            raise ValueError(f"document path must be a non-empty string, got {path!r}")
        num_fields = len(self.schema)
        vectors: dict[str, NDArray[np.int64]] = {}
        for name, term_counts in field_counts.items():
            position = self.schema.position(name)
            for term, count in term_counts.items():
                count = int(count)
                if count < 0:
                    raise ValueError(f"negative count {count} for {term!r} in {path}:{name}")
                if count == 0:
                    continue
                vector = vectors.get(term)
                if vector is None:
                    vector = vectors[term] = np.zeros(num_fields, dtype=np.int64)
                vector[position] += count
        lengths = np.zeros(num_fields, dtype=np.int64)
        for vector in vectors.values():
            lengths += _frozen(vector)
        return _DocumentEntry(path, _frozen(lengths), vectors)

    def _retract_postings(self, entry: _DocumentEntry) -> None:
        for term in entry.terms:
            postings = self._postings.get(term)
            if postings is None:
                continue
            postings.pop(entry.path, None)
            if not postings:
                del self._postings[term]

    # ----- Read path -----

    def postings_for(self, term: str) -> PostingList:
        with self._lock:
            postings = dict(self._postings.get(term, {}))
        return PostingList(term, postings)

    def document_frequency(self, term: str) -> int:
        return self.statistics.document_frequency(term)

    def avg_field_length(self, field: str) -> float:
        return self.statistics.average_field_length(self.schema.position(field))

    def document_count(self) -> int:
        return self.statistics.document_count

    def field_length(self, path: str, field: str) -> int:
        position = self.schema.position(field)
        entry = self._documents.get(path)
        if entry is None:
            raise DocumentNotFoundError(path)
        return int(entry.lengths[position])

    def document_counts(self, path: str) -> dict[str, dict[str, int]]:
        """Per-field term counts of an indexed document."""
        entry = self._documents.get(path)
        if entry is None:
            raise DocumentNotFoundError(path)
        return self._entry_counts(entry)

    def _entry_counts(self, entry: _DocumentEntry) -> dict[str, dict[str, int]]:
        result: dict[str, dict[str, int]] = {}
        for term, counts in entry.terms.items():
            for position in np.flatnonzero(counts):
                result.setdefault(self.schema.names[position], {})[term] = int(counts[position])
        return result

    def export(self) -> dict[str, dict[str, dict[str, int]]]:
        """Consistent ``path -> field -> term -> count`` dump of the whole index."""
        with self._lock:
            entries = list(self._documents.values())
        return {entry.path: self._entry_counts(entry) for entry in sorted(entries, key=lambda e: e.path)}

    def snapshot(self, terms: Iterable[str]) -> IndexSnapshot:
        """Captures a consistent view of everything needed to score ``terms``."""
        terms = tuple(dict.fromkeys(terms))
        with self._lock:
            document_count = self.statistics.document_count
            average_lengths = self.statistics.average_field_lengths()
            document_frequencies = self.statistics.document_frequencies(terms)
            postings = {t: dict(self._postings[t]) for t in terms if t in self._postings}
            candidates = set().union(*postings.values()) if postings else set()
            entries = [self._documents[p] for p in candidates]
        entries.sort(key=lambda e: e.path)
        if entries:
            lengths = np.stack([e.lengths for e in entries]).astype(np.float64)
        else:
            lengths = np.zeros((0, len(self.schema)), dtype=np.float64)
        return IndexSnapshot(
            schema=self.schema,
            terms=terms,
            document_count=document_count,
            average_lengths=average_lengths,
            document_frequencies=document_frequencies,
            postings=postings,
            paths=tuple(e.path for e in entries),
            lengths=lengths,
        )

    # ----- Introspection -----

    def __contains__(self, path: object) -> bool:
        return path in self._documents

    def __len__(self) -> int:
        return len(self._documents)

    def paths(self) -> list[str]:
        with self._lock:
            return sorted(self._documents)

    @property
    def vocabulary_size(self) -> int:
        return self.statistics.vocabulary_size

    def __repr__(self) -> str:
        return f"InvertedIndex(documents={len(self)}, terms={self.vocabulary_size}, schema={self.schema!r})"


__all__ = [
    "CorpusStatistics",
    "IndexSnapshot",
    "InvertedIndex",
    "Posting",
    "PostingList",
]

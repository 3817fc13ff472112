"""
Query path: tokenize, collect candidates from the posting lists, score with
BM25F, and hand back a lazily ordered result sequence.
"""

from __future__ import annotations

import heapq
import json
import logging
import os
import threading
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

import numpy as np

from fieldrank.index import InvertedIndex
from fieldrank.scorer import BM25FScorer, ScoringParameters

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


def query_workers(value: str | int) -> int:
    """Thread count for batch queries, clamped to [1, 64]."""
    return min(max(int(value), 1), 64)


NUM_QUERY_WORKERS = query_workers(os.environ.get("FIELDRANK_QUERY_WORKERS", 8))
MIN_QUERIES_FOR_PARALLEL = 4


class SearchResults(Sequence[tuple[str, float]]):
    """
    Finite, restartable, lazily ordered sequence of ``(path, score)`` pairs.

    Ordering is score descending, then path ascending. Results are pulled off
    a heap on demand, so reading the first k of n results costs
    O(n + k log n). Iterating again replays the already ordered prefix.
    Safe to consume from several threads.
    """

    def __init__(
        self,
        paths: Sequence[str] = (),
        scores: Sequence[float] | NDArray[np.float64] = (),
        limit: int | None = None,
        query: str = "",
    ):
        self.query = query
        self._heap = [(-float(score), path) for path, score in zip(paths, scores, strict=True)]
        heapq.heapify(self._heap)
        self._size = len(self._heap) if limit is None else min(max(limit, 0), len(self._heap))
        self._ranked: list[tuple[str, float]] = []
        self._lock = threading.Lock()

    @classmethod
    def empty(cls, query: str = "") -> SearchResults:
        return cls(query=query)

    def _fill(self, count: int) -> None:
        count = min(count, self._size)
        if len(self._ranked) >= count:
            return
        with self._lock:
            while len(self._ranked) < count:
                neg_score, path = heapq.heappop(self._heap)
                self._ranked.append((path, -neg_score))

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[tuple[str, float]]:
        position = 0
        while position < self._size:
            self._fill(position + 1)
            yield self._ranked[position]
            position += 1

    def __getitem__(self, index):
        if isinstance(index, slice):
            indices = range(*index.indices(self._size))
            if indices:
                self._fill(max(indices[0], indices[-1]) + 1)
            return [self._ranked[i] for i in indices]
        if index < 0:
            index += self._size
        if not 0 <= index < self._size:
            raise IndexError("search result index out of range")
        self._fill(index + 1)
        return self._ranked[index]

    def __bool__(self) -> bool:
        return self._size > 0

    def __repr__(self) -> str:
        return f"SearchResults(query={self.query!r}, hits={self._size})"

    def top(self, k: int) -> list[tuple[str, float]]:
        return self[:k]

    def paths(self, k: int | None = None) -> list[str]:
        return [path for path, _ in self[:k]]

    def to_list(self, k: int | None = None) -> list[list[str | float]]:
        """JSON-ready ``[[path, score], ...]``."""
        return [[path, score] for path, score in self[:k]]

    def to_json(self, k: int | None = None) -> str:
        return json.dumps(self.to_list(k))


class QueryEngine:
    """
    Runs queries against an InvertedIndex.

    The engine reuses the index's tokenizer so queries are normalized exactly
    as documents were.
    """

    def __init__(self, index: InvertedIndex, scorer: BM25FScorer | None = None):
        self.index = index
        self.tokenizer = index.tokenizer
        self.scorer = scorer or BM25FScorer(index.schema)

    def parse(self, raw_query: object) -> list[str]:
        """Distinct query terms, in first-occurrence order."""
        return list(dict.fromkeys(self.tokenizer(raw_query)))

    def search(
        self,
        raw_query: object,
        top_k: int | None = None,
        params: ScoringParameters | None = None,
    ) -> SearchResults:
        """
        Ranks the documents matching at least one query term.

        Args:
            raw_query: Free text; tokenized like document fields.
            top_k: Keep only the best ``top_k`` results.
            params: Per-query k1/b overrides.
        """
        query = raw_query if isinstance(raw_query, str) else ""
        terms = self.parse(raw_query)
        if not terms or (top_k is not None and top_k <= 0):
            return SearchResults.empty(query)

        snapshot = self.index.snapshot(terms)
        if not snapshot.paths:
            logger.debug("No candidates for %r", terms)
            return SearchResults.empty(query)

        scores = self.scorer.score_candidates(snapshot, params)
        paths: Sequence[str] = snapshot.paths
        if top_k is not None and top_k < len(scores):
            # Keep everything tied with the k-th best so path tie-breaks stay exact.
            kth = np.partition(scores, len(scores) - top_k)[len(scores) - top_k]
            keep = np.flatnonzero(scores >= kth)
            paths = [paths[i] for i in keep]
            scores = scores[keep]

        logger.debug("Query %r: %d terms, %d candidates", query, len(terms), len(snapshot.paths))
        return SearchResults(paths, scores, limit=top_k, query=query)

    def score(self, path: str, raw_query: object, params: ScoringParameters | None = None) -> float:
        """BM25F score of a single document for a query (0.0 if it matches nothing)."""
        terms = self.parse(raw_query)
        if not terms:
            return 0.0
        return self.scorer.score(self.index.snapshot(terms), path, params=params)

    def search_many(
        self,
        queries: Sequence[object],
        top_k: int | None = None,
        params: ScoringParameters | None = None,
    ) -> list[SearchResults]:
        """Runs several queries, in parallel when there are enough of them."""
        if len(queries) < MIN_QUERIES_FOR_PARALLEL:
            return [self.search(query, top_k, params) for query in queries]

        def search_single(query: object) -> SearchResults:
            return self.search(query, top_k, params)

        with ThreadPoolExecutor(max_workers=NUM_QUERY_WORKERS) as executor:
            return list(executor.map(search_single, queries))

"""
BM25F scoring.

Per-field term frequencies are length-normalized and boosted, summed into a
single pseudo-frequency, and only then saturated (Robertson et al., "Simple
BM25 Extension to Multiple Weighted Fields", CIKM 2004).

Formulas:
    norm_f(d)  = 1 - b_f + b_f * len_f(d) / avglen_f      (ratio := 0 when avglen_f == 0)
    wtf(t, d)  = sum_f  boost_f * tf_f(t, d) / norm_f(d)
    IDF(t)     = log((N - df + 0.5) / (df + 0.5) + 1)
    score(t,d) = IDF(t) * wtf * (k1 + 1) / (wtf + k1)
    score(d)   = sum over distinct query terms

All divisions with a zero denominator contribute 0 instead of failing.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from fieldrank.errors import SchemaError
from fieldrank.schema import Config, FieldSchema, validate_b

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from fieldrank.index import IndexSnapshot


# -----------------------------------------------------------------------------
# Parameters
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoringParameters:
    """
    Tunable BM25F parameters.

    Attributes:
        k1: TF saturation rate, >= 0.
        b: None to use each field's schema value, a float applied to every
            field, or a ``field -> b`` mapping overriding some fields.
    """

    k1: float = field(default_factory=lambda: Config.k1)
    b: float | Mapping[str, float] | None = None

    def __post_init__(self) -> None:
        k1 = float(self.k1)
        if not (math.isfinite(k1) and k1 >= 0.0):
            raise SchemaError(f"k1 must be non-negative and finite, got {self.k1}")
        object.__setattr__(self, "k1", k1)
        if isinstance(self.b, Mapping):
            object.__setattr__(self, "b", {name: validate_b(v, f"b of {name!r}") for name, v in self.b.items()})
        elif self.b is not None:
            object.__setattr__(self, "b", validate_b(self.b))

    def b_vector(self, schema: FieldSchema) -> NDArray[np.float64]:
        """Per-field b in schema order."""
        if self.b is None:
            return schema.b_values
        if isinstance(self.b, Mapping):
            values = schema.b_values.copy()
            for name, value in self.b.items():
                values[schema.position(name)] = value
            return values
        return np.full(len(schema), self.b, dtype=np.float64)


# -----------------------------------------------------------------------------
# Primitives
# -----------------------------------------------------------------------------


def idf(df: float | NDArray[np.float64], N: int) -> NDArray[np.float64]:
    """Non-negative BM25 IDF; all zeros for an empty corpus."""
    df = np.asarray(df, dtype=np.float64)
    if N <= 0:
        return np.zeros_like(df)
    return np.maximum(np.log((N - df + 0.5) / (df + 0.5) + 1.0), 0.0)


def length_normalization(
    lengths: NDArray[np.float64],
    average_lengths: NDArray[np.float64],
    b: NDArray[np.float64],
) -> NDArray[np.float64]:
    """1 - b + b * len / avglen, with the ratio taken as 0 where avglen is 0."""
    average = np.broadcast_to(average_lengths, lengths.shape)
    ratio = np.divide(lengths, average, out=np.zeros_like(lengths, dtype=np.float64), where=average > 0)
    return 1.0 - b + b * ratio


def weighted_term_frequency(
    tf: NDArray[np.float64],
    norm: NDArray[np.float64],
    boosts: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Boosted, length-normalized TF summed over the last (field) axis."""
    per_field = np.divide(tf * boosts, norm, out=np.zeros_like(tf, dtype=np.float64), where=norm > 0)
    return per_field.sum(axis=-1)


def saturate(wtf: NDArray[np.float64], k1: float) -> NDArray[np.float64]:
    """wtf * (k1 + 1) / (wtf + k1)."""
    wtf = np.asarray(wtf, dtype=np.float64)
    denom = wtf + k1
    return np.divide(wtf * (k1 + 1.0), denom, out=np.zeros_like(wtf), where=denom > 0)


# -----------------------------------------------------------------------------
# Scorer
# -----------------------------------------------------------------------------


class BM25FScorer:
    """
    Scores documents of an IndexSnapshot.

    Args:
        schema: Field schema (boosts and default b values).
        params: Default parameters; individual calls may override them.
    """

    def __init__(self, schema: FieldSchema, params: ScoringParameters | None = None):
        self.schema = schema
        self.params = params or ScoringParameters()

    def score_candidates(
        self,
        snapshot: IndexSnapshot,
        params: ScoringParameters | None = None,
    ) -> NDArray[np.float64]:
        """Scores of every candidate in ``snapshot.paths`` for ``snapshot.terms``."""
        params = params or self.params
        scores = np.zeros(len(snapshot.paths), dtype=np.float64)
        if not len(snapshot.paths) or not snapshot.terms:
            return scores

        norm = length_normalization(snapshot.lengths, snapshot.average_lengths, params.b_vector(self.schema))
        idf_values = idf(snapshot.document_frequencies, snapshot.document_count)

        for term, term_idf in zip(snapshot.terms, idf_values):
            if term_idf <= 0 or term not in snapshot.postings:
                continue
            wtf = weighted_term_frequency(snapshot.term_frequencies(term), norm, self.schema.boosts)
            scores += term_idf * saturate(wtf, params.k1)
        return scores

    def score(
        self,
        snapshot: IndexSnapshot,
        path: str,
        terms: Iterable[str] | None = None,
        params: ScoringParameters | None = None,
    ) -> float:
        """
        Score of one document.

        Terms default to the snapshot's terms; terms the snapshot was not taken
        for, and documents outside its candidates, contribute 0.
        """
        params = params or self.params
        row = snapshot.rows.get(path)
        if row is None or snapshot.document_count <= 0:
            return 0.0
        wanted = snapshot.terms if terms is None else tuple(dict.fromkeys(terms))
        lengths = snapshot.lengths[row]
        norm = length_normalization(lengths, snapshot.average_lengths, params.b_vector(self.schema))

        total = 0.0
        for term in wanted:
            counts = snapshot.postings.get(term, {}).get(path)
            if counts is None:
                continue
            term_idf = float(idf(snapshot.document_frequency(term), snapshot.document_count))
            wtf = weighted_term_frequency(counts.astype(np.float64), norm, self.schema.boosts)
            total += term_idf * float(saturate(wtf, params.k1))
        return total

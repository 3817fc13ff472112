"""
Relevance evaluation and parameter tuning.

Judgments map a query string to the paths considered relevant for it:

    judgments = {"quick fox": ["docs/fox.txt"], "lazy dog": ["docs/dog.md"]}
    evaluate(engine, judgments, k=10)
    grid_search(engine, judgments)          # k1 x b grid, best first
    tune_k1(engine, judgments)              # bounded scalar search over k1
"""

from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from itertools import product
from typing import TYPE_CHECKING

import numpy as np
from scipy.optimize import minimize_scalar

if TYPE_CHECKING:
    from fieldrank.engine import SearchEngine

K1_VALUES = [0.5, 0.9, 1.2, 1.5, 2.0]
B_VALUES = [0.3, 0.5, 0.75, 0.9]


def precision_at_k(relevant: Collection[str], retrieved: Sequence[str], k: int) -> float:
    if k <= 0:
        return 0.0
    relevant = set(relevant)
    hits = sum(1 for path in retrieved[:k] if path in relevant)
    return hits / k


def recall_at_k(relevant: Collection[str], retrieved: Sequence[str], k: int) -> float:
    relevant = set(relevant)
    if not relevant:
        return 0.0
    hits = sum(1 for path in retrieved[:k] if path in relevant)
    return hits / len(relevant)


def average_precision(relevant: Collection[str], retrieved: Sequence[str]) -> float:
    relevant = set(relevant)
    if not relevant:
        return 0.0
    hits, sum_precisions = 0, 0.0
    for i, path in enumerate(retrieved, start=1):
        if path in relevant:
            hits += 1
            sum_precisions += hits / i
    return sum_precisions / len(relevant)


def ndcg_at_k(relevant: Collection[str], retrieved: Sequence[str], k: int) -> float:
    """Binary-gain NDCG@k."""
    if k <= 0:
        return 0.0
    relevant = set(relevant)
    gains = np.array([1.0 if path in relevant else 0.0 for path in retrieved[:k]])
    discounts = np.log2(np.arange(2, k + 2))  # log2(i + 1) for ranks 1..k
    dcg = float(np.sum(gains / discounts[: len(gains)]))
    ideal = min(len(relevant), k)
    idcg = float(np.sum(1.0 / discounts[:ideal]))
    return dcg / idcg if idcg > 0 else 0.0


def reciprocal_rank(relevant: Collection[str], retrieved: Sequence[str]) -> float:
    relevant = set(relevant)
    for i, path in enumerate(retrieved, start=1):
        if path in relevant:
            return 1.0 / i
    return 0.0


def evaluate(
    engine: SearchEngine,
    judgments: Mapping[str, Collection[str]],
    k: int = 10,
    k1: float | None = None,
    b: float | Mapping[str, float] | None = None,
) -> dict[str, float]:
    """Mean NDCG@k, MAP and MRR of ``engine`` over ``judgments``."""
    if not judgments:
        return {f"ndcg@{k}": 0.0, "map": 0.0, "mrr": 0.0, "queries": 0}

    ndcg, ap, rr = [], [], []
    for query, relevant in judgments.items():
        retrieved = engine.search(query, k1=k1, b=b).paths()
        ndcg.append(ndcg_at_k(relevant, retrieved, k))
        ap.append(average_precision(relevant, retrieved))
        rr.append(reciprocal_rank(relevant, retrieved))
    return {
        f"ndcg@{k}": float(np.mean(ndcg)),
        "map": float(np.mean(ap)),
        "mrr": float(np.mean(rr)),
        "queries": len(judgments),
    }


def grid_search(
    engine: SearchEngine,
    judgments: Mapping[str, Collection[str]],
    k1_values: Sequence[float] = K1_VALUES,
    b_values: Sequence[float] = B_VALUES,
    k: int = 10,
) -> list[dict[str, float]]:
    """Evaluates every (k1, b) pair; results sorted by NDCG@k, best first."""
    results = []
    for k1, b in product(k1_values, b_values):
        metrics = evaluate(engine, judgments, k=k, k1=k1, b=b)
        results.append({"k1": float(k1), "b": float(b), **metrics})
    results.sort(key=lambda r: (-r[f"ndcg@{k}"], r["k1"], r["b"]))
    return results


def tune_k1(
    engine: SearchEngine,
    judgments: Mapping[str, Collection[str]],
    bounds: tuple[float, float] = (0.1, 3.0),
    b: float | Mapping[str, float] | None = None,
    k: int = 10,
) -> tuple[float, float]:
    """Bounded search for the k1 maximizing NDCG@k. Returns (k1, ndcg)."""

    def objective(k1: float) -> float:
        return -evaluate(engine, judgments, k=k, k1=k1, b=b)[f"ndcg@{k}"]

    result = minimize_scalar(objective, bounds=bounds, method="bounded")
    return float(result.x), -float(result.fun)

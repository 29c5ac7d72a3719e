"""
Score normalisation and fusion.

All functions here are pure and work on plain ``{reference: score}``
mappings, so every strategy ends up with scores in ``[0, 1]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

# Relative spread below which a result set counts as all-equal
_EQUAL_EPSILON = 1e-9


@dataclass
class FusedScore:
    """Combined score of one fact."""

    score: float
    keyword_score: Optional[float] = None
    vector_score: Optional[float] = None

    @property
    def dual_match(self) -> bool:
        return self.keyword_score is not None and self.vector_score is not None


def min_max_normalize(raw: dict[str, float]) -> dict[str, float]:
    """Rescale raw relevance scores into ``[0, 1]`` over the result set.

    A single result, or a set whose scores are all equal, maps to 1.0.
    """
    if not raw:
        return {}
    lo = min(raw.values())
    hi = max(raw.values())
    spread = hi - lo
    if spread <= _EQUAL_EPSILON * max(1.0, abs(hi)):
        return {ref: 1.0 for ref in raw}
    return {ref: (value - lo) / spread for ref, value in raw.items()}


def distances_to_similarities(distances: Sequence[float], metric: str = "cosine") -> list[float]:
    """Convert distances to similarities with ``similarity = 1 - d``.

    Cosine distances are clipped to ``[0, 1]``.  Unbounded (``l2``)
    distances are first divided by the largest distance in the set.
    """
    if not distances:
        return []
    if metric == "l2":
        largest = max(distances)
        if largest <= 0:
            return [1.0 for _ in distances]
        return [1.0 - min(1.0, max(0.0, d / largest)) for d in distances]
    return [1.0 - min(1.0, max(0.0, d)) for d in distances]


def fuse(
    keyword: dict[str, float],
    vector: dict[str, float],
    keyword_weight: float = 0.5,
    vector_weight: float = 0.5,
    dual_match_boost: float = 1.2,
) -> dict[str, FusedScore]:
    """
    Merge normalised keyword and vector scores.

    Parameters
    ----------
    keyword, vector:
        ``{reference: score}`` with scores already in ``[0, 1]``.
    keyword_weight, vector_weight:
        Weights applied to each list's score.
    dual_match_boost:
        Multiplier for facts present in both lists; the boosted score is
        capped at 1.0.

    Returns
    -------
    dict[str, FusedScore]
        One entry per reference in either list.
    """
    fused: dict[str, FusedScore] = {}
    for ref in list(keyword) + [r for r in vector if r not in keyword]:
        kw = keyword.get(ref)
        vec = vector.get(ref)
        if kw is not None and vec is not None:
            score = min(1.0, (kw * keyword_weight + vec * vector_weight) * dual_match_boost)
        elif kw is not None:
            score = kw * keyword_weight
        else:
            score = vec * vector_weight
        fused[ref] = FusedScore(score=max(0.0, min(1.0, score)),
                                keyword_score=kw, vector_score=vec)
    return fused


def rank(results: Iterable, limit: int) -> list:
    """Order results by score descending, then most recent update.

    Results need ``score``, ``updated_at`` and ``reference`` attributes;
    the reference makes the order total.
    """
    ordered = sorted(results, key=lambda r: r.reference)
    ordered.sort(key=lambda r: (r.score, r.updated_at or ""), reverse=True)
    return ordered[:limit]

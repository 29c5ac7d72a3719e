"""
Retrieval engine: keyword, vector, keyword-boosted and hybrid search over
one project's facts, with every score normalised to ``[0, 1]``.

Vector search reads each table's active model pointer, embeds the query
under that model and searches the pointer's collection.  If the pointer
moves between the embed and the search (a migration swapped it), the
query is embedded again under the new model.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from ..errors import EmbeddingUnavailable, InconsistentState, ValidationError
from ..store.models import (
    Fact,
    FactKind,
    parse_reference,
    resolve_table,
    resolve_tables,
)
from .fusion import distances_to_similarities, fuse, min_max_normalize, rank
from .query_analyzer import STOPWORDS, QueryAnalysis, Strategy, classify, expand_query

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+", re.UNICODE)

# Match-reason excerpts are kept short
_REASON_CHARS = 200


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class Query:
    """A search request.  ``None`` fields fall back to configuration."""

    text: str
    tables: Optional[list[str]] = None
    min_similarity: Optional[float] = None
    limit: Optional[int] = None
    project: Optional[str] = None
    strategy: Optional[str] = None


@dataclass
class MatchReason:
    """Which field of a fact drove a similarity match."""

    field: str
    excerpt: str
    similarity: float


@dataclass
class SearchResult:
    """
    A single ranked fact.

    Attributes
    ----------
    reference:
        Embedding reference ``"<table>:<id>"``.
    kind:
        Fact kind.
    fact_id:
        Row id within the kind's table.
    score:
        Normalised score in ``[0, 1]``.
    strategy:
        How the fact matched: ``keyword``, ``vector`` or ``hybrid`` (both).
    excerpt:
        Leading text of the fact.
    """

    reference: str
    kind: FactKind
    fact_id: int
    score: float
    strategy: Strategy
    excerpt: str
    fact: Fact
    project: str
    updated_at: str = ""
    keyword_score: Optional[float] = None
    vector_score: Optional[float] = None
    match_reason: Optional[MatchReason] = None

    @property
    def dual_match(self) -> bool:
        return self.keyword_score is not None and self.vector_score is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "reference": self.reference,
            "kind": self.kind.value,
            "id": self.fact_id,
            "score": round(self.score, 6),
            "strategy": self.strategy.value,
            "excerpt": self.excerpt,
            "project": self.project,
            "updated_at": self.updated_at,
            "dual_match": self.dual_match,
            "fact": self.fact.to_dict(),
        }
        if self.match_reason is not None:
            data["match_reason"] = {
                "field": self.match_reason.field,
                "excerpt": self.match_reason.excerpt,
                "similarity": round(self.match_reason.similarity, 6),
            }
        return data


@dataclass
class SearchResponse:
    """Results plus how they were obtained.  Iterates like the result list."""

    results: list[SearchResult]
    strategy: Strategy
    analysis: QueryAnalysis
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index):
        return self.results[index]

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "analysis": self.analysis.to_dict(),
            "degraded": self.degraded,
            "warnings": list(self.warnings),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class _Hit:
    fact: Fact
    score: float


# ---------------------------------------------------------------------------
# RetrievalEngine
# ---------------------------------------------------------------------------

class RetrievalEngine:
    """
    Executes searches against the coordinator's stores.

    Parameters
    ----------
    coordinator:
        The :class:`~project_memory.store.coordinator.DualStoreCoordinator`
        owning the stores, provider and per-table locks.
    config:
        Supplies limits, thresholds, fusion weights and the default project.
    """

    def __init__(self, coordinator, config) -> None:
        self._coordinator = coordinator
        self._relational = coordinator.relational
        self._vectors = coordinator.vectors
        self._provider = coordinator.provider
        self._config = config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search(self, query: Query) -> list[SearchResult]:
        """Ranked results for *query*; see :meth:`execute`."""
        return self.execute(query).results

    def execute(self, query: Query) -> SearchResponse:
        """
        Run *query* and report how it was answered.

        Raises
        ------
        InvalidTarget
            A requested table does not exist.
        ValidationError
            ``limit`` or ``min_similarity`` is out of range, or the strategy
            is unknown.
        """
        tables = resolve_tables(query.tables)
        limit = self._limit(query.limit)
        min_similarity = self._threshold(query.min_similarity)
        project = query.project or self._config.DEFAULT_PROJECT
        text = (query.text or "").strip()

        analysis = classify(text)
        strategy = Strategy.parse(query.strategy) if query.strategy else analysis.strategy
        response = SearchResponse(results=[], strategy=strategy, analysis=analysis)
        if not text:
            return response

        logger.debug("Search %r in %s (%s, project=%s)", text, tables, strategy.value, project)

        if strategy is Strategy.KEYWORD:
            results = self._keyword_results(response, text, tables, project, limit)
        elif strategy is Strategy.VECTOR:
            results = self._run_vector(response, text, tables, project, limit, min_similarity)
        elif strategy is Strategy.KEYWORD_BOOST:
            results = self._run_keyword_boost(response, text, tables, project, limit,
                                              min_similarity)
        else:
            results = self._run_hybrid(response, text, tables, project, limit, min_similarity)

        response.results = rank(results, limit)
        return response

    def find_similar(self, description: str, table: str, threshold: Optional[float] = None,
                     project: Optional[str] = None,
                     limit: Optional[int] = None) -> list[SearchResult]:
        """
        Facts of one table whose meaning is close to *description*.

        Vector search only; each result carries a :class:`MatchReason`.

        Parameters
        ----------
        description:
            Text of the candidate fact.
        table:
            Table (or kind alias) to look in.
        threshold:
            Minimum similarity; defaults to the table's configured threshold.

        Raises
        ------
        EmbeddingUnavailable
            The description could not be embedded.
        """
        table = resolve_table(table)
        limit = self._limit(limit)
        project = project or self._config.DEFAULT_PROJECT
        if threshold is None:
            threshold = self._config.threshold_for(table)
        threshold = self._threshold(threshold)
        description = (description or "").strip()
        if not description:
            return []

        warnings: list[str] = []
        hits = self._vector_hits(description, (table,), project, limit * 2,
                                 threshold, warnings)
        results = []
        for ref, hit in hits.items():
            result = self._result(ref, hit.fact, hit.score, Strategy.VECTOR, vector=hit.score)
            result.match_reason = match_reason(description, hit.fact, hit.score)
            results.append(result)
        return rank(results, limit)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _keyword_results(self, response, text, tables, project, limit) -> list[SearchResult]:
        return [
            self._result(ref, hit.fact, hit.score, Strategy.KEYWORD, keyword=hit.score)
            for ref, hit in self._keyword_hits(text, tables, project, limit * 2,
                                                 response.warnings).items()
        ]

    def _run_vector(self, response, text, tables, project, limit, min_similarity):
        try:
            hits = self._vector_hits(text, tables, project, limit * 2,
                                     self._min_for(min_similarity, tables), response.warnings)
        except EmbeddingUnavailable as exc:
            return self._degrade(response, exc, text, tables, project, limit)
        return [
            self._result(ref, hit.fact, hit.score, Strategy.VECTOR, vector=hit.score)
            for ref, hit in hits.items()
        ]

    def _run_keyword_boost(self, response, text, tables, project, limit, min_similarity):
        keyword = self._keyword_hits(text, tables, project, limit * 2, response.warnings)
        results = [
            self._result(ref, hit.fact, hit.score, Strategy.KEYWORD, keyword=hit.score)
            for ref, hit in keyword.items()
        ]
        top_k = self._config.KEYWORD_BOOST_TOP_K
        try:
            vector = self._vector_hits(text, tables, project, top_k + len(keyword),
                                       self._min_for(min_similarity, tables),
                                       response.warnings)
        except EmbeddingUnavailable as exc:
            self._mark_degraded(response, exc)
            return results

        weight = self._config.VECTOR_WEIGHT
        supplements = [(ref, hit) for ref, hit in vector.items() if ref not in keyword][:top_k]
        for ref, hit in supplements:
            results.append(self._result(ref, hit.fact, hit.score * weight, Strategy.VECTOR,
                                        vector=hit.score))
        return results

    def _run_hybrid(self, response, text, tables, project, limit, min_similarity):
        pool = limit * 2
        keyword = self._keyword_hits(text, tables, project, pool, response.warnings)
        if min_similarity is None:
            min_similarity = self._config.HYBRID_MIN_SIMILARITY
        try:
            vector = self._vector_hits(text, tables, project, pool,
                                       {t: min_similarity for t in tables}, response.warnings)
        except EmbeddingUnavailable as exc:
            self._mark_degraded(response, exc)
            vector = {}

        fused = fuse(
            {ref: hit.score for ref, hit in keyword.items()},
            {ref: hit.score for ref, hit in vector.items()},
            keyword_weight=self._config.KEYWORD_WEIGHT,
            vector_weight=self._config.VECTOR_WEIGHT,
            dual_match_boost=self._config.DUAL_MATCH_BOOST,
        )
        results = []
        for ref, scored in fused.items():
            fact = (keyword.get(ref) or vector[ref]).fact
            if scored.dual_match:
                matched = Strategy.HYBRID
            elif scored.keyword_score is not None:
                matched = Strategy.KEYWORD
            else:
                matched = Strategy.VECTOR
            results.append(self._result(ref, fact, scored.score, matched,
                                        keyword=scored.keyword_score,
                                        vector=scored.vector_score))
        return results

    def _degrade(self, response, exc, text, tables, project, limit):
        self._mark_degraded(response, exc)
        return self._keyword_results(response, text, tables, project, limit)

    @staticmethod
    def _mark_degraded(response: SearchResponse, exc: Exception) -> None:
        message = f"Vector search unavailable, using keyword results only: {exc}"
        logger.warning(message)
        response.degraded = True
        response.warnings.append(message)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _keyword_hits(self, text, tables, project, pool,
                      warnings: list[str]) -> dict[str, _Hit]:
        """
        Full-text matches across *tables*, min-max normalised together.

        Facts whose embedding reference has no vector in the table's active
        collection are still returned, with an :class:`InconsistentState`
        warning.
        """
        facts: dict[str, Fact] = {}
        raw: dict[str, float] = {}
        for table in tables:
            found = self._relational.keyword_search(table, text, project, pool)
            for fact, score in found:
                ref = f"{table}:{fact.id}"
                facts[ref] = fact
                raw[ref] = score
            self._check_embedded(table, [fact for fact, _ in found], warnings)
        normalized = min_max_normalize(raw)
        return {ref: _Hit(facts[ref], normalized[ref]) for ref in raw}

    def _check_embedded(self, table: str, facts: list[Fact], warnings: list[str]) -> None:
        if not facts:
            return
        pointer = self._relational.get_pointer(table)
        refs = [f.embedding_ref for f in facts if f.embedding_ref]
        present = self._vectors.references(pointer.collection, refs) if pointer else set()
        dangling = [f"{table}:{f.id}" for f in facts if f.embedding_ref not in present]
        if dangling:
            where = pointer.collection if pointer else f"{table} (no active model)"
            warning = InconsistentState(
                f"{len(dangling)} fact(s) without a vector in {where}: {', '.join(dangling)}",
                dangling,
            )
            logger.warning(str(warning))
            warnings.append(str(warning))

    def _vector_hits(self, text, tables, project, top_k, min_similarity,
                     warnings: list[str]) -> dict[str, _Hit]:
        """
        Nearest neighbours across *tables* with similarity >= the table's minimum.

        *min_similarity* is a float or a ``{table: float}`` mapping.
        """
        if self._config.QUERY_EXPANSION:
            text = expand_query(text)
        embeddings: dict[str, list[float]] = {}
        hits: dict[str, _Hit] = {}

        for table in tables:
            floor = (min_similarity.get(table, 0.0) if isinstance(min_similarity, dict)
                     else min_similarity)
            pointer = self._relational.get_pointer(table)
            if pointer is None:
                # Nothing has been written to this table yet
                continue
            if pointer.model_id not in embeddings:
                embeddings[pointer.model_id] = self._provider.embed(text, pointer.model_id)[0]

            with self._coordinator.table_lock(table):
                current = self._relational.get_pointer(table) or pointer
                if current.model_id not in embeddings:
                    embeddings[current.model_id] = self._provider.embed(
                        text, current.model_id)[0]
                candidates = self._vectors.search(
                    current.collection, embeddings[current.model_id], project,
                    top_k=top_k, metric=self._config.DISTANCE_METRIC)

            similarities = distances_to_similarities(
                [c["distance"] for c in candidates], self._config.DISTANCE_METRIC)
            kept = [(c["reference"], s) for c, s in zip(candidates, similarities)
                    if s >= floor]
            if not kept:
                continue

            ids = {ref: parse_reference(ref)[1] for ref, _ in kept}
            facts = self._relational.get_facts(table, list(ids.values()), project)
            dangling = []
            for ref, similarity in kept:
                fact = facts.get(ids[ref])
                if fact is None or fact.embedding_ref != ref:
                    dangling.append(ref)
                    continue
                hits[ref] = _Hit(fact, similarity)
            if dangling:
                warning = InconsistentState(
                    f"{len(dangling)} vector entr{'y' if len(dangling) == 1 else 'ies'} "
                    f"in {current.collection} without a matching fact: {', '.join(dangling)}",
                    dangling,
                )
                logger.warning(str(warning))
                warnings.append(str(warning))
        return hits

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _result(self, ref: str, fact: Fact, score: float, strategy: Strategy,
                keyword: Optional[float] = None,
                vector: Optional[float] = None) -> SearchResult:
        return SearchResult(
            reference=ref,
            kind=fact.kind,
            fact_id=fact.id,
            score=max(0.0, min(1.0, score)),
            strategy=strategy,
            excerpt=fact.excerpt(),
            fact=fact,
            project=fact.project,
            updated_at=fact.updated_at,
            keyword_score=keyword,
            vector_score=vector,
        )

    def _min_for(self, min_similarity: Optional[float], tables) -> dict[str, float]:
        if min_similarity is not None:
            return {t: min_similarity for t in tables}
        return {t: self._config.threshold_for(t) for t in tables}

    def _limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._config.DEFAULT_LIMIT
        limit = int(limit)
        if limit < 1:
            raise ValidationError(f"limit must be >= 1, got {limit}")
        return min(limit, self._config.MAX_LIMIT)

    @staticmethod
    def _threshold(value: Optional[float]) -> Optional[float]:
        if value is None:
            return None
        value = float(value)
        if not 0.0 <= value <= 1.0:
            raise ValidationError(f"min_similarity must be within [0, 1], got {value}")
        return value


def match_reason(description: str, fact: Fact, similarity: float) -> MatchReason:
    """Pick the fact field sharing the most terms with *description*."""
    wanted = {w for w in _WORD_RE.findall(description.lower()) if w not in STOPWORDS}
    best_field, best_text, best_overlap = "", "", -1
    for name, text in fact.field_texts().items():
        overlap = len(wanted & set(_WORD_RE.findall(text.lower())))
        if overlap > best_overlap:
            best_field, best_text, best_overlap = name, text, overlap
    if not best_field:
        best_field, best_text = "text", fact.excerpt()
    return MatchReason(field=best_field, excerpt=best_text[:_REASON_CHARS],
                       similarity=similarity)

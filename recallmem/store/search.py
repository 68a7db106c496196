from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..errors import ValidationError
from ..observation_types import normalize_observation_type
from . import tags as store_tags
from . import utils as store_utils
from .types import ObservationResult

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)

STOPWORDS = {
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "by",
    "for",
    "from",
    "in",
    "is",
    "it",
    "of",
    "on",
    "or",
    "the",
    "this",
    "to",
    "was",
    "with",
}
CANDIDATE_MULTIPLIER = 5
MIN_CANDIDATES = 50
RECENCY_HALF_DAYS = 7.0


@dataclass(frozen=True)
class SearchWeights:
    text: float = 1.0
    similarity: float = 0.0
    recency: float = 0.25


def resolve_weights(store: MemoryStore) -> SearchWeights:
    cfg = store.config
    similarity = cfg.weight_similarity
    if similarity is None:
        similarity = 0.6 if store.similarity is not None else 0.0
    return SearchWeights(text=cfg.weight_text, similarity=similarity, recency=cfg.weight_recency)


def _query_tokens(query: str) -> list[str]:
    # Same word characters unicode61 indexes, accented letters included.
    tokens = re.findall(r"\w+", query or "")
    tokens = [token for token in tokens if token.lower() not in {"or", "and", "not", "near"}]
    filtered = [token for token in tokens if token.lower() not in STOPWORDS]
    return filtered or tokens


def _expand_query(query: str) -> str:
    tokens = _query_tokens(query)
    if not tokens:
        return ""
    return " OR ".join(f'"{token}"' for token in tokens)


def _normalize_types(types: Sequence[str] | str | None) -> list[str] | None:
    if types is None:
        return None
    if isinstance(types, str):
        types = types.split(",")
    normalized = [normalize_observation_type(item) for item in types]
    normalized = [item for item in normalized if item]
    return normalized or None


def _recency_score(created_at_epoch: int, now: int) -> float:
    age_days = max(0.0, (now - created_at_epoch) / 86400.0)
    return 1.0 / (1.0 + age_days / RECENCY_HALF_DAYS)


def _filter_clauses(
    types: list[str] | None, project: str | None, alias: str = "observations"
) -> tuple[list[str], list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if project:
        clause, clause_params = store_utils.project_column_clause(f"{alias}.project", project)
        if clause:
            clauses.append(clause)
            params.extend(clause_params)
    if types:
        clause, clause_params = store_utils.type_column_clause(f"{alias}.type", types)
        clauses.append(clause)
        params.extend(clause_params)
    return clauses, params


def _text_candidates(
    store: MemoryStore,
    match: str,
    limit: int,
    types: list[str] | None,
    project: str | None,
) -> dict[int, float]:
    clauses, params = _filter_clauses(types, project)
    where = " AND ".join(["observations_fts MATCH ?", *clauses])
    rows = store.conn.execute(
        f"""
        SELECT observations.id AS id, -bm25(observations_fts) AS relevance
        FROM observations_fts
        JOIN observations ON observations.id = observations_fts.rowid
        WHERE {where}
        ORDER BY relevance DESC
        LIMIT ?
        """,
        [match, *params, limit],
    ).fetchall()
    scores: dict[int, float] = {}
    for row in rows:
        relevance = max(0.0, float(row["relevance"] or 0.0))
        scores[int(row["id"])] = relevance / (1.0 + relevance)
    return scores


def _similarity_candidates(store: MemoryStore, query: str, limit: int) -> dict[int, float]:
    if store.similarity is None:
        return {}
    try:
        matches = store.similarity.query(query, limit)
    except Exception as exc:
        logger.warning("similarity query failed; using text ranking only", exc_info=exc)
        return {}
    return {observation_id: 1.0 / (1.0 + max(0.0, distance)) for observation_id, distance in matches}


def search(
    store: MemoryStore,
    query: str,
    limit: int = 10,
    *,
    types: Sequence[str] | str | None = None,
    project: str | None = None,
    weights: SearchWeights | None = None,
) -> list[ObservationResult]:
    """Rank observations for ``query``.

    score = w.text * text + w.similarity * similarity + w.recency * recency,
    ties broken newest first. ``types`` excludes rows, it never ranks them.
    """
    if limit <= 0:
        return []
    type_list = _normalize_types(types)
    match = _expand_query(query)
    if not match:
        return recent(store, limit, types=type_list, project=project)

    resolved = weights or resolve_weights(store)
    candidate_limit = max(limit * CANDIDATE_MULTIPLIER, MIN_CANDIDATES)
    text_scores = _text_candidates(store, match, candidate_limit, type_list, project)
    similarity_scores: dict[int, float] = {}
    if resolved.similarity > 0:
        similarity_scores = _similarity_candidates(store, query, candidate_limit)

    candidate_ids = set(text_scores) | set(similarity_scores)
    if not candidate_ids:
        return []
    clauses, params = _filter_clauses(type_list, project)
    id_list = sorted(candidate_ids)
    clauses.append(f"observations.id IN ({','.join('?' for _ in id_list)})")
    params.extend(id_list)
    rows = store.conn.execute(
        f"SELECT * FROM observations WHERE {' AND '.join(clauses)}", params
    ).fetchall()

    now = store_utils.now_epoch()
    results: list[ObservationResult] = []
    for row in rows:
        observation_id = int(row["id"])
        score = (
            resolved.text * text_scores.get(observation_id, 0.0)
            + resolved.similarity * similarity_scores.get(observation_id, 0.0)
            + resolved.recency * _recency_score(int(row["created_at_epoch"] or 0), now)
        )
        results.append(store_utils.observation_from_row(row, score=score))

    if type_list:
        results = [item for item in results if item.type in type_list]
    results.sort(key=lambda item: (-item.score, -item.created_at_epoch, -item.id))
    ranked = results[:limit]
    store_tags.attach_tags(store, ranked)
    return ranked


def recent(
    store: MemoryStore,
    limit: int = 10,
    *,
    types: Sequence[str] | str | None = None,
    project: str | None = None,
) -> list[ObservationResult]:
    if limit <= 0:
        return []
    clauses, params = _filter_clauses(_normalize_types(types), project)
    where = " AND ".join(clauses) if clauses else "1=1"
    rows = store.conn.execute(
        f"""
        SELECT * FROM observations
        WHERE {where}
        ORDER BY created_at_epoch DESC, id DESC
        LIMIT ?
        """,
        [*params, limit],
    ).fetchall()
    now = store_utils.now_epoch()
    results = [
        store_utils.observation_from_row(
            row, score=_recency_score(int(row["created_at_epoch"] or 0), now)
        )
        for row in rows
    ]
    store_tags.attach_tags(store, results)
    return results


def timeline(
    store: MemoryStore,
    *,
    project: str | None = None,
    days: int | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    if days is not None and days < 0:
        raise ValidationError("days must be >= 0")
    if limit <= 0:
        return []
    since_epoch = None
    if days:
        since_epoch = store_utils.now_epoch() - days * 86400
    clauses, params = _filter_clauses(None, project)
    if since_epoch is not None:
        clauses.append("observations.created_at_epoch >= ?")
        params.append(since_epoch)
    where = " AND ".join(clauses) if clauses else "1=1"
    rows = store.conn.execute(
        f"""
        SELECT * FROM observations
        WHERE {where}
        ORDER BY created_at_epoch DESC, id DESC
        LIMIT ?
        """,
        [*params, limit],
    ).fetchall()
    items: list[dict[str, Any]] = []
    for row in rows:
        observation = store_utils.observation_from_row(row)
        item = observation.to_dict()
        item["kind"] = "observation"
        items.append(item)
    for summary in store.list_summaries(project=project, since_epoch=since_epoch, limit=limit):
        summary["kind"] = "summary"
        items.append(summary)
    items.sort(key=lambda item: (-(item.get("created_at_epoch") or 0), -int(item["id"])))
    return items[:limit]

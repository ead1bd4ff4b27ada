"""Similarity scoring and rank fusion for semantic and hybrid search."""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from clip_history.models.schemas import Embedding

logger = logging.getLogger(__name__)

RRF_K = 60


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for mismatched lengths or zero vectors."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape or va.size == 0:
        return 0.0

    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def rank_semantic(
    embeddings: Sequence[Embedding],
    query_vector: Sequence[float],
    threshold: float,
    model: Optional[str] = None,
) -> List[Tuple[str, float]]:
    """Score stored embeddings against a query vector.

    Embeddings from another model (or with another dimension) are skipped.
    Returns ``(clip_id, score)`` pairs with score >= threshold, best first.
    """
    query = np.asarray(query_vector, dtype=np.float32)
    query_norm = float(np.linalg.norm(query))
    if query.size == 0 or query_norm == 0.0:
        return []

    candidates = [
        e
        for e in embeddings
        if e.dimensions == query.size and (model is None or e.model == model)
    ]
    skipped = len(embeddings) - len(candidates)
    if skipped:
        logger.debug(f"Skipped {skipped} embeddings from a different model")
    if not candidates:
        return []

    matrix = np.asarray([e.vector for e in candidates], dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1) * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, matrix @ query / norms, 0.0)

    scored = [
        (e.clip_id, float(score))
        for e, score in zip(candidates, scores)
        if score >= threshold
    ]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored


def blend_hybrid(
    semantic: Sequence[Tuple[str, float]],
    keyword_ids: Sequence[str],
    semantic_weight: float = 0.5,
    k: int = RRF_K,
) -> List[Tuple[str, float]]:
    """Weighted reciprocal-rank fusion of semantic and keyword rankings.

    Each list contributes ``weight / (k + rank)`` per id (rank is 1-based).
    Ties keep semantic order first, then keyword order.
    """
    weight = min(max(semantic_weight, 0.0), 1.0)
    scores: Dict[str, float] = {}
    order: Dict[str, int] = {}

    for rank, (clip_id, _) in enumerate(semantic, start=1):
        scores[clip_id] = scores.get(clip_id, 0.0) + weight / (k + rank)
        order.setdefault(clip_id, len(order))

    for rank, clip_id in enumerate(keyword_ids, start=1):
        scores[clip_id] = scores.get(clip_id, 0.0) + (1.0 - weight) / (k + rank)
        order.setdefault(clip_id, len(order))

    return sorted(scores.items(), key=lambda pair: (-pair[1], order[pair[0]]))

"""Vector similarity helpers."""

import numpy as np

from marketplace_assistant.domain.models import ScoredEntry


def cosine_similarities(query: list[float], matrix: list[list[float]]) -> list[float]:
    """Cosine similarity of ``query`` against each row of ``matrix``."""
    if not matrix:
        return []

    m = np.asarray(matrix, dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)

    row_norms = np.linalg.norm(m, axis=1)
    q_norm = np.linalg.norm(q)
    if q_norm == 0:
        return [0.0] * len(matrix)

    denom = row_norms * q_norm
    scores = np.divide(m @ q, denom, out=np.zeros(len(matrix), dtype=np.float64), where=denom > 0)
    return [float(s) for s in scores]


def rank(scored: list[ScoredEntry], top_k: int, min_score: float) -> list[ScoredEntry]:
    """Filter by ``min_score``, then order by score (newest first on ties) and cut to ``top_k``."""
    kept = [s for s in scored if s.score >= min_score]
    kept.sort(key=lambda s: (-s.score, -s.entry.created_at.timestamp()))
    return kept[:top_k]

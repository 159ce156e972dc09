"""
Nearest-neighbor queries over embedding columns.

On Postgres with pgvector the distance is computed by the database. Elsewhere
the embedding column holds JSON arrays and cosine similarity is computed in
process with numpy over the filtered candidate rows.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

import numpy as np

from coachcore.models import PGVECTOR_COLUMNS


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    if vec_a.shape != vec_b.shape:
        return 0.0
    denom = float(np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / denom)


class VectorStore:
    """Owner/language-scoped similarity search against an ORM model."""

    def __init__(self, use_pgvector: Optional[bool] = None):
        self.use_pgvector = PGVECTOR_COLUMNS if use_pgvector is None else use_pgvector

    def nearest(
        self,
        db,
        model,
        embedding: Sequence[float],
        *,
        filters: Sequence = (),
        limit: int = 5,
        min_similarity: Optional[float] = None,
        predicate: Optional[Callable[[object], bool]] = None,
    ) -> list[tuple[object, float]]:
        """
        Return up to `limit` (row, similarity) pairs, most similar first.

        Rows without an embedding never match. `predicate` is applied in
        process before the limit, for filters the column types cannot express
        portably.
        """
        if limit <= 0:
            return []
        if self.use_pgvector:
            return self._nearest_pgvector(db, model, embedding, filters, limit, min_similarity, predicate)
        return self._nearest_in_process(db, model, embedding, filters, limit, min_similarity, predicate)

    def _nearest_pgvector(self, db, model, embedding, filters, limit, min_similarity, predicate):
        similarity = (1 - model.embedding.cosine_distance(list(embedding))).label("similarity")
        query = (
            db.query(model, similarity)
            .filter(model.embedding.isnot(None))
            .filter(*filters)
            .order_by(model.embedding.cosine_distance(list(embedding)))
        )
        if min_similarity is not None:
            query = query.filter(similarity >= min_similarity)
        if predicate is None:
            rows = query.limit(limit).all()
            return [(row, float(score)) for row, score in rows]
        results = []
        for row, score in query.yield_per(100):
            if predicate(row):
                results.append((row, float(score)))
                if len(results) >= limit:
                    break
        return results

    def _nearest_in_process(self, db, model, embedding, filters, limit, min_similarity, predicate):
        rows = db.query(model).filter(model.embedding.isnot(None)).filter(*filters).all()
        scored = []
        for row in rows:
            if not row.embedding:
                continue
            if predicate is not None and not predicate(row):
                continue
            score = cosine_similarity(embedding, row.embedding)
            if min_similarity is not None and score < min_similarity:
                continue
            scored.append((row, score))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:limit]

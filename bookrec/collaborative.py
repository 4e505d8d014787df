"""
Collaborative Filtering (Neighbourhood)
=======================================
- SimilarityIndex: thresholded cosine similarity between users (or items)
  over their sparse rating vectors
- KNNRecommender: similarity-weighted average of the k nearest neighbours'
  ratings

Candidate pairs are the non-zeros of M @ M^T, i.e. entities that share at
least one co-rated counterpart. Pairs without a co-rated counterpart have a
dot product of zero, so no pair with positive similarity is skipped.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix
from sklearn.metrics.pairwise import cosine_similarity

from bookrec import config
from bookrec.data_preprocessing import RatingStore, Recommendation
from bookrec.errors import InsufficientNeighborsError

logger = logging.getLogger(__name__)

AXES = ('user', 'item')
MEASURES = ('cosine',)


# ============================================================================
# PART 1: SIMILARITY GRAPH
# ============================================================================

class SimilarityGraph:
    """
    Sparse id -> [(neighbour_id, score), ...] adjacency, highest score first.

    Symmetric by construction and rebuilt wholesale by SimilarityIndex.build.
    """

    def __init__(self, axis: str, threshold: float, ids: List[Any],
                 pairs: List[Tuple[Any, Any, float]]):
        self.axis = axis
        self.threshold = threshold
        self._ids = list(ids)
        position = {entity: idx for idx, entity in enumerate(self._ids)}

        scores: Dict[Any, Dict[Any, float]] = {}
        for a, b, score in pairs:
            scores.setdefault(a, {})[b] = score
            scores.setdefault(b, {})[a] = score
        self._scores = scores
        self._pair_count = len(pairs)

        # highest score first, ties in store order
        self._adjacency = {
            entity: sorted(neighbours.items(), key=lambda nb: (-nb[1], position[nb[0]]))
            for entity, neighbours in scores.items()
        }

    def neighbors(self, entity_id) -> List[Tuple[Any, float]]:
        return list(self._adjacency.get(entity_id, ()))

    def similarity(self, a, b) -> float:
        return self._scores.get(a, {}).get(b, 0.0)

    def ids(self) -> List[Any]:
        return list(self._ids)

    def pair_count(self) -> int:
        return self._pair_count

    def to_frame(self) -> pd.DataFrame:
        rows = [(a, b, s) for a, neighbours in self._adjacency.items() for b, s in neighbours]
        return pd.DataFrame(rows, columns=['source', 'target', 'similarity'])


# ============================================================================
# PART 2: SIMILARITY INDEX
# ============================================================================

class SimilarityIndex:
    """Builds a SimilarityGraph along the user or item axis of a RatingStore."""

    def __init__(self, axis: str = 'user', measure: str = 'cosine',
                 threshold: float = config.SIMILARITY_THRESHOLD,
                 max_workers: Optional[int] = None, chunk_size: int = 1024):
        if axis not in AXES:
            raise ValueError(f"axis must be one of {AXES}, got {axis!r}")
        if measure not in MEASURES:
            raise ValueError(f"Unsupported similarity measure {measure!r}")
        self.axis = axis
        self.measure = measure
        self.threshold = threshold
        self.max_workers = max_workers
        self.chunk_size = chunk_size

    def _rating_matrix(self, store: RatingStore):
        if self.axis == 'user':
            entities, counterparts = store.distinct_users(), store.distinct_items()
        else:
            entities, counterparts = store.distinct_items(), store.distinct_users()

        entity_idx = {e: idx for idx, e in enumerate(entities)}
        counterpart_idx = {c: idx for idx, c in enumerate(counterparts)}

        rows, cols, values = [], [], []
        for rating in store:
            entity, counterpart = ((rating.user_id, rating.item_id) if self.axis == 'user'
                                   else (rating.item_id, rating.user_id))
            rows.append(entity_idx[entity])
            cols.append(counterpart_idx[counterpart])
            values.append(float(rating.value))

        matrix = csr_matrix((values, (rows, cols)), shape=(len(entities), len(counterparts)))
        return entities, matrix

    def _chunk_pairs(self, matrix: csr_matrix, rows: np.ndarray) -> List[Tuple[int, int, float]]:
        """Upper-triangle pairs (a < b) of `rows` against every entity, at or above threshold."""
        block = cosine_similarity(matrix[rows], matrix, dense_output=False).tocoo()
        sources = rows[block.row]
        keep = (block.col > sources) & (block.data >= self.threshold)
        return list(zip(sources[keep].tolist(), block.col[keep].tolist(), block.data[keep].tolist()))

    def build(self, store: RatingStore) -> SimilarityGraph:
        print("\n" + "=" * 60)
        print(f"COMPUTING {self.axis.upper()} SIMILARITY")
        print("=" * 60)

        if store.count() == 0:
            print("[SKIP] No ratings")
            return SimilarityGraph(self.axis, self.threshold, [], [])

        entities, matrix = self._rating_matrix(store)
        n = len(entities)
        print(f"[INFO] {n:,} {self.axis}s, threshold={self.threshold}")

        chunks = [np.arange(start, min(start + self.chunk_size, n))
                  for start in range(0, n, self.chunk_size)]
        workers = self.max_workers or min(32, (os.cpu_count() or 1) + 4)
        logger.info("Similarity: %d chunks of %d rows, %d workers", len(chunks), self.chunk_size, workers)

        if workers > 1 and len(chunks) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(lambda rows: self._chunk_pairs(matrix, rows), chunks))
        else:
            results = [self._chunk_pairs(matrix, rows) for rows in chunks]

        pairs = [(entities[a], entities[b], float(score))
                 for chunk in results for a, b, score in chunk]
        graph = SimilarityGraph(self.axis, self.threshold, entities, pairs)

        print(f"[DONE] {graph.pair_count():,} pairs with similarity >= {self.threshold}")
        return graph


# ============================================================================
# PART 3: KNN PREDICTION
# ============================================================================

def _weighted_average(neighbours: List[Tuple[int, float]]) -> float:
    weighted_sum = sum(sim * value for value, sim in neighbours)
    sim_sum = sum(sim for _, sim in neighbours)
    return weighted_sum / sim_sum


class KNNRecommender:
    """
    Neighbour-weighted rating prediction.

    User axis: the k most similar users who rated the item.
    Item axis: the k most similar items the user rated.

    Formula: r_hat = sum(sim * r) / sum(sim)
    """

    def __init__(self, k: int = config.K_NEIGHBORS):
        if k < 1:
            raise ValueError("k must be >= 1")
        self.k = k

    def _neighbours(self, graph: SimilarityGraph, store: RatingStore, user_id, item_id):
        if graph.axis == 'user':
            candidates = ((store.get(nb, item_id), sim) for nb, sim in graph.neighbors(user_id))
        else:
            candidates = ((store.get(user_id, nb), sim) for nb, sim in graph.neighbors(item_id))

        found = []
        for rating, sim in candidates:
            if rating is None or sim <= 0:
                continue
            found.append((rating.value, sim))
            if len(found) == self.k:
                break
        return found

    def predict(self, graph: SimilarityGraph, store: RatingStore, user_id, item_id) -> float:
        neighbours = self._neighbours(graph, store, user_id, item_id)
        if not neighbours:
            raise InsufficientNeighborsError(user_id, item_id)

        return _weighted_average(neighbours)

    def recommend(self, graph: SimilarityGraph, store: RatingStore, user_id,
                  n: int = config.TOP_N) -> List[Recommendation]:
        """Top-n unrated items by KNN prediction; items without neighbours are skipped."""
        rated = {r.item_id for r in store.by_user(user_id)}

        if graph.axis == 'user':
            candidates = {r.item_id for nb, _ in graph.neighbors(user_id) for r in store.by_user(nb)}
        else:
            candidates = {nb for item in rated for nb, _ in graph.neighbors(item)}

        scored = []
        for item_id in candidates - rated:
            neighbours = self._neighbours(graph, store, user_id, item_id)
            if neighbours:
                scored.append((item_id, _weighted_average(neighbours)))

        scored.sort(key=lambda pair: (-pair[1], pair[0]))
        return [Recommendation(user_id, item_id, rank, score)
                for rank, (item_id, score) in enumerate(scored[:n], 1)]

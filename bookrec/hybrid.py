"""
Recommendation & Hybrid Search
==============================
Scores books for a user from the ALS factors and combines them with the
search index:

- Recommender.top_n: predicted rating = p_u . q_i + mu over all items, or
  only over a candidate filter (e.g. search hits)
- recommend_for_query: search hits -> candidate filter -> top_n
- most_popular: popularity ranking for callers that need a cold-start fallback
- join_catalog: ranked lists joined with book metadata for display
- evaluate_holdout / evaluate_knn: error and hit rate on the withheld ratings
"""

import logging
from itertools import islice
from typing import Dict, Iterable, List, Optional, Set

import numpy as np
import pandas as pd

from bookrec import config
from bookrec.als import FactorModel
from bookrec.collaborative import KNNRecommender, SimilarityGraph
from bookrec.content_based import SearchIndex
from bookrec.data_preprocessing import Catalog, RatingStore, Recommendation
from bookrec.eda import StatsEngine
from bookrec.errors import InsufficientNeighborsError
from bookrec.holdout import HoldoutSet

logger = logging.getLogger(__name__)


class Recommender:
    """Top-N ranking from a FactorModel."""

    @staticmethod
    def top_n(model: FactorModel, user_id, n: int = config.TOP_N,
              candidate_filter: Optional[Iterable[str]] = None,
              exclude: Optional[Iterable[str]] = None) -> List[Recommendation]:
        """
        Highest predicted ratings for `user_id`.

        Ties are broken by ascending item id. Items outside `candidate_filter`
        (when given) or inside `exclude` are never returned.

        Raises:
            UnknownUserError: the user has no factor vector.
        """
        if n < 0:
            raise ValueError("n must be >= 0")

        model.user_vector(user_id)  # UnknownUserError for cold-start users
        if n == 0:
            return []

        items = model.items()
        if candidate_filter is not None:
            allowed = set(candidate_filter)
            items = [i for i in items if i in allowed]
        if exclude is not None:
            excluded = set(exclude)
            items = [i for i in items if i not in excluded]
        if not items:
            return []

        scores = model.predict_items(user_id, items)
        ranked = sorted(zip(items, scores.tolist()), key=lambda pair: (-pair[1], pair[0]))

        logger.debug("top_n for %r over %d candidates", user_id, len(items))
        return [Recommendation(user_id, item_id, rank, score)
                for rank, (item_id, score) in enumerate(ranked[:n], 1)]


def recommend_for_query(model: FactorModel, search_index: SearchIndex, user_id, query: str,
                        n: int = config.TOP_N, search_depth: int = config.SEARCH_DEPTH,
                        exclude: Optional[Iterable[str]] = None) -> List[Recommendation]:
    """Rank the user's predicted ratings over the books matching `query`."""
    candidates: Set[str] = set(search_index.query(query, search_depth))
    logger.info("Query %r matched %d candidate books", query, len(candidates))
    return Recommender.top_n(model, user_id, n, candidate_filter=candidates, exclude=exclude)


def most_popular(store: RatingStore, n: int = config.TOP_N,
                 candidate_filter: Optional[Iterable[str]] = None,
                 user_id=None) -> List[Recommendation]:
    """
    Books ranked by number of ratings, then mean rating, then item id.
    The score is the mean rating so it sits on the same scale as predictions.
    """
    allowed = set(candidate_filter) if candidate_filter is not None else None

    scored = []
    for item_id in store.distinct_items():
        if allowed is not None and item_id not in allowed:
            continue
        values = [r.value for r in store.by_item(item_id)]
        scored.append((item_id, len(values), float(np.mean(values))))

    scored.sort(key=lambda row: (-row[1], -row[2], row[0]))
    return [Recommendation(user_id, item_id, rank, mean)
            for rank, (item_id, _, mean) in enumerate(scored[:n], 1)]


def join_catalog(recommendations: List[Recommendation], catalog: Catalog) -> pd.DataFrame:
    """Ranked list joined with book metadata (left join on ISBN)."""
    df_recs = pd.DataFrame(
        [(r.user_id, r.item_id, r.rank, r.predicted_score) for r in recommendations],
        columns=['user_id', 'item_id', 'rank', 'predicted_score'],
    )
    return df_recs.merge(catalog.to_frame(), on='item_id', how='left')


def print_recommendations(df: pd.DataFrame, title: str):
    print(f"\n{title}:")
    if df.empty:
        print("  (none)")
    for row in df.itertuples(index=False):
        print(f"  {row.rank}. {row.title} - {row.author} (pred: {row.predicted_score:.2f})")


# ============================================================================
# Holdout evaluation
# ============================================================================

def evaluate_holdout(model: FactorModel, train_store: RatingStore, holdout: HoldoutSet,
                     n: int = config.TOP_N) -> Dict[str, float]:
    """
    Rating error and leave-one-out hit rate on the withheld ratings.

    A hit means the withheld book appears in the user's top-n among books the
    user has not rated in training. The popularity ranking is evaluated the
    same way as a baseline.
    """
    errors = []
    hits = {'ALS': 0, 'Popularity': 0}
    popular = [r.item_id for r in most_popular(train_store, n=len(train_store.distinct_items()))]

    for user_id, withheld in holdout.items():
        errors.append(model.predict(user_id, withheld.item_id) - withheld.value)

        rated = {r.item_id for r in train_store.by_user(user_id)}
        als_items = {r.item_id for r in Recommender.top_n(model, user_id, n, exclude=rated)}
        if withheld.item_id in als_items:
            hits['ALS'] += 1
        if withheld.item_id in islice((i for i in popular if i not in rated), n):
            hits['Popularity'] += 1

    total = len(errors)
    if total == 0:
        return {'Users': 0, 'RMSE': None, 'MAE': None,
                f'HitRate@{n} ALS': 0.0, f'HitRate@{n} Popularity': 0.0}

    errors = np.asarray(errors)
    return {
        'Users': total,
        'RMSE': float(np.sqrt(np.mean(errors ** 2))),
        'MAE': float(np.mean(np.abs(errors))),
        f'HitRate@{n} ALS': hits['ALS'] / total,
        f'HitRate@{n} Popularity': hits['Popularity'] / total,
    }


def evaluate_knn(graph: SimilarityGraph, knn: KNNRecommender, train_store: RatingStore,
                 holdout: HoldoutSet) -> Dict[str, float]:
    """KNN rating error on the withheld ratings, falling back to the item mean."""
    errors = []
    fallbacks = 0
    for user_id, withheld in holdout.items():
        try:
            predicted = knn.predict(graph, train_store, user_id, withheld.item_id)
        except InsufficientNeighborsError:
            fallbacks += 1
            predicted = StatsEngine.item_mean(train_store, withheld.item_id)
        errors.append(predicted - withheld.value)

    if not errors:
        return {'Users': 0, 'RMSE': None, 'MAE': None, 'Coverage': 0.0}

    errors = np.asarray(errors)
    return {
        'Users': len(errors),
        'RMSE': float(np.sqrt(np.mean(errors ** 2))),
        'MAE': float(np.mean(np.abs(errors))),
        'Coverage': 1 - fallbacks / len(errors),
    }

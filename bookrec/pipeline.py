"""
Offline Recommender Pipeline
============================
Single entry point that runs every stage end to end:

1. Load & filter the Book-Crossing dumps
2. Dataset statistics and diagnostic plots
3. Holdout sampling
4. ALS training (history CSV + plot)
5. Holdout evaluation (ALS vs popularity, KNN)
6. Sample recommendations joined with book metadata
7. User similarity graph + KNN recommendations
8. Search-filtered recommendations
9. Artifacts pickled to the results folder for the API
"""

import logging
import pickle
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from bookrec import config
from bookrec.als import ALSConfig, ALSTrainer, plot_training_history
from bookrec.collaborative import KNNRecommender, SimilarityIndex
from bookrec.content_based import SearchIndex
from bookrec.data_preprocessing import load_datasets
from bookrec.eda import plot_rating_distribution, plot_user_activity, print_basic_statistics
from bookrec.holdout import HoldoutSampler
from bookrec.hybrid import (
    Recommender,
    evaluate_holdout,
    evaluate_knn,
    join_catalog,
    print_recommendations,
    recommend_for_query,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    ratings_path: Path = config.RATINGS_FILE
    books_path: Path = config.BOOKS_FILE
    results_dir: Path = config.RESULTS_DIR
    min_user_ratings: int = 5
    min_item_ratings: int = 5
    holdout_fraction: float = config.HOLDOUT_FRACTION
    seed: int = config.RANDOM_SEED
    als: ALSConfig = field(default_factory=ALSConfig)
    similarity_threshold: float = config.SIMILARITY_THRESHOLD
    k_neighbors: int = config.K_NEIGHBORS
    top_n: int = config.TOP_N
    search_depth: int = config.SEARCH_DEPTH
    demo_query: str = "harry potter"
    n_sample_users: int = 3
    make_plots: bool = True
    save: bool = True


# ============================================================================
# Artifacts
# ============================================================================

def save_artifacts(artifacts: Dict[str, Any], results_dir=None) -> Path:
    results_dir = Path(results_dir or config.RESULTS_DIR)
    results_dir.mkdir(parents=True, exist_ok=True)
    path = results_dir / config.ARTIFACTS_FILE

    with open(path, 'wb') as f:
        pickle.dump(artifacts, f)

    print(f"[SAVED] {path.name}")
    return path


def load_artifacts(results_dir=None) -> Dict[str, Any]:
    path = Path(results_dir or config.RESULTS_DIR) / config.ARTIFACTS_FILE
    if not path.exists():
        raise FileNotFoundError(f"Pipeline artifacts not found at {path}")

    with open(path, 'rb') as f:
        artifacts = pickle.load(f)

    logger.info("Loaded artifacts from %s", path)
    return artifacts


def _print_metrics(title: str, metrics: Dict[str, float]):
    print(f"\n       {title}:")
    for key, value in metrics.items():
        print(f"       {key:.<30} {value:>10.4f}" if isinstance(value, float)
              else f"       {key:.<30} {str(value):>10}")


# ============================================================================
# Pipeline
# ============================================================================

def run_pipeline(pipeline_config: Optional[PipelineConfig] = None) -> Dict[str, Any]:
    cfg = pipeline_config or PipelineConfig()
    results_dir = Path(cfg.results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    start_time = time.time()

    # --- 1. Load ---
    catalog, full_store, reports = load_datasets(cfg.ratings_path, cfg.books_path)
    store = full_store.filter_min_counts(cfg.min_user_ratings, cfg.min_item_ratings)
    print(f"[DONE] Min-count filter: {full_store.count():,} -> {store.count():,} ratings "
          f"(users>={cfg.min_user_ratings}, items>={cfg.min_item_ratings})")

    # --- 2. Statistics ---
    stats = print_basic_statistics(store)
    if cfg.make_plots:
        plot_rating_distribution(store, results_dir / "rating_distribution.png")
        plot_user_activity(store, results_dir / "user_activity.png")

    # --- 3. Holdout ---
    print("\n" + "=" * 60)
    print("HOLDOUT SAMPLING")
    print("=" * 60)

    train_store, holdout = HoldoutSampler(cfg.holdout_fraction, cfg.seed).sample(store)
    holdout = holdout.covered_by(train_store)
    print(f"[DONE] Withheld {len(holdout):,} ratings, training on {train_store.count():,}")

    # --- 4. ALS ---
    print("\n" + "=" * 60)
    print("TRAINING ALS")
    print("=" * 60)

    trainer = ALSTrainer(cfg.als)
    result = trainer.fit(train_store, holdout)
    model = result.model
    print(f"[DONE] {result.state.value} after {result.iterations} iterations "
          f"({result.elapsed_seconds:.1f}s)")

    history = result.history_frame()
    history.to_csv(results_dir / "als_training_history.csv", index=False)
    print("[SAVED] als_training_history.csv")
    if cfg.make_plots and result.history:
        plot_training_history(result.history, results_dir / "als_training_history.png")

    # --- 5. Evaluation ---
    print("\n" + "=" * 60)
    print("HOLDOUT EVALUATION")
    print("=" * 60)

    als_metrics = evaluate_holdout(model, train_store, holdout, cfg.top_n)
    _print_metrics("ALS", als_metrics)

    # --- 6. Sample recommendations ---
    print("\n" + "=" * 60)
    print("SAMPLE RECOMMENDATIONS")
    print("=" * 60)

    rng = np.random.default_rng(cfg.seed)
    candidates = list(holdout) or model.users()
    n_sample = min(cfg.n_sample_users, len(candidates))
    sample_users = [candidates[i] for i in sorted(rng.choice(len(candidates), n_sample, replace=False))]

    samples = {}
    for user_id in sample_users:
        rated = {r.item_id for r in train_store.by_user(user_id)}
        recs = Recommender.top_n(model, user_id, cfg.top_n, exclude=rated)
        df_recs = join_catalog(recs, catalog)
        print_recommendations(df_recs, f"Top-{cfg.top_n} for user {user_id} ({len(rated)} ratings)")
        samples[user_id] = df_recs

    if samples:
        pd.concat(samples.values(), ignore_index=True).to_csv(
            results_dir / "sample_recommendations.csv", index=False)
        print("[SAVED] sample_recommendations.csv")

    # --- 7. Similarity + KNN ---
    user_graph = SimilarityIndex('user', threshold=cfg.similarity_threshold).build(train_store)
    knn = KNNRecommender(cfg.k_neighbors)

    knn_metrics = evaluate_knn(user_graph, knn, train_store, holdout)
    _print_metrics("User KNN", knn_metrics)

    if sample_users:
        knn_recs = knn.recommend(user_graph, train_store, sample_users[0], cfg.top_n)
        print_recommendations(join_catalog(knn_recs, catalog),
                              f"KNN top-{cfg.top_n} for user {sample_users[0]}")

    # --- 8. Search-filtered recommendations ---
    search_index = SearchIndex.build(catalog)
    if sample_users and cfg.demo_query:
        user_id = sample_users[0]
        rated = {r.item_id for r in train_store.by_user(user_id)}
        query_recs = recommend_for_query(model, search_index, user_id, cfg.demo_query,
                                         cfg.top_n, cfg.search_depth, exclude=rated)
        print_recommendations(join_catalog(query_recs, catalog),
                              f"'{cfg.demo_query}' picks for user {user_id}")

    artifacts = {
        'catalog': catalog,
        'store': store,
        'train_store': train_store,
        'holdout': holdout,
        'model': model,
        'training_state': result.state,
        'history': history,
        'user_graph': user_graph,
        'search_index': search_index,
        'stats': stats,
        'metrics': {'als': als_metrics, 'knn': knn_metrics},
        'load_reports': reports,
        'k_neighbors': cfg.k_neighbors,
    }

    # --- 9. Save ---
    if cfg.save:
        save_artifacts(artifacts, results_dir)

    print("\n" + "=" * 60)
    print(f"PIPELINE COMPLETE ({time.time() - start_time:.1f}s)")
    print("=" * 60)
    return artifacts


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S'
    )
    run_pipeline()


if __name__ == "__main__":
    main()

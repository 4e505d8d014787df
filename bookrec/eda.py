"""
Exploratory Data Analysis (EDA)
===============================
Diagnostics over a RatingStore:
- Distinct counts and sparsity
- Rating distribution (1..10, zero-filled)
- User activity distribution (long-tail)
- Item popularity
"""

import logging
from pathlib import Path
from typing import Dict, List, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from bookrec import config
from bookrec.data_preprocessing import RatingStore
from bookrec.errors import DataInsufficientError

logger = logging.getLogger(__name__)


class StatsEngine:
    """Summary statistics computed from a RatingStore."""

    @staticmethod
    def sparsity(store: RatingStore) -> float:
        """Fraction of the user-item matrix with no observed rating."""
        n_users = len(store.distinct_users())
        n_items = len(store.distinct_items())
        possible = n_users * n_items
        if possible == 0:
            raise DataInsufficientError("Sparsity is undefined for an empty rating store")
        return 1 - store.count() / possible

    @staticmethod
    def rating_histogram(store: RatingStore) -> Dict[int, int]:
        """Frequency of every rating value 1..10, zero for absent values."""
        histogram = {value: 0 for value in range(config.MIN_RATING, config.MAX_RATING + 1)}
        for rating in store:
            histogram[rating.value] += 1
        return histogram

    @staticmethod
    def basic_statistics(store: RatingStore) -> Dict[str, float]:
        n_users = len(store.distinct_users())
        n_items = len(store.distinct_items())
        n_ratings = store.count()
        sparsity = StatsEngine.sparsity(store)

        return {
            'Users': n_users,
            'Items': n_items,
            'Interactions': n_ratings,
            'Sparsity (%)': round(100 * sparsity, 4),
            'Density (%)': round(100 * (1 - sparsity), 4),
            'Avg ratings per user': round(n_ratings / n_users, 2),
            'Avg ratings per item': round(n_ratings / n_items, 2),
        }

    @staticmethod
    def item_mean(store: RatingStore, item_id) -> float:
        """Average rating of one item; the usual fallback when KNN has no neighbours."""
        ratings = store.by_item(item_id)
        if not ratings:
            raise DataInsufficientError(f"Item {item_id!r} has no ratings")
        return float(np.mean([r.value for r in ratings]))

    @staticmethod
    def most_rated(store: RatingStore, n: int = 10) -> List[Tuple[str, int]]:
        """Items with the most ratings, ties by item id."""
        counts = [(item_id, len(store.by_item(item_id))) for item_id in store.distinct_items()]
        counts.sort(key=lambda pair: (-pair[1], pair[0]))
        return counts[:n]


def print_basic_statistics(store: RatingStore) -> Dict[str, float]:
    """Print basic statistics."""
    print("\n" + "=" * 60)
    print("BASIC STATISTICS")
    print("=" * 60)

    stats = StatsEngine.basic_statistics(store)

    print("\n       Dataset Summary:")
    for key, value in stats.items():
        print(f"       {key:.<25} {value:>12,}" if isinstance(value, int) else f"       {key:.<25} {value:>12}")

    return stats


def plot_rating_distribution(store: RatingStore, path) -> Path:
    """Bar chart of the 1..10 rating histogram."""
    histogram = StatsEngine.rating_histogram(store)
    total = max(store.count(), 1)

    print("\n       Rating Distribution:")
    for rating, count in histogram.items():
        pct = 100 * count / total
        bar = "█" * int(pct / 2)
        print(f"       {rating:>2}: {count:>8,} ({pct:5.1f}%) {bar}")

    values = list(histogram.keys())
    counts = list(histogram.values())

    fig, ax = plt.subplots(figsize=(8, 5))
    colors = plt.cm.RdYlGn(np.linspace(0.2, 0.8, len(values)))

    ax.bar(values, counts, color=colors, edgecolor='black')
    ax.set_xlabel('Rating', fontsize=12)
    ax.set_ylabel('Count', fontsize=12)
    ax.set_title('Rating Distribution', fontsize=14, fontweight='bold')
    ax.set_xticks(values)

    plt.tight_layout()
    path = Path(path)
    plt.savefig(path, dpi=150)
    plt.close(fig)

    print(f"\n[PLOT] {path.name}")
    return path


def plot_user_activity(store: RatingStore, path) -> Path:
    """Ratings-per-user histogram plus the cumulative long-tail curve."""
    user_counts = pd.Series({u: len(store.by_user(u)) for u in store.distinct_users()}, dtype=float)
    if user_counts.empty:
        raise DataInsufficientError("No users to plot")

    top_n = max(1, int(len(user_counts) * 0.1))
    top_coverage = user_counts.nlargest(top_n).sum() / user_counts.sum() * 100
    logger.info("Top 10%% of users contribute %.1f%% of ratings", top_coverage)

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    ax1.hist(user_counts, bins=50, color='steelblue', edgecolor='black', alpha=0.7)
    ax1.set_xlabel('Ratings per User', fontsize=12)
    ax1.set_ylabel('Number of Users', fontsize=12)
    ax1.set_title('User Activity Distribution', fontsize=14, fontweight='bold')
    ax1.axvline(user_counts.median(), color='red', linestyle='--',
                label=f'Median: {user_counts.median():.0f}')
    ax1.legend()

    sorted_counts = user_counts.sort_values(ascending=False).values
    cumulative = np.cumsum(sorted_counts) / sorted_counts.sum() * 100
    x = np.arange(len(cumulative)) / len(cumulative) * 100

    ax2.plot(x, cumulative, color='steelblue', linewidth=2)
    ax2.axhline(50, color='red', linestyle='--', alpha=0.7)
    ax2.axhline(80, color='orange', linestyle='--', alpha=0.7)
    ax2.set_xlabel('% of Users (sorted by activity)', fontsize=12)
    ax2.set_ylabel('Cumulative % of Ratings', fontsize=12)
    ax2.set_title('User Activity Long-Tail', fontsize=14, fontweight='bold')
    ax2.fill_between(x, cumulative, alpha=0.3)

    plt.tight_layout()
    path = Path(path)
    plt.savefig(path, dpi=150)
    plt.close(fig)

    print(f"\n[PLOT] {path.name}")
    return path

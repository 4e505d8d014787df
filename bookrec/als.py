"""
ALS Matrix Factorization
========================
Alternating Least Squares on explicit ratings:

    r_hat(u, i) = mu + p_u . q_i

Each iteration fixes the item factors and solves a ridge system for every
user, then fixes the user factors and solves for every item:

    p_u = (Q_u^T Q_u + lambda I)^-1 Q_u^T (r_u - mu)

The user sweep finishes before the item sweep starts. Inside a sweep every
row is independent, so rows are split across a thread pool; each worker
only writes its own rows.

Training stops when the monitored objective (holdout RMSE, or the training
objective when there is no holdout) improves by less than
`improvement_threshold` for `stagnation_window` consecutive iterations, or
when the iteration / wall-clock limit runs out.
"""

import logging
import os
import pickle
import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix

from bookrec import config
from bookrec.data_preprocessing import RatingStore
from bookrec.errors import ConvergenceWarning, DataInsufficientError, UnknownUserError
from bookrec.holdout import HoldoutSet

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration & state
# ============================================================================

@dataclass(frozen=True)
class ALSConfig:
    rank: int = 10
    max_iterations: int = 15
    stagnation_window: int = 2
    improvement_threshold: float = 1e-3
    seed: int = config.RANDOM_SEED
    regularization: float = 0.1
    max_workers: Optional[int] = None
    timeout_seconds: Optional[float] = None

    def __post_init__(self):
        if self.rank < 1:
            raise ValueError("rank must be >= 1")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.stagnation_window < 1:
            raise ValueError("stagnation_window must be >= 1")
        if self.improvement_threshold < 0:
            raise ValueError("improvement_threshold must be >= 0")
        if self.regularization <= 0:
            raise ValueError("regularization must be > 0")


class TrainingState(Enum):
    INIT = 'init'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    MAX_ITER_REACHED = 'max_iter_reached'
    STAGNATED = 'stagnated'


@dataclass(frozen=True)
class IterationStats:
    iteration: int
    train_objective: float
    holdout_objective: Optional[float]


# ============================================================================
# Factor model
# ============================================================================

class FactorModel:
    """
    Trained user/item factors plus the global mean.

    Read-only once built; retraining produces a new FactorModel.
    """

    def __init__(self, user_ids: Sequence, item_ids: Sequence,
                 user_factors: np.ndarray, item_factors: np.ndarray, global_mean: float):
        self._user_ids = list(user_ids)
        self._item_ids = list(item_ids)
        self._user_index = {u: idx for idx, u in enumerate(self._user_ids)}
        self._item_index = {i: idx for idx, i in enumerate(self._item_ids)}

        self._user_factors = np.array(user_factors, dtype=np.float64)
        self._item_factors = np.array(item_factors, dtype=np.float64)
        self._user_factors.setflags(write=False)
        self._item_factors.setflags(write=False)
        self.global_mean = float(global_mean)

    @property
    def rank(self) -> int:
        return self._user_factors.shape[1]

    @property
    def user_factors(self) -> Dict:
        return {u: self._user_factors[idx] for u, idx in self._user_index.items()}

    @property
    def item_factors(self) -> Dict:
        return {i: self._item_factors[idx] for i, idx in self._item_index.items()}

    @property
    def item_matrix(self) -> np.ndarray:
        return self._item_factors

    def users(self) -> List:
        return list(self._user_ids)

    def items(self) -> List:
        return list(self._item_ids)

    def has_user(self, user_id) -> bool:
        return user_id in self._user_index

    def has_item(self, item_id) -> bool:
        return item_id in self._item_index

    def user_vector(self, user_id) -> np.ndarray:
        if user_id not in self._user_index:
            raise UnknownUserError(user_id)
        return self._user_factors[self._user_index[user_id]]

    def item_vector(self, item_id) -> np.ndarray:
        return self._item_factors[self._item_index[item_id]]

    def predict(self, user_id, item_id) -> float:
        return float(self.user_vector(user_id) @ self.item_vector(item_id) + self.global_mean)

    def predict_items(self, user_id, item_ids: Sequence) -> np.ndarray:
        """Predicted ratings of one user for several items."""
        user_vec = self.user_vector(user_id)
        idx = [self._item_index[i] for i in item_ids]
        return self._item_factors[idx] @ user_vec + self.global_mean


@dataclass
class TrainingResult:
    model: FactorModel
    state: TrainingState
    history: List[IterationStats] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def iterations(self) -> int:
        return len(self.history)

    def history_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(h.iteration, h.train_objective, h.holdout_objective) for h in self.history],
            columns=['iteration', 'train_objective', 'holdout_objective'],
        )


# ============================================================================
# Trainer
# ============================================================================

def _solve_rows(rows: np.ndarray, matrix: csr_matrix, fixed: np.ndarray, out: np.ndarray,
                global_mean: float, reg_eye: np.ndarray):
    """Ridge solve for every row index in `rows`; writes only those rows of `out`."""
    indptr, indices, data = matrix.indptr, matrix.indices, matrix.data
    for row in rows:
        start, end = indptr[row], indptr[row + 1]
        if start == end:
            raise DataInsufficientError(f"Row {row} has no ratings in the training partition")
        cols = indices[start:end]
        residuals = data[start:end] - global_mean
        F = fixed[cols]
        A = F.T @ F + reg_eye
        b = F.T @ residuals
        out[row] = np.linalg.solve(A, b)


class ALSTrainer:
    """Init -> Iterating -> Converged | MaxIterReached | Stagnated."""

    def __init__(self, als_config: Optional[ALSConfig] = None):
        self.config = als_config or ALSConfig()
        self.state = TrainingState.INIT

    def _sweep(self, pool: Optional[ThreadPoolExecutor], workers: int, matrix: csr_matrix,
               fixed: np.ndarray, n_rows: int, global_mean: float, reg_eye: np.ndarray) -> np.ndarray:
        out = np.empty((n_rows, fixed.shape[1]), dtype=np.float64)
        if pool is None:
            _solve_rows(np.arange(n_rows), matrix, fixed, out, global_mean, reg_eye)
            return out

        n_chunks = min(n_rows, workers * 4)
        chunks = np.array_split(np.arange(n_rows), n_chunks)
        futures = [pool.submit(_solve_rows, chunk, matrix, fixed, out, global_mean, reg_eye)
                   for chunk in chunks]
        # barrier: every row of this half-step is solved before the next one reads `out`
        for future in futures:
            future.result()
        return out

    def fit(self, store: RatingStore, holdout: Optional[HoldoutSet] = None,
            on_iteration: Optional[Callable[[IterationStats], None]] = None) -> TrainingResult:
        """
        Train on every rating in `store`, evaluating on `holdout` if given.

        Raises:
            DataInsufficientError: empty store, or a holdout user/item that
                has no ratings in the training partition.
        """
        cfg = self.config
        self.state = TrainingState.INIT

        if store.count() == 0:
            raise DataInsufficientError("Training partition is empty")

        users = store.distinct_users()
        items = store.distinct_items()
        user_index = {u: idx for idx, u in enumerate(users)}
        item_index = {i: idx for idx, i in enumerate(items)}
        n_users, n_items = len(users), len(items)

        holdout_ratings = holdout.ratings() if holdout is not None else []
        for rating in holdout_ratings:
            if rating.user_id not in user_index:
                raise DataInsufficientError(f"Holdout user {rating.user_id!r} has no training ratings")
            if rating.item_id not in item_index:
                raise DataInsufficientError(f"Holdout item {rating.item_id!r} has no training ratings")

        # --- User-item matrix (and its transpose for the item sweep) ---
        ratings = store.ratings()
        rows = np.array([user_index[r.user_id] for r in ratings], dtype=np.int64)
        cols = np.array([item_index[r.item_id] for r in ratings], dtype=np.int64)
        values = np.array([r.value for r in ratings], dtype=np.float64)

        R = csr_matrix((values, (rows, cols)), shape=(n_users, n_items))
        Rt = R.T.tocsr()
        global_mean = float(values.mean())

        h_rows = np.array([user_index[r.user_id] for r in holdout_ratings], dtype=np.int64)
        h_cols = np.array([item_index[r.item_id] for r in holdout_ratings], dtype=np.int64)
        h_values = np.array([r.value for r in holdout_ratings], dtype=np.float64)

        # --- Seeded initialization ---
        rng = np.random.default_rng(cfg.seed)
        scale = 0.1 / np.sqrt(cfg.rank)
        user_factors = rng.normal(0, scale, (n_users, cfg.rank))
        item_factors = rng.normal(0, scale, (n_items, cfg.rank))
        reg_eye = cfg.regularization * np.eye(cfg.rank)

        logger.info("ALS: %d users, %d items, %d ratings, rank=%d, mu=%.3f",
                    n_users, n_items, len(values), cfg.rank, global_mean)

        history: List[IterationStats] = []
        previous = None
        best = np.inf
        stalled = 0
        final_state = TrainingState.MAX_ITER_REACHED
        stop_reason = f"max_iterations={cfg.max_iterations} reached"
        start = time.monotonic()

        self.state = TrainingState.ITERATING
        workers = cfg.max_workers or min(32, (os.cpu_count() or 1) + 4)
        pool = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
        try:
            for iteration in range(1, cfg.max_iterations + 1):
                user_factors = self._sweep(pool, workers, R, item_factors, n_users, global_mean, reg_eye)
                item_factors = self._sweep(pool, workers, Rt, user_factors, n_items, global_mean, reg_eye)

                train_objective, holdout_objective = self._objectives(
                    user_factors, item_factors, global_mean, rows, cols, values,
                    h_rows, h_cols, h_values,
                )
                stats = IterationStats(iteration, train_objective, holdout_objective)
                history.append(stats)
                if on_iteration is not None:
                    on_iteration(stats)
                logger.info("Iteration %d: train=%.4f holdout=%s", iteration, train_objective,
                            'n/a' if holdout_objective is None else f"{holdout_objective:.4f}")

                monitored = holdout_objective if holdout_objective is not None else train_objective
                if previous is not None:
                    stalled = stalled + 1 if previous - monitored < cfg.improvement_threshold else 0
                best = min(best, monitored)
                previous = monitored

                if stalled >= cfg.stagnation_window:
                    final_state = (TrainingState.STAGNATED if monitored > best
                                   else TrainingState.CONVERGED)
                    break

                if cfg.timeout_seconds is not None and time.monotonic() - start >= cfg.timeout_seconds:
                    stop_reason = f"timeout of {cfg.timeout_seconds}s reached after {iteration} iterations"
                    break
        finally:
            if pool is not None:
                pool.shutdown(wait=True)

        self.state = final_state
        if final_state is TrainingState.MAX_ITER_REACHED:
            warnings.warn(f"ALS stopped without converging: {stop_reason}",
                          ConvergenceWarning, stacklevel=2)

        model = FactorModel(users, items, user_factors, item_factors, global_mean)
        elapsed = time.monotonic() - start
        logger.info("ALS finished: %s after %d iterations (%.1fs)",
                    final_state.value, len(history), elapsed)
        return TrainingResult(model=model, state=final_state, history=history,
                              elapsed_seconds=elapsed)

    def _objectives(self, user_factors, item_factors, global_mean, rows, cols, values,
                    h_rows, h_cols, h_values) -> Tuple[float, Optional[float]]:
        """Training objective (SSE + L2 penalty) and holdout RMSE."""
        predicted = np.einsum('ij,ij->i', user_factors[rows], item_factors[cols]) + global_mean
        sse = float(np.sum((values - predicted) ** 2))
        penalty = self.config.regularization * float(
            np.sum(user_factors ** 2) + np.sum(item_factors ** 2)
        )
        train_objective = sse + penalty

        if len(h_values) == 0:
            return train_objective, None
        h_predicted = np.einsum('ij,ij->i', user_factors[h_rows], item_factors[h_cols]) + global_mean
        holdout_objective = float(np.sqrt(np.mean((h_values - h_predicted) ** 2)))
        return train_objective, holdout_objective


# ============================================================================
# Diagnostics & persistence
# ============================================================================

def plot_training_history(history: Sequence[IterationStats], path) -> Path:
    """Training objective and holdout RMSE per iteration."""
    iterations = [h.iteration for h in history]
    train = [h.train_objective for h in history]
    holdout = [h.holdout_objective for h in history]

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    ax1.plot(iterations, train, marker='o', color='steelblue', linewidth=2)
    ax1.set_xlabel('Iteration', fontsize=12)
    ax1.set_ylabel('SSE + L2', fontsize=12)
    ax1.set_title('Training Objective', fontsize=14, fontweight='bold')

    if any(h is not None for h in holdout):
        ax2.plot(iterations, holdout, marker='o', color='coral', linewidth=2)
    ax2.set_xlabel('Iteration', fontsize=12)
    ax2.set_ylabel('RMSE', fontsize=12)
    ax2.set_title('Holdout Error', fontsize=14, fontweight='bold')

    plt.tight_layout()
    path = Path(path)
    plt.savefig(path, dpi=150)
    plt.close(fig)

    print(f"\n[PLOT] {path.name}")
    return path


def save_factor_model(model: FactorModel, path) -> Path:
    path = Path(path)
    with open(path, 'wb') as f:
        pickle.dump(model, f)
    print(f"[SAVED] {path.name}")
    return path


def load_factor_model(path) -> FactorModel:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Factor model not found at {path}")
    with open(path, 'rb') as f:
        return pickle.load(f)

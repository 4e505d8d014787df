"""
Holdout Sampling
================
Withholds one rating from a seeded random fraction of users so the ALS
trainer can measure prediction error on ratings it never saw.
"""

import logging
from collections.abc import Mapping
from typing import Any, Iterator, List, Tuple

import numpy as np

from bookrec import config
from bookrec.data_preprocessing import Rating, RatingStore
from bookrec.errors import DataInsufficientError

logger = logging.getLogger(__name__)


class HoldoutSet(Mapping):
    """Read-only mapping user_id -> withheld Rating."""

    def __init__(self, withheld: Mapping[Any, Rating], seed: int, fraction: float):
        self._withheld = dict(withheld)
        self.seed = seed
        self.fraction = fraction

    def __getitem__(self, user_id) -> Rating:
        return self._withheld[user_id]

    def __iter__(self) -> Iterator[Any]:
        return iter(self._withheld)

    def __len__(self) -> int:
        return len(self._withheld)

    def ratings(self) -> List[Rating]:
        return list(self._withheld.values())

    def covered_by(self, store: RatingStore) -> 'HoldoutSet':
        """Only the withheld ratings whose user and item still have ratings in `store`."""
        kept = {user_id: rating for user_id, rating in self._withheld.items()
                if store.by_user(rating.user_id) and store.by_item(rating.item_id)}
        if len(kept) < len(self._withheld):
            logger.info("Holdout: %d of %d withheld ratings not covered by training data",
                        len(self._withheld) - len(kept), len(self._withheld))
        return HoldoutSet(kept, seed=self.seed, fraction=self.fraction)

    def __eq__(self, other):
        if not isinstance(other, HoldoutSet):
            return NotImplemented
        return dict(self._withheld) == dict(other._withheld)

    __hash__ = None

    def __repr__(self):
        return f"HoldoutSet(n={len(self)}, seed={self.seed}, fraction={self.fraction})"


class HoldoutSampler:
    """
    Selects `fraction` of the distinct users and removes exactly one of their
    ratings, chosen uniformly at random.

    The same seed on the same store (same insertion order) always yields the
    same holdout.
    """

    def __init__(self, fraction: float = config.HOLDOUT_FRACTION, seed: int = config.RANDOM_SEED):
        if not 0 < fraction <= 1:
            raise ValueError(f"fraction must be in (0, 1], got {fraction}")
        self.fraction = fraction
        self.seed = seed

    def sample(self, store: RatingStore) -> Tuple[RatingStore, HoldoutSet]:
        """Return (training store, holdout set)."""
        users = store.distinct_users()
        n_selected = min(len(users), int(round(self.fraction * len(users))))

        rng = np.random.default_rng(self.seed)
        selected = np.sort(rng.choice(len(users), size=n_selected, replace=False))

        withheld = {}
        for user_idx in selected:
            user_id = users[user_idx]
            user_ratings = store.by_user(user_id)
            if not user_ratings:
                raise DataInsufficientError(f"User {user_id!r} has no ratings to withhold")
            withheld[user_id] = user_ratings[int(rng.integers(len(user_ratings)))]

        train_store = store.without(withheld.values())
        logger.info("Holdout: withheld %d ratings from %d users (seed=%d)",
                    len(withheld), len(users), self.seed)
        return train_store, HoldoutSet(withheld, seed=self.seed, fraction=self.fraction)

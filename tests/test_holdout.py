"""Tests for seeded holdout sampling."""

import pickle

import pytest

from bookrec.data_preprocessing import Rating
from bookrec.errors import DataInsufficientError
from bookrec.holdout import HoldoutSampler, HoldoutSet


def test_full_fraction_withholds_one_rating_per_user(scenario_store):
    train, holdout = HoldoutSampler(fraction=1.0, seed=42).sample(scenario_store)

    assert set(holdout) == {"u1", "u2", "u3"}
    for user_id in scenario_store.distinct_users():
        assert len(train.by_user(user_id)) == len(scenario_store.by_user(user_id)) - 1
    assert train.count() == scenario_store.count() - 3


def test_same_seed_same_holdout(random_store):
    _, first = HoldoutSampler(fraction=0.3, seed=7).sample(random_store)
    _, second = HoldoutSampler(fraction=0.3, seed=7).sample(random_store)

    assert first == second
    assert first.ratings() == second.ratings()


def test_fraction_of_users_selected(random_store):
    _, holdout = HoldoutSampler(fraction=0.2, seed=1).sample(random_store)
    assert len(holdout) == round(0.2 * len(random_store.distinct_users()))


def test_holdout_disjoint_from_training(random_store):
    train, holdout = HoldoutSampler(fraction=0.5, seed=3).sample(random_store)

    for user_id, rating in holdout.items():
        assert rating.user_id == user_id
        assert random_store.get(rating.user_id, rating.item_id) is rating
        assert train.get(rating.user_id, rating.item_id) is None
    assert train.count() + len(holdout) == random_store.count()


@pytest.mark.parametrize("fraction", [0, -0.1, 1.5])
def test_invalid_fraction(fraction):
    with pytest.raises(ValueError):
        HoldoutSampler(fraction=fraction)


def test_user_without_ratings_is_rejected():
    class GhostStore:
        def distinct_users(self):
            return ["ghost"]

        def by_user(self, user_id):
            return ()

    with pytest.raises(DataInsufficientError):
        HoldoutSampler(fraction=1.0).sample(GhostStore())


def test_holdout_set_is_read_only(scenario_store):
    _, holdout = HoldoutSampler(fraction=1.0).sample(scenario_store)
    with pytest.raises(TypeError):
        holdout["u1"] = Rating("u1", "0000000001", 1)


def test_covered_by_drops_users_without_training_ratings(scenario_store):
    train, holdout = HoldoutSampler(fraction=1.0, seed=42).sample(scenario_store)
    covered = holdout.covered_by(train)

    # u3 only had one rating, so it cannot stay in the evaluation set
    assert "u3" not in covered
    for rating in covered.ratings():
        assert train.by_user(rating.user_id)
        assert train.by_item(rating.item_id)
    assert covered.seed == holdout.seed


def test_holdout_set_pickles():
    holdout = HoldoutSet({"u1": Rating("u1", "0000000001", 4)}, seed=1, fraction=0.5)
    assert pickle.loads(pickle.dumps(holdout)) == holdout

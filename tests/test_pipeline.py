"""End-to-end pipeline run on a tiny Book-Crossing style dataset."""

import warnings

import pandas as pd
import pytest

from bookrec.als import TrainingState
from bookrec.errors import ConvergenceWarning
from bookrec.pipeline import PipelineConfig, load_artifacts, run_pipeline, save_artifacts

from conftest import tiny_config


@pytest.fixture
def artifacts(tmp_path):
    cfg = tiny_config(tmp_path, tmp_path / "results")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        return run_pipeline(cfg)


def test_pipeline_produces_artifacts(artifacts):
    assert set(artifacts) >= {
        "catalog", "store", "train_store", "holdout", "model", "training_state",
        "history", "user_graph", "search_index", "stats", "metrics", "load_reports",
    }
    assert isinstance(artifacts["training_state"], TrainingState)
    assert artifacts["stats"]["Interactions"] == artifacts["store"].count()
    assert artifacts["load_reports"]["ratings"].dropped_total == 3
    assert set(artifacts["metrics"]) == {"als", "knn"}


def test_pipeline_keeps_holdout_out_of_training(artifacts):
    train, holdout = artifacts["train_store"], artifacts["holdout"]

    assert len(holdout) > 0
    for rating in holdout.ratings():
        assert train.get(rating.user_id, rating.item_id) is None
        assert artifacts["model"].has_user(rating.user_id)


def test_pipeline_writes_results(artifacts, tmp_path):
    results = tmp_path / "results"

    for name in ["rating_distribution.png", "user_activity.png", "als_training_history.png",
                 "als_training_history.csv", "sample_recommendations.csv", "bookrec_artifacts.pkl"]:
        assert (results / name).exists(), name

    history = pd.read_csv(results / "als_training_history.csv")
    assert len(history) == len(artifacts["history"])
    assert list(history.columns) == ["iteration", "train_objective", "holdout_objective"]


def test_artifacts_round_trip(artifacts, tmp_path):
    loaded = load_artifacts(tmp_path / "results")

    assert set(loaded) == set(artifacts)
    assert loaded["model"].users() == artifacts["model"].users()
    assert loaded["holdout"] == artifacts["holdout"]
    assert loaded["search_index"].query("potter") == artifacts["search_index"].query("potter")


def test_load_artifacts_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_artifacts(tmp_path)


def test_save_artifacts_creates_directory(tmp_path):
    path = save_artifacts({"answer": 42}, tmp_path / "nested" / "results")
    assert path.exists()
    assert load_artifacts(tmp_path / "nested" / "results") == {"answer": 42}


def test_pipeline_without_side_outputs(tmp_path):
    cfg = tiny_config(tmp_path, tmp_path / "quiet", make_plots=False, save=False)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        run_pipeline(cfg)

    assert not (tmp_path / "quiet" / "bookrec_artifacts.pkl").exists()
    assert not list((tmp_path / "quiet").glob("*.png"))


def test_pipeline_missing_data(tmp_path):
    cfg = PipelineConfig(ratings_path=tmp_path / "none.csv", books_path=tmp_path / "none.csv",
                         results_dir=tmp_path / "results")
    with pytest.raises(FileNotFoundError):
        run_pipeline(cfg)

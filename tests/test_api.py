"""API tests against pipeline artifacts built from a tiny dataset."""

import warnings

import pytest
from fastapi.testclient import TestClient

from bookrec import config
from bookrec import main
from bookrec.errors import ConvergenceWarning
from bookrec.pipeline import run_pipeline

from conftest import tiny_config


@pytest.fixture(scope="module")
def artifacts(tmp_path_factory):
    base = tmp_path_factory.mktemp("api")
    cfg = tiny_config(base, base / "results", make_plots=False, save=False)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        return run_pipeline(cfg)


@pytest.fixture
def client(artifacts):
    # TestClient outside a `with` block skips the startup pipeline check
    main.set_state(artifacts)
    yield TestClient(main.app)
    main.set_state({})


@pytest.fixture
def known_user(artifacts):
    return artifacts["model"].users()[0]


# ── Health & stats ─────────────────────────────────


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "model_loaded": True}


def test_stats(client, artifacts):
    data = client.get("/stats").json()

    assert data["dataset"]["Interactions"] == artifacts["store"].count()
    assert data["training_state"] == artifacts["training_state"].value
    assert data["iterations"] == len(artifacts["history"])
    assert set(data["metrics"]) == {"als", "knn"}


def test_not_loaded_returns_503(client):
    main.set_state({})
    assert client.get("/stats").status_code == 503
    assert client.get("/health").json()["model_loaded"] is False


# ── Search ─────────────────────────────────────────


def test_search(client):
    data = client.get("/search", params={"q": "Harry Potter", "n": 5}).json()

    assert data["tokens"] == ["harry", "potter"]
    assert len(data["results"]) == 2
    assert all("Harry Potter" in r["title"] for r in data["results"])
    assert all(r["matches"] == 2 for r in data["results"])


def test_search_requires_query(client):
    assert client.get("/search").status_code == 422


# ── Recommendations ────────────────────────────────


def test_recommend_known_user(client, artifacts, known_user):
    data = client.get(f"/recommend/{known_user}", params={"n": 3}).json()
    rated = {r.item_id for r in artifacts["store"].by_user(known_user)}
    scores = [r["predicted_score"] for r in data["recommendations"]]

    assert data["fallback"] is False
    assert len(data["recommendations"]) <= 3
    assert not rated & {r["item_id"] for r in data["recommendations"]}
    assert scores == sorted(scores, reverse=True)
    assert [r["rank"] for r in data["recommendations"]] == list(range(1, len(scores) + 1))


def test_recommend_with_query(client, artifacts, known_user):
    data = client.get(f"/recommend/{known_user}", params={"q": "potter"}).json()
    hits = set(artifacts["search_index"].query("potter", config.SEARCH_DEPTH))

    assert data["query"] == "potter"
    assert all(r["item_id"] in hits for r in data["recommendations"])


def test_recommend_unknown_user_falls_back(client):
    data = client.get("/recommend/no-such-user", params={"n": 4}).json()

    assert data["fallback"] is True
    assert 0 < len(data["recommendations"]) <= 4
    assert all("title" in r for r in data["recommendations"])


def test_recommend_unknown_user_with_query(client):
    data = client.get("/recommend/no-such-user", params={"q": "hobbit"}).json()

    assert data["fallback"] is True
    assert [r["title"] for r in data["recommendations"]] in ([], ["The Hobbit"])


# ── Predictions ────────────────────────────────────


def test_predict(client, artifacts, known_user):
    isbn = artifacts["train_store"].distinct_items()[0]
    data = client.get(f"/predict/{known_user}/{isbn}").json()

    assert data["method"] in ("knn", "item_mean")
    assert 1 <= data["predicted_rating"] <= 10
    assert data["item_id"] == isbn


def test_predict_unknown_isbn(client, known_user):
    assert client.get(f"/predict/{known_user}/9999999999").status_code == 404


def test_predict_unknown_user_uses_item_mean(client, artifacts):
    isbn = artifacts["train_store"].distinct_items()[0]
    data = client.get(f"/predict/no-such-user/{isbn}").json()

    assert data["method"] == "item_mean"

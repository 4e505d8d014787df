"""
Main Orchestrator & API for the Book-Crossing Recommender
=========================================================
1. Pipeline Verification: checks that the pipeline artifacts exist (runs the
   pipeline if missing) and loads them.
2. Web API: serves statistics, search, recommendations and KNN predictions.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query

from bookrec import config
from bookrec.collaborative import KNNRecommender
from bookrec.data_preprocessing import Recommendation
from bookrec.eda import StatsEngine
from bookrec.errors import InsufficientNeighborsError
from bookrec.hybrid import Recommender, most_popular, recommend_for_query
from bookrec.pipeline import PipelineConfig, load_artifacts, run_pipeline

logger = logging.getLogger(__name__)

RESULTS_DIR = config.RESULTS_DIR

# App Global State
app = FastAPI(title="Book-Crossing Recommender")
state: Dict[str, Any] = {}


# ============================================================================
# Pipeline Logic
# ============================================================================
def check_pipeline(results_dir: Path = RESULTS_DIR) -> Dict[str, Any]:
    """Load the pipeline artifacts, running the pipeline first if they are missing."""
    print("Checking pipeline integrity...")

    if not (Path(results_dir) / config.ARTIFACTS_FILE).exists():
        print(f"[MISSING] {config.ARTIFACTS_FILE}")
        run_pipeline(PipelineConfig(results_dir=Path(results_dir)))

    artifacts = load_artifacts(results_dir)
    print("[OK] Pipeline verified.")
    return artifacts


def set_state(artifacts: Dict[str, Any]):
    state.clear()
    state.update(artifacts)


def _require(key: str):
    if key not in state:
        raise HTTPException(status_code=503, detail="Pipeline artifacts not loaded")
    return state[key]


def _book(item_id: str) -> Dict[str, Any]:
    item = _require('catalog').get(item_id)
    if item is None:
        return {'item_id': item_id}
    return {'item_id': item.item_id, 'title': item.title, 'author': item.author,
            'year': item.year, 'publisher': item.publisher}


def _serialize(recommendations: List[Recommendation]) -> List[Dict[str, Any]]:
    return [dict(_book(r.item_id), rank=r.rank, predicted_score=round(float(r.predicted_score), 4))
            for r in recommendations]


# ============================================================================
# Web App Logic
# ============================================================================
@app.on_event("startup")
async def startup_event():
    """Run pipeline checks and load artifacts on startup."""
    set_state(check_pipeline())
    logger.info("Serving %d users, %d books", len(state['model'].users()), len(state['catalog']))
    print("Web App Ready!")


@app.get("/health")
async def health():
    return {'status': 'ok', 'model_loaded': 'model' in state}


@app.get("/stats")
async def stats():
    training_state = _require('training_state')
    return {
        'dataset': _require('stats'),
        'training_state': training_state.value,
        'iterations': len(_require('history')),
        'metrics': _require('metrics'),
    }


@app.get("/search")
async def search(q: str = Query(..., min_length=1), n: int = Query(config.TOP_N, ge=1, le=100)):
    index = _require('search_index')
    scores = index.scores(q)
    return {
        'query': q,
        'tokens': index.tokenize(q),
        'results': [dict(_book(item_id), matches=scores[item_id]) for item_id in index.query(q, n)],
    }


@app.get("/recommend/{user_id}")
async def recommend(user_id: str, n: int = Query(config.TOP_N, ge=1, le=100),
                    q: Optional[str] = None):
    model = _require('model')
    store = _require('store')

    if not model.has_user(user_id):
        # Cold start: most-rated books, optionally restricted to the query hits
        candidates = _require('search_index').query(q, config.SEARCH_DEPTH) if q else None
        recs = most_popular(store, n, candidate_filter=candidates, user_id=user_id)
        return {'user_id': user_id, 'fallback': True, 'query': q, 'recommendations': _serialize(recs)}

    rated = {r.item_id for r in store.by_user(user_id)}
    if q:
        recs = recommend_for_query(model, _require('search_index'), user_id, q, n,
                                   config.SEARCH_DEPTH, exclude=rated)
    else:
        recs = Recommender.top_n(model, user_id, n, exclude=rated)
    return {'user_id': user_id, 'fallback': False, 'query': q, 'recommendations': _serialize(recs)}


@app.get("/predict/{user_id}/{isbn}")
async def predict(user_id: str, isbn: str):
    train_store = _require('train_store')
    if isbn not in _require('catalog'):
        raise HTTPException(status_code=404, detail=f"Unknown ISBN {isbn}")
    if not train_store.by_item(isbn):
        raise HTTPException(status_code=404, detail=f"No ratings for ISBN {isbn}")

    knn = KNNRecommender(state.get('k_neighbors', config.K_NEIGHBORS))
    try:
        predicted = knn.predict(_require('user_graph'), train_store, user_id, isbn)
        method = 'knn'
    except InsufficientNeighborsError:
        predicted = StatsEngine.item_mean(train_store, isbn)
        method = 'item_mean'

    return dict(_book(isbn), user_id=user_id, predicted_rating=round(float(predicted), 4),
                method=method)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S'
    )
    print("\n" + "=" * 60)
    print("STARTING BOOK-CROSSING RECOMMENDER")
    print("=" * 60)
    print("Access the API at: http://127.0.0.1:8000/docs\n")
    uvicorn.run("bookrec.main:app", host="127.0.0.1", port=8000)

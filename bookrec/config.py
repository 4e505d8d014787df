"""
Configuration & Paths
=====================
Default locations and model parameters for the Book-Crossing pipeline.

Paths can be overridden through BOOKREC_DATA_DIR / BOOKREC_RESULTS_DIR,
either in the environment or in a .env file at the project root.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")

# ============================================================================
# Paths
# ============================================================================
DATA_DIR = Path(os.getenv("BOOKREC_DATA_DIR", BASE_DIR / "data"))
RESULTS_DIR = Path(os.getenv("BOOKREC_RESULTS_DIR", BASE_DIR / "results"))

RATINGS_FILE = DATA_DIR / "BX-Book-Ratings.csv"
BOOKS_FILE = DATA_DIR / "BX-Books.csv"
ARTIFACTS_FILE = "bookrec_artifacts.pkl"

# Book-Crossing dumps are semicolon separated latin-1
CSV_SEPARATOR = ";"
CSV_ENCODING = "ISO-8859-1"

# ============================================================================
# Data model
# ============================================================================
ISBN_LENGTH = 10
MIN_RATING = 1
MAX_RATING = 10

# ============================================================================
# Model parameters
# ============================================================================
TOP_N = 10  # Number of recommendations
K_NEIGHBORS = 30  # KNN neighbours used per prediction
SIMILARITY_THRESHOLD = 0.1
HOLDOUT_FRACTION = 0.2
RANDOM_SEED = 42
SEARCH_DEPTH = 200  # search hits used as candidate filter

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from bookrec.als import ALSConfig
from bookrec.data_preprocessing import Catalog, Item, Rating, RatingStore
from bookrec.pipeline import PipelineConfig

I1 = "0000000001"
I2 = "0000000002"

BOOKS = [
    ("0439064872", "Harry Potter and the Chamber of Secrets", "J. K. Rowling", "2000", "Scholastic"),
    ("0439136350", "Harry Potter and the Prisoner of Azkaban", "J. K. Rowling", "1999", "Scholastic"),
    ("0345339681", "The Hobbit", "J.R.R. Tolkien", "1986", "Del Rey"),
    ("0060928336", "Divine Secrets of the Ya-Ya Sisterhood", "Rebecca Wells", "1997", "Perennial"),
    ("0316666343", "The Lovely Bones: A Novel", "Alice Sebold", "2002", "Little, Brown"),
    ("0385504209", "The Da Vinci Code", "Dan Brown", "2003", "Doubleday"),
    ("0971880107", "Wild Animus", "Rich Shapero", "2004", "Too Far"),
    ("0440234743", "The Testament", "John Grisham", "1999", "Dell"),
    ("0140444300", "Les Misérables", "Victor Hugo", "1982", "Penguin Books"),
]

# ═══════════════════════════════════════════════════
# Three users, two books
# ═══════════════════════════════════════════════════


@pytest.fixture
def scenario_ratings():
    return [
        Rating("u1", I1, 5),
        Rating("u1", I2, 3),
        Rating("u2", I1, 4),
        Rating("u2", I2, 5),
        Rating("u3", I1, 2),
    ]


@pytest.fixture
def scenario_catalog():
    catalog = Catalog()
    catalog.load([
        Item(I1, "First Book", "Some Author", "2001", "Some Press"),
        Item(I2, "Second Book", "Other Author", "2002", "Other Press"),
    ])
    return catalog


@pytest.fixture
def scenario_store(scenario_ratings, scenario_catalog):
    return RatingStore.from_ratings(scenario_ratings, catalog=scenario_catalog)


# ═══════════════════════════════════════════════════
# Random dense-ish store
# ═══════════════════════════════════════════════════


def make_random_store(n_users=30, n_items=20, density=0.4, seed=0):
    rng = np.random.default_rng(seed)
    ratings = []
    for u in range(n_users):
        rated = rng.random(n_items) < density
        rated[u % n_items] = True  # every user rates at least one item
        for i in np.nonzero(rated)[0]:
            ratings.append(Rating(f"user{u:03d}", f"{i:010d}", int(rng.integers(1, 11))))
    return RatingStore.from_ratings(ratings)


@pytest.fixture
def random_store():
    return make_random_store()


# ═══════════════════════════════════════════════════
# Book-Crossing style CSV dumps
# ═══════════════════════════════════════════════════


def write_bx_dataset(directory, n_users=12, seed=7):
    """Write BX-Books.csv / BX-Book-Ratings.csv with a few malformed rows mixed in."""
    rng = np.random.default_rng(seed)

    books = pd.DataFrame(BOOKS, columns=["ISBN", "Book-Title", "Book-Author",
                                         "Year-Of-Publication", "Publisher"])
    books["Image-URL-S"] = "http://images.example.com/s.jpg"

    rows = []
    for u in range(n_users):
        picks = rng.choice(len(BOOKS), size=int(rng.integers(4, 7)), replace=False)
        for b in picks:
            rows.append((str(1000 + u), BOOKS[b][0], str(int(rng.integers(1, 11)))))
    rows += [
        ("2001", "0439064872", "0"),  # implicit
        ("2001", "12345", "7"),  # short ISBN
        ("2002", "9999999999", "8"),  # not in catalog
    ]
    ratings = pd.DataFrame(rows, columns=["User-ID", "ISBN", "Book-Rating"])

    books_path = directory / "BX-Books.csv"
    ratings_path = directory / "BX-Book-Ratings.csv"
    books.to_csv(books_path, sep=";", encoding="ISO-8859-1", index=False)
    ratings.to_csv(ratings_path, sep=";", encoding="ISO-8859-1", index=False)
    return ratings_path, books_path, len(rows) - 3


@pytest.fixture
def bx_dataset(tmp_path):
    return write_bx_dataset(tmp_path)


def tiny_config(data_dir, results_dir, **overrides):
    """PipelineConfig over a freshly written tiny dataset."""
    ratings_path, books_path, _ = write_bx_dataset(data_dir)
    params = dict(
        ratings_path=ratings_path,
        books_path=books_path,
        results_dir=results_dir,
        min_user_ratings=1,
        min_item_ratings=1,
        als=ALSConfig(rank=2, max_iterations=5),
        n_sample_users=2,
        demo_query="harry potter",
    )
    params.update(overrides)
    return PipelineConfig(**params)

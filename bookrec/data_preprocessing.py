"""
Data Loading & Integrity Filtering
==================================
Loads the Book-Crossing ratings and books dumps and keeps them in memory:

- Catalog: book metadata keyed by ISBN (used for joins and display)
- RatingStore: sparse (user, isbn) -> rating table with per-user and
  per-item index maps over the same Rating objects

Integrity filters applied on load (rows are dropped and counted, never raised):
- rating value must be an integer in 1..10 (0 is the implicit "seen" signal)
- ISBN must be exactly 10 characters
- every required field must be present
- ratings must reference a book in the catalog (inner join)
"""

import logging
import numbers
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import pandas as pd

from bookrec import config
from bookrec.errors import ValidationError

logger = logging.getLogger(__name__)

RATING_COLUMNS = ['userid', 'isbn', 'rating']
BOOK_COLUMNS = ['isbn', 'title', 'author', 'year', 'publisher']

# Book-Crossing headers -> internal names
COLUMN_ALIASES = {
    'user-id': 'userid',
    'userid': 'userid',
    'isbn': 'isbn',
    'book-rating': 'rating',
    'rating': 'rating',
    'book-title': 'title',
    'title': 'title',
    'book-author': 'author',
    'author': 'author',
    'year-of-publication': 'year',
    'year': 'year',
    'publisher': 'publisher',
}


# ============================================================================
# PART 1: DATA MODEL
# ============================================================================

@dataclass(frozen=True)
class Rating:
    user_id: Any
    item_id: str
    value: int


@dataclass(frozen=True)
class Item:
    item_id: str
    title: str
    author: str
    year: Any
    publisher: str


@dataclass(frozen=True)
class Recommendation:
    user_id: Any
    item_id: str
    rank: int
    predicted_score: float


@dataclass
class LoadReport:
    """Row counts before and after integrity filtering."""

    original: int = 0
    final: int = 0
    dropped: Dict[str, int] = field(default_factory=dict)

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())

    def summary(self) -> str:
        reasons = ', '.join(f"{k}={v:,}" for k, v in sorted(self.dropped.items()))
        return f"{self.original:,} -> {self.final:,} rows (dropped: {reasons or 'none'})"


def _is_missing(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:  # NaN
        return True
    return isinstance(value, str) and not value.strip()


def validate_item(item: Item) -> None:
    """Raise ValidationError if the book row breaks an invariant."""
    for name in ('item_id', 'title', 'author', 'year', 'publisher'):
        if _is_missing(getattr(item, name)):
            raise ValidationError(f"Book {item.item_id!r} has no {name}", reason='missing_field')
    if not isinstance(item.item_id, str) or len(item.item_id) != config.ISBN_LENGTH:
        raise ValidationError(f"Bad ISBN {item.item_id!r}", reason='bad_isbn')


def validate_rating(rating: Rating, catalog: Optional['Catalog'] = None) -> None:
    """Raise ValidationError if the rating row breaks an invariant."""
    for name in ('user_id', 'item_id', 'value'):
        if _is_missing(getattr(rating, name)):
            raise ValidationError(f"Rating {rating!r} has no {name}", reason='missing_field')

    if not isinstance(rating.item_id, str) or len(rating.item_id) != config.ISBN_LENGTH:
        raise ValidationError(f"Bad ISBN {rating.item_id!r}", reason='bad_isbn')

    value = rating.value
    if (isinstance(value, bool) or not isinstance(value, numbers.Integral)
            or not config.MIN_RATING <= value <= config.MAX_RATING):
        raise ValidationError(f"Bad rating value {value!r}", reason='bad_rating')

    if catalog is not None and rating.item_id not in catalog:
        raise ValidationError(f"ISBN {rating.item_id!r} not in catalog", reason='unknown_item')


# ============================================================================
# PART 2: CATALOG
# ============================================================================

class Catalog:
    """Book metadata keyed by ISBN."""

    def __init__(self):
        self._items: Dict[str, Item] = {}

    def load(self, items: Iterable[Item]) -> LoadReport:
        """Validate and add books. Invalid rows are dropped; duplicate ISBNs keep the first row."""
        original = 0
        dropped = Counter()
        for item in items:
            original += 1
            try:
                validate_item(item)
            except ValidationError as exc:
                dropped[exc.reason] += 1
                continue
            if item.item_id in self._items:
                dropped['duplicate_item'] += 1
                continue
            self._items[item.item_id] = item

        report = LoadReport(original=original, final=original - sum(dropped.values()),
                            dropped=dict(dropped))
        logger.info("Catalog load: %s", report.summary())
        return report

    def get(self, item_id) -> Optional[Item]:
        return self._items.get(item_id)

    def items(self) -> List[Item]:
        return list(self._items.values())

    def item_ids(self) -> List[str]:
        return list(self._items)

    def __contains__(self, item_id) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(i.item_id, i.title, i.author, i.year, i.publisher) for i in self._items.values()],
            columns=['item_id', 'title', 'author', 'year', 'publisher'],
        )


# ============================================================================
# PART 3: RATING STORE
# ============================================================================

class RatingStore:
    """
    In-memory sparse rating table keyed by (user, item).

    Ratings are held once; by_user() / by_item() return tuples of the same
    Rating objects from index maps rebuilt after every load.
    Duplicate (user, item) pairs: the last row wins.
    """

    def __init__(self):
        self._ratings: Dict[Tuple[Any, str], Rating] = {}
        self._by_user: Dict[Any, Tuple[Rating, ...]] = {}
        self._by_item: Dict[str, Tuple[Rating, ...]] = {}

    @classmethod
    def from_ratings(cls, ratings: Iterable[Rating], catalog: Optional[Catalog] = None) -> 'RatingStore':
        store = cls()
        store.load(ratings, catalog=catalog)
        return store

    @classmethod
    def _from_valid(cls, ratings: Iterable[Rating]) -> 'RatingStore':
        store = cls()
        for rating in ratings:
            store._ratings[(rating.user_id, rating.item_id)] = rating
        store._reindex()
        return store

    def load(self, ratings: Iterable[Rating], catalog: Optional[Catalog] = None) -> LoadReport:
        """
        Validate and add ratings.

        Malformed rows raise ValidationError internally and are dropped; the
        drop counts per reason come back in the LoadReport.
        """
        original = 0
        dropped = Counter()
        for rating in ratings:
            original += 1
            try:
                validate_rating(rating, catalog)
            except ValidationError as exc:
                dropped[exc.reason] += 1
                continue
            key = (rating.user_id, rating.item_id)
            if key in self._ratings:
                dropped['duplicate'] += 1
            self._ratings[key] = rating

        self._reindex()
        report = LoadReport(original=original, final=original - sum(dropped.values()),
                            dropped=dict(dropped))
        if report.dropped_total:
            logger.warning("Rating load dropped %d rows: %s", report.dropped_total, report.summary())
        else:
            logger.info("Rating load: %s", report.summary())
        return report

    def _reindex(self):
        by_user: Dict[Any, List[Rating]] = {}
        by_item: Dict[str, List[Rating]] = {}
        for rating in self._ratings.values():
            by_user.setdefault(rating.user_id, []).append(rating)
            by_item.setdefault(rating.item_id, []).append(rating)
        self._by_user = {k: tuple(v) for k, v in by_user.items()}
        self._by_item = {k: tuple(v) for k, v in by_item.items()}

    def by_user(self, user_id) -> Tuple[Rating, ...]:
        return self._by_user.get(user_id, ())

    def by_item(self, item_id) -> Tuple[Rating, ...]:
        return self._by_item.get(item_id, ())

    def get(self, user_id, item_id) -> Optional[Rating]:
        return self._ratings.get((user_id, item_id))

    def distinct_users(self) -> List[Any]:
        return list(self._by_user)

    def distinct_items(self) -> List[str]:
        return list(self._by_item)

    def count(self) -> int:
        return len(self._ratings)

    def ratings(self) -> List[Rating]:
        return list(self._ratings.values())

    def without(self, ratings: Iterable[Rating]) -> 'RatingStore':
        """New store holding every rating except the given ones."""
        removed = {(r.user_id, r.item_id) for r in ratings}
        return RatingStore._from_valid(
            r for key, r in self._ratings.items() if key not in removed
        )

    def filter_min_counts(self, min_user_ratings: int = 1, min_item_ratings: int = 1) -> 'RatingStore':
        """
        New store where every user and every item keeps at least the given
        number of ratings. Filtering repeats until stable, since dropping an
        item can push a user under the limit and vice versa.
        """
        ratings = list(self._ratings.values())
        while True:
            user_counts = Counter(r.user_id for r in ratings)
            item_counts = Counter(r.item_id for r in ratings)
            kept = [r for r in ratings
                    if user_counts[r.user_id] >= min_user_ratings
                    and item_counts[r.item_id] >= min_item_ratings]
            if len(kept) == len(ratings):
                break
            ratings = kept

        logger.info("Min-count filter (users>=%d, items>=%d): %d -> %d ratings",
                    min_user_ratings, min_item_ratings, self.count(), len(ratings))
        return RatingStore._from_valid(ratings)

    def __len__(self) -> int:
        return len(self._ratings)

    def __iter__(self) -> Iterator[Rating]:
        return iter(self._ratings.values())

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(r.user_id, r.item_id, r.value) for r in self._ratings.values()],
            columns=['user_id', 'item_id', 'rating'],
        )


# ============================================================================
# PART 4: CSV INGESTION
# ============================================================================

def _normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    renamed = {}
    for col in df.columns:
        key = str(col).strip().lower().replace('_', '-')
        renamed[col] = COLUMN_ALIASES.get(key, key)
    return df.rename(columns=renamed)


def _read_csv(path, columns: List[str]) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset file not found at {path}")

    df = pd.read_csv(
        path,
        sep=config.CSV_SEPARATOR,
        encoding=config.CSV_ENCODING,
        dtype=str,
        escapechar='\\',
        on_bad_lines='skip',
    )
    df = _normalize_columns(df)

    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{path.name} is missing columns: {missing}")
    return df[columns]


def read_ratings_csv(path=None) -> pd.DataFrame:
    """Read a ratings file with columns (userid; isbn; rating)."""
    return _read_csv(path or config.RATINGS_FILE, RATING_COLUMNS)


def read_books_csv(path=None) -> pd.DataFrame:
    """Read a books file with at least (isbn; title; author; year; publisher)."""
    return _read_csv(path or config.BOOKS_FILE, BOOK_COLUMNS)


def _clean(value):
    if _is_missing(value):
        return None
    return str(value).strip()


def _parse_rating(value):
    value = _clean(value)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        pass
    try:
        number = float(value)
    except ValueError:
        return value
    return int(number) if number.is_integer() else number


def ratings_from_frame(df: pd.DataFrame) -> Iterator[Rating]:
    for user_id, isbn, value in df[RATING_COLUMNS].itertuples(index=False, name=None):
        yield Rating(user_id=_clean(user_id), item_id=_clean(isbn), value=_parse_rating(value))


def items_from_frame(df: pd.DataFrame) -> Iterator[Item]:
    for isbn, title, author, year, publisher in df[BOOK_COLUMNS].itertuples(index=False, name=None):
        yield Item(item_id=_clean(isbn), title=_clean(title), author=_clean(author),
                   year=_clean(year), publisher=_clean(publisher))


def load_datasets(ratings_path=None, books_path=None):
    """
    Load both dumps and apply the integrity filters.

    Returns:
        (catalog, store, reports) where reports maps 'books' / 'ratings'
        to their LoadReport.
    """
    print("=" * 60)
    print("LOADING DATA")
    print("=" * 60)

    df_books = read_books_csv(books_path)
    catalog = Catalog()
    books_report = catalog.load(items_from_frame(df_books))
    print(f"[LOADED] Books: {books_report.summary()}")

    df_ratings = read_ratings_csv(ratings_path)
    store = RatingStore()
    ratings_report = store.load(ratings_from_frame(df_ratings), catalog=catalog)
    print(f"[LOADED] Ratings: {ratings_report.summary()}")
    print(f"         Users: {len(store.distinct_users()):,}")
    print(f"         Items: {len(store.distinct_items()):,}")

    return catalog, store, {'books': books_report, 'ratings': ratings_report}

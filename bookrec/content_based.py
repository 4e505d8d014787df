"""
Content-Based Search Index
==========================
Token index over book text fields (title, author, publisher).

Text is lowercased and split on whitespace/punctuation with scikit-learn's
CountVectorizer analyser. A query ranks books by how many distinct query
tokens they contain; the result is meant as a candidate filter for the
recommender, not as a full-text ranking.
"""

import logging
from typing import Dict, Iterable, List, Sequence, Set, Union

import numpy as np
from scipy.sparse import csc_matrix, csr_matrix
from sklearn.feature_extraction.text import CountVectorizer

from bookrec.data_preprocessing import Catalog, Item

logger = logging.getLogger(__name__)

DEFAULT_FIELDS = ('title', 'author', 'publisher')
TOKEN_PATTERN = r"(?u)\b\w+\b"


class SearchIndex:
    """Inverted index token -> item ids."""

    def __init__(self):
        self._item_ids: List[str] = []
        self._vectorizer = CountVectorizer(lowercase=True, token_pattern=TOKEN_PATTERN, binary=True)
        self._doc_terms = csr_matrix((0, 0))
        self._term_docs = csc_matrix((0, 0))
        self._fitted = False

    @classmethod
    def build(cls, items: Union[Catalog, Iterable[Item]],
              fields: Sequence[str] = DEFAULT_FIELDS) -> 'SearchIndex':
        print("\n" + "=" * 60)
        print("BUILDING SEARCH INDEX")
        print("=" * 60)

        index = cls()
        items = items.items() if isinstance(items, Catalog) else list(items)
        index._item_ids = [item.item_id for item in items]

        documents = [
            ' '.join(str(getattr(item, name)) for name in fields
                     if getattr(item, name, None) is not None)
            for item in items
        ]

        analyzer = index._vectorizer.build_analyzer()
        if not any(analyzer(doc) for doc in documents):
            print("[SKIP] No tokens to index")
            return index

        index._doc_terms = index._vectorizer.fit_transform(documents).tocsr()
        index._term_docs = index._doc_terms.tocsc()
        index._fitted = True

        print(f"[DONE] Indexed {len(index._item_ids):,} books, "
              f"{index.vocabulary_size():,} tokens ({', '.join(fields)})")
        return index

    def vocabulary_size(self) -> int:
        return len(self._vectorizer.vocabulary_) if self._fitted else 0

    def tokenize(self, text: str) -> List[str]:
        return self._vectorizer.build_analyzer()(text)

    def items_for_token(self, token: str) -> Set[str]:
        if not self._fitted:
            return set()
        column = self._vectorizer.vocabulary_.get(token.lower())
        if column is None:
            return set()
        start, end = self._term_docs.indptr[column], self._term_docs.indptr[column + 1]
        return {self._item_ids[row] for row in self._term_docs.indices[start:end]}

    def scores(self, text: str) -> Dict[str, int]:
        """Number of distinct query tokens found in each matching book."""
        if not self._fitted:
            return {}
        query = self._vectorizer.transform([text])
        matches = np.asarray((self._doc_terms @ query.T).todense()).ravel()
        hits = np.nonzero(matches)[0]
        return {self._item_ids[row]: int(matches[row]) for row in hits}

    def query(self, text: str, n: int = 10) -> List[str]:
        """Top-n item ids by matching-token count, ties by item id."""
        ranked = sorted(self.scores(text).items(), key=lambda pair: (-pair[1], pair[0]))
        logger.debug("Query %r matched %d books", text, len(ranked))
        return [item_id for item_id, _ in ranked[:n]]

"""
Content Vectorizer.

Turns content text and metadata into fixed-dimension feature vectors with
scikit-learn's ``HashingVectorizer``. The hashing trick has no fitted
vocabulary, so a vector computed for brand-new content lies in the same
space as every vector of the published model (same dimension, same
token -> column mapping) and can be served before the next training pass.

Categories and tags are added as prefixed tokens (``cat:news``,
``tag:python``) repeated to weigh more than body words.

Example:
    >>> vectorizer = ContentVectorizer(dimension=128)
    >>> vectorizer.vectorize(item).shape
    (128,)
"""

from typing import Dict, Iterable, List
import re

import numpy as np
from sklearn.feature_extraction.text import HashingVectorizer

from ..store.catalog import ContentItem

CATEGORY_WEIGHT = 3
TAG_WEIGHT = 2
TITLE_WEIGHT = 2

_TOKEN_RE = re.compile(r'(?u)\b\w\w+\b')


class ContentVectorizer:
    """Stateless text -> vector mapping (L2-normalized, non-negative)."""

    def __init__(self, dimension: int):
        self.dimension = dimension
        self._hasher = HashingVectorizer(
            n_features=dimension,
            alternate_sign=False,
            norm='l2',
            analyzer=self._analyze,
        )

    def _analyze(self, doc: str) -> List[str]:
        # Documents are pre-tokenized by document_tokens
        return [token for token in doc.split(' ') if token]

    @staticmethod
    def document_tokens(item: ContentItem) -> List[str]:
        tokens: List[str] = []
        tokens += _words(item.title) * TITLE_WEIGHT
        tokens += _words(item.body)
        for category in item.categories:
            tokens += [f'cat:{_norm(category)}'] * CATEGORY_WEIGHT
        for tag in item.tags:
            tokens += [f'tag:{_norm(tag)}'] * TAG_WEIGHT
        if item.author:
            tokens.append(f'author:{_norm(item.author)}')
        return tokens

    def vectorize(self, item: ContentItem) -> np.ndarray:
        return self.vectorize_many([item])[0]

    def vectorize_many(self, items: Iterable[ContentItem]) -> np.ndarray:
        """Vectorize a batch; rows follow input order."""
        docs = [' '.join(self.document_tokens(item)) for item in items]
        if not docs:
            return np.zeros((0, self.dimension))
        return self._hasher.transform(docs).toarray()

    def vectorize_terms(self, preferences: Dict[str, float]) -> np.ndarray:
        """
        Vectorize an explicit preference overlay ``{term: weight}``.

        A term matches body words, categories and tags alike; negative
        weights push the vector away from the term. Result is L2-normalized
        (zero if there are no usable terms).
        """
        vector = np.zeros(self.dimension)
        for term, weight in sorted(preferences.items()):
            if not weight:
                continue
            key = _norm(term)
            doc = ' '.join([key, f'cat:{key}', f'tag:{key}'])
            vector += float(weight) * self._hasher.transform([doc]).toarray()[0]
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector


def _norm(text: str) -> str:
    return '_'.join(str(text).lower().split())


def _words(text: str) -> List[str]:
    return _TOKEN_RE.findall((text or '').lower())

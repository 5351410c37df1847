from collections import Counter
from typing import Optional, Protocol

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from models import UNCATEGORIZED


class Categorizer(Protocol):
    def suggest(self, title: str) -> Optional[str]: ...

    def record(self, title: str, category: str) -> None: ...


def _normalize(title: str) -> str:
    return " ".join(title.lower().split())


class LearningCategorizer:
    """Suggests a category from titles seen before, tolerating small typos."""

    def __init__(self, min_similarity: float = 0.8) -> None:
        self.min_similarity = min_similarity
        self._examples: dict[str, Counter] = {}

    def record(self, title: str, category: str) -> None:
        key = _normalize(title)
        if not key or not category.strip():
            return
        self._examples.setdefault(key, Counter())[category.strip()] += 1

    def suggest(self, title: str) -> Optional[str]:
        key = _normalize(title)
        if not key or not self._examples:
            return None
        counts = self._examples.get(key)
        if counts is None:
            match = process.extractOne(
                key,
                list(self._examples),
                scorer=Levenshtein.normalized_similarity,
                score_cutoff=self.min_similarity,
            )
            if match is None:
                return None
            counts = self._examples[match[0]]
        return counts.most_common(1)[0][0]


def resolve_category(
    title: str, category: Optional[str], categorizer: Optional[Categorizer]
) -> str:
    if category:
        return category
    if categorizer is not None:
        suggested = categorizer.suggest(title)
        if suggested:
            return suggested
    return UNCATEGORIZED

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from .models import GuestRecord

# (record attribute, weight); a guest-name hit outranks any other field.
FIELD_WEIGHTS: Tuple[Tuple[str, float], ...] = (
    ("guest", 1.0),
    ("plus_one", 0.7),
    ("responsible", 0.7),
    ("company", 0.4),
)
DEFAULT_THRESHOLD = 0.34


def normalize_text(value: str | None) -> str:
    """Lower-case ``value`` and strip diacritics and surplus whitespace."""

    decomposed = unicodedata.normalize("NFD", value or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


def substring_distance(pattern: str, text: str) -> int:
    """Smallest edit distance between ``pattern`` and any substring of ``text``."""

    size = len(pattern)
    if not size:
        return 0
    previous = list(range(size + 1))
    best = previous[size]
    for char in text:
        current = [0]
        for index in range(1, size + 1):
            cost = 0 if pattern[index - 1] == char else 1
            current.append(min(previous[index] + 1, current[index - 1] + 1, previous[index - 1] + cost))
        if current[size] < best:
            best = current[size]
            if not best:
                break
        previous = current
    return best


@dataclass(frozen=True)
class SearchHit:
    record: GuestRecord
    score: float
    field: str


class SearchIndex:
    """Fuzzy, accent-insensitive lookup over one snapshot of loaded records."""

    def __init__(
        self,
        records: Iterable[GuestRecord],
        weights: Sequence[Tuple[str, float]] = FIELD_WEIGHTS,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        self.threshold = threshold
        self._entries: List[Tuple[GuestRecord, List[Tuple[str, float, str]]]] = [
            (record, [(name, weight, normalize_text(getattr(record, name) or "")) for name, weight in weights])
            for record in records
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def hits(self, query: str) -> List[SearchHit]:
        pattern = normalize_text(query)
        if not pattern:
            return [SearchHit(record, 0.0, "") for record, _ in self._entries]

        max_edits = int(len(pattern) * self.threshold)
        ranked: List[Tuple[float, int, SearchHit]] = []
        for position, (record, fields) in enumerate(self._entries):
            best: SearchHit | None = None
            for name, weight, text in fields:
                if not text:
                    continue
                distance = substring_distance(pattern, text)
                if distance > max_edits:
                    continue
                score = weight * (1 - distance / len(pattern))
                if best is None or score > best.score:
                    best = SearchHit(record, score, name)
            if best is not None:
                ranked.append((-best.score, position, best))
        ranked.sort(key=lambda item: (item[0], item[1]))
        return [hit for _, _, hit in ranked]

    def search(self, query: str) -> List[GuestRecord]:
        return [hit.record for hit in self.hits(query)]


class WindowSearch:
    """Keeps a :class:`SearchIndex` in step with a paginator's loaded window.

    The index is rebuilt on the first search after the window changed.
    """

    def __init__(self, paginator, **index_options) -> None:
        self.paginator = paginator
        self.index_options = index_options
        self._index: SearchIndex | None = None
        self._version = -1

    @property
    def index(self) -> SearchIndex:
        if self._index is None or self._version != self.paginator.version:
            self._index = SearchIndex(self.paginator.records, **self.index_options)
            self._version = self.paginator.version
        return self._index

    def search(self, query: str) -> List[GuestRecord]:
        return self.index.search(query)

"""Interface to the embedding/vector index used for semantic lookups."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol


@dataclass(frozen=True)
class RetrievedEntry:
    identifier: str
    score: float
    snippet: str


class Retriever(Protocol):
    """Ranked semantic search over files or context entries."""

    def search(self, query: str, limit: int = 5) -> List[RetrievedEntry]:  # pragma: no cover - interface
        """Return entries ordered by descending relevance."""


class NullRetriever:
    """Retriever used when no vector index is configured."""

    def search(self, query: str, limit: int = 5) -> List[RetrievedEntry]:
        return []


class StaticRetriever:
    """Returns a fixed ranking filtered by naive keyword overlap (useful for tests)."""

    def __init__(self, entries: List[RetrievedEntry]) -> None:
        self._entries = sorted(entries, key=lambda entry: entry.score, reverse=True)

    def search(self, query: str, limit: int = 5) -> List[RetrievedEntry]:
        words = {word for word in query.lower().split() if word}
        hits = [
            entry
            for entry in self._entries
            if not words or words & set(f"{entry.identifier} {entry.snippet}".lower().split())
        ]
        return hits[:limit]

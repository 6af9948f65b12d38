"""Species search — tiered name lookup over the reference dataset.

Results come in three tiers, each excluding what an earlier tier returned:

1. exact match (case-insensitive, trimmed) on vernacular or scientific name
2. substring match on either name
3. fuzzy match on either name, best first

Exact and substring hits always rank above fuzzy ones; fuzzy results only fill
the remaining slots. The index is an in-memory snapshot of the reference
store and is rebuilt whenever the store reloads.

Queries shorter than three characters are not special-cased; they simply
return large, low-value result sets, so callers usually wait for more input.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from rapidfuzz import fuzz

if TYPE_CHECKING:
    from fieldlog.core.models import SpeciesEntry
    from fieldlog.storage.reference_db import ReferenceDataStore

log = structlog.get_logger()

DEFAULT_LIMIT = 20

# Distance on a 0 (exact) .. 1 (no match) scale; permissive on purpose.
DEFAULT_FUZZY_THRESHOLD = 0.3


class SpeciesSearchIndex:
    """Tiered exact/substring/fuzzy lookup of SpeciesEntry by name."""

    def __init__(
        self,
        reference: ReferenceDataStore,
        *,
        limit: int = DEFAULT_LIMIT,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
    ) -> None:
        self._reference = reference
        self._limit = limit
        self._fuzzy_threshold = fuzzy_threshold
        self._entries: list[SpeciesEntry] | None = None
        self._names: list[tuple[str, str]] = []
        self.builds = 0
        reference.on_reload(self.invalidate)

    def invalidate(self) -> None:
        self._entries = None

    def rebuild(self) -> None:
        entries = self._reference.all_entries()
        self._entries = entries
        self._names = [
            (e.vernacular_name.lower().strip(), e.scientific_name.lower().strip())
            for e in entries
        ]
        self.builds += 1
        log.debug("species_index_built", entries=len(entries))

    def _ensure_built(self) -> list[SpeciesEntry]:
        if self._entries is None:
            self.rebuild()
        assert self._entries is not None
        return self._entries

    def _distance(self, query: str, name: str) -> float:
        if not name:
            return 1.0
        if len(name) < len(query):
            # partial_ratio would align a short name inside the query and score it perfect.
            return 1.0 - fuzz.ratio(query, name) / 100.0
        return 1.0 - fuzz.partial_ratio(query, name) / 100.0

    def search(self, query: str, limit: int | None = None) -> list[SpeciesEntry]:
        limit = min(limit or self._limit, self._limit)
        entries = self._ensure_built()
        q = query.lower().strip()
        if not q:
            return []

        exact: list[int] = []
        partial: list[int] = []
        rest: list[int] = []
        for i, (vernacular, scientific) in enumerate(self._names):
            if q == vernacular or q == scientific:
                exact.append(i)
            elif q in vernacular or q in scientific:
                partial.append(i)
            else:
                rest.append(i)

        results = exact + partial
        if len(results) < limit:
            scored = []
            for i in rest:
                vernacular, scientific = self._names[i]
                distance = min(self._distance(q, vernacular), self._distance(q, scientific))
                if distance <= self._fuzzy_threshold:
                    scored.append((distance, i))
            scored.sort()
            results.extend(i for _, i in scored)

        log.debug("species_search", query=q, exact=len(exact), partial=len(partial),
                  total=len(results))
        return [entries[i] for i in results[:limit]]

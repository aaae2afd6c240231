"""
annals.py - Historical record of finalized game years

One results document per year. Recording is an upsert, so re-running a
year-end settlement replaces rather than duplicates the entry.
"""

from __future__ import annotations
from typing import Any, Dict, Iterable, List
import logging

from .core import AnnalsEntry, AnnalsNotFound
from .store import GameStore

logger = logging.getLogger(__name__)


class AnnalsStore:
    """Year-keyed results over a GameStore."""

    def __init__(self, store: GameStore):
        self.store = store

    def record_results(self, year: int, results: Iterable[Dict[str, Any]]) -> AnnalsEntry:
        entry = AnnalsEntry(year=int(year), results=tuple(dict(r) for r in results))
        replaced = self.store.get_annals(entry.year) is not None
        self.store.upsert_annals(entry)
        logger.info(
            "[ANNALS] :: %s results for %s (%d players)",
            "Updated" if replaced else "Recorded", entry.year, len(entry.results),
        )
        return entry

    def get_results(self, year: int) -> List[Dict[str, Any]]:
        """
        Raises:
            AnnalsNotFound: No results were recorded for year
        """
        entry = self.store.get_annals(int(year))
        if entry is None:
            raise AnnalsNotFound(f"No annals found for {year}")
        return [dict(r) for r in entry.results]

    def years(self) -> List[int]:
        return [e.year for e in self.store.list_annals()]

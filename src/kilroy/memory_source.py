"""memory_source.py

Common shape of every origin of geotagged memories.

A source owns one :class:`SpatialIndex` and a metadata cache keyed by item
id.  :meth:`MemorySource.build_index` reads the whole origin into a *fresh*
index and cache and swaps both in with a single assignment, so a query
never observes a half-built index.  If the build fails or is abandoned,
the previous index stays in place.

:meth:`MemorySource.find_nearby` only reads already-indexed state; it never
goes back to the origin.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from .grid_index import GRID_RESOLUTION_DEG, SpatialIndex, build_index
from .models import GeoPoint, IndexedItem

logger = logging.getLogger(__name__)

M = TypeVar("M")  # cached metadata record
R = TypeVar("R")  # hydrated query result


@dataclass(frozen=True)
class _IndexState(Generic[M]):
    index: SpatialIndex
    cache: Dict[str, M] = field(default_factory=dict)


class MemorySource(ABC, Generic[M, R]):
    """Base class for a spatially indexed origin of memories.

    Subclasses implement:

    - :meth:`_records` -- enumerate raw records from the origin
    - :meth:`_parse` -- turn a raw record into cached metadata, or None to skip it
    - :meth:`_locate` -- ``(id, coordinate, timestamp)`` of a metadata record
    - :meth:`_hydrate` -- build the query result for a metadata record

    Raising ``KeyError``, ``TypeError`` or ``ValueError`` from
    :meth:`_parse` also skips the record.  Any other exception from the
    origin aborts the build and propagates.
    """

    #: Short tag identifying the source in aggregated results.
    name: str = "source"

    #: Maximum number of items indexed per build; None means unbounded.
    max_items: Optional[int] = None

    def __init__(self, resolution_deg: float = GRID_RESOLUTION_DEG):
        self.resolution_deg = resolution_deg
        self._state: _IndexState[M] = _IndexState(SpatialIndex(resolution_deg))
        self.is_indexing = False

    # --------------------------------------------------------
    # Subclass hooks
    # --------------------------------------------------------

    @abstractmethod
    def _records(self) -> Iterable[Any]:
        ...

    @abstractmethod
    def _parse(self, record: Any) -> Optional[M]:
        ...

    @abstractmethod
    def _locate(self, meta: M) -> Tuple[str, GeoPoint, datetime]:
        ...

    @abstractmethod
    def _hydrate(self, meta: M, distance_m: float) -> R:
        ...

    # --------------------------------------------------------
    # Build
    # --------------------------------------------------------

    def build_index(self) -> int:
        """Re-read the origin and replace the index; returns the indexed count.

        Stops early once :attr:`max_items` items are indexed.  Records
        missing location data are skipped.
        """
        self.is_indexing = True
        skipped = 0
        items: List[IndexedItem] = []
        cache: Dict[str, M] = {}
        try:
            records = iter(self._records())
            try:
                for record in records:
                    entry = self._entry(record)
                    if entry is None:
                        skipped += 1
                        continue
                    item, meta = entry
                    items.append(item)
                    cache[item.id] = meta
                    if self.max_items is not None and len(cache) >= self.max_items:
                        logger.info("%s: reached cap of %d items", self.name, self.max_items)
                        break
            finally:
                close = getattr(records, "close", None)
                if close is not None:
                    close()

            state = _IndexState(build_index(items, self.resolution_deg), cache)
        finally:
            self.is_indexing = False

        self._state = state
        logger.info(
            "%s: indexed %d geotagged items (%d skipped)", self.name, len(state.index), skipped
        )
        return len(state.index)

    def _entry(self, record: Any) -> Optional[Tuple[IndexedItem, M]]:
        try:
            meta = self._parse(record)
            if meta is None:
                return None
            item_id, coordinate, timestamp = self._locate(meta)
            item = IndexedItem(id=item_id, coordinate=coordinate, timestamp=timestamp)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug("%s: skipping malformed record: %s", self.name, e)
            return None
        return item, meta

    # --------------------------------------------------------
    # Incremental updates
    # --------------------------------------------------------

    def _upsert(self, record: Any) -> bool:
        """Add or replace one record in the live index; False if it was skipped."""
        entry = self._entry(record)
        if entry is None:
            return False
        item, meta = entry
        state = self._state
        state.index.add(item)
        state.cache[item.id] = meta
        return True

    def _discard(self, item_id: str) -> bool:
        state = self._state
        state.cache.pop(item_id, None)
        return state.index.remove(item_id)

    # --------------------------------------------------------
    # Query
    # --------------------------------------------------------

    def find_nearby(self, location: GeoPoint, radius_m: float) -> List[R]:
        """Memories within *radius_m* of *location*, nearest first."""
        state = self._state
        return [
            self._hydrate(state.cache[item_id], d)
            for item_id, d in state.index.query_radius(location, radius_m)
        ]

    def count_nearby(self, location: GeoPoint, radius_m: float) -> int:
        return len(self._state.index.query_radius(location, radius_m))

    def pins(self) -> List[IndexedItem]:
        """Every indexed item, e.g. for drawing the map."""
        return self._state.index.items()

    def get(self, item_id: str) -> Optional[M]:
        return self._state.cache.get(item_id)

    @property
    def indexed_count(self) -> int:
        return len(self._state.index)

    def reset(self) -> None:
        """Forget everything indexed so far."""
        self._state = _IndexState(SpatialIndex(self.resolution_deg))

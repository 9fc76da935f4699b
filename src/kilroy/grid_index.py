"""
grid_index.py

Fixed-resolution lat/lon grid index for geotagged memories.

Design goals:
- O(1) insert / remove by item id
- each id lives in exactly one cell bucket
- constant cell size in degrees (~50 m at mid-latitudes)

Cells are *not* corrected for latitude: a cell is always ``ε x ε``
degrees, so it gets narrower east-west towards the poles.  The index is
a PRE-FILTER: :meth:`SpatialIndex.query_radius` gathers candidates from a
square block of cells and then keeps only those within the exact
great-circle radius.
"""

from __future__ import annotations

from datetime import datetime
from math import ceil, floor
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .geo import check_radius, distance_m
from .models import GeoPoint, IndexedItem

# ------------------------------------------------------------
# Grid constants
# ------------------------------------------------------------

# Cell size in degrees (~50 m of latitude).
GRID_RESOLUTION_DEG = 0.0005

# Flat-earth conversion used to size the candidate window.
METERS_PER_DEGREE = 111_000.0


# ------------------------------------------------------------
# Cell keys
# ------------------------------------------------------------

def cell_of(lat: float, lon: float, resolution_deg: float = GRID_RESOLUTION_DEG) -> Tuple[int, int]:
    """Return the integer ``(lat_cell, lon_cell)`` containing a position.

    Uses ``floor(coordinate / resolution_deg)`` on each axis, so a point
    exactly on a boundary belongs to the cell north/east of it.
    """
    return (int(floor(lat / resolution_deg)), int(floor(lon / resolution_deg)))


def encode_cell_key(lat_cell: int, lon_cell: int) -> str:
    """Format a cell as ``"<lat_cell>_<lon_cell>"`` (e.g. ``"-3_12"``)."""
    return f"{lat_cell}_{lon_cell}"


def decode_cell_key(key: str) -> Tuple[int, int]:
    """Inverse of :func:`encode_cell_key`."""
    lat_s, lon_s = key.split("_")
    return int(lat_s), int(lon_s)


def cell_key(lat: float, lon: float, resolution_deg: float = GRID_RESOLUTION_DEG) -> str:
    """Cell key of the cell containing ``(lat, lon)``."""
    return encode_cell_key(*cell_of(lat, lon, resolution_deg))


def cell_span(radius_m: float, resolution_deg: float = GRID_RESOLUTION_DEG) -> int:
    """Number of cells to search outward from the center cell for *radius_m*."""
    radius_deg = radius_m / METERS_PER_DEGREE
    return int(ceil(radius_deg / resolution_deg)) + 1


def neighbors_square(key: str, r: int) -> List[str]:
    """Return cell keys in a square neighbourhood of a cell, center included.

    The total number of returned keys is ``(2*r + 1) ** 2``.
    """
    lat_cell, lon_cell = decode_cell_key(key)
    out = []
    for dlat in range(-r, r + 1):
        for dlon in range(-r, r + 1):
            out.append(encode_cell_key(lat_cell + dlat, lon_cell + dlon))
    return out


# ------------------------------------------------------------
# Spatial index
# ------------------------------------------------------------

class SpatialIndex:
    """Grid-bucketed index of item ids plus a side table of their metadata.

    Invariant: every id in the side table is a member of exactly one
    bucket, the one for its own coordinate.

    Not thread-safe; one owner mutates and queries it.  Callers that need
    readers to never see a partial rebuild populate a fresh instance and
    swap it in (see :class:`~kilroy.memory_source.MemorySource`).

    Example::

        idx = SpatialIndex()
        idx.insert("a", GeoPoint.of(0.0, 0.0), datetime(2020, 1, 1))
        idx.query_radius(GeoPoint.of(0.0, 0.0002), radius_m=50)
        # -> [("a", 22.2...)]
    """

    def __init__(self, resolution_deg: float = GRID_RESOLUTION_DEG):
        if resolution_deg <= 0:
            raise ValueError("resolution_deg must be > 0")
        self.resolution_deg = float(resolution_deg)

        # maps (lat_cell, lon_cell) -> {id, ...}
        self._buckets: Dict[Tuple[int, int], Set[str]] = {}
        self._items: Dict[str, IndexedItem] = {}
        # insertion sequence, used to break distance ties
        self._seq: Dict[str, int] = {}
        self._next_seq = 0

    # --------------------------------------------------------

    def insert(
        self,
        item_id: str,
        coordinate: GeoPoint,
        timestamp: datetime,
        payload_ref: Any = None,
    ) -> str:
        """Insert or replace an item; returns the key of its cell.

        Re-inserting an existing id first removes it from its old bucket.
        """
        return self.add(
            IndexedItem(
                id=item_id,
                coordinate=coordinate,
                timestamp=timestamp,
                payload_ref=payload_ref,
            )
        )

    def add(self, item: IndexedItem) -> str:
        """Insert a pre-built :class:`IndexedItem`; see :meth:`insert`."""
        if item.id in self._items:
            self.remove(item.id)

        cell = cell_of(item.coordinate.latitude, item.coordinate.longitude, self.resolution_deg)
        self._buckets.setdefault(cell, set()).add(item.id)
        self._items[item.id] = item
        self._seq[item.id] = self._next_seq
        self._next_seq += 1
        return encode_cell_key(*cell)

    # --------------------------------------------------------

    def remove(self, item_id: str) -> bool:
        """Remove an item; returns False if it was not indexed."""
        item = self._items.pop(item_id, None)
        if item is None:
            return False
        del self._seq[item_id]

        cell = cell_of(item.coordinate.latitude, item.coordinate.longitude, self.resolution_deg)
        bucket = self._buckets.get(cell)
        if bucket is not None:
            bucket.discard(item_id)
            if not bucket:
                del self._buckets[cell]
        return True

    def clear(self) -> None:
        """Drop every item and bucket."""
        self._buckets.clear()
        self._items.clear()
        self._seq.clear()
        self._next_seq = 0

    # --------------------------------------------------------

    def get(self, item_id: str) -> Optional[IndexedItem]:
        return self._items.get(item_id)

    def items(self) -> List[IndexedItem]:
        """All indexed items in insertion order."""
        return sorted(self._items.values(), key=lambda it: self._seq[it.id])

    def candidates_near(self, center: GeoPoint, radius_m: float) -> Set[str]:
        """Ids in the square block of cells that may hold items within *radius_m*.

        May contain false positives; never use without an exact distance
        check.
        """
        radius_m = check_radius(radius_m)
        lat_cell, lon_cell = cell_of(center.latitude, center.longitude, self.resolution_deg)
        span = cell_span(radius_m, self.resolution_deg)

        out: Set[str] = set()
        for dlat in range(-span, span + 1):
            for dlon in range(-span, span + 1):
                bucket = self._buckets.get((lat_cell + dlat, lon_cell + dlon))
                if bucket:
                    out |= bucket
        return out

    def query_radius(self, center: GeoPoint, radius_m: float) -> List[Tuple[str, float]]:
        """Return ``(id, distance_m)`` for every item within *radius_m* of *center*.

        Sorted ascending by distance; equal distances keep insertion
        order.

        Raises:
            InvalidRadiusError: If *radius_m* is negative or NaN.
        """
        radius_m = check_radius(radius_m)
        hits: List[Tuple[float, int, str]] = []
        for item_id in self.candidates_near(center, radius_m):
            d = distance_m(center, self._items[item_id].coordinate)
            if d <= radius_m:
                hits.append((d, self._seq[item_id], item_id))
        hits.sort()
        return [(item_id, d) for d, _seq, item_id in hits]

    # --------------------------------------------------------

    def bucket_of(self, item_id: str) -> Optional[str]:
        """Key of the cell bucket holding *item_id*, if indexed."""
        for cell, bucket in self._buckets.items():
            if item_id in bucket:
                return encode_cell_key(*cell)
        return None

    def buckets(self) -> int:
        """Number of non-empty grid cells."""
        return len(self._buckets)

    def __len__(self) -> int:
        """Total number of stored items."""
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))


def build_index(
    items: Iterable[IndexedItem], resolution_deg: float = GRID_RESOLUTION_DEG
) -> SpatialIndex:
    """Build a fresh index from *items*; later duplicates replace earlier ones."""
    index = SpatialIndex(resolution_deg)
    for item in items:
        index.add(item)
    return index

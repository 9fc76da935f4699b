"""remote_planner.py

Nearby queries against the shared backend store of Kilroys.

Documents are keyed by their precision-6 geohash.  A query for
``(location, radius)`` becomes one prefix range query per hash in
``{center} + neighbors(center)``; the union is de-duplicated by id and
then filtered by exact distance, because a shared prefix says nothing
certain about distance.

Results are newest first by default, unlike the local sources which
return nearest first.
"""

from __future__ import annotations

import bisect
import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from . import geohash
from .errors import BackendQueryError
from .geo import check_radius, distance_m
from .models import CloudKilroy, GeoPoint

logger = logging.getLogger(__name__)

DISCOVERY_RADIUS_M = 50.0
FETCH_ALL_LIMIT = 100


class BackendStore(Protocol):
    """Key/document store with lexicographic range queries over string keys."""

    def put(self, key: str, document: Dict[str, Any]) -> None:
        ...

    def range_query(self, lower_inclusive: str, upper_exclusive: str) -> List[Dict[str, Any]]:
        ...


class InMemoryBackendStore:
    """Process-local :class:`BackendStore` keeping documents sorted by key.

    Documents are identified by their ``id`` field; putting a document with
    an existing id replaces it.
    """

    def __init__(self) -> None:
        self._keys: List[Tuple[str, str]] = []  # sorted (key, doc_id)
        self._docs: Dict[str, Tuple[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, document: Dict[str, Any]) -> None:
        doc_id = document.get("id")
        if not isinstance(doc_id, str) or not doc_id:
            raise BackendQueryError("document must carry a string 'id'")
        with self._lock:
            old = self._docs.get(doc_id)
            if old is not None:
                self._keys.remove((old[0], doc_id))
            bisect.insort(self._keys, (key, doc_id))
            self._docs[doc_id] = (key, dict(document))

    def range_query(self, lower_inclusive: str, upper_exclusive: str) -> List[Dict[str, Any]]:
        with self._lock:
            lo = bisect.bisect_left(self._keys, (lower_inclusive, ""))
            out = []
            for key, doc_id in self._keys[lo:]:
                if key >= upper_exclusive:
                    break
                out.append(dict(self._docs[doc_id][1]))
            return out

    def __len__(self) -> int:
        return len(self._docs)


class SortKey(str, Enum):
    CREATED_AT = "created_at"
    DISTANCE = "distance"


class RemoteQueryPlanner:
    """Turns a location and radius into geohash range queries and filters the answers."""

    def __init__(self, store: BackendStore, precision: int = geohash.DEFAULT_PRECISION):
        self.store = store
        self.precision = precision

    def search_hashes(self, location: GeoPoint) -> List[str]:
        """The center geohash followed by its lexical neighbours."""
        center = geohash.encode(location.latitude, location.longitude, self.precision)
        return [center] + geohash.neighbors(center)

    def _range(self, prefix: str) -> List[Dict[str, Any]]:
        lower, upper = geohash.prefix_range(prefix)
        try:
            return self.store.range_query(lower, upper)
        except BackendQueryError:
            raise
        except Exception as e:
            raise BackendQueryError(f"range query for {prefix!r} failed: {e}") from e

    def _run_queries(self, hashes: List[str]) -> List[Dict[str, Any]]:
        with ThreadPoolExecutor(max_workers=len(hashes)) as pool:
            futures = [pool.submit(self._range, h) for h in hashes]
            done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
            for f in not_done:
                f.cancel()
            # any failure aborts the whole query; partial results are dropped
            for f in futures:
                if f in done and f.exception() is not None:
                    raise f.exception()
            docs: List[Dict[str, Any]] = []
            for f in futures:
                docs.extend(f.result())
        return docs

    def plan_and_execute(
        self,
        location: GeoPoint,
        radius_m: float = DISCOVERY_RADIUS_M,
        sort_by: SortKey = SortKey.CREATED_AT,
        descending: bool = True,
    ) -> List[CloudKilroy]:
        """Kilroys within *radius_m* of *location*, newest first by default.

        Raises:
            BackendQueryError: If any of the range queries fails.
            InvalidRadiusError: If *radius_m* is negative or NaN.
            ValueError: If *sort_by* is not a :class:`SortKey` value.
        """
        radius_m = check_radius(radius_m)
        sort_by = SortKey(sort_by)
        hashes = self.search_hashes(location)
        docs = self._run_queries(hashes)

        unique: Dict[str, CloudKilroy] = {}
        for doc in docs:
            kilroy = CloudKilroy.from_document(doc)
            if kilroy is None:
                logger.debug("skipping malformed backend document: %r", doc.get("id"))
                continue
            unique.setdefault(kilroy.id, kilroy)

        nearby = [
            (k, distance_m(location, k.coordinate))
            for k in unique.values()
        ]
        nearby = [(k, d) for k, d in nearby if d <= radius_m]

        if sort_by is SortKey.DISTANCE:
            nearby.sort(key=lambda kd: kd[1], reverse=descending)
        else:
            nearby.sort(key=lambda kd: kd[0].created_at, reverse=descending)

        logger.info(
            "found %d Kilroys near (%f, %f) across %s",
            len(nearby),
            location.latitude,
            location.longitude,
            hashes,
        )
        return [k for k, _d in nearby]

    def fetch_all(self, limit: int = FETCH_ALL_LIMIT) -> List[CloudKilroy]:
        """Up to *limit* Kilroys from the whole store, newest first."""
        docs = self._range("")
        kilroys = [k for k in (CloudKilroy.from_document(d) for d in docs) if k is not None]
        kilroys.sort(key=lambda k: k.created_at, reverse=True)
        return kilroys[:limit]

    def publish(self, kilroy: CloudKilroy) -> None:
        """Write a Kilroy under its geohash key."""
        try:
            self.store.put(kilroy.geohash, kilroy.to_document())
        except BackendQueryError:
            raise
        except Exception as e:
            raise BackendQueryError(f"writing Kilroy {kilroy.id} failed: {e}") from e

"""aggregator.py

Combines every memory source into one "what is here?" answer and decides
when the user has walked into, or out of, a memory zone.

A zone is everywhere within :data:`DISCOVERY_RADIUS_M` of at least one
indexed memory.  Zone changes are edge-triggered: ``on_enter`` fires once
when the aggregate count goes from zero to non-zero, ``on_leave`` once
when it drops back to zero.  Count changes while inside fire nothing.
There is no hysteresis beyond the movement gate in
:meth:`ProximityAggregator.refresh`, so walking along a zone boundary can
flap.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .geo import check_radius, distance_m, load_gpx_fixes
from .memory_source import MemorySource
from .models import GeoPoint

logger = logging.getLogger(__name__)

# How close you need to be to a memory to be "at" it (meters).
DISCOVERY_RADIUS_M = 50.0

# Fixes closer than this to the last evaluated one are ignored (meters).
MOVEMENT_THRESHOLD_M = 10.0


class ZoneState(str, Enum):
    OUTSIDE = "outside"
    INSIDE = "inside"


class ZoneTransition(str, Enum):
    ENTERED = "entered"
    LEFT = "left"


class ZoneTracker:
    """Two-state, edge-triggered zone machine driven by the aggregate count."""

    def __init__(self) -> None:
        self.state = ZoneState.OUTSIDE

    def update(self, count: int) -> Optional[ZoneTransition]:
        if count > 0 and self.state is ZoneState.OUTSIDE:
            self.state = ZoneState.INSIDE
            return ZoneTransition.ENTERED
        if count == 0 and self.state is ZoneState.INSIDE:
            self.state = ZoneState.OUTSIDE
            return ZoneTransition.LEFT
        return None


@dataclass(frozen=True)
class NearbyResult:
    """Per-source query results for one location."""

    location: GeoPoint
    radius_m: float
    by_source: Dict[str, List[Any]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(len(v) for v in self.by_source.values())

    def for_source(self, name: str) -> List[Any]:
        return self.by_source.get(name, [])

    def tagged(self) -> List[Tuple[str, Any]]:
        """``(source_name, memory)`` pairs, nearest first across all sources."""
        pairs = [(name, m) for name, ms in self.by_source.items() for m in ms]
        return sorted(pairs, key=lambda p: _distance_of(p[1]))


def _distance_of(memory: Any) -> float:
    d = getattr(memory, "distance_m", None)
    return d if d is not None else 0.0


class ProximityAggregator:
    """Query all registered sources for a location and track zone changes.

    Args:
        sources: Sources to register, keyed by their ``name``.
        radius_m: Query radius for every source.
        movement_threshold_m: Minimum movement before a new fix is evaluated.
        on_enter: Called with the result when entering a zone
            (notification and reveal).
        on_leave: Called when leaving a zone (hide the reveal).
        executor: When given, sources are queried concurrently on it.
    """

    def __init__(
        self,
        sources: Iterable[MemorySource] = (),
        radius_m: float = DISCOVERY_RADIUS_M,
        movement_threshold_m: float = MOVEMENT_THRESHOLD_M,
        on_enter: Optional[Callable[[NearbyResult], None]] = None,
        on_leave: Optional[Callable[[], None]] = None,
        executor: Optional[Executor] = None,
    ):
        self.radius_m = check_radius(radius_m)
        self.movement_threshold_m = check_radius(movement_threshold_m)
        self.on_enter = on_enter
        self.on_leave = on_leave
        self.executor = executor

        self._sources: Dict[str, MemorySource] = {}
        for source in sources:
            self.register(source)

        self._zone = ZoneTracker()
        self._refreshing = threading.Lock()
        self.last_location: Optional[GeoPoint] = None
        self.result: Optional[NearbyResult] = None

    # --------------------------------------------------------

    def register(self, source: MemorySource, name: Optional[str] = None) -> None:
        name = name or source.name
        if name in self._sources:
            raise ValueError(f"a source named {name!r} is already registered")
        self._sources[name] = source

    def unregister(self, name: str) -> None:
        self._sources.pop(name, None)

    @property
    def sources(self) -> Dict[str, MemorySource]:
        return dict(self._sources)

    @property
    def state(self) -> ZoneState:
        return self._zone.state

    @property
    def total_count(self) -> int:
        return self.result.total if self.result else 0

    # --------------------------------------------------------

    def refresh(self, location: GeoPoint, force: bool = False) -> Optional[ZoneTransition]:
        """Evaluate a location fix; returns the zone transition it caused, if any.

        A fix within :attr:`movement_threshold_m` of the last evaluated one
        is ignored unless *force* is set.  A call made while another
        refresh is running is dropped.
        """
        if not self._refreshing.acquire(blocking=False):
            logger.debug("refresh already in flight; dropping fix %s", location)
            return None
        try:
            if (
                not force
                and self.last_location is not None
                and distance_m(location, self.last_location) < self.movement_threshold_m
            ):
                return None

            # only a successful query counts as an evaluated fix
            result = self._query(location)
            self.last_location = location
            self.result = result

            transition = self._zone.update(result.total)
            if transition is ZoneTransition.ENTERED:
                logger.info("entered memory zone: %d memories here", result.total)
                if self.on_enter:
                    self.on_enter(result)
            elif transition is ZoneTransition.LEFT:
                logger.info("left memory zone")
                if self.on_leave:
                    self.on_leave()
            return transition
        finally:
            self._refreshing.release()

    def _query(self, location: GeoPoint) -> NearbyResult:
        if self.executor is None:
            by_source = {
                name: source.find_nearby(location, self.radius_m)
                for name, source in self._sources.items()
            }
        else:
            futures = {
                name: self.executor.submit(source.find_nearby, location, self.radius_m)
                for name, source in self._sources.items()
            }
            by_source = {name: f.result() for name, f in futures.items()}
        return NearbyResult(location=location, radius_m=self.radius_m, by_source=by_source)

    # --------------------------------------------------------

    def replay(self, fixes: Iterable[GeoPoint]) -> List[Tuple[GeoPoint, ZoneTransition]]:
        """Feed a sequence of fixes through :meth:`refresh`; returns the transitions."""
        out: List[Tuple[GeoPoint, ZoneTransition]] = []
        for fix in fixes:
            transition = self.refresh(fix)
            if transition is not None:
                out.append((fix, transition))
        return out

    def replay_gpx(self, gpx_path: Union[str, Path]) -> List[Tuple[GeoPoint, ZoneTransition]]:
        """Replay the route and track points of a GPX file as location fixes."""
        return self.replay(load_gpx_fixes(gpx_path))

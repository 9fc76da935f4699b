from concurrent.futures import ThreadPoolExecutor

import pytest

from kilroy.aggregator import (
    NearbyResult,
    ProximityAggregator,
    ZoneState,
    ZoneTracker,
    ZoneTransition,
)
from kilroy.errors import InvalidRadiusError
from kilroy.models import GeoPoint
from conftest import ListSource


GPX = """<?xml version="1.0" encoding="UTF-8"?>
<gpx version="1.1" creator="test" xmlns="http://www.topografix.com/GPX/1/1">
  <trk><trkseg>
    <trkpt lat="47.002" lon="10.0"></trkpt>
    <trkpt lat="47.0" lon="10.0"></trkpt>
    <trkpt lat="47.0001" lon="10.0"></trkpt>
    <trkpt lat="47.003" lon="10.0"></trkpt>
  </trkseg></trk>
</gpx>
"""


class Memory:
    def __init__(self, distance_m):
        self.distance_m = distance_m


class ScriptedSource:
    """Returns the next scripted number of memories on every query."""

    def __init__(self, counts, name="scripted"):
        self.name = name
        self.counts = list(counts)
        self.queries = []

    def find_nearby(self, location, radius_m):
        self.queries.append(location)
        n = self.counts.pop(0)
        return [Memory(float(i)) for i in range(n)]


class TestZoneTracker:
    def test_edges_only(self):
        tracker = ZoneTracker()
        assert tracker.update(0) is None
        assert tracker.update(2) is ZoneTransition.ENTERED
        assert tracker.state is ZoneState.INSIDE
        assert tracker.update(5) is None
        assert tracker.update(0) is ZoneTransition.LEFT
        assert tracker.update(0) is None
        assert tracker.state is ZoneState.OUTSIDE


class TestRefresh:
    def test_enter_and_leave_fire_once(self, origin):
        counts = [0, 0, 3, 3, 5, 0, 2]
        entered, left = [], []
        agg = ProximityAggregator(
            [ScriptedSource(counts)],
            on_enter=lambda result: entered.append(result.total),
            on_leave=lambda: left.append(True),
        )

        transitions = [agg.refresh(origin, force=True) for _ in counts]

        assert transitions == [
            None,
            None,
            ZoneTransition.ENTERED,
            None,
            None,
            ZoneTransition.LEFT,
            ZoneTransition.ENTERED,
        ]
        assert entered == [3, 2]
        assert left == [True]
        assert agg.state is ZoneState.INSIDE

    def test_small_movement_ignored(self, origin):
        source = ScriptedSource([1, 1])
        agg = ProximityAggregator([source])

        assert agg.refresh(origin) is ZoneTransition.ENTERED
        assert agg.refresh(GeoPoint.of(0.00004, 0.0)) is None  # ~4.4 m
        assert len(source.queries) == 1
        assert agg.last_location == origin

        agg.refresh(GeoPoint.of(0.0002, 0.0))  # ~22 m
        assert len(source.queries) == 2

    def test_force_bypasses_movement_gate(self, origin):
        source = ScriptedSource([1, 0])
        agg = ProximityAggregator([source])
        agg.refresh(origin)
        assert agg.refresh(origin, force=True) is ZoneTransition.LEFT

    def test_overlapping_refresh_dropped(self, origin):
        nested = []
        source = ScriptedSource([1, 1])
        agg = ProximityAggregator([source])
        agg.on_enter = lambda result: nested.append(agg.refresh(GeoPoint.of(1.0, 1.0), force=True))

        assert agg.refresh(origin) is ZoneTransition.ENTERED
        assert nested == [None]
        assert len(source.queries) == 1
        # the lock is released afterwards
        assert agg.refresh(GeoPoint.of(1.0, 1.0), force=True) is None
        assert len(source.queries) == 2

    def test_result_keyed_by_source(self, list_source, origin):
        list_source.build_index()
        agg = ProximityAggregator([list_source, ScriptedSource([2], name="other")])
        agg.refresh(origin)

        result = agg.result
        assert isinstance(result, NearbyResult)
        assert result.total == agg.total_count == 4
        assert [m["id"] for m in result.for_source("list")] == ["a", "b"]
        assert result.for_source("missing") == []

    def test_tagged_nearest_first(self, origin):
        result = NearbyResult(
            location=origin,
            radius_m=50.0,
            by_source={"x": [Memory(30.0), Memory(2.0)], "y": [Memory(10.0)]},
        )
        assert [(name, m.distance_m) for name, m in result.tagged()] == [
            ("x", 2.0),
            ("y", 10.0),
            ("x", 30.0),
        ]

    def test_executor_queries_concurrently(self, list_source, origin):
        list_source.build_index()
        with ThreadPoolExecutor(max_workers=2) as pool:
            agg = ProximityAggregator([list_source, ScriptedSource([0], name="other")], executor=pool)
            assert agg.refresh(origin) is ZoneTransition.ENTERED
        assert agg.result.total == 2

    def test_source_failure_propagates_and_releases(self, origin):
        class Broken:
            name = "broken"

            def find_nearby(self, location, radius_m):
                raise RuntimeError("index corrupted")

        agg = ProximityAggregator([Broken()])
        with pytest.raises(RuntimeError):
            agg.refresh(origin)
        agg.unregister("broken")
        assert agg.refresh(origin, force=True) is None

    def test_failed_fix_is_not_treated_as_evaluated(self, origin):
        class Flaky(ScriptedSource):
            def find_nearby(self, location, radius_m):
                if not self.queries:
                    self.queries.append(location)
                    raise RuntimeError("temporarily unavailable")
                return super().find_nearby(location, radius_m)

        source = Flaky([1])
        agg = ProximityAggregator([source])
        with pytest.raises(RuntimeError):
            agg.refresh(origin)
        assert agg.last_location is None

        assert agg.refresh(origin) is ZoneTransition.ENTERED
        assert len(source.queries) == 2


class TestRegistration:
    def test_duplicate_name_rejected(self, list_source):
        agg = ProximityAggregator([list_source])
        with pytest.raises(ValueError):
            agg.register(ScriptedSource([], name="list"))

    def test_register_under_other_name(self, list_source):
        agg = ProximityAggregator([list_source])
        agg.register(ScriptedSource([]), name="extra")
        assert set(agg.sources) == {"list", "extra"}

    def test_invalid_radius(self):
        with pytest.raises(InvalidRadiusError):
            ProximityAggregator(radius_m=-1.0)


class TestReplay:
    @pytest.fixture
    def source(self):
        source = ListSource([{"id": "summit", "lat": 47.0, "lon": 10.0}])
        source.build_index()
        return source

    def test_replay_gpx(self, source, tmp_path):
        path = tmp_path / "walk.gpx"
        path.write_text(GPX, encoding="utf-8")
        left = []
        agg = ProximityAggregator([source], on_leave=lambda: left.append(True))

        transitions = agg.replay_gpx(path)

        assert transitions == [
            (GeoPoint.of(47.0, 10.0), ZoneTransition.ENTERED),
            (GeoPoint.of(47.003, 10.0), ZoneTransition.LEFT),
        ]
        assert left == [True]

    def test_replay_skips_jitter(self, source):
        agg = ProximityAggregator([source])
        fixes = [GeoPoint.of(47.0, 10.0), GeoPoint.of(47.00005, 10.0), GeoPoint.of(47.0, 10.0)]
        assert agg.replay(fixes) == [(fixes[0], ZoneTransition.ENTERED)]

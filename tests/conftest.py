# conftest.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from kilroy.memory_source import MemorySource
from kilroy.models import CloudKilroy, GeoPoint
from kilroy.pin_store import PinStore


T0 = datetime(2021, 5, 17, 9, 30, tzinfo=timezone.utc)


class ListSource(MemorySource):
    """Memory source over a plain list of dict records."""

    name = "list"

    def __init__(self, records: List[Dict[str, Any]], **kwargs):
        super().__init__(**kwargs)
        self.records = records
        self.builds = 0

    def _records(self):
        self.builds += 1
        return list(self.records)

    def _parse(self, record):
        if record.get("lat") is None or record.get("lon") is None:
            return None
        return record

    def _locate(self, meta):
        return meta["id"], GeoPoint(latitude=meta["lat"], longitude=meta["lon"]), meta.get("ts", T0)

    def _hydrate(self, meta, distance_m):
        return {"id": meta["id"], "distance_m": distance_m}


@pytest.fixture
def origin() -> GeoPoint:
    return GeoPoint(latitude=0.0, longitude=0.0)


@pytest.fixture
def zurich() -> GeoPoint:
    return GeoPoint(latitude=47.3769, longitude=8.5417)


@pytest.fixture
def list_source() -> ListSource:
    return ListSource(
        [
            {"id": "a", "lat": 0.0, "lon": 0.0},
            {"id": "b", "lat": 0.0, "lon": 0.0003},
            {"id": "c", "lat": 1.0, "lon": 1.0},
        ]
    )


@pytest.fixture
def pin_store(tmp_path) -> PinStore:
    return PinStore(tmp_path / "memories.json")


def make_kilroy(
    kilroy_id: str,
    lat: float,
    lon: float,
    created_at: Optional[datetime] = None,
    geohash: str = "u0qj8x",
) -> CloudKilroy:
    return CloudKilroy(
        id=kilroy_id,
        image_url=f"https://storage.example/kilroys/{kilroy_id}.jpg",
        latitude=lat,
        longitude=lon,
        geohash=geohash,
        place_name="Lindenhof",
        created_at=created_at or T0,
        device_id="53B8FED8-433E-4D26-A187-839D25C6AAAD",
    )

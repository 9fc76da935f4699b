"""models.py

Value types shared by the spatial index, the memory sources and the
remote planner.  All models are immutable pydantic models; coordinates are
validated on construction so out-of-range input is rejected at the edge.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def _years_between(start: datetime, now: Optional[datetime] = None) -> int:
    if now is None:
        now = datetime.now(start.tzinfo or timezone.utc)
    years = now.year - start.year
    if (now.month, now.day) < (start.month, start.day):
        years -= 1
    return max(0, years)


class GeoPoint(BaseModel):
    """WGS-84 position in decimal degrees."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)

    @classmethod
    def of(cls, latitude: float, longitude: float) -> "GeoPoint":
        return cls(latitude=latitude, longitude=longitude)


class IndexedItem(BaseModel):
    """One entry of a :class:`~kilroy.grid_index.SpatialIndex` side table."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    coordinate: GeoPoint
    timestamp: datetime
    payload_ref: Any = None


class LocalMemory(BaseModel):
    """A geotagged asset from the on-device photo library."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    coordinate: GeoPoint
    capture_date: datetime
    is_video: bool = False
    distance_m: Optional[float] = None

    def years_ago(self, now: Optional[datetime] = None) -> int:
        return _years_between(self.capture_date, now)


class CloudPhotoMemory(BaseModel):
    """A geotagged media item from the cloud photo provider."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    base_url: str
    thumbnail_url: str
    coordinate: GeoPoint
    capture_date: datetime
    width: int = 0
    height: int = 0
    distance_m: Optional[float] = None

    def years_ago(self, now: Optional[datetime] = None) -> int:
        return _years_between(self.capture_date, now)


class DroppedPin(BaseModel):
    """A memory the user captured and dropped at a location.

    Persisted as JSON by :class:`~kilroy.pin_store.PinStore`; the image
    itself lives next to the JSON file under ``image_filename``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    coordinate: GeoPoint
    captured_at: datetime
    image_filename: str
    comment: Optional[str] = None
    place_name: Optional[str] = None
    place_address: Optional[str] = None

    def years_ago(self, now: Optional[datetime] = None) -> int:
        return _years_between(self.captured_at, now)


class NearbyPin(BaseModel):
    """A dropped pin returned by a proximity query."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    pin: DroppedPin
    distance_m: float

    @property
    def id(self) -> str:
        return self.pin.id


class CloudKilroy(BaseModel):
    """A Kilroy stored in the shared backend.

    :meth:`to_document` / :meth:`from_document` produce and consume the
    backend document shape with its camelCase keys; that shape is shared
    with other clients and must not change.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    image_url: str
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    geohash: str
    place_name: str
    place_address: Optional[str] = None
    comment: Optional[str] = None
    created_at: datetime
    device_id: str

    @property
    def coordinate(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "id": self.id,
            "imageURL": self.image_url,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "geohash": self.geohash,
            "placeName": self.place_name,
            "createdAt": self.created_at,
            "deviceId": self.device_id,
        }
        if self.place_address is not None:
            doc["placeAddress"] = self.place_address
        if self.comment is not None:
            doc["comment"] = self.comment
        return doc

    @classmethod
    def from_document(
        cls, doc: Dict[str, Any], doc_id: Optional[str] = None
    ) -> Optional["CloudKilroy"]:
        """Build a CloudKilroy from a backend document.

        Returns None when a required field is missing or has the wrong
        type; callers skip such documents.
        """
        kilroy_id = doc_id if doc_id is not None else doc.get("id")
        required = ("imageURL", "geohash", "placeName", "deviceId")
        if not isinstance(kilroy_id, str) or not all(
            isinstance(doc.get(k), str) for k in required
        ):
            return None

        lat = doc.get("latitude")
        lon = doc.get("longitude")
        if isinstance(lat, bool) or isinstance(lon, bool):
            return None
        if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
            return None

        created_at = doc.get("createdAt")
        if isinstance(created_at, str):
            try:
                created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
            except ValueError:
                return None
        if not isinstance(created_at, datetime):
            return None
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        address = doc.get("placeAddress")
        comment = doc.get("comment")
        try:
            return cls(
                id=kilroy_id,
                image_url=doc["imageURL"],
                latitude=float(lat),
                longitude=float(lon),
                geohash=doc["geohash"],
                place_name=doc["placeName"],
                place_address=address if isinstance(address, str) else None,
                comment=comment if isinstance(comment, str) else None,
                created_at=created_at,
                device_id=doc["deviceId"],
            )
        except ValueError:
            # out-of-range coordinates
            return None

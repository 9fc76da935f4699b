"""cloud_photos.py

Memories from a cloud photo library (Google Photos Library API shape).

:class:`CloudPhotosClient` pages through ``mediaItems`` with a bearer
token; :class:`CloudPhotoSource` indexes the items that carry a GPS
location, up to a hard cap per build.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests

from .errors import CloudPhotosError
from .grid_index import GRID_RESOLUTION_DEG
from .memory_source import MemorySource
from .models import CloudPhotoMemory, GeoPoint

logger = logging.getLogger(__name__)

API_BASE_URL = "https://photoslibrary.googleapis.com/v1"
SCOPE = "https://www.googleapis.com/auth/photoslibrary.readonly"

PAGE_SIZE = 100

# Bounds memory use and worst-case build time, not a correctness limit.
MAX_INDEXED_ITEMS = 5000

THUMBNAIL_SUFFIX = "=w400-h400-c"


@dataclass
class MediaPage:
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_page_token: Optional[str] = None


class CloudPhotosClient:
    """Minimal read-only client for the ``mediaItems`` listing."""

    def __init__(
        self,
        access_token: str,
        api_base: str = API_BASE_URL,
        page_size: int = PAGE_SIZE,
        timeout: float = 30.0,
        max_retries: int = 3,
    ):
        self.access_token = access_token
        self.api_base = api_base.rstrip("/")
        self.page_size = page_size
        self.timeout = timeout
        self.max_retries = max_retries

    def fetch_page(self, page_token: Optional[str] = None) -> MediaPage:
        """Fetch one page of media items.

        Raises:
            CloudPhotosError: If every attempt fails or the body is not the
                expected JSON object.
        """
        params: Dict[str, Any] = {"pageSize": self.page_size}
        if page_token:
            params["pageToken"] = page_token
        headers = {"Authorization": f"Bearer {self.access_token}"}

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                resp = requests.get(
                    f"{self.api_base}/mediaItems",
                    params=params,
                    headers=headers,
                    timeout=self.timeout,
                )
                resp.raise_for_status()
                break
            except requests.RequestException as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    logger.warning(
                        "media listing failed (attempt %d/%d): %s",
                        attempt + 1,
                        self.max_retries,
                        e,
                    )
                    time.sleep(2 ** attempt)  # exponential backoff
        else:
            raise CloudPhotosError(
                f"media listing failed after {self.max_retries} attempts"
            ) from last_error

        # invalid JSON is not retried
        try:
            data = resp.json()
        except ValueError as e:
            raise CloudPhotosError("media listing returned invalid JSON") from e

        if not isinstance(data, dict):
            raise CloudPhotosError("media listing returned an unexpected body")
        items = data.get("mediaItems") or []
        return MediaPage(items=list(items), next_page_token=data.get("nextPageToken") or None)

    def iter_items(self) -> Iterator[Dict[str, Any]]:
        """Yield media items across pages until no page token is returned."""
        token: Optional[str] = None
        while True:
            page = self.fetch_page(token)
            yield from page.items
            token = page.next_page_token
            if not token:
                return


# ------------------------------------------------------------
# Media item -> CloudPhotoMemory
# ------------------------------------------------------------

def parse_creation_time(raw: str) -> datetime:
    """Parse an RFC 3339 timestamp such as ``2019-07-04T18:22:05.123Z``."""
    dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _dimension(raw: Any) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def parse_media_item(item: Dict[str, Any]) -> Optional[CloudPhotoMemory]:
    """Map a ``mediaItems`` entry to a CloudPhotoMemory.

    Returns None for items without an id, base URL, creation time or
    ``photo.gpsLocation``; those are not memories we can place.
    An unparseable creation time falls back to now.
    """
    if not isinstance(item, dict):
        return None
    item_id = item.get("id")
    base_url = item.get("baseUrl")
    metadata = item.get("mediaMetadata") or {}
    creation_time = metadata.get("creationTime")
    if not item_id or not base_url or not creation_time:
        return None

    location = (metadata.get("photo") or {}).get("gpsLocation") or {}
    lat = location.get("latitude")
    lon = location.get("longitude")
    if lat is None or lon is None:
        return None

    try:
        captured = parse_creation_time(creation_time)
    except (TypeError, ValueError):
        captured = datetime.now(timezone.utc)

    return CloudPhotoMemory(
        id=item_id,
        base_url=base_url,
        thumbnail_url=f"{base_url}{THUMBNAIL_SUFFIX}",
        coordinate=GeoPoint(latitude=float(lat), longitude=float(lon)),
        capture_date=captured,
        width=_dimension(metadata.get("width")),
        height=_dimension(metadata.get("height")),
    )


# ------------------------------------------------------------
# Memory source
# ------------------------------------------------------------

class CloudPhotoSource(MemorySource[CloudPhotoMemory, CloudPhotoMemory]):
    """Spatial index over the geotagged items of a cloud photo library.

    Pages are fetched until the provider stops returning a page token or
    :attr:`max_items` items are indexed.  A failed page fetch aborts the
    build with :class:`CloudPhotosError` and keeps the previous index.
    """

    name = "cloud"

    def __init__(
        self,
        client: CloudPhotosClient,
        max_items: int = MAX_INDEXED_ITEMS,
        resolution_deg: float = GRID_RESOLUTION_DEG,
    ):
        super().__init__(resolution_deg)
        self.client = client
        self.max_items = max_items

    def _records(self) -> Iterator[Dict[str, Any]]:
        return self.client.iter_items()

    def _parse(self, record: Dict[str, Any]) -> Optional[CloudPhotoMemory]:
        return parse_media_item(record)

    def _locate(self, meta: CloudPhotoMemory) -> Tuple[str, GeoPoint, datetime]:
        return meta.id, meta.coordinate, meta.capture_date

    def _hydrate(self, meta: CloudPhotoMemory, distance_m: float) -> CloudPhotoMemory:
        return meta.model_copy(update={"distance_m": distance_m})

"""photo_library.py

Memories from the user's own photo library, surfaced at the places the
photos were taken.

The library itself is a collaborator behind the :class:`PhotoLibrary`
protocol.  :class:`DirectoryPhotoLibrary` implements it over a folder of
image files, reading GPS position and capture time from EXIF with Pillow.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Protocol, Sequence, Tuple, Union

from PIL import ExifTags, Image, UnidentifiedImageError

from .grid_index import GRID_RESOLUTION_DEG
from .memory_source import MemorySource
from .models import GeoPoint, LocalMemory

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".tif", ".tiff", ".webp"}

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"


@dataclass(frozen=True)
class LibraryAsset:
    """One asset as enumerated by the library; location and date may be missing."""

    id: str
    coordinate: Optional[GeoPoint]
    timestamp: Optional[datetime]
    is_video: bool = False


class PhotoLibrary(Protocol):
    def list_geotagged_assets(self) -> Iterable[LibraryAsset]:
        ...

    def load_thumbnail(self, asset_id: str, target_size: Tuple[int, int]) -> bytes:
        ...


# ------------------------------------------------------------
# EXIF helpers
# ------------------------------------------------------------

def dms_to_degrees(dms: Sequence[Any], ref: Optional[str]) -> float:
    """Convert an EXIF ``(degrees, minutes, seconds)`` triple to signed decimal degrees."""
    degrees, minutes, seconds = (float(v) for v in dms)
    value = degrees + minutes / 60.0 + seconds / 3600.0
    if ref and ref.strip().upper() in ("S", "W"):
        value = -value
    return value


def gps_to_point(gps: Any) -> Optional[GeoPoint]:
    """Read a GeoPoint from an EXIF GPS IFD mapping, or None if incomplete."""
    lat = gps.get(ExifTags.GPS.GPSLatitude)
    lon = gps.get(ExifTags.GPS.GPSLongitude)
    if not lat or not lon:
        return None
    try:
        return GeoPoint(
            latitude=dms_to_degrees(lat, gps.get(ExifTags.GPS.GPSLatitudeRef)),
            longitude=dms_to_degrees(lon, gps.get(ExifTags.GPS.GPSLongitudeRef)),
        )
    except (TypeError, ValueError, ZeroDivisionError):
        return None


def parse_exif_datetime(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str):
        return None
    try:
        return datetime.strptime(raw.strip("\x00 "), EXIF_DATETIME_FORMAT)
    except ValueError:
        return None


# ------------------------------------------------------------
# Directory-backed library
# ------------------------------------------------------------

class DirectoryPhotoLibrary:
    """A :class:`PhotoLibrary` over image files below *root*.

    Asset ids are POSIX paths relative to *root*.  When a file has no EXIF
    capture time its modification time is used instead.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _paths(self) -> Iterator[Path]:
        for path in sorted(self.root.rglob("*")):
            if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES:
                yield path

    def read_asset(self, path: Path) -> LibraryAsset:
        asset_id = path.relative_to(self.root).as_posix()
        with Image.open(path) as img:
            exif = img.getexif()
            coordinate = gps_to_point(exif.get_ifd(ExifTags.IFD.GPSInfo))
            taken = parse_exif_datetime(
                exif.get_ifd(ExifTags.IFD.Exif).get(ExifTags.Base.DateTimeOriginal)
            ) or parse_exif_datetime(exif.get(ExifTags.Base.DateTime))
        if taken is None:
            taken = datetime.fromtimestamp(path.stat().st_mtime)
        return LibraryAsset(id=asset_id, coordinate=coordinate, timestamp=taken)

    def list_geotagged_assets(self) -> Iterator[LibraryAsset]:
        """Yield every readable image; unreadable files are skipped."""
        for path in self._paths():
            try:
                yield self.read_asset(path)
            except (OSError, UnidentifiedImageError, ValueError) as e:
                logger.debug("skipping unreadable image %s: %s", path, e)

    def load_thumbnail(self, asset_id: str, target_size: Tuple[int, int]) -> bytes:
        """Return a JPEG thumbnail no larger than *target_size*."""
        path = self.root / asset_id
        with Image.open(path) as img:
            thumb = img.convert("RGB")
            thumb.thumbnail(target_size)
            buf = io.BytesIO()
            thumb.save(buf, format="JPEG", quality=85)
        return buf.getvalue()


# ------------------------------------------------------------
# Memory source
# ------------------------------------------------------------

class PhotoLibrarySource(MemorySource[LibraryAsset, LocalMemory]):
    """Spatial index over the geotagged assets of a :class:`PhotoLibrary`."""

    name = "library"

    def __init__(self, library: PhotoLibrary, resolution_deg: float = GRID_RESOLUTION_DEG):
        super().__init__(resolution_deg)
        self.library = library

    def _records(self) -> Iterable[LibraryAsset]:
        return self.library.list_geotagged_assets()

    def _parse(self, record: LibraryAsset) -> Optional[LibraryAsset]:
        if record.coordinate is None or record.timestamp is None:
            return None
        return record

    def _locate(self, meta: LibraryAsset) -> Tuple[str, GeoPoint, datetime]:
        return meta.id, meta.coordinate, meta.timestamp

    def _hydrate(self, meta: LibraryAsset, distance_m: float) -> LocalMemory:
        return LocalMemory(
            id=meta.id,
            coordinate=meta.coordinate,
            capture_date=meta.timestamp,
            is_video=meta.is_video,
            distance_m=distance_m,
        )

    def load_thumbnail(self, asset_id: str, target_size: Tuple[int, int] = (400, 400)) -> bytes:
        return self.library.load_thumbnail(asset_id, target_size)

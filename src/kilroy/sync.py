"""sync.py

Dropping a Kilroy: save it locally, then share it in the background.

The local save is the only step the caller waits for.  Uploading the
image and writing the backend document run on an executor; if that
fails the pin stays saved, the failure is logged, and the pin is kept
in :attr:`KilroyDropper.pending` until :meth:`KilroyDropper.retry_pending`
succeeds.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Set, Union

from . import geohash
from .errors import KilroyError
from .models import CloudKilroy, DroppedPin, GeoPoint
from .pin_store import PinStore
from .remote_planner import RemoteQueryPlanner

logger = logging.getLogger(__name__)

UNKNOWN_PLACE = "Unknown location"


class ImageUploader(Protocol):
    def upload(self, name: str, data: bytes, content_type: str = "image/jpeg") -> str:
        """Store *data* under *name* and return its public URL."""
        ...


def load_device_id(path: Union[str, Path]) -> str:
    """Return the anonymous device id stored at *path*, creating it on first use."""
    path = Path(path)
    if path.exists():
        existing = path.read_text(encoding="utf-8").strip()
        if existing:
            return existing
    device_id = str(uuid.uuid4()).upper()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(device_id, encoding="utf-8")
    return device_id


class KilroyDropper:
    """Saves dropped pins locally and publishes them to the backend in the background."""

    def __init__(
        self,
        pin_store: PinStore,
        planner: RemoteQueryPlanner,
        uploader: ImageUploader,
        device_id: str,
        executor: Optional[Executor] = None,
    ):
        self.pin_store = pin_store
        self.planner = planner
        self.uploader = uploader
        self.device_id = device_id
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="kilroy-sync"
        )
        self._lock = threading.Lock()
        self._inflight: Dict[str, Future] = {}
        self.pending: Set[str] = set()
        self.published: Dict[str, CloudKilroy] = {}

    # --------------------------------------------------------

    def drop(
        self,
        image: bytes,
        coordinate: GeoPoint,
        place_name: Optional[str] = None,
        place_address: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> DroppedPin:
        """Save a pin locally and schedule its upload; returns the saved pin."""
        pin = self.pin_store.save_pin(
            image,
            coordinate,
            comment=comment,
            place_name=place_name,
            place_address=place_address,
        )
        self._schedule(pin.id)
        return pin

    def _schedule(self, pin_id: str) -> Future:
        future = self.executor.submit(self._sync, pin_id)
        with self._lock:
            self._inflight[pin_id] = future
        return future

    def _sync(self, pin_id: str) -> Optional[CloudKilroy]:
        pin = self.pin_store.get(pin_id)
        if pin is None:
            # deleted before it could be shared
            with self._lock:
                self.pending.discard(pin_id)
            return None
        try:
            kilroy = self.publish(pin)
        except Exception as e:
            logger.warning("background sync of pin %s failed: %s", pin_id, e)
            with self._lock:
                self.pending.add(pin_id)
            return None
        with self._lock:
            self.pending.discard(pin_id)
            self.published[pin_id] = kilroy
        logger.info("Kilroy %s published at %s", kilroy.id, kilroy.place_name)
        return kilroy

    def publish(self, pin: DroppedPin) -> CloudKilroy:
        """Upload the pin's image and write its backend document (synchronously)."""
        image = self.pin_store.load_image(pin)
        if image is None:
            raise KilroyError(f"image for pin {pin.id} is missing")
        image_url = self.uploader.upload(f"kilroys/{pin.id}.jpg", image)

        lat, lon = pin.coordinate.latitude, pin.coordinate.longitude
        kilroy = CloudKilroy(
            id=pin.id,
            image_url=image_url,
            latitude=lat,
            longitude=lon,
            geohash=geohash.encode(lat, lon, self.planner.precision),
            place_name=pin.place_name or UNKNOWN_PLACE,
            place_address=pin.place_address,
            comment=pin.comment,
            created_at=pin.captured_at,
            device_id=self.device_id,
        )
        self.planner.publish(kilroy)
        return kilroy

    # --------------------------------------------------------

    def retry_pending(self) -> List[Future]:
        """Reschedule every pin whose upload failed."""
        with self._lock:
            pin_ids = sorted(self.pending)
        return [self._schedule(pin_id) for pin_id in pin_ids]

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until every scheduled upload has finished."""
        with self._lock:
            futures = list(self._inflight.values())
        wait(futures, timeout=timeout)

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=True)

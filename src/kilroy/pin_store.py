"""pin_store.py

Durable local storage for dropped pins, and the memory source over it.

Pins are kept newest first in a JSON file; each pin's image is stored
in an ``images`` directory next to it.  :class:`DroppedPinSource`
subscribes to the store so that pins added or deleted after a build are
reflected in its index immediately.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from pydantic import ValidationError

from .grid_index import GRID_RESOLUTION_DEG
from .memory_source import MemorySource
from .models import DroppedPin, GeoPoint, NearbyPin

logger = logging.getLogger(__name__)


class PinEvent(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


PinListener = Callable[[PinEvent, DroppedPin], None]


class PinStore:
    """JSON-file backed list of :class:`DroppedPin`, newest first."""

    def __init__(self, path: Union[str, Path], images_dir: Optional[Union[str, Path]] = None):
        self.path = Path(path)
        self.images_dir = Path(images_dir) if images_dir else self.path.parent / "images"
        self._pins: List[DroppedPin] = []
        self._listeners: List[PinListener] = []
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.load()

    # --------------------------------------------------------

    @property
    def pins(self) -> List[DroppedPin]:
        return list(self._pins)

    def subscribe(self, listener: PinListener) -> None:
        self._listeners.append(listener)

    def _notify(self, event: PinEvent, pin: DroppedPin) -> None:
        for listener in self._listeners:
            listener(event, pin)

    # --------------------------------------------------------

    def load(self) -> None:
        """(Re)load pins from disk; malformed entries are skipped."""
        if not self.path.exists():
            self._pins = []
            return
        try:
            rows = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("could not read pins from %s: %s", self.path, e)
            self._pins = []
            return

        pins: List[DroppedPin] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                pins.append(DroppedPin.model_validate(row))
            except ValidationError as e:
                logger.debug("skipping malformed pin: %s", e)
        self._pins = pins
        logger.info("loaded %d pins from %s", len(pins), self.path)

    def _persist(self) -> None:
        data = json.dumps([p.model_dump(mode="json") for p in self._pins], indent=2)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".pins-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    # --------------------------------------------------------

    def save_pin(
        self,
        image: bytes,
        coordinate: GeoPoint,
        comment: Optional[str] = None,
        place_name: Optional[str] = None,
        place_address: Optional[str] = None,
        captured_at: Optional[datetime] = None,
    ) -> DroppedPin:
        """Store *image* and a new pin at *coordinate*; returns the pin."""
        pin_id = str(uuid.uuid4()).upper()
        filename = f"{pin_id}.jpg"
        (self.images_dir / filename).write_bytes(image)

        pin = DroppedPin(
            id=pin_id,
            coordinate=coordinate,
            captured_at=captured_at or datetime.now(timezone.utc),
            image_filename=filename,
            comment=comment or None,
            place_name=place_name,
            place_address=place_address,
        )
        self._pins.insert(0, pin)
        self._persist()
        logger.info("saved pin %s at %s", pin_id, place_name or "unknown location")
        self._notify(PinEvent.ADDED, pin)
        return pin

    def delete_pin(self, pin_id: str) -> bool:
        """Remove a pin and its image; returns False if no such pin exists."""
        pin = self.get(pin_id)
        if pin is None:
            return False
        self.image_path(pin).unlink(missing_ok=True)
        self._pins = [p for p in self._pins if p.id != pin_id]
        self._persist()
        self._notify(PinEvent.REMOVED, pin)
        return True

    def get(self, pin_id: str) -> Optional[DroppedPin]:
        for pin in self._pins:
            if pin.id == pin_id:
                return pin
        return None

    def image_path(self, pin: DroppedPin) -> Path:
        return self.images_dir / pin.image_filename

    def load_image(self, pin: DroppedPin) -> Optional[bytes]:
        try:
            return self.image_path(pin).read_bytes()
        except FileNotFoundError:
            return None


class DroppedPinSource(MemorySource[DroppedPin, NearbyPin]):
    """Spatial index over the pins of a :class:`PinStore`, kept in sync with it."""

    name = "pins"

    def __init__(self, store: PinStore, resolution_deg: float = GRID_RESOLUTION_DEG):
        super().__init__(resolution_deg)
        self.store = store
        store.subscribe(self._on_pin_event)

    def _on_pin_event(self, event: PinEvent, pin: DroppedPin) -> None:
        if event is PinEvent.ADDED:
            self._upsert(pin)
        else:
            self._discard(pin.id)

    def _records(self) -> List[DroppedPin]:
        return self.store.pins

    def _parse(self, record: DroppedPin) -> DroppedPin:
        return record

    def _locate(self, meta: DroppedPin) -> Tuple[str, GeoPoint, datetime]:
        return meta.id, meta.coordinate, meta.captured_at

    def _hydrate(self, meta: DroppedPin, distance_m: float) -> NearbyPin:
        return NearbyPin(pin=meta, distance_m=distance_m)

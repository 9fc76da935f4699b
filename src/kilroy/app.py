"""app.py

Wires the sources, aggregator and planner together from settings.

Nothing here is global: every call to :func:`create_app` returns new,
independent components.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from .aggregator import NearbyResult, ProximityAggregator
from .cloud_photos import CloudPhotosClient, CloudPhotoSource
from .config import KilroySettings, get_settings
from .memory_source import MemorySource
from .photo_library import DirectoryPhotoLibrary, PhotoLibrarySource
from .pin_store import DroppedPinSource, PinStore
from .remote_planner import BackendStore, RemoteQueryPlanner


@dataclass
class KilroyApp:
    settings: KilroySettings
    pin_store: PinStore
    aggregator: ProximityAggregator
    sources: List[MemorySource] = field(default_factory=list)
    planner: Optional[RemoteQueryPlanner] = None

    def build_all(self) -> Dict[str, int]:
        """Rebuild every source's index; returns indexed counts by source name.

        The first failing source raises and the remaining ones are not
        rebuilt.  Sources already rebuilt keep their new index.
        """
        return {source.name: source.build_index() for source in self.sources}


def create_app(
    settings: Optional[KilroySettings] = None,
    photo_root: Optional[Union[str, Path]] = None,
    backend: Optional[BackendStore] = None,
    on_enter: Optional[Callable[[NearbyResult], None]] = None,
    on_leave: Optional[Callable[[], None]] = None,
) -> KilroyApp:
    """Build a :class:`KilroyApp`.

    The pin source is always present; the photo library source needs
    *photo_root* and the cloud source needs an access token in settings.
    The planner is only created when a *backend* is given.
    """
    settings = settings or get_settings()
    resolution = settings.grid_resolution_deg

    pin_store = PinStore(settings.pin_store_path)
    sources: List[MemorySource] = [DroppedPinSource(pin_store, resolution)]

    if photo_root is not None:
        sources.append(PhotoLibrarySource(DirectoryPhotoLibrary(photo_root), resolution))

    if settings.cloud_photos_access_token:
        client = CloudPhotosClient(
            settings.cloud_photos_access_token,
            api_base=settings.cloud_photos_api_base,
            page_size=settings.cloud_photos_page_size,
            timeout=settings.request_timeout_s,
            max_retries=settings.max_retries,
        )
        sources.append(
            CloudPhotoSource(client, max_items=settings.cloud_photos_max_items, resolution_deg=resolution)
        )

    aggregator = ProximityAggregator(
        sources,
        radius_m=settings.discovery_radius_m,
        movement_threshold_m=settings.movement_threshold_m,
        on_enter=on_enter,
        on_leave=on_leave,
    )
    planner = RemoteQueryPlanner(backend, settings.geohash_precision) if backend is not None else None
    return KilroyApp(
        settings=settings,
        pin_store=pin_store,
        aggregator=aggregator,
        sources=sources,
        planner=planner,
    )

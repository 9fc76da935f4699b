import json
from datetime import datetime, timezone

import pytest

from kilroy.models import GeoPoint, NearbyPin
from kilroy.pin_store import DroppedPinSource, PinEvent, PinStore
from conftest import T0


JPEG = b"\xff\xd8\xff\xe0fake-jpeg"


class TestPinStore:
    def test_starts_empty(self, pin_store):
        assert pin_store.pins == []
        assert pin_store.images_dir.is_dir()

    def test_save_writes_image_and_json(self, pin_store, zurich):
        pin = pin_store.save_pin(JPEG, zurich, comment="was here", place_name="Lindenhof", captured_at=T0)

        assert pin.id == pin.id.upper()
        assert pin.image_filename == f"{pin.id}.jpg"
        assert pin_store.image_path(pin).read_bytes() == JPEG
        rows = json.loads(pin_store.path.read_text())
        assert rows[0]["id"] == pin.id
        assert rows[0]["coordinate"] == {"latitude": 47.3769, "longitude": 8.5417}

    def test_newest_first(self, pin_store, zurich):
        first = pin_store.save_pin(JPEG, zurich)
        second = pin_store.save_pin(JPEG, zurich)
        assert [p.id for p in pin_store.pins] == [second.id, first.id]

    def test_reload_from_disk(self, pin_store, zurich, tmp_path):
        pin = pin_store.save_pin(JPEG, zurich, place_address="Lindenhof 1, 8001 Zürich", captured_at=T0)
        reopened = PinStore(tmp_path / "memories.json")
        assert reopened.pins == [pin]
        assert reopened.load_image(pin) == JPEG

    def test_empty_comment_becomes_none(self, pin_store, zurich):
        assert pin_store.save_pin(JPEG, zurich, comment="").comment is None

    def test_delete_removes_image(self, pin_store, zurich):
        pin = pin_store.save_pin(JPEG, zurich)
        assert pin_store.delete_pin(pin.id) is True
        assert pin_store.pins == []
        assert not pin_store.image_path(pin).exists()
        assert pin_store.load_image(pin) is None
        assert pin_store.delete_pin(pin.id) is False

    def test_malformed_entries_skipped(self, tmp_path, zurich):
        good = PinStore(tmp_path / "memories.json").save_pin(JPEG, zurich, captured_at=T0)
        rows = json.loads((tmp_path / "memories.json").read_text())
        rows.append({"id": "broken", "coordinate": {"latitude": 200, "longitude": 0}})
        rows.append("not a pin")
        (tmp_path / "memories.json").write_text(json.dumps(rows))

        assert [p.id for p in PinStore(tmp_path / "memories.json").pins] == [good.id]

    def test_unreadable_file_gives_empty_store(self, tmp_path):
        (tmp_path / "memories.json").write_text("{not json")
        assert PinStore(tmp_path / "memories.json").pins == []

    def test_listeners_notified(self, pin_store, zurich):
        events = []
        pin_store.subscribe(lambda event, pin: events.append((event, pin.id)))
        pin = pin_store.save_pin(JPEG, zurich)
        pin_store.delete_pin(pin.id)
        assert events == [(PinEvent.ADDED, pin.id), (PinEvent.REMOVED, pin.id)]

    def test_years_ago(self, pin_store, zurich):
        pin = pin_store.save_pin(JPEG, zurich, captured_at=T0)
        assert pin.years_ago(datetime(2024, 5, 17, 10, tzinfo=timezone.utc)) == 3


class TestDroppedPinSource:
    def test_build_and_find(self, pin_store, zurich):
        near = pin_store.save_pin(JPEG, GeoPoint.of(47.3771, 8.5417))
        pin_store.save_pin(JPEG, GeoPoint.of(47.5, 8.5))
        source = DroppedPinSource(pin_store)

        assert source.build_index() == 2
        result = source.find_nearby(zurich, 50.0)
        assert [r.id for r in result] == [near.id]
        assert isinstance(result[0], NearbyPin)
        assert result[0].distance_m == pytest.approx(22.2, abs=0.1)

    def test_new_pin_visible_without_rebuild(self, pin_store, zurich):
        source = DroppedPinSource(pin_store)
        source.build_index()
        assert source.find_nearby(zurich, 50.0) == []

        pin = pin_store.save_pin(JPEG, zurich)
        assert [r.id for r in source.find_nearby(zurich, 50.0)] == [pin.id]

    def test_deleted_pin_disappears_without_rebuild(self, pin_store, zurich):
        pin = pin_store.save_pin(JPEG, zurich)
        source = DroppedPinSource(pin_store)
        source.build_index()

        pin_store.delete_pin(pin.id)
        assert source.find_nearby(zurich, 50.0) == []
        assert source.get(pin.id) is None

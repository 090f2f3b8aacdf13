"""Tests for the on-disk image digest record store."""

from __future__ import annotations

import json

import pytest

from stackdoctor.errors import RecordStoreCorrupt, RecordStoreMissing
from stackdoctor.record_store import RecordStore
from stackdoctor.types import ImageRecord, ImageStatus

DIGEST_A = "sha256:" + "a" * 64


def _write(path, data):
    path.write_text(json.dumps(data))


class TestLoad:
    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(RecordStoreMissing):
            RecordStore.load(tmp_path / "image-sync.json", registry="localhost:5000")

    def test_missing_file_with_create(self, tmp_path):
        store = RecordStore.load(tmp_path / "s.json", registry="localhost:5000", create=True)
        assert store.images == {}
        assert store.registry == "localhost:5000"
        assert not (tmp_path / "s.json").exists()

    def test_unparseable_file_raises(self, tmp_path):
        path = tmp_path / "s.json"
        path.write_text("{not json")
        with pytest.raises(RecordStoreCorrupt):
            RecordStore.load(path, registry="r")

    def test_wrong_shape_raises(self, tmp_path):
        path = tmp_path / "s.json"
        _write(path, {"images": []})
        with pytest.raises(RecordStoreCorrupt):
            RecordStore.load(path, registry="r")

    def test_record_without_upstream_raises(self, tmp_path):
        path = tmp_path / "s.json"
        _write(path, {"images": {"ollama": {"status": "synced"}}})
        with pytest.raises(RecordStoreCorrupt, match="ollama"):
            RecordStore.load(path, registry="r")

    def test_registry_from_file_wins(self, tmp_path):
        path = tmp_path / "s.json"
        _write(path, {"registry": "mirror.lan:5000", "last_check": None, "images": {}})
        assert RecordStore.load(path, registry="localhost:5000").registry == "mirror.lan:5000"

    def test_reads_records(self, tmp_path):
        path = tmp_path / "s.json"
        _write(
            path,
            {
                "last_check": "2026-10-01T00:00:00Z",
                "registry": "localhost:5000",
                "images": {
                    "ollama": {
                        "upstream": "docker.io/ollama/ollama:latest",
                        "upstream_digest": DIGEST_A,
                        "local_digest": DIGEST_A,
                        "synced_at": "2026-10-01T00:00:00Z",
                        "status": "synced",
                    }
                },
            },
        )
        store = RecordStore.load(path, registry="localhost:5000")
        rec = store.get("ollama")
        assert rec.upstream_digest == DIGEST_A
        assert rec.status == ImageStatus.SYNCED
        assert store.last_check == "2026-10-01T00:00:00Z"


class TestSave:
    def test_record_sync_persists_and_leaves_no_temp_file(self, tmp_path):
        path = tmp_path / "state" / "s.json"
        store = RecordStore.load(path, registry="localhost:5000", create=True)
        rec = ImageRecord(name="ollama", upstream="docker.io/ollama/ollama:latest")

        updated = store.record_sync(rec, DIGEST_A)

        assert updated.status == ImageStatus.SYNCED
        assert updated.synced_at
        raw = json.loads(path.read_text())
        assert raw["registry"] == "localhost:5000"
        assert raw["images"]["ollama"]["upstream_digest"] == DIGEST_A
        assert raw["images"]["ollama"]["local_digest"] == DIGEST_A
        assert raw["images"]["ollama"]["status"] == "synced"
        assert not list(path.parent.glob("*.tmp"))

    def test_touch_updates_last_check_only(self, tmp_path):
        path = tmp_path / "s.json"
        store = RecordStore.load(path, registry="r", create=True)
        store.touch()
        raw = json.loads(path.read_text())
        assert raw["last_check"]
        assert raw["images"] == {}

    def test_round_trip(self, tmp_path):
        path = tmp_path / "s.json"
        store = RecordStore.load(path, registry="r", create=True)
        store.record_sync(ImageRecord(name="a", upstream="x/a:1", local="r/a:1"), DIGEST_A)
        again = RecordStore.load(path, registry="ignored")
        assert again.images == store.images

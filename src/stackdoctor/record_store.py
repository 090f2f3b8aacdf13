"""On-disk digest records for mirrored images.

One JSON document::

    {
      "last_check": "2026-10-17T12:00:00Z",
      "registry": "localhost:5000",
      "images": {
        "open-webui": {"upstream": "...", "upstream_digest": "sha256:...",
                       "local_digest": "sha256:...", "synced_at": "...",
                       "status": "synced"}
      }
    }

Every save rewrites the whole file through a temp file and a rename. There is
no lock; concurrent sync runs against one file are unsupported.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path

from stackdoctor.errors import RecordStoreCorrupt, RecordStoreMissing
from stackdoctor.types import ImageRecord, ImageStatus
from stackdoctor.utils import utc_now_iso, write_json_atomic


@dataclass
class RecordStore:
    path: Path
    registry: str
    last_check: str | None = None
    images: dict[str, ImageRecord] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path, *, registry: str, create: bool = False) -> RecordStore:
        """Read the store. A missing file is an error unless *create*."""
        if not path.exists():
            if create:
                return cls(path=path, registry=registry)
            raise RecordStoreMissing(
                f"Record store not found: {path} (run with --init to create it)"
            )
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RecordStoreCorrupt(f"Cannot read record store {path}: {exc}") from exc
        if not isinstance(raw, dict) or not isinstance(raw.get("images", {}), dict):
            raise RecordStoreCorrupt(f"Record store {path} is not a JSON object with 'images'")
        images: dict[str, ImageRecord] = {}
        for name, entry in (raw.get("images") or {}).items():
            try:
                images[name] = ImageRecord.from_dict(name, entry)
            except (KeyError, TypeError, ValueError) as exc:
                raise RecordStoreCorrupt(f"Bad record for image '{name}' in {path}: {exc}") from exc
        return cls(
            path=path,
            registry=raw.get("registry") or registry,
            last_check=raw.get("last_check"),
            images=images,
        )

    def get(self, name: str) -> ImageRecord | None:
        return self.images.get(name)

    def record_sync(self, record: ImageRecord, digest: str) -> ImageRecord:
        """Mark *record* synced at *digest* and persist. Only call after a
        successful push."""
        updated = replace(
            record,
            upstream_digest=digest,
            local_digest=digest,
            synced_at=utc_now_iso(),
            status=ImageStatus.SYNCED,
        )
        self.images[record.name] = updated
        self.save()
        return updated

    def touch(self) -> None:
        self.last_check = utc_now_iso()
        self.save()

    def to_dict(self) -> dict:
        return {
            "last_check": self.last_check,
            "registry": self.registry,
            "images": {name: rec.to_dict() for name, rec in sorted(self.images.items())},
        }

    def save(self) -> None:
        write_json_atomic(self.path, self.to_dict(), indent=2)

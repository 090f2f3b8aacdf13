"""Mirror upstream images into a local registry, driven by digest comparison.

Per image:

- ``new``: nothing recorded locally yet → sync, reason ``new``
- ``stale``: upstream digest moved since the last sync → sync, reason ``update``
- ``current``: nothing changed → no action (unless forced, reason ``force``)

A sync is pull → tag → push; the record store is written only after the push
succeeds. Any failing step leaves that image's record untouched and the run
moves on to the next image.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, replace

from stackdoctor.errors import (
    DigestUnavailable,
    PullFailed,
    PushFailed,
    StackDoctorError,
    TagFailed,
)
from stackdoctor.logger import logger
from stackdoctor.record_store import RecordStore
from stackdoctor.runtime import ContainerRuntime
from stackdoctor.types import ImageRecord, ImageStatus, SyncReason

DIGEST_RE = re.compile(r"^(?P<algorithm>sha256):(?P<hex>[0-9a-f]{64})$")


def is_digest(value: str | None) -> bool:
    return bool(value) and DIGEST_RE.match(value) is not None


def _platform_matches(platform: dict, wanted: str) -> bool:
    os_name, _, rest = wanted.partition("/")
    arch, _, variant = rest.partition("/")
    if platform.get("os") != os_name or platform.get("architecture") != arch:
        return False
    return not variant or platform.get("variant") == variant


def _load_manifest(output: str):
    try:
        return json.loads(output)
    except json.JSONDecodeError as exc:
        raise DigestUnavailable(f"manifest output is not JSON: {exc}") from exc


def is_image_manifest(output: str) -> bool:
    """True for a bare single-platform image manifest (``config`` + ``layers``).

    podman prints this for single-arch images; it carries no digest of itself.
    """
    doc = _load_manifest(output)
    return isinstance(doc, dict) and "layers" in doc and "manifests" not in doc


def parse_manifest_digest(output: str, platform: str = "linux/amd64") -> str:
    """Digest from ``manifest inspect`` output.

    Handles docker's verbose shapes (one object or a list of objects, each
    with ``Descriptor``) and a manifest list / OCI index (``manifests[]``), as
    podman prints it. Lists are narrowed to *platform*.
    """
    doc = _load_manifest(output)

    if isinstance(doc, list):
        entries = [e for e in doc if isinstance(e, dict)]
        chosen = next(
            (
                e
                for e in entries
                if _platform_matches((e.get("Descriptor") or {}).get("platform") or {}, platform)
            ),
            None,
        )
        if chosen is None:
            raise DigestUnavailable(f"no manifest for platform {platform}")
        digest = (chosen.get("Descriptor") or {}).get("digest")
    elif isinstance(doc, dict) and "Descriptor" in doc:
        digest = (doc.get("Descriptor") or {}).get("digest")
    elif isinstance(doc, dict) and isinstance(doc.get("manifests"), list):
        chosen = next(
            (
                m
                for m in doc["manifests"]
                if isinstance(m, dict) and _platform_matches(m.get("platform") or {}, platform)
            ),
            None,
        )
        if chosen is None:
            raise DigestUnavailable(f"no manifest for platform {platform}")
        digest = chosen.get("digest")
    else:
        raise DigestUnavailable("manifest output carries no digest")

    if not is_digest(digest):
        raise DigestUnavailable(f"malformed digest {digest!r}")
    return digest


def local_reference(registry: str, name: str, upstream: str) -> str:
    """``<registry>/<name>:<tag>`` where the tag follows the upstream one."""
    ref = upstream.split("@", 1)[0]
    last = ref.rsplit("/", 1)[-1]
    tag = last.split(":", 1)[1] if ":" in last else "latest"
    return f"{registry.rstrip('/')}/{name}:{tag}"


def classify(
    record: ImageRecord | None,
    upstream_digest: str,
    *,
    force: bool = False,
) -> tuple[ImageStatus, SyncReason | None]:
    """Status of an image and why it needs syncing (None: it does not)."""
    if record is None or not record.local_digest:
        return ImageStatus.NEW, SyncReason.FORCE if force else SyncReason.NEW
    if record.upstream_digest != upstream_digest:
        return ImageStatus.STALE, SyncReason.FORCE if force else SyncReason.UPDATE
    return ImageStatus.CURRENT, SyncReason.FORCE if force else None


@dataclass(frozen=True)
class ImageCheck:
    name: str
    upstream: str
    local: str
    status: ImageStatus
    reason: SyncReason | None
    upstream_digest: str
    previous_digest: str | None = None

    @property
    def eligible(self) -> bool:
        return self.reason is not None


@dataclass(frozen=True)
class SyncOutcome:
    name: str
    check: ImageCheck | None = None
    record: ImageRecord | None = None  # set when a sync was persisted
    error: StackDoctorError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ImageSyncOrchestrator:
    def __init__(
        self,
        runtime: ContainerRuntime,
        store: RecordStore,
        *,
        platform: str = "linux/amd64",
    ) -> None:
        self.runtime = runtime
        self.store = store
        self.platform = platform

    # -- check -----------------------------------------------------------

    def upstream_digest(self, upstream: str) -> str:
        if self.runtime.name == "podman":
            return self._podman_digest(upstream)
        result = self.runtime.run("manifest", "inspect", "--verbose", upstream, timeout=60)
        if result.returncode != 0:
            raise DigestUnavailable(f"manifest inspect {upstream} failed: {result.stderr.strip()}")
        return parse_manifest_digest(result.stdout, self.platform)

    def _podman_digest(self, upstream: str) -> str:
        """podman has no ``--verbose``: an index is parsed directly, a bare
        image manifest is pulled and its digest read from ``image inspect``."""
        result = self.runtime.run("manifest", "inspect", upstream, timeout=60)
        if result.returncode != 0:
            raise DigestUnavailable(f"manifest inspect {upstream} failed: {result.stderr.strip()}")
        if not is_image_manifest(result.stdout):
            return parse_manifest_digest(result.stdout, self.platform)

        logger.debug("Single-platform manifest; pulling to read its digest", upstream=upstream)
        pull = self.runtime.run("pull", upstream, timeout=1800)
        if pull.returncode != 0:
            raise DigestUnavailable(f"pull {upstream} for digest failed: {pull.stderr.strip()}")
        inspect = self.runtime.run("image", "inspect", "--format", "{{.Digest}}", upstream)
        digest = inspect.stdout.strip()
        if inspect.returncode != 0 or not is_digest(digest):
            raise DigestUnavailable(
                f"image inspect {upstream} gave no digest: {inspect.stderr.strip() or digest!r}"
            )
        return digest

    def check(self, name: str, upstream: str, *, force: bool = False) -> ImageCheck:
        digest = self.upstream_digest(upstream)
        record = self.store.get(name)
        status, reason = classify(record, digest, force=force)
        return ImageCheck(
            name=name,
            upstream=upstream,
            local=local_reference(self.store.registry, name, upstream),
            status=status,
            reason=reason,
            upstream_digest=digest,
            previous_digest=record.upstream_digest if record else None,
        )

    # -- sync ------------------------------------------------------------

    def sync(self, check: ImageCheck) -> SyncOutcome:
        """pull → tag → push; persist only after the push succeeded."""
        log = logger.bind(image=check.name, upstream=check.upstream, local=check.local)

        pull = self.runtime.run("pull", check.upstream, timeout=1800)
        if pull.returncode != 0:
            raise PullFailed(f"pull {check.upstream} failed: {pull.stderr.strip()}")
        log.debug("Pulled")

        tag = self.runtime.run("tag", check.upstream, check.local)
        if tag.returncode != 0:
            raise TagFailed(f"tag {check.local} failed: {tag.stderr.strip()}")

        push = self.runtime.run("push", check.local, timeout=1800)
        if push.returncode != 0:
            raise PushFailed(f"push {check.local} failed: {push.stderr.strip()}")

        existing = self.store.get(check.name)
        base = (
            ImageRecord(name=check.name, upstream=check.upstream, local=check.local)
            if existing is None
            else replace(existing, upstream=check.upstream, local=check.local)
        )
        record = self.store.record_sync(base, check.upstream_digest)
        log.info("Image synced", digest=check.upstream_digest)
        return SyncOutcome(check.name, check=check, record=record)

    # -- run -------------------------------------------------------------

    def run(
        self,
        images: dict[str, str],
        *,
        force: bool = False,
        sync_now: bool = False,
    ) -> list[SyncOutcome]:
        """Check every image and, with *sync_now*, sync the eligible ones.

        Per-image failures are captured in the outcome; the loop never aborts.
        """
        outcomes: list[SyncOutcome] = []
        for name, upstream in images.items():
            try:
                check = self.check(name, upstream, force=force)
            except StackDoctorError as exc:
                logger.warning("Image check failed", image=name, err=str(exc))
                outcomes.append(SyncOutcome(name, error=exc))
                continue

            if not (sync_now and check.eligible):
                outcomes.append(SyncOutcome(name, check=check))
                continue

            try:
                outcomes.append(self.sync(check))
            except StackDoctorError as exc:
                logger.error("Image sync failed", image=name, err=str(exc))
                outcomes.append(SyncOutcome(name, check=check, error=exc))

        self.store.touch()
        return outcomes

"""Find and remove leftovers: exited stack containers, dangling volumes,
and user-defined networks nothing is attached to."""

from __future__ import annotations

import json
from dataclasses import dataclass

from stackdoctor.logger import logger
from stackdoctor.runtime import ContainerRuntime

_BUILTIN_NETWORKS = frozenset({"bridge", "host", "none", "podman"})


@dataclass(frozen=True)
class CleanupTarget:
    kind: str  # "container" | "volume" | "network"
    name: str

    def remove_args(self) -> list[str]:
        if self.kind == "container":
            return ["rm", self.name]
        return [self.kind, "rm", self.name]


def _lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def exited_containers(runtime: ContainerRuntime, names: list[str]) -> list[CleanupTarget]:
    """Containers from *names* that exist but have exited."""
    targets: list[CleanupTarget] = []
    for row in runtime.list_containers(all_states=True):
        raw = row.get("Names", "")
        row_names = raw if isinstance(raw, list) else raw.split(",")
        state = str(row.get("State", "")).lower()
        for name in row_names:
            if name in names and state in ("exited", "dead", "created", "stopped"):
                targets.append(CleanupTarget("container", name))
    return targets


def dangling_volumes(runtime: ContainerRuntime) -> list[CleanupTarget]:
    result = runtime.run(
        "volume", "ls", "--filter", "dangling=true", "--format", "{{.Name}}", check=True
    )
    return [CleanupTarget("volume", name) for name in _lines(result.stdout)]


def unused_networks(runtime: ContainerRuntime) -> list[CleanupTarget]:
    result = runtime.run("network", "ls", "--format", "{{.Name}}", check=True)
    candidates = [n for n in _lines(result.stdout) if n not in _BUILTIN_NETWORKS]
    targets: list[CleanupTarget] = []
    for name in candidates:
        inspect = runtime.run("network", "inspect", name)
        if inspect.returncode != 0:
            logger.warning("Network inspect failed", network=name, stderr=inspect.stderr.strip())
            continue
        try:
            docs = json.loads(inspect.stdout or "[]")
        except json.JSONDecodeError:
            continue
        doc = docs[0] if isinstance(docs, list) and docs else docs
        if not isinstance(doc, dict):
            continue
        # docker: "Containers" map; podman: "containers" map
        attached = doc.get("Containers") or doc.get("containers") or {}
        if not attached:
            targets.append(CleanupTarget("network", name))
    return targets


def remove(runtime: ContainerRuntime, target: CleanupTarget) -> tuple[bool, str]:
    result = runtime.run(*target.remove_args())
    if result.returncode != 0:
        return False, result.stderr.strip()
    logger.info("Removed", kind=target.kind, name=target.name)
    return True, ""

"""Read and classify a container's state from ``<cli> inspect``."""

from __future__ import annotations

import json
import re

from stackdoctor.errors import RuntimeCommandError
from stackdoctor.logger import logger
from stackdoctor.runtime import ContainerRuntime
from stackdoctor.types import (
    DEFAULT_RESTART_LOOP_THRESHOLD,
    ContainerRecord,
    ContainerSpec,
    HealthStatus,
)

# docker: "Error: No such object: x" / podman: "no such container"
_NOT_FOUND_RE = re.compile(r"no such (object|container)", re.IGNORECASE)


def inspect_raw(runtime: ContainerRuntime, name: str) -> dict | None:
    """Return the inspect document for *name*, or None if it does not exist."""
    result = runtime.run("inspect", "--type", "container", name)
    if result.returncode != 0:
        if _NOT_FOUND_RE.search(result.stderr or ""):
            return None
        raise RuntimeCommandError([runtime.cli, "inspect", name], result.returncode, result.stderr)
    try:
        docs = json.loads(result.stdout or "[]")
    except json.JSONDecodeError as exc:
        raise RuntimeCommandError(
            [runtime.cli, "inspect", name], result.returncode, f"unparseable inspect output: {exc}"
        ) from exc
    if not docs:
        return None
    return docs[0]


def _health(state: dict) -> HealthStatus:
    # docker uses State.Health, older podman State.Healthcheck
    health = state.get("Health") or state.get("Healthcheck") or {}
    raw = (health.get("Status") or "").lower()
    try:
        return HealthStatus(raw)
    except ValueError:
        return HealthStatus.UNKNOWN


def record_from_attrs(
    name: str,
    attrs: dict,
    restart_loop_threshold: int = DEFAULT_RESTART_LOOP_THRESHOLD,
) -> ContainerRecord:
    state = attrs.get("State") or {}
    restart_count = attrs.get("RestartCount")
    if restart_count is None:
        restart_count = state.get("RestartCount", 0)
    return ContainerRecord(
        name=name,
        exists=True,
        running=bool(state.get("Running")),
        restart_count=max(0, int(restart_count or 0)),
        health=_health(state),
        status=str(state.get("Status") or ""),
        restart_loop_threshold=restart_loop_threshold,
    )


def inspect(
    runtime: ContainerRuntime,
    name: str,
    restart_loop_threshold: int = DEFAULT_RESTART_LOOP_THRESHOLD,
) -> ContainerRecord:
    """Fresh ContainerRecord for *name*; ``exists=False`` if the engine has none."""
    attrs = inspect_raw(runtime, name)
    if attrs is None:
        logger.debug("Container not found", container=name)
        return ContainerRecord.missing(name)
    record = record_from_attrs(name, attrs, restart_loop_threshold)
    logger.debug(
        "Container inspected",
        container=name,
        state=str(record.state),
        restart_count=record.restart_count,
        health=str(record.health),
    )
    return record


# ---------------------------------------------------------------------------
# Spec derivation (for recreation)
# ---------------------------------------------------------------------------


def _env_from_attrs(attrs: dict) -> dict[str, str]:
    env: dict[str, str] = {}
    for item in (attrs.get("Config") or {}).get("Env") or []:
        key, sep, value = item.partition("=")
        if sep:
            env[key] = value
    return env


def _ports_from_attrs(attrs: dict) -> list[str]:
    bindings = (attrs.get("HostConfig") or {}).get("PortBindings") or {}
    ports: list[str] = []
    for container_port, hosts in sorted(bindings.items()):
        port = container_port.split("/")[0]
        proto = container_port.split("/")[1] if "/" in container_port else "tcp"
        for binding in hosts or []:
            host_port = binding.get("HostPort") or ""
            if not host_port:
                continue
            host_ip = binding.get("HostIp") or ""
            prefix = f"{host_ip}:" if host_ip and host_ip not in ("0.0.0.0", "::") else ""
            suffix = "" if proto == "tcp" else f"/{proto}"
            ports.append(f"{prefix}{host_port}:{port}{suffix}")
    return ports


def _volumes_from_attrs(attrs: dict) -> list[str]:
    volumes: list[str] = []
    for mount in attrs.get("Mounts") or []:
        dst = mount.get("Destination")
        if not dst:
            continue
        mtype = mount.get("Type")
        if mtype == "volume" and mount.get("Name"):
            src = mount["Name"]
            # anonymous volumes carry a 64-hex name and are not reattached
            if re.fullmatch(r"[0-9a-f]{64}", src):
                continue
        elif mtype == "bind" and mount.get("Source"):
            src = mount["Source"]
        else:
            continue
        suffix = "" if mount.get("RW", True) else ":ro"
        volumes.append(f"{src}:{dst}{suffix}")
    return volumes


def spec_from_attrs(name: str, attrs: dict) -> ContainerSpec:
    """Rebuild a ``run`` spec from an existing container's inspect data.

    The image's own environment is included; ``run`` re-applies the same
    values so this is harmless.
    """
    config = attrs.get("Config") or {}
    host_config = attrs.get("HostConfig") or {}
    network = host_config.get("NetworkMode") or None
    if network in ("default", "bridge"):
        network = None
    restart = (host_config.get("RestartPolicy") or {}).get("Name") or None
    if restart == "no":
        restart = None
    return ContainerSpec(
        name=name,
        image=config.get("Image") or attrs.get("ImageName") or attrs.get("Image") or "",
        env=_env_from_attrs(attrs),
        ports=_ports_from_attrs(attrs),
        volumes=_volumes_from_attrs(attrs),
        network=network,
        restart=restart,
    )

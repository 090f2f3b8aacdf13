"""Data models for stackdoctor."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import StrEnum

from stackdoctor.errors import (
    ContainerNotFound,
    ContainerUnhealthy,
    ProbeTimeout,
    ProbeUnreachable,
    RestartLoopDetected,
    StackDoctorError,
)

LINK_LOCAL = ipaddress.ip_network("169.254.0.0/16")

DEFAULT_RESTART_LOOP_THRESHOLD = 3


def is_link_local(address: str) -> bool:
    """True for 169.254.0.0/16. Unparseable strings are not link-local."""
    try:
        return ipaddress.ip_address(address) in LINK_LOCAL
    except ValueError:
        return False


def parse_routable_ipv4(address: str) -> str | None:
    """Return the normalized address if it is a usable IPv4 address, else None.

    Rejects link-local, loopback, unspecified and multicast addresses.
    """
    try:
        ip = ipaddress.IPv4Address(address.strip())
    except ValueError:
        return None
    if ip in LINK_LOCAL or ip.is_loopback or ip.is_unspecified or ip.is_multicast:
        return None
    return str(ip)


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


class HealthStatus(StrEnum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ContainerState(StrEnum):
    MISSING = "missing"
    STOPPED = "stopped"
    RESTART_LOOPING = "restart-looping"
    UNHEALTHY = "unhealthy"
    HEALTHY = "healthy"


@dataclass(frozen=True)
class ContainerRecord:
    """One fresh read of a container's state. Never cached across calls.

    When ``exists`` is False no other field is meaningful.
    """

    name: str
    exists: bool
    running: bool = False
    restart_count: int = 0
    health: HealthStatus = HealthStatus.UNKNOWN
    status: str = ""  # raw engine status ("running", "exited", "restarting", ...)
    restart_loop_threshold: int = DEFAULT_RESTART_LOOP_THRESHOLD

    @classmethod
    def missing(cls, name: str) -> ContainerRecord:
        return cls(name=name, exists=False)

    @property
    def restart_looping(self) -> bool:
        return self.exists and self.restart_count > self.restart_loop_threshold

    @property
    def state(self) -> ContainerState:
        """Single headline classification; the most severe condition wins."""
        if not self.exists:
            return ContainerState.MISSING
        if self.restart_looping:
            return ContainerState.RESTART_LOOPING
        if not self.running:
            return ContainerState.STOPPED
        if self.health == HealthStatus.UNHEALTHY:
            return ContainerState.UNHEALTHY
        return ContainerState.HEALTHY

    def problems(self) -> list[StackDoctorError]:
        """Every condition that applies, not only the first one found."""
        if not self.exists:
            return [ContainerNotFound(f"Container '{self.name}' does not exist")]
        found: list[StackDoctorError] = []
        if self.restart_looping:
            found.append(
                RestartLoopDetected(
                    f"Container '{self.name}' restarted {self.restart_count} times "
                    f"(threshold {self.restart_loop_threshold})"
                )
            )
        if not self.running:
            found.append(
                ContainerUnhealthy(f"Container '{self.name}' is not running ({self.status})")
            )
        if self.health == HealthStatus.UNHEALTHY:
            found.append(ContainerUnhealthy(f"Container '{self.name}' health check is unhealthy"))
        return found


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to recreate a container with ``run -d``."""

    name: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    ports: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    network: str | None = None
    restart: str | None = None

    def with_env(self, key: str, value: str) -> ContainerSpec:
        return ContainerSpec(
            name=self.name,
            image=self.image,
            env={**self.env, key: value},
            ports=list(self.ports),
            volumes=list(self.volumes),
            network=self.network,
            restart=self.restart,
        )

    def run_args(self) -> list[str]:
        args = ["run", "-d", "--name", self.name]
        if self.restart:
            args += ["--restart", self.restart]
        if self.network:
            args += ["--network", self.network]
        for port in self.ports:
            args += ["-p", port]
        for volume in self.volumes:
            args += ["-v", volume]
        for key, value in self.env.items():
            args += ["-e", f"{key}={value}"]
        args.append(self.image)
        return args


@dataclass
class RecreateResult:
    """Outcome of one remediation. ``container_absent`` means recreation
    failed after removal and nothing was rolled back."""

    name: str
    stopped: bool = False
    removed: bool = False
    recreated: bool = False
    verified: bool = False
    container_absent: bool = False
    error: StackDoctorError | None = None

    @property
    def ok(self) -> bool:
        return self.recreated and self.verified and self.error is None


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class ResolutionMethod(StrEnum):
    DEFAULT_HOSTNAME = "default-hostname"
    VIRTUAL_GATEWAY = "virtual-gateway"
    DNS_FALLBACK = "dns-fallback"


@dataclass(frozen=True)
class NetworkEndpoint:
    address: str
    port: int
    method: ResolutionMethod

    def __post_init__(self) -> None:
        if is_link_local(self.address):
            raise ValueError(f"Link-local address {self.address} is never a valid endpoint")

    @property
    def host_port(self) -> str:
        return f"{self.address}:{self.port}"

    def url(self, path: str = "") -> str:
        return f"http://{self.host_port}{path}"


class ProbeOutcome(StrEnum):
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ProbeResult:
    url: str
    outcome: ProbeOutcome
    status: int | None = None
    detail: str = ""
    body: object = None  # decoded JSON body when the server returned one

    @property
    def ok(self) -> bool:
        return self.outcome == ProbeOutcome.REACHABLE

    def error(self) -> StackDoctorError | None:
        if self.outcome == ProbeOutcome.TIMEOUT:
            return ProbeTimeout(f"{self.url} timed out")
        if self.outcome == ProbeOutcome.UNREACHABLE:
            suffix = f": {self.detail}" if self.detail else ""
            return ProbeUnreachable(f"{self.url} unreachable{suffix}")
        return None


# ---------------------------------------------------------------------------
# Image sync
# ---------------------------------------------------------------------------


class ImageStatus(StrEnum):
    NEW = "new"
    CURRENT = "current"
    STALE = "stale"
    SYNCED = "synced"


class SyncReason(StrEnum):
    NEW = "new"
    UPDATE = "update"
    FORCE = "force"


@dataclass(frozen=True)
class ImageRecord:
    name: str
    upstream: str
    local: str = ""
    upstream_digest: str | None = None
    local_digest: str | None = None
    synced_at: str | None = None
    status: ImageStatus = ImageStatus.NEW

    def to_dict(self) -> dict:
        return {
            "upstream": self.upstream,
            "local": self.local,
            "upstream_digest": self.upstream_digest,
            "local_digest": self.local_digest,
            "synced_at": self.synced_at,
            "status": str(self.status),
        }

    @classmethod
    def from_dict(cls, name: str, raw: dict) -> ImageRecord:
        return cls(
            name=name,
            upstream=raw["upstream"],
            local=raw.get("local") or "",
            upstream_digest=raw.get("upstream_digest"),
            local_digest=raw.get("local_digest"),
            synced_at=raw.get("synced_at"),
            status=ImageStatus(raw.get("status") or ImageStatus.NEW),
        )

"""Resolve a host address that containers can actually route to.

Under some virtualization backends the engine's host alias
(``host.containers.internal`` / ``host.docker.internal``) resolves to a
link-local 169.254.x.x address that containers cannot reach. Resolution is an
ordered tuple of strategies; each returns an endpoint or ``None`` and the
first hit wins.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from stackdoctor.errors import HostResolutionFailed
from stackdoctor.logger import logger
from stackdoctor.runtime import ContainerRuntime
from stackdoctor.types import NetworkEndpoint, ResolutionMethod, is_link_local, parse_routable_ipv4

_IPV4 = r"\d{1,3}(?:\.\d{1,3}){3}"

# "default via 172.17.144.1 dev eth0 proto kernel"
DEFAULT_ROUTE_RE = re.compile(rf"^default\s+via\s+(?P<gateway>{_IPV4})(?:\s|$)", re.MULTILINE)

# getent hosts: "192.168.127.254  host.containers.internal"
GETENT_RE = re.compile(rf"^(?P<address>{_IPV4})\s+(?P<names>\S.*)$", re.MULTILINE)

# resolv.conf: "nameserver 172.29.16.1"
NAMESERVER_RE = re.compile(rf"^\s*nameserver\s+(?P<address>{_IPV4})\s*$", re.MULTILINE)


class StrategyMiss(Exception):
    """A single strategy found nothing usable; carries the reason."""


def parse_default_gateway(route_output: str) -> str:
    """Extract the gateway from ``ip route show default`` output.

    Raises StrategyMiss when no default route line matches or the gateway
    is not a routable IPv4 address.
    """
    match = DEFAULT_ROUTE_RE.search(route_output)
    if match is None:
        raise StrategyMiss("no 'default via <ip>' line in route output")
    gateway = match.group("gateway")
    address = parse_routable_ipv4(gateway)
    if address is None:
        raise StrategyMiss(f"gateway {gateway} is not a routable IPv4 address")
    return address


def parse_getent(output: str) -> str:
    match = GETENT_RE.search(output)
    if match is None:
        raise StrategyMiss("getent returned no address")
    address = match.group("address")
    if is_link_local(address):
        raise StrategyMiss(f"alias resolves to link-local {address}")
    routable = parse_routable_ipv4(address)
    if routable is None:
        raise StrategyMiss(f"alias resolves to unusable address {address}")
    return routable


def parse_nameservers(resolv_conf: str) -> str:
    """First routable nameserver address from resolv.conf content."""
    candidates = [m.group("address") for m in NAMESERVER_RE.finditer(resolv_conf)]
    if not candidates:
        raise StrategyMiss("no nameserver entries")
    for candidate in candidates:
        address = parse_routable_ipv4(candidate)
        if address is not None:
            return address
    raise StrategyMiss(f"no routable nameserver among {', '.join(candidates)}")


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResolveRequest:
    runtime: ContainerRuntime
    port: int
    host_alias: str


Strategy = Callable[[ResolveRequest], NetworkEndpoint]


def _vm_output(req: ResolveRequest, *command: str) -> str:
    result = req.runtime.vm_exec(*command)
    if result.returncode != 0:
        cmd = " ".join(command)
        raise StrategyMiss(f"`{cmd}` exited {result.returncode}: {result.stderr.strip()}")
    return result.stdout


def resolve_default_hostname(req: ResolveRequest) -> NetworkEndpoint:
    address = parse_getent(_vm_output(req, "getent", "hosts", req.host_alias))
    return NetworkEndpoint(address, req.port, ResolutionMethod.DEFAULT_HOSTNAME)


def resolve_virtual_gateway(req: ResolveRequest) -> NetworkEndpoint:
    address = parse_default_gateway(_vm_output(req, "ip", "route", "show", "default"))
    return NetworkEndpoint(address, req.port, ResolutionMethod.VIRTUAL_GATEWAY)


def resolve_dns_fallback(req: ResolveRequest) -> NetworkEndpoint:
    address = parse_nameservers(_vm_output(req, "cat", "/etc/resolv.conf"))
    return NetworkEndpoint(address, req.port, ResolutionMethod.DNS_FALLBACK)


STRATEGIES: tuple[tuple[ResolutionMethod, Strategy], ...] = (
    (ResolutionMethod.DEFAULT_HOSTNAME, resolve_default_hostname),
    (ResolutionMethod.VIRTUAL_GATEWAY, resolve_virtual_gateway),
    (ResolutionMethod.DNS_FALLBACK, resolve_dns_fallback),
)


def resolve_host_endpoint(
    runtime: ContainerRuntime,
    port: int,
    *,
    host_alias: str | None = None,
    strategies: tuple[tuple[ResolutionMethod, Strategy], ...] = STRATEGIES,
) -> NetworkEndpoint:
    """Try each strategy in order and return the first usable endpoint.

    Raises HostResolutionFailed listing every method's reason when all miss.
    """
    req = ResolveRequest(runtime=runtime, port=port, host_alias=host_alias or runtime.host_alias)
    attempts: list[tuple[str, str]] = []
    for method, strategy in strategies:
        try:
            endpoint = strategy(req)
        except StrategyMiss as exc:
            logger.info("Host resolution method missed", method=str(method), reason=str(exc))
            attempts.append((str(method), str(exc)))
            continue
        logger.info("Host endpoint resolved", method=str(method), address=endpoint.host_port)
        return endpoint
    raise HostResolutionFailed(attempts)

"""Container runtime detection: Podman or Docker.

Detects which container CLI is installed and answering, and wraps every
engine invocation in one subprocess helper so callers get a
``CompletedProcess`` back instead of raw exceptions.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

from stackdoctor.config import Settings, get_settings
from stackdoctor.errors import RuntimeCommandError, RuntimeNotFound
from stackdoctor.logger import logger

RuntimeName = Literal["docker", "podman"]

_HOST_ALIASES: dict[str, str] = {
    "docker": "host.docker.internal",
    "podman": "host.containers.internal",
}


@dataclass(frozen=True)
class ContainerRuntime:
    """Detected container runtime (Podman or Docker)."""

    name: RuntimeName
    cli: str  # "podman" or "docker"
    helper_image: str = "alpine:3.20"

    # -- subprocess helper ----------------------------------------------

    def run(
        self,
        *args: str,
        check: bool = False,
        timeout: float = 30,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``<cli> *args`` and capture text output.

        A missing binary or a hung command comes back as a failed
        ``CompletedProcess`` (returncode 127 / 124) so per-item callers can
        report it. With ``check`` a non-zero exit raises ``RuntimeCommandError``.
        """
        cmd = [self.cli, *args]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            result = subprocess.CompletedProcess(cmd, 127, "", str(exc))
        except subprocess.TimeoutExpired:
            result = subprocess.CompletedProcess(cmd, 124, "", f"timed out after {timeout}s")
        if check and result.returncode != 0:
            raise RuntimeCommandError(cmd, result.returncode, result.stderr or "")
        return result

    # -- liveness --------------------------------------------------------

    def is_available(self) -> bool:
        return shutil.which(self.cli) is not None

    def responds(self) -> bool:
        """True when ``<cli> info`` succeeds, i.e. the engine is up."""
        result = self.run("info", "--format", "{{json .}}", timeout=15)
        if result.returncode != 0:
            logger.debug("Runtime did not respond", runtime=self.name, stderr=result.stderr.strip())
        return result.returncode == 0

    def info(self) -> dict:
        result = self.run("info", "--format", "{{json .}}", check=True, timeout=15)
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    def list_containers(self, *, all_states: bool = False) -> list[dict]:
        """Return ``ps`` rows as dicts (one JSON object per line for docker,
        one JSON array for podman)."""
        args = ["ps", "--format", "json" if self.name == "podman" else "{{json .}}"]
        if all_states:
            args.insert(1, "-a")
        result = self.run(*args, check=True)
        out = result.stdout.strip()
        if not out:
            return []
        try:
            if out.startswith("["):
                rows = json.loads(out)
            else:
                rows = [json.loads(line) for line in out.splitlines() if line.strip()]
        except json.JSONDecodeError as exc:
            raise RuntimeCommandError(
                [self.cli, *args], result.returncode, f"unparseable ps output: {exc}"
            ) from exc
        return [row for row in rows if isinstance(row, dict)]

    def list_running_containers(self, prefix: str = "") -> list[str]:
        names: list[str] = []
        for row in self.list_containers():
            raw = row.get("Names", "")
            for name in raw if isinstance(raw, list) else raw.split(","):
                if name.startswith(prefix):
                    names.append(name)
        return names

    # -- VM side ---------------------------------------------------------

    @property
    def host_alias(self) -> str:
        return _HOST_ALIASES[self.name]

    def has_machine(self) -> bool:
        """True when a podman machine VM exists (macOS / Windows setups)."""
        if self.name != "podman":
            return False
        result = self.run("machine", "list", "--format", "json", timeout=15)
        if result.returncode != 0:
            return False
        try:
            machines = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            return False
        return bool(machines)

    def vm_exec(self, *command: str, timeout: float = 30) -> subprocess.CompletedProcess[str]:
        """Run *command* where containers live: inside the podman machine when
        one exists, otherwise in a throwaway helper container."""
        if self.has_machine():
            return self.run("machine", "ssh", "--", *command, timeout=timeout)
        return self.run("run", "--rm", self.helper_image, *command, timeout=timeout)


def _in_ci(env: Mapping[str, str], ci_vars: list[str]) -> bool:
    return any(env.get(var, "").strip().lower() not in ("", "0", "false") for var in ci_vars)


def _usable(runtime: ContainerRuntime) -> bool:
    return runtime.is_available() and runtime.responds()


def detect_runtime(
    settings: Settings | None = None,
    env: Mapping[str, str] | None = None,
) -> ContainerRuntime:
    """Detect the container runtime to use.

    Priority:
    1) settings.runtime.preferred override, if installed and responding
    2) in CI, settings.runtime.ci_runtime if installed and responding
    3) podman, then docker: the first one that answers ``info``
    """
    s = settings or get_settings()
    env = os.environ if env is None else env
    candidates = {
        name: ContainerRuntime(name=name, cli=name, helper_image=s.runtime.helper_image)
        for name in ("podman", "docker")
    }

    order: list[str] = []
    if s.runtime.preferred:
        order.append(s.runtime.preferred)
    if _in_ci(env, s.runtime.ci_env_vars):
        order.append(s.runtime.ci_runtime)
    order += ["podman", "docker"]

    seen: set[str] = set()
    for name in order:
        if name in seen:
            continue
        seen.add(name)
        runtime = candidates[name]
        if _usable(runtime):
            logger.info("Container runtime detected", name=runtime.name, cli=runtime.cli)
            return runtime
        logger.debug("Runtime unusable", runtime=name)

    raise RuntimeNotFound(
        "Neither podman nor docker is installed and responding. "
        "Start the engine (e.g. `podman machine start` or Docker Desktop) and retry."
    )

"""Shared test fixtures for stackdoctor."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object from pure defaults, without config.toml or .env.

    Accepts model fields (ollama, probe, sync, stack, ...) and the
    ``project_root`` / ``state_path`` cached properties.

    Usage::

        s = make_settings(project_root=tmp_path)
        s = make_settings(sync=SyncConfig(images={"ollama": "ollama/ollama:latest"}))
    """
    from stackdoctor.config import (
        InspectorConfig,
        LoggingConfig,
        NetworkConfig,
        OllamaConfig,
        ProbeConfig,
        RuntimeConfig,
        Settings,
        StackContainerConfig,
        SyncConfig,
    )

    cached = {k: overrides.pop(k) for k in ("project_root", "state_path") if k in overrides}

    defaults = {
        "runtime": RuntimeConfig(),
        "ollama": OllamaConfig(),
        "probe": ProbeConfig(),
        "inspector": InspectorConfig(),
        "network": NetworkConfig(),
        "stack": {
            "open-webui": StackContainerConfig(
                image="ghcr.io/open-webui/open-webui:main",
                ports=["3000:8080"],
                volumes=["open-webui:/app/backend/data"],
            )
        },
        "sync": SyncConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def completed(
    stdout: str = "",
    stderr: str = "",
    returncode: int = 0,
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(["fake"], returncode, stdout, stderr)


def inspect_doc(
    *,
    running: bool = True,
    status: str = "running",
    restart_count: int = 0,
    health: str | None = None,
    env: list[str] | None = None,
    image: str = "ghcr.io/open-webui/open-webui:main",
) -> str:
    """JSON text shaped like ``docker inspect <container>`` output."""
    state: dict = {"Running": running, "Status": status}
    if health is not None:
        state["Health"] = {"Status": health}
    doc = {
        "Name": "/open-webui",
        "RestartCount": restart_count,
        "State": state,
        "Config": {
            "Image": image,
            "Env": env if env is not None else ["OLLAMA_BASE_URL=http://169.254.1.2:11434"],
        },
        "HostConfig": {
            "NetworkMode": "bridge",
            "RestartPolicy": {"Name": "unless-stopped"},
            "PortBindings": {"8080/tcp": [{"HostIp": "", "HostPort": "3000"}]},
        },
        "Mounts": [
            {
                "Type": "volume",
                "Name": "open-webui",
                "Destination": "/app/backend/data",
                "RW": True,
            }
        ],
    }
    return json.dumps([doc])


Responder = subprocess.CompletedProcess | Callable[[list[str]], subprocess.CompletedProcess]


class FakeEngine:
    """Stand-in for ``subprocess.run`` that answers engine commands by prefix.

    Keys are argument tuples *after* the CLI name; the longest matching prefix
    wins. Unmatched commands succeed with empty output. Every call is kept in
    ``calls`` for assertions.

    Usage::

        engine = FakeEngine({("inspect",): completed(stderr="no such object", returncode=1)})
        with patch("stackdoctor.runtime.subprocess.run", engine):
            ...
        assert engine.count("push") == 0
    """

    def __init__(self, responses: dict[tuple[str, ...], Responder] | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[list[str]] = []

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        args = tuple(cmd[1:])
        best: tuple[str, ...] | None = None
        for key in self.responses:
            if args[: len(key)] == key and (best is None or len(key) > len(best)):
                best = key
        if best is None:
            return subprocess.CompletedProcess(cmd, 0, "", "")
        response = self.responses[best]
        if callable(response) and not isinstance(response, subprocess.CompletedProcess):
            response = response(cmd)
        return subprocess.CompletedProcess(
            cmd, response.returncode, response.stdout, response.stderr
        )

    def count(self, verb: str) -> int:
        return sum(1 for c in self.calls if len(c) > 1 and c[1] == verb)

    def verbs(self) -> list[str]:
        return [c[1] for c in self.calls if len(c) > 1]


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Each test starts from a pure-defaults Settings singleton.

    Tests that pass settings explicitly or mock ``get_settings()`` at the
    call site are unaffected.
    """
    monkeypatch.setattr("stackdoctor.config._settings", make_settings())


@pytest.fixture(autouse=True)
def _no_ci_env(monkeypatch):
    """Runtime detection reads CI variables; keep the host's out of tests."""
    for var in ("CI", "GITHUB_ACTIONS", "GITLAB_CI", "LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def docker_runtime():
    from stackdoctor.runtime import ContainerRuntime

    return ContainerRuntime(name="docker", cli="docker")


@pytest.fixture
def podman_runtime():
    from stackdoctor.runtime import ContainerRuntime

    return ContainerRuntime(name="podman", cli="podman")

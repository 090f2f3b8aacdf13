"""Tests for container runtime detection and the engine subprocess helper."""

from __future__ import annotations

import json
import subprocess
from unittest.mock import patch

import pytest
from conftest import FakeEngine, completed, make_settings

from stackdoctor.config import RuntimeConfig
from stackdoctor.errors import RuntimeCommandError, RuntimeNotFound
from stackdoctor.runtime import ContainerRuntime, detect_runtime


def _which(*installed: str):
    return lambda cmd: f"/usr/bin/{cmd}" if cmd in installed else None


def _info_ok_for(*alive: str):
    def fake_run(cmd, **kwargs):
        rc = 0 if cmd[0] in alive else 1
        return subprocess.CompletedProcess(cmd, rc, "{}", "" if rc == 0 else "cannot connect")

    return fake_run


class TestDetectRuntime:
    def test_prefers_podman_interactively(self):
        with (
            patch("stackdoctor.runtime.shutil.which", side_effect=_which("podman", "docker")),
            patch("stackdoctor.runtime.subprocess.run", side_effect=_info_ok_for("podman", "docker")),
        ):
            r = detect_runtime(make_settings(), env={})
        assert r.name == "podman"
        assert r.cli == "podman"

    def test_falls_back_to_docker_when_podman_not_responding(self):
        with (
            patch("stackdoctor.runtime.shutil.which", side_effect=_which("podman", "docker")),
            patch("stackdoctor.runtime.subprocess.run", side_effect=_info_ok_for("docker")),
        ):
            r = detect_runtime(make_settings(), env={})
        assert r.name == "docker"

    def test_ci_context_prefers_ci_runtime(self):
        with (
            patch("stackdoctor.runtime.shutil.which", side_effect=_which("podman", "docker")),
            patch("stackdoctor.runtime.subprocess.run", side_effect=_info_ok_for("podman", "docker")),
        ):
            r = detect_runtime(make_settings(), env={"GITHUB_ACTIONS": "true"})
        assert r.name == "docker"

    def test_ci_false_value_is_not_ci(self):
        with (
            patch("stackdoctor.runtime.shutil.which", side_effect=_which("podman", "docker")),
            patch("stackdoctor.runtime.subprocess.run", side_effect=_info_ok_for("podman", "docker")),
        ):
            r = detect_runtime(make_settings(), env={"CI": "false"})
        assert r.name == "podman"

    def test_ci_runtime_missing_falls_back(self):
        with (
            patch("stackdoctor.runtime.shutil.which", side_effect=_which("podman")),
            patch("stackdoctor.runtime.subprocess.run", side_effect=_info_ok_for("podman")),
        ):
            r = detect_runtime(make_settings(), env={"CI": "1"})
        assert r.name == "podman"

    def test_configured_override_wins(self):
        s = make_settings(runtime=RuntimeConfig(preferred="docker"))
        with (
            patch("stackdoctor.runtime.shutil.which", side_effect=_which("podman", "docker")),
            patch("stackdoctor.runtime.subprocess.run", side_effect=_info_ok_for("podman", "docker")),
        ):
            r = detect_runtime(s, env={})
        assert r.name == "docker"

    def test_helper_image_comes_from_settings(self):
        s = make_settings(runtime=RuntimeConfig(helper_image="busybox:1"))
        with (
            patch("stackdoctor.runtime.shutil.which", side_effect=_which("docker")),
            patch("stackdoctor.runtime.subprocess.run", side_effect=_info_ok_for("docker")),
        ):
            r = detect_runtime(s, env={})
        assert r.helper_image == "busybox:1"

    def test_nothing_installed_raises(self):
        with patch("stackdoctor.runtime.shutil.which", return_value=None):
            with pytest.raises(RuntimeNotFound):
                detect_runtime(make_settings(), env={})

    def test_installed_but_not_responding_raises(self):
        with (
            patch("stackdoctor.runtime.shutil.which", side_effect=_which("podman", "docker")),
            patch("stackdoctor.runtime.subprocess.run", side_effect=_info_ok_for()),
        ):
            with pytest.raises(RuntimeNotFound):
                detect_runtime(make_settings(), env={})


class TestRun:
    def test_missing_binary_becomes_failed_process(self, docker_runtime):
        with patch("stackdoctor.runtime.subprocess.run", side_effect=FileNotFoundError("docker")):
            result = docker_runtime.run("ps")
        assert result.returncode == 127

    def test_timeout_becomes_failed_process(self, docker_runtime):
        with patch(
            "stackdoctor.runtime.subprocess.run",
            side_effect=subprocess.TimeoutExpired(["docker", "ps"], 1),
        ):
            result = docker_runtime.run("ps", timeout=1)
        assert result.returncode == 124
        assert "timed out" in result.stderr

    def test_check_raises_runtime_command_error(self, docker_runtime):
        engine = FakeEngine({("ps",): completed(stderr="daemon down", returncode=1)})
        with patch("stackdoctor.runtime.subprocess.run", engine):
            with pytest.raises(RuntimeCommandError, match="daemon down"):
                docker_runtime.run("ps", check=True)


class TestListContainers:
    def test_parses_docker_ndjson_format(self, docker_runtime):
        ndjson = "\n".join(
            [
                json.dumps({"Names": "open-webui", "State": "running"}),
                json.dumps({"Names": "ollama", "State": "running"}),
            ]
        )
        engine = FakeEngine({("ps",): completed(ndjson)})
        with patch("stackdoctor.runtime.subprocess.run", engine):
            assert docker_runtime.list_running_containers() == ["open-webui", "ollama"]
            assert docker_runtime.list_running_containers("open") == ["open-webui"]

    def test_parses_podman_json_array(self, podman_runtime):
        rows = json.dumps([{"Names": ["open-webui"], "State": "running"}])
        engine = FakeEngine({("ps",): completed(rows)})
        with patch("stackdoctor.runtime.subprocess.run", engine):
            assert podman_runtime.list_running_containers() == ["open-webui"]
        assert engine.calls[0] == ["podman", "ps", "--format", "json"]

    def test_all_states_flag(self, docker_runtime):
        engine = FakeEngine()
        with patch("stackdoctor.runtime.subprocess.run", engine):
            assert docker_runtime.list_containers(all_states=True) == []
        assert engine.calls[0][:3] == ["docker", "ps", "-a"]

    def test_garbled_output_raises_command_error(self, docker_runtime):
        engine = FakeEngine({("ps",): completed("Error: permission denied\n{\"Names\"")})
        with patch("stackdoctor.runtime.subprocess.run", engine):
            with pytest.raises(RuntimeCommandError, match="unparseable ps output"):
                docker_runtime.list_containers()


class TestVmExec:
    def test_podman_machine_uses_ssh(self, podman_runtime):
        engine = FakeEngine({("machine", "list"): completed(json.dumps([{"Name": "default"}]))})
        with patch("stackdoctor.runtime.subprocess.run", engine):
            podman_runtime.vm_exec("ip", "route", "show", "default")
        assert engine.calls[-1] == ["podman", "machine", "ssh", "--", "ip", "route", "show", "default"]

    def test_without_machine_uses_helper_container(self):
        rt = ContainerRuntime(name="docker", cli="docker", helper_image="alpine:3.20")
        engine = FakeEngine()
        with patch("stackdoctor.runtime.subprocess.run", engine):
            rt.vm_exec("cat", "/etc/resolv.conf")
        assert engine.calls[-1] == ["docker", "run", "--rm", "alpine:3.20", "cat", "/etc/resolv.conf"]

    def test_host_alias_per_runtime(self, docker_runtime, podman_runtime):
        assert docker_runtime.host_alias == "host.docker.internal"
        assert podman_runtime.host_alias == "host.containers.internal"

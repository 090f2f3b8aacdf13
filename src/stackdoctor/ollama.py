"""Installed and loaded Ollama models, via the ``ollama`` CLI."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass

from stackdoctor.errors import OllamaCommandError
from stackdoctor.logger import logger

# first column of a table row: "llama3.2:3b   a80c4f17acd5   2.0 GB   2 days ago"
_MODEL_ROW_RE = re.compile(r"^(?P<name>\S+)\s")


@dataclass(frozen=True)
class ModelInfo:
    name: str
    loaded: bool


def _ollama(*args: str, timeout: float = 60) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["ollama", *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise OllamaCommandError("ollama CLI not found on PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise OllamaCommandError(f"`ollama {' '.join(args)}` timed out") from exc


def parse_table_names(output: str) -> list[str]:
    """Model names from ``ollama list`` / ``ollama ps`` output (header skipped)."""
    names: list[str] = []
    for line in output.strip().splitlines()[1:]:
        match = _MODEL_ROW_RE.match(line.strip() + " ")
        if match:
            names.append(match.group("name"))
    return names


def installed_models() -> list[str]:
    result = _ollama("list")
    if result.returncode != 0:
        raise OllamaCommandError(f"ollama list failed: {result.stderr.strip()}")
    return parse_table_names(result.stdout)


def loaded_models() -> list[str]:
    result = _ollama("ps")
    if result.returncode != 0:
        raise OllamaCommandError(f"ollama ps failed: {result.stderr.strip()}")
    return parse_table_names(result.stdout)


def list_models() -> list[ModelInfo]:
    loaded = set(loaded_models())
    return [ModelInfo(name, name in loaded) for name in installed_models()]


def stop_model(name: str) -> None:
    result = _ollama("stop", name)
    if result.returncode != 0:
        raise OllamaCommandError(f"ollama stop {name} failed: {result.stderr.strip()}")
    logger.info("Model unloaded", model=name)


def normalize_model_name(name: str) -> str:
    """``llama3`` and ``llama3:latest`` name the same model."""
    return name if ":" in name else f"{name}:latest"


def load_model(name: str, timeout: float = 300) -> None:
    """Run *name* with an empty prompt so it stays resident without a chat."""
    result = _ollama("run", name, "", timeout=timeout)
    if result.returncode != 0:
        raise OllamaCommandError(f"ollama run {name} failed: {result.stderr.strip()}")
    logger.info("Model loaded", model=name)


def unload_all() -> list[tuple[str, OllamaCommandError | None]]:
    """Stop every loaded model; one failure does not stop the others."""
    outcomes: list[tuple[str, OllamaCommandError | None]] = []
    for name in loaded_models():
        try:
            stop_model(name)
        except OllamaCommandError as exc:
            outcomes.append((name, exc))
        else:
            outcomes.append((name, None))
    return outcomes

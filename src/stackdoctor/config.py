"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml. Environment variables override with ``__`` as
the nested delimiter (e.g. ``PROBE__TIMEOUT_SECONDS=3``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from stackdoctor.config import get_settings

    s = get_settings()
    print(s.ollama.port)
    print(s.probe.timeout_seconds)
"""

from __future__ import annotations

import re
from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Unknown keys are rejected."""

    model_config = {"extra": "forbid"}


class RuntimeConfig(_StrictModel):
    preferred: Literal["docker", "podman"] | None = None
    ci_env_vars: list[str] = ["CI", "GITHUB_ACTIONS", "GITLAB_CI"]
    ci_runtime: Literal["docker", "podman"] = "docker"
    helper_image: str = "alpine:3.20"  # runs VM-side queries when there is no podman machine


class OllamaConfig(_StrictModel):
    host: str = "localhost"
    port: int = 11434
    tags_path: str = "/api/tags"
    env_var: str = "OLLAMA_BASE_URL"  # variable client containers read the server URL from

    @property
    def host_url(self) -> str:
        return f"http://{self.host}:{self.port}{self.tags_path}"


class ProbeConfig(_StrictModel):
    timeout_seconds: float = 5.0

    @field_validator("timeout_seconds")
    @classmethod
    def positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class InspectorConfig(_StrictModel):
    restart_loop_threshold: int = 3

    @field_validator("restart_loop_threshold")
    @classmethod
    def clamp_threshold(cls, v: int) -> int:
        return max(0, v)


class NetworkConfig(_StrictModel):
    host_alias: str | None = None  # None: per-runtime default alias


class StackContainerConfig(_StrictModel):
    """One client container of the stack, used when recreating it."""

    image: str
    ports: list[str] = []  # "host:container"
    volumes: list[str] = []  # "name:/path" or "/host:/path"
    env: dict[str, str] = {}
    network: str | None = None
    restart: str | None = "unless-stopped"


_IMAGE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


class SyncConfig(_StrictModel):
    registry: str = "localhost:5000"
    state_file: str = "image-sync.json"
    platform: str = "linux/amd64"
    images: dict[str, str] = {}  # logical name → upstream reference

    @field_validator("images")
    @classmethod
    def validate_names(cls, v: dict[str, str]) -> dict[str, str]:
        bad = [name for name in v if not _IMAGE_NAME_RE.match(name)]
        if bad:
            raise ValueError(f"Invalid image logical names: {', '.join(sorted(bad))}")
        return v


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


def _default_stack() -> dict[str, StackContainerConfig]:
    return {
        "open-webui": StackContainerConfig(
            image="ghcr.io/open-webui/open-webui:main",
            ports=["3000:8080"],
            volumes=["open-webui:/app/backend/data"],
        )
    }


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    runtime: RuntimeConfig = RuntimeConfig()
    ollama: OllamaConfig = OllamaConfig()
    probe: ProbeConfig = ProbeConfig()
    inspector: InspectorConfig = InspectorConfig()
    network: NetworkConfig = NetworkConfig()
    stack: dict[str, StackContainerConfig] = _default_stack()  # [stack.<container_name>]
    sync: SyncConfig = SyncConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def state_path(self) -> Path:
        path = Path(self.sync.state_file).expanduser()
        if not path.is_absolute():
            path = self.project_root / path
        return path.resolve()


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None

"""Exception taxonomy.

Per-item errors (one container, one image) are caught by the workflows and
turned into report lines. Whole-run errors (``RuntimeNotFound`` and the
record-store errors) abort the command with exit code 1.
"""

from __future__ import annotations


class StackDoctorError(Exception):
    """Base class for every error this package raises on purpose."""


# -- runtime ----------------------------------------------------------------


class RuntimeNotFound(StackDoctorError):
    """Neither docker nor podman is installed and responding."""


class RuntimeCommandError(StackDoctorError):
    """A container engine command failed unexpectedly."""

    def __init__(self, args: list[str], returncode: int, stderr: str = "") -> None:
        self.command = args
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"`{' '.join(args)}` exited {returncode}{detail}")


# -- network / probes --------------------------------------------------------


class HostResolutionFailed(StackDoctorError):
    """Every host-address resolution strategy was exhausted."""

    def __init__(self, attempts: list[tuple[str, str]]) -> None:
        self.attempts = attempts
        tried = "; ".join(f"{method}: {reason}" for method, reason in attempts)
        super().__init__(f"Could not resolve a routable host address ({tried})")


class ProbeTimeout(StackDoctorError):
    pass


class ProbeUnreachable(StackDoctorError):
    pass


# -- containers --------------------------------------------------------------


class ContainerNotFound(StackDoctorError):
    pass


class ContainerUnhealthy(StackDoctorError):
    pass


class RestartLoopDetected(StackDoctorError):
    pass


class RecreateFailed(StackDoctorError):
    """Recreation failed partway; the container may be absent."""


# -- image sync --------------------------------------------------------------


class DigestUnavailable(StackDoctorError):
    """The upstream digest could not be read or parsed."""


class PullFailed(StackDoctorError):
    pass


class TagFailed(StackDoctorError):
    pass


class PushFailed(StackDoctorError):
    pass


class RecordStoreCorrupt(StackDoctorError):
    """The digest record file exists but cannot be parsed."""


class RecordStoreMissing(StackDoctorError):
    """The digest record file does not exist and was not asked to be created."""


# -- ollama CLI --------------------------------------------------------------


class OllamaCommandError(StackDoctorError):
    """The ``ollama`` CLI is missing or a command failed."""

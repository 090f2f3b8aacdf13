"""Check results, the per-run context, and report rendering.

A run accumulates results in a ``ReportBuilder`` carried by its
``RunContext``; ``finish()`` freezes them into a ``DiagnosticReport``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum

import click

from stackdoctor.config import Settings
from stackdoctor.logger import logger
from stackdoctor.runtime import ContainerRuntime


class CheckStatus(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"
    INFO = "info"
    UPDATE = "update"
    NEW = "new"


_STYLES: dict[CheckStatus, dict] = {
    CheckStatus.PASS: {"fg": "green", "bold": True},
    CheckStatus.FAIL: {"fg": "red", "bold": True},
    CheckStatus.SKIP: {"fg": "yellow"},
    CheckStatus.INFO: {"fg": "cyan"},
    CheckStatus.UPDATE: {"fg": "magenta", "bold": True},
    CheckStatus.NEW: {"fg": "blue", "bold": True},
}


@dataclass(frozen=True)
class CheckResult:
    status: CheckStatus
    name: str
    message: str
    detail: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": str(self.status),
            "name": self.name,
            "message": self.message,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class DiagnosticReport:
    command: str
    results: tuple[CheckResult, ...] = ()
    aborted: bool = False

    def _count(self, status: CheckStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def passed(self) -> int:
        return self._count(CheckStatus.PASS)

    @property
    def failed(self) -> int:
        return self._count(CheckStatus.FAIL)

    @property
    def skipped(self) -> int:
        return self._count(CheckStatus.SKIP)

    @property
    def exit_code(self) -> int:
        return 1 if self.aborted or self.failed else 0

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "results": [r.to_dict() for r in self.results],
        }


class ReportBuilder:
    """Ordered, append-only collection of results for one run."""

    def __init__(self, command: str) -> None:
        self.command = command
        self._results: list[CheckResult] = []
        self._aborted = False

    def add(
        self,
        status: CheckStatus,
        name: str,
        message: str,
        detail: str | None = None,
    ) -> CheckResult:
        result = CheckResult(status, name, message, detail)
        self._results.append(result)
        level = "warning" if status == CheckStatus.FAIL else "debug"
        getattr(logger, level)("Check recorded", status=str(status), check=name, message=message)
        return result

    def passed(self, name: str, message: str, detail: str | None = None) -> CheckResult:
        return self.add(CheckStatus.PASS, name, message, detail)

    def failed(self, name: str, message: str, detail: str | None = None) -> CheckResult:
        return self.add(CheckStatus.FAIL, name, message, detail)

    def skipped(self, name: str, message: str, detail: str | None = None) -> CheckResult:
        return self.add(CheckStatus.SKIP, name, message, detail)

    def info(self, name: str, message: str, detail: str | None = None) -> CheckResult:
        return self.add(CheckStatus.INFO, name, message, detail)

    def abort(self, name: str, message: str) -> None:
        """Record a whole-run failure; nothing after this is meaningful."""
        self.failed(name, message)
        self._aborted = True

    @property
    def results(self) -> tuple[CheckResult, ...]:
        return tuple(self._results)

    def finish(self) -> DiagnosticReport:
        return DiagnosticReport(self.command, tuple(self._results), self._aborted)


@dataclass
class RunContext:
    """Everything one invocation threads through its steps."""

    settings: Settings
    report: ReportBuilder
    runtime: ContainerRuntime | None = None
    extras: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def format_line(result: CheckResult, *, color: bool = True) -> str:
    tag = f"[{result.status.upper()}]"
    if color:
        tag = click.style(tag, **_STYLES[result.status])
    line = f"{tag} {result.name}: {result.message}"
    if result.detail:
        line += f"\n       {result.detail}"
    return line


def render_text(report: DiagnosticReport, *, color: bool = True) -> str:
    lines = [format_line(r, color=color) for r in report.results]
    summary = f"{report.passed} passed, {report.failed} failed, {report.skipped} skipped"
    if report.aborted:
        summary += " (aborted)"
    lines.append("")
    lines.append(summary)
    return "\n".join(lines) + "\n"


def render_json(report: DiagnosticReport) -> str:
    return json.dumps(report.to_dict(), indent=2) + "\n"


def emit(report: DiagnosticReport, *, as_json: bool = False) -> None:
    """Write the report to stdout; click strips colors when not on a TTY."""
    if as_json:
        click.echo(render_json(report), nl=False)
    else:
        click.echo(render_text(report), nl=False)

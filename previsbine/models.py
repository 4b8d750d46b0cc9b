"""Shared result and invocation types for the previsbine pipeline.

These are plain frozen dataclasses: they are created once, handed across the
step / supervisor / archive boundaries and never mutated afterwards.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ErrorKind(str, Enum):
    """Structured classification of a failed step attempt."""

    CONFIGURATION = "configuration"
    PRECONDITION = "precondition"
    LAUNCH = "launch"
    TOOL_EXIT = "tool_exit"
    TOOL_LOG = "tool_log"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    CRASH = "crash"
    TIMEOUT = "timeout"
    MISSING_OUTPUT = "missing_output"
    ARCHIVE = "archive"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Marker:
    """A log signature emitted by an external tool.

    ``pattern`` is a regular expression matched line by line,
    case-insensitively.
    """

    name: str
    pattern: str
    kind: ErrorKind = ErrorKind.TOOL_LOG
    message: str = ""
    remediation: str = ""

    def search(self, text: str) -> str | None:
        """Return the first log line matching this marker, or ``None``."""
        regex = re.compile(self.pattern, re.IGNORECASE)
        for line in text.splitlines():
            if regex.search(line):
                return line.strip()
        return None


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step (or one external invocation) attempt."""

    success: bool
    message: str
    exit_code: int | None = None
    error_kind: ErrorKind | None = None
    step: int | None = None
    duration_seconds: float = 0.0
    remediation: str = ""

    @classmethod
    def ok(cls, message: str, **kwargs) -> "StepResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, **kwargs) -> "StepResult":
        return cls(success=False, message=message, error_kind=kind, **kwargs)

    def for_step(self, ordinal: int) -> "StepResult":
        """Return a copy of this result attributed to step *ordinal*."""
        return StepResult(
            success=self.success,
            message=self.message,
            exit_code=self.exit_code,
            error_kind=self.error_kind,
            step=ordinal,
            duration_seconds=self.duration_seconds,
            remediation=self.remediation,
        )

    def summary(self) -> str:
        """Return a human-readable summary of the result."""
        status = "[green]SUCCESS[/green]" if self.success else "[red]FAILED[/red]"
        lines = [f"Status: {status}", f"Message: {self.message}"]
        if self.step is not None:
            lines.insert(0, f"Step: {self.step}")
        if self.exit_code is not None:
            lines.append(f"Exit code: {self.exit_code}")
        if self.error_kind is not None:
            lines.append(f"Error kind: {self.error_kind.value}")
        if self.duration_seconds:
            lines.append(f"Duration: {self.duration_seconds:.1f}s")
        if self.remediation:
            lines.append(f"Remediation: {self.remediation}")
        return "\n".join(lines)


@dataclass(frozen=True)
class ExternalInvocation:
    """One external process launch, handed to the process supervisor.

    ``log_path`` is the file the tool writes its log to; it is deleted before
    launch and tailed while the process runs. Tools that write no log (the
    archive packers) leave it as ``None``.
    """

    executable: Path
    arguments: tuple[str, ...]
    working_dir: Path
    timeout_seconds: float
    log_path: Path | None = None
    label: str = ""
    fatal_markers: tuple[Marker, ...] = ()
    failure_markers: tuple[Marker, ...] = ()
    completion_markers: tuple[Marker, ...] = ()

    @property
    def command(self) -> list[str]:
        return [str(self.executable), *self.arguments]

    @property
    def display_name(self) -> str:
        return self.label or self.executable.name


class ArchiveMode(str, Enum):
    CREATE_FRESH = "create_fresh"
    MERGE_INTO_EXISTING = "merge_into_existing"


@dataclass(frozen=True)
class ArchiveOperation:
    """One archive mutation against the content root.

    ``sources`` are folders relative to ``content_root``. ``supersedes`` lists
    other containers belonging to the same plugin whose contents are folded
    into ``target`` and which are removed once the target is written.
    """

    target: Path
    content_root: Path
    sources: tuple[Path, ...]
    supersedes: tuple[Path, ...] = field(default=())

    @property
    def existing_containers(self) -> list[Path]:
        """Containers currently on disk that this operation will absorb."""
        seen: list[Path] = []
        for candidate in (self.target, *self.supersedes):
            if candidate.is_file() and candidate not in seen:
                seen.append(candidate)
        return seen

    @property
    def mode(self) -> ArchiveMode:
        # Recomputed on every access: containers can appear between steps.
        if self.existing_containers:
            return ArchiveMode.MERGE_INTO_EXISTING
        return ArchiveMode.CREATE_FRESH

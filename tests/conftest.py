"""Shared pytest fixtures for the previsbine test suite.

Provides reusable fixtures for:
- A fake game install (tool executables, Data directory, xEdit scripts)
- Build configurations pointing at that install
- A fake supervisor that simulates the Creation Kit, xEdit and the archiver
  (archives are real zip files so merges can be inspected)
- Scripted prompters for the pipeline controller
"""

from __future__ import annotations

import zipfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from previsbine.archive.backends import Archive2Backend
from previsbine.archive.engine import ArchiveMergeEngine
from previsbine.config import (
    MERGE_PRECOMBINES_SCRIPT,
    MERGE_PREVIS_SCRIPT,
    BuildConfiguration,
)
from previsbine.models import ErrorKind, ExternalInvocation, StepResult
from previsbine.pipeline import Recovery
from previsbine.steps.library import StepLibrary

PLUGIN = "Test.esp"


# ---------------------------------------------------------------------------
# Fake game install
# ---------------------------------------------------------------------------

@pytest.fixture
def game_dir(tmp_path: Path) -> Path:
    """A directory laid out like a game install with all three tools."""
    root = tmp_path / "Fallout 4"
    data = root / "Data"
    data.mkdir(parents=True)
    (root / "CreationKit.exe").write_bytes(b"MZ")
    (root / "Tools" / "Archive2").mkdir(parents=True)
    (root / "Tools" / "Archive2" / "Archive2.exe").write_bytes(b"MZ")
    xedit_dir = root / "xEdit"
    (xedit_dir / "Edit Scripts").mkdir(parents=True)
    (xedit_dir / "FO4Edit.exe").write_bytes(b"MZ")
    for script in (MERGE_PRECOMBINES_SCRIPT, MERGE_PREVIS_SCRIPT):
        (xedit_dir / "Edit Scripts" / script).write_text("unit script;", encoding="utf-8")
    (data / PLUGIN).write_bytes(b"TES4")
    return root


@pytest.fixture
def make_config(game_dir: Path) -> Callable[..., BuildConfiguration]:
    """Factory for configurations pointing at the fake install."""

    def factory(**overrides: Any) -> BuildConfiguration:
        settings: dict[str, Any] = {
            "plugin": PLUGIN,
            "creation_kit": game_dir / "CreationKit.exe",
            "xedit": game_dir / "xEdit" / "FO4Edit.exe",
            "archive_tool": game_dir / "Tools" / "Archive2" / "Archive2.exe",
            "ck_log": game_dir / "CreationKit.log",
            "poll_interval": 0.05,
            "exit_grace_seconds": 0.0,
        }
        settings.update(overrides)
        return BuildConfiguration(**settings)

    return factory


@pytest.fixture
def config(make_config) -> BuildConfiguration:
    return make_config()


# ---------------------------------------------------------------------------
# Fake toolchain
# ---------------------------------------------------------------------------

def operation_of(invocation: ExternalInvocation) -> str:
    """Classify an invocation the way the fake toolchain dispatches it."""
    name = invocation.executable.name.lower()
    first = invocation.arguments[0] if invocation.arguments else ""
    if name == "creationkit.exe":
        if first.startswith("-GeneratePrecombined"):
            return "precombines"
        if first.startswith("-CompressPSG"):
            return "compress"
        if first.startswith("-BuildCDX"):
            return "cdx"
        if first.startswith("-GeneratePreVisData"):
            return "previs"
    if "edit" in name:
        script = next(a for a in invocation.arguments if a.startswith("-Script:"))
        return "xedit-previs" if "PreVis" in script else "xedit-precombines"
    if any(a.startswith("-c=") for a in invocation.arguments):
        return "pack"
    if any(a.startswith("-e=") for a in invocation.arguments):
        return "extract"
    raise AssertionError(f"Unexpected invocation: {invocation.command}")


def _option(invocation: ExternalInvocation, prefix: str) -> Path:
    value = next(a for a in invocation.arguments if a.startswith(prefix))
    return Path(value[len(prefix):])


def zip_pack(invocation: ExternalInvocation) -> StepResult:
    """Archive2-style pack implemented with zipfile."""
    root = Path(invocation.arguments[0])
    archive = _option(invocation, "-c=")
    with zipfile.ZipFile(archive, "w") as zf:
        for path in sorted(root.rglob("*")):
            if path.is_file():
                zf.write(path, path.relative_to(root).as_posix())
    return StepResult.ok("packed", exit_code=0)


def zip_extract(invocation: ExternalInvocation) -> StepResult:
    """Archive2-style extract implemented with zipfile."""
    archive = Path(invocation.arguments[0])
    destination = _option(invocation, "-e=")
    with zipfile.ZipFile(archive) as zf:
        zf.extractall(destination)
    return StepResult.ok("extracted", exit_code=0)


def archive_names(archive: Path) -> set[str]:
    with zipfile.ZipFile(archive) as zf:
        return set(zf.namelist())


class FakeToolchain:
    """Stands in for the process supervisor.

    Each operation writes the files the real tool would produce and returns
    a successful result. ``overrides`` maps an operation name to a result
    (or a list of results, consumed in order) that replaces the simulation.
    """

    def __init__(self, config: BuildConfiguration):
        self.config = config
        self.invocations: list[ExternalInvocation] = []
        self.overrides: dict[str, StepResult | list[StepResult]] = {}
        self.hooks: dict[str, Callable[[ExternalInvocation], None]] = {}

    @property
    def operations(self) -> list[str]:
        return [operation_of(i) for i in self.invocations]

    async def run(self, invocation: ExternalInvocation) -> StepResult:
        self.invocations.append(invocation)
        operation = operation_of(invocation)
        if operation in self.hooks:
            self.hooks[operation](invocation)
        override = self.overrides.get(operation)
        if isinstance(override, list):
            if override:
                return override.pop(0)
        elif override is not None:
            return override
        return getattr(self, f"_{operation.replace('-', '_')}")(invocation)

    def _precombines(self, invocation: ExternalInvocation) -> StepResult:
        cfg = self.config
        cfg.precombine_dir.mkdir(parents=True, exist_ok=True)
        (cfg.precombine_dir / "0001abcd_0000beef_OC.nif").write_bytes(b"nif")
        cfg.combined_objects_plugin.write_bytes(b"TES4")
        if "clean" in invocation.arguments:
            cfg.geometry_file.write_bytes(b"psg")
        return StepResult.ok("ck ok", exit_code=0)

    def _compress(self, invocation: ExternalInvocation) -> StepResult:
        self.config.compressed_geometry_file.write_bytes(b"csg")
        return StepResult.ok("ck ok", exit_code=0)

    def _cdx(self, invocation: ExternalInvocation) -> StepResult:
        self.config.spatial_index_file.write_bytes(b"cdx")
        return StepResult.ok("ck ok", exit_code=0)

    def _previs(self, invocation: ExternalInvocation) -> StepResult:
        cfg = self.config
        cfg.vis_dir.mkdir(parents=True, exist_ok=True)
        (cfg.vis_dir / "Test.esp").mkdir(exist_ok=True)
        (cfg.vis_dir / "Test.esp" / "0000ff01.uvd").write_bytes(b"uvd")
        cfg.previs_plugin.write_bytes(b"TES4")
        return StepResult.ok("ck ok", exit_code=0)

    def _xedit_precombines(self, invocation: ExternalInvocation) -> StepResult:
        return StepResult.ok("xedit ok", exit_code=0)

    def _xedit_previs(self, invocation: ExternalInvocation) -> StepResult:
        return StepResult.ok("xedit ok", exit_code=0)

    def _pack(self, invocation: ExternalInvocation) -> StepResult:
        return zip_pack(invocation)

    def _extract(self, invocation: ExternalInvocation) -> StepResult:
        return zip_extract(invocation)


@pytest.fixture
def toolchain(config: BuildConfiguration) -> FakeToolchain:
    return FakeToolchain(config)


def make_library(toolchain: FakeToolchain) -> StepLibrary:
    """A step library whose processes all go through *toolchain*."""

    def engine_factory(cfg: BuildConfiguration) -> ArchiveMergeEngine:
        backend = Archive2Backend(cfg.archive_tool)
        return ArchiveMergeEngine(backend, toolchain, cfg.staging_dir, cfg.timeout_seconds)

    return StepLibrary(supervisor=toolchain, engine_factory=engine_factory)


@pytest.fixture
def library(toolchain: FakeToolchain) -> StepLibrary:
    return make_library(toolchain)


# ---------------------------------------------------------------------------
# Prompters
# ---------------------------------------------------------------------------

class ScriptedPrompter:
    """Returns pre-arranged answers and records every question."""

    def __init__(self, recoveries: list[Recovery] | None = None, clear: bool = False):
        self.recoveries = list(recoveries or [])
        self.clear = clear
        self.clear_requests: list[tuple[int, list[Path]]] = []
        self.failures: list[StepResult] = []

    def confirm_clear(self, step, paths, config) -> bool:
        self.clear_requests.append((step.ordinal, list(paths)))
        return self.clear

    def choose_recovery(self, step, result, config) -> Recovery:
        self.failures.append(result)
        if not self.recoveries:
            return Recovery.abort()
        return self.recoveries.pop(0)


@pytest.fixture
def prompter() -> ScriptedPrompter:
    return ScriptedPrompter()


def failed(kind: ErrorKind = ErrorKind.TOOL_EXIT, message: str = "tool failed") -> StepResult:
    return StepResult.fail(kind, message, exit_code=1)

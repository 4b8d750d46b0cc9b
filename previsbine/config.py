"""Previsbine build configuration.

Typed, immutable per-run settings. The configuration is a frozen Pydantic v2
model so it is validated at construction, serialises to/from JSON without
boiler-plate, and cannot be changed halfway through a run. Retries that need
different settings work on a copy (:meth:`BuildConfiguration.with_updates`).
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from previsbine.archive.backends import ArchiveBackendKind
from previsbine.archive.engine import PRECOMBINE_MESH_DIR, VISIBILITY_DIR

PLUGIN_EXTENSIONS = (".esp", ".esm", ".esl")

# Names the Creation Kit and the merge scripts use for their own output.
COMBINED_OBJECTS_PLUGIN = "CombinedObjects.esp"
PREVIS_PLUGIN = "Previs.esp"
RESERVED_PLUGIN_NAMES = frozenset(
    name.lower() for name in (COMBINED_OBJECTS_PLUGIN, PREVIS_PLUGIN, "xPrevisPatch.esp")
)

MERGE_PRECOMBINES_SCRIPT = "Batch_FO4MergeCombinedObjectsAndCheck.pas"
MERGE_PREVIS_SCRIPT = "Batch_FO4MergePreVisandCleanRefr.pas"


class BuildMode(str, Enum):
    """Which flavour of previsbines to build."""

    CLEAN = "clean"
    FILTERED = "filtered"
    XBOX = "xbox"

    @property
    def precombine_directive(self) -> str:
        """Argument passed to ``-GeneratePrecombined`` for this mode."""
        return "clean" if self is BuildMode.CLEAN else "filtered"


class ConfigurationError(Exception):
    """Raised before the pipeline starts when the configuration is unusable."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        detail = "\n".join(f"  - {p}" for p in problems)
        super().__init__(f"Invalid build configuration:\n{detail}")


class BuildConfiguration(BaseModel):
    """Settings for one previsbine build of one plugin.

    Instances are created once by the CLI (or by tests) and passed through
    the controller, the step library and the archive engine unchanged.
    """

    model_config = ConfigDict(frozen=True)

    plugin: str
    mode: BuildMode = Field(default=BuildMode.CLEAN)

    creation_kit: Path
    xedit: Path
    archive_tool: Path
    archive_backend: ArchiveBackendKind = Field(default=ArchiveBackendKind.ARCHIVE2)

    data_dir: Path | None = Field(default=None, description="Defaults to <Creation Kit dir>/Data")
    work_dir: Path | None = Field(default=None, description="Defaults to <game dir>/previsbine")
    ck_log: Path | None = Field(default=None, description="Log file written by the Creation Kit")

    timeout_minutes: float = Field(default=60, gt=0, description="Per-tool timeout in minutes")
    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between process polls")
    exit_grace_seconds: float = Field(
        default=15.0, ge=0, description="How long a tool may linger after reporting completion"
    )
    keep_temp_files: bool = Field(default=False)
    non_interactive: bool = Field(default=False)
    start_step: int = Field(default=1, ge=1, le=8)

    @field_validator("plugin")
    @classmethod
    def _check_plugin(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("plugin name is empty")
        if "/" in value or "\\" in value:
            raise ValueError("plugin must be a file name, not a path")
        if Path(value).suffix.lower() not in PLUGIN_EXTENSIONS:
            raise ValueError(f"plugin must end in one of {', '.join(PLUGIN_EXTENSIONS)}")
        if value.lower() in RESERVED_PLUGIN_NAMES:
            raise ValueError(f"'{value}' is reserved for intermediate build output")
        return value

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def plugin_stem(self) -> str:
        return Path(self.plugin).stem

    @property
    def game_dir(self) -> Path:
        """Directory holding the Creation Kit executable."""
        return self.creation_kit.parent

    @property
    def content_root(self) -> Path:
        """The game's ``Data`` directory."""
        return self.data_dir or (self.game_dir / "Data")

    @property
    def work_root(self) -> Path:
        """Directory for plugin lists, logs, staging and run state."""
        return self.work_dir or (self.game_dir / "previsbine")

    @property
    def plugin_path(self) -> Path:
        return self.content_root / self.plugin

    @property
    def precombine_dir(self) -> Path:
        return self.content_root / PRECOMBINE_MESH_DIR

    @property
    def vis_dir(self) -> Path:
        return self.content_root / VISIBILITY_DIR

    @property
    def geometry_file(self) -> Path:
        """Uncompressed geometry data written by Clean precombine generation."""
        return self.content_root / f"{self.plugin_stem} - Geometry.psg"

    @property
    def compressed_geometry_file(self) -> Path:
        return self.content_root / f"{self.plugin_stem} - Geometry.csg"

    @property
    def spatial_index_file(self) -> Path:
        return self.content_root / f"{self.plugin_stem}.cdx"

    @property
    def main_archive(self) -> Path:
        return self.content_root / f"{self.plugin_stem} - Main.ba2"

    @property
    def precombine_archive(self) -> Path:
        return self.content_root / f"{self.plugin_stem} - Precombine.ba2"

    @property
    def combined_objects_plugin(self) -> Path:
        return self.content_root / COMBINED_OBJECTS_PLUGIN

    @property
    def previs_plugin(self) -> Path:
        return self.content_root / PREVIS_PLUGIN

    @property
    def xedit_scripts_dir(self) -> Path:
        return self.xedit.parent / "Edit Scripts"

    @property
    def plugin_list_path(self) -> Path:
        return self.work_root / "Plugins.txt"

    @property
    def staging_dir(self) -> Path:
        return self.work_root / "staging"

    @property
    def state_path(self) -> Path:
        return self.work_root / f"{self.plugin_stem}-state.json"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60

    def xedit_log(self, role: str) -> Path:
        """Log file xEdit is told to write for the *role* merge."""
        return self.work_root / f"xedit-{role}-{self.plugin_stem}.log"

    def intermediate_files(self) -> list[Path]:
        """Files produced along the way that a completed build no longer needs."""
        return [
            self.plugin_list_path,
            self.xedit_log("precombines"),
            self.xedit_log("previs"),
            self.combined_objects_plugin,
            self.previs_plugin,
        ]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_environment(self) -> None:
        """Check that every tool, directory and input the build needs exists.

        Raises:
            ConfigurationError: Listing every problem found, so the operator
                can fix them in one go.
        """
        problems: list[str] = []
        for label, path in (
            ("Creation Kit", self.creation_kit),
            ("xEdit", self.xedit),
            (f"{self.archive_backend.value} archiver", self.archive_tool),
        ):
            if not path.is_file():
                problems.append(f"{label} not found at {path}")

        if not self.content_root.is_dir():
            problems.append(f"Data directory not found: {self.content_root}")
        elif not self.plugin_path.is_file():
            problems.append(f"Plugin {self.plugin} not found in {self.content_root}")

        if self.ck_log is None:
            problems.append(
                "Creation Kit log file is not configured; set the log output file "
                "in the Creation Kit extender's ini or pass --ck-log"
            )
        elif not self.ck_log.parent.is_dir():
            problems.append(f"Directory for the Creation Kit log does not exist: {self.ck_log.parent}")

        if problems:
            raise ConfigurationError(problems)

    def ensure_directories(self) -> None:
        """Create the directories that must exist before the pipeline runs."""
        for directory in (self.work_root, self.staging_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Copies and serialisation helpers
    # ------------------------------------------------------------------

    def with_updates(self, **changes: Any) -> "BuildConfiguration":
        """Return a validated copy with *changes* applied."""
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<work_root>/config.json``.

        Returns:
            The path where the file was written.
        """
        target = path or (self.work_root / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path, **overrides: Any) -> "BuildConfiguration":
        """Load a previously-saved configuration, applying *overrides* on top."""
        raw = Path(path).read_text(encoding="utf-8")
        config = cls.model_validate_json(raw)
        if overrides:
            config = config.with_updates(**overrides)
        return config

    @classmethod
    def from_env(cls, **overrides: Any) -> "BuildConfiguration":
        """Build a configuration from environment variables plus *overrides*.

        Recognised variables (all optional):
            PREVISBINE_PLUGIN, PREVISBINE_MODE, PREVISBINE_CREATION_KIT,
            PREVISBINE_XEDIT, PREVISBINE_ARCHIVE_TOOL, PREVISBINE_ARCHIVER,
            PREVISBINE_DATA_DIR, PREVISBINE_WORK_DIR, PREVISBINE_CK_LOG,
            PREVISBINE_TIMEOUT.
        """
        env_map = {
            "PREVISBINE_PLUGIN": "plugin",
            "PREVISBINE_MODE": "mode",
            "PREVISBINE_CREATION_KIT": "creation_kit",
            "PREVISBINE_XEDIT": "xedit",
            "PREVISBINE_ARCHIVE_TOOL": "archive_tool",
            "PREVISBINE_ARCHIVER": "archive_backend",
            "PREVISBINE_DATA_DIR": "data_dir",
            "PREVISBINE_WORK_DIR": "work_dir",
            "PREVISBINE_CK_LOG": "ck_log",
            "PREVISBINE_TIMEOUT": "timeout_minutes",
        }
        kwargs: dict[str, Any] = {}
        for variable, field_name in env_map.items():
            if os.environ.get(variable):
                kwargs[field_name] = os.environ[variable]
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)

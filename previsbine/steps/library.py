"""The eight build steps of a previsbine run.

Each step is an async function of the build configuration that returns a
:class:`StepResult`. Steps check their own inputs, launch the external tool
through the process supervisor (or hand folders to the archive engine), and
verify the outputs they were supposed to produce. They never raise for tool
or precondition failures; the controller decides what happens next.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console

from previsbine.archive.backends import create_backend
from previsbine.archive.engine import (
    PRECOMBINE_MESH_DIR,
    VISIBILITY_DIR,
    ArchiveMergeEngine,
)
from previsbine.config import (
    MERGE_PRECOMBINES_SCRIPT,
    MERGE_PREVIS_SCRIPT,
    BuildConfiguration,
    BuildMode,
)
from previsbine.models import (
    ArchiveOperation,
    ErrorKind,
    ExternalInvocation,
    Marker,
    StepResult,
)
from previsbine.runner import markers
from previsbine.runner.injection import suspended_injectors
from previsbine.runner.supervisor import ProcessSupervisor
from previsbine.utils import count_files, has_files, is_dir_empty, remove_path

console = Console()

StepAction = Callable[[BuildConfiguration], Awaitable[StepResult]]

ALL_MODES = frozenset(BuildMode)
CLEAN_ONLY = frozenset({BuildMode.CLEAN})


def is_occupied(path: Path) -> bool:
    """True if *path* is an existing file or a non-empty directory."""
    if path.is_dir():
        return not is_dir_empty(path)
    return path.exists()


@dataclass(frozen=True)
class StepDefinition:
    """Static descriptor of one pipeline step.

    ``must_be_clear`` names the outputs of this step that have to be absent
    (files) or empty (directories) before it may run. Leftovers there belong
    to an earlier or concurrent run.
    """

    ordinal: int
    name: str
    action: StepAction
    modes: frozenset[BuildMode] = ALL_MODES
    skippable: bool = False
    must_be_clear: Callable[[BuildConfiguration], list[Path]] = field(
        default=lambda cfg: []
    )

    def applies_to(self, mode: BuildMode) -> bool:
        return mode in self.modes

    def blocking_paths(self, cfg: BuildConfiguration) -> list[Path]:
        """Paths from ``must_be_clear`` that currently hold data."""
        return [path for path in self.must_be_clear(cfg) if is_occupied(path)]


class StepLibrary:
    """Builds and runs the tool invocations for every pipeline step.

    Args:
        supervisor: Supervisor used for every external process. When omitted
            one is created per configuration from its poll/grace settings.
        engine_factory: Creates the archive engine for a configuration.
            Defaults to the backend selected in the configuration.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor | None = None,
        engine_factory: Callable[[BuildConfiguration], ArchiveMergeEngine] | None = None,
    ):
        self._supervisor = supervisor
        self._engine_factory = engine_factory

    def supervisor_for(self, cfg: BuildConfiguration) -> ProcessSupervisor:
        if self._supervisor is not None:
            return self._supervisor
        return ProcessSupervisor(
            poll_interval=cfg.poll_interval,
            exit_grace_seconds=cfg.exit_grace_seconds,
        )

    def engine_for(self, cfg: BuildConfiguration) -> ArchiveMergeEngine:
        if self._engine_factory is not None:
            return self._engine_factory(cfg)
        backend = create_backend(
            cfg.archive_backend, cfg.archive_tool, xbox=cfg.mode is BuildMode.XBOX
        )
        return ArchiveMergeEngine(
            backend,
            self.supervisor_for(cfg),
            staging_root=cfg.staging_dir,
            timeout_seconds=cfg.timeout_seconds,
        )

    def definitions(self) -> list[StepDefinition]:
        """All eight steps in ordinal order."""
        return [
            StepDefinition(
                1,
                "Generate Precombines",
                self.generate_precombines,
                must_be_clear=lambda cfg: [cfg.precombine_dir, cfg.combined_objects_plugin],
            ),
            StepDefinition(2, "Merge Precombine Plugin", self.merge_precombine_plugin),
            StepDefinition(3, "Archive Precombines", self.archive_precombines, skippable=True),
            StepDefinition(4, "Compress Geometry", self.compress_geometry, modes=CLEAN_ONLY),
            StepDefinition(5, "Build Spatial Index", self.build_spatial_index, modes=CLEAN_ONLY),
            StepDefinition(
                6,
                "Generate Previs",
                self.generate_previs,
                must_be_clear=lambda cfg: [cfg.vis_dir, cfg.previs_plugin],
            ),
            StepDefinition(7, "Merge Previs Plugin", self.merge_previs_plugin),
            StepDefinition(8, "Final Archive", self.final_archive, skippable=True),
        ]

    # ------------------------------------------------------------------
    # Step 1: precombines
    # ------------------------------------------------------------------

    async def generate_precombines(self, cfg: BuildConfiguration) -> StepResult:
        """Run ``-GeneratePrecombined`` in the mode's clean/filtered form."""
        if not cfg.plugin_path.is_file():
            return _precondition(1, f"Plugin not found: {cfg.plugin_path}")
        for path in (cfg.precombine_dir, cfg.combined_objects_plugin):
            if is_occupied(path):
                return _precondition(
                    1, f"{path} already exists; remove it before generating precombines"
                )

        invocation = self._creation_kit(
            cfg,
            [f"-GeneratePrecombined:{cfg.plugin}", cfg.mode.precombine_directive, "all"],
            "Creation Kit (precombines)",
        )
        result = await self._run_creation_kit(cfg, invocation)
        if not result.success:
            return result.for_step(1)

        meshes = count_files(cfg.precombine_dir, "*.nif")
        if meshes == 0:
            return StepResult.fail(
                ErrorKind.MISSING_OUTPUT,
                f"No precombined meshes were generated in {cfg.precombine_dir}",
                exit_code=result.exit_code,
                step=1,
                remediation=(
                    "The plugin may contain no precombinable references, or the "
                    "Creation Kit failed silently; check its log."
                ),
            )
        if not cfg.combined_objects_plugin.is_file():
            return StepResult.fail(
                ErrorKind.MISSING_OUTPUT,
                f"Creation Kit did not write {cfg.combined_objects_plugin.name}",
                exit_code=result.exit_code,
                step=1,
            )
        if cfg.mode is BuildMode.CLEAN and not cfg.geometry_file.is_file():
            console.print(
                f"  [yellow]{cfg.geometry_file.name} was not produced; "
                "geometry compression will fail.[/yellow]"
            )
        return StepResult.ok(
            f"Generated {meshes} precombined mesh(es) ({cfg.mode.precombine_directive})",
            exit_code=result.exit_code,
            step=1,
            duration_seconds=result.duration_seconds,
        )

    async def merge_precombine_plugin(self, cfg: BuildConfiguration) -> StepResult:
        """Fold ``CombinedObjects.esp`` into the target plugin with xEdit."""
        if not has_files(cfg.precombine_dir):
            return _precondition(2, f"No precombined meshes in {cfg.precombine_dir}; run step 1")
        return await self._merge_side_plugin(
            cfg, 2, "precombines", cfg.combined_objects_plugin, MERGE_PRECOMBINES_SCRIPT
        )

    async def archive_precombines(self, cfg: BuildConfiguration) -> StepResult:
        """Pack the precombined meshes into the plugin's container."""
        if not has_files(cfg.precombine_dir):
            return StepResult.ok("No precombined meshes to archive", step=3)
        op = ArchiveOperation(
            target=cfg.precombine_archive,
            content_root=cfg.content_root,
            sources=(PRECOMBINE_MESH_DIR,),
            supersedes=(cfg.main_archive,),
        )
        result = await self.engine_for(cfg).merge(op)
        return result.for_step(3)

    # ------------------------------------------------------------------
    # Steps 4-5: Clean-only geometry work
    # ------------------------------------------------------------------

    async def compress_geometry(self, cfg: BuildConfiguration) -> StepResult:
        """Transcode ``<plugin> - Geometry.psg`` to ``.csg`` and drop the original."""
        if not cfg.geometry_file.is_file():
            return _precondition(4, f"{cfg.geometry_file.name} not found; run step 1 in clean mode")

        invocation = self._creation_kit(
            cfg, [f"-CompressPSG:{cfg.plugin}"], "Creation Kit (compress PSG)"
        )
        result = await self._run_creation_kit(cfg, invocation)
        if not result.success:
            return result.for_step(4)
        if not cfg.compressed_geometry_file.is_file():
            return StepResult.fail(
                ErrorKind.MISSING_OUTPUT,
                f"{cfg.compressed_geometry_file.name} was not created",
                exit_code=result.exit_code,
                step=4,
            )
        remove_path(cfg.geometry_file)
        return StepResult.ok(
            f"Compressed geometry into {cfg.compressed_geometry_file.name}",
            exit_code=result.exit_code,
            step=4,
            duration_seconds=result.duration_seconds,
        )

    async def build_spatial_index(self, cfg: BuildConfiguration) -> StepResult:
        """Emit the plugin's ``.cdx`` companion file."""
        invocation = self._creation_kit(cfg, [f"-BuildCDX:{cfg.plugin}"], "Creation Kit (CDX)")
        result = await self._run_creation_kit(cfg, invocation)
        if not result.success:
            return result.for_step(5)
        if not cfg.spatial_index_file.is_file():
            return StepResult.fail(
                ErrorKind.MISSING_OUTPUT,
                f"{cfg.spatial_index_file.name} was not created",
                exit_code=result.exit_code,
                step=5,
            )
        return StepResult.ok(
            f"Built {cfg.spatial_index_file.name}",
            exit_code=result.exit_code,
            step=5,
            duration_seconds=result.duration_seconds,
        )

    # ------------------------------------------------------------------
    # Steps 6-8: previs
    # ------------------------------------------------------------------

    async def generate_previs(self, cfg: BuildConfiguration) -> StepResult:
        """Run ``-GeneratePreVisData`` (always ``clean all``)."""
        for path in (cfg.vis_dir, cfg.previs_plugin):
            if is_occupied(path):
                return _precondition(6, f"{path} already exists; remove it before generating previs")

        # Visibility data has no filtered variant.
        invocation = self._creation_kit(
            cfg,
            [f"-GeneratePreVisData:{cfg.plugin}", "clean", "all"],
            "Creation Kit (previs)",
            failure_markers=(markers.PREVIS_INCOMPLETE,),
        )
        result = await self._run_creation_kit(cfg, invocation)
        if not result.success:
            return result.for_step(6)

        if not has_files(cfg.vis_dir, "*.uvd"):
            return StepResult.fail(
                ErrorKind.MISSING_OUTPUT,
                f"No visibility data was generated in {cfg.vis_dir}",
                exit_code=result.exit_code,
                step=6,
            )
        if not cfg.previs_plugin.is_file():
            return StepResult.fail(
                ErrorKind.MISSING_OUTPUT,
                f"Creation Kit did not write {cfg.previs_plugin.name}",
                exit_code=result.exit_code,
                step=6,
            )
        return StepResult.ok(
            f"Generated {count_files(cfg.vis_dir, '*.uvd')} visibility file(s)",
            exit_code=result.exit_code,
            step=6,
            duration_seconds=result.duration_seconds,
        )

    async def merge_previs_plugin(self, cfg: BuildConfiguration) -> StepResult:
        """Fold ``Previs.esp`` into the target plugin with xEdit."""
        if not has_files(cfg.vis_dir):
            return _precondition(7, f"No visibility data in {cfg.vis_dir}; run step 6")
        return await self._merge_side_plugin(
            cfg, 7, "previs", cfg.previs_plugin, MERGE_PREVIS_SCRIPT
        )

    async def final_archive(self, cfg: BuildConfiguration) -> StepResult:
        """Merge the visibility data into the plugin's single container."""
        op = ArchiveOperation(
            target=cfg.main_archive,
            content_root=cfg.content_root,
            # Loose meshes are still around when step 3 was skipped.
            sources=(VISIBILITY_DIR, PRECOMBINE_MESH_DIR),
            supersedes=(cfg.precombine_archive,),
        )
        result = await self.engine_for(cfg).merge(op)
        return result.for_step(8)

    # ------------------------------------------------------------------
    # Tool invocation helpers
    # ------------------------------------------------------------------

    def _creation_kit(
        self,
        cfg: BuildConfiguration,
        arguments: list[str],
        label: str,
        failure_markers: tuple[Marker, ...] = (),
    ) -> ExternalInvocation:
        return ExternalInvocation(
            executable=cfg.creation_kit,
            arguments=tuple(arguments),
            working_dir=cfg.game_dir,
            timeout_seconds=cfg.timeout_seconds,
            log_path=cfg.ck_log,
            label=label,
            fatal_markers=markers.CREATION_KIT_FATAL,
            failure_markers=failure_markers,
        )

    async def _run_creation_kit(
        self, cfg: BuildConfiguration, invocation: ExternalInvocation
    ) -> StepResult:
        with suspended_injectors(cfg.game_dir):
            return await self.supervisor_for(cfg).run(invocation)

    async def _merge_side_plugin(
        self,
        cfg: BuildConfiguration,
        ordinal: int,
        role: str,
        side_plugin: Path,
        script: str,
    ) -> StepResult:
        if not side_plugin.is_file():
            return _precondition(ordinal, f"{side_plugin.name} not found in {cfg.content_root}")
        if not (cfg.xedit_scripts_dir / script).is_file():
            return _precondition(
                ordinal, f"xEdit script {script} not found in {cfg.xedit_scripts_dir}"
            )

        cfg.plugin_list_path.parent.mkdir(parents=True, exist_ok=True)
        cfg.plugin_list_path.write_text(
            f"*{cfg.plugin}\n*{side_plugin.name}\n", encoding="utf-8"
        )
        log_path = cfg.xedit_log(role)
        invocation = ExternalInvocation(
            executable=cfg.xedit,
            arguments=(
                "-fo4",
                "-autoexit",
                f"-P:{cfg.plugin_list_path}",
                f"-Script:{script}",
                f"-Mod:{cfg.plugin}",
                f"-D:{cfg.content_root}",
                f"-R:{log_path}",
            ),
            working_dir=cfg.xedit.parent,
            timeout_seconds=cfg.timeout_seconds,
            log_path=log_path,
            label=f"xEdit ({role} merge)",
            failure_markers=(markers.XEDIT_ERROR,),
            completion_markers=(markers.XEDIT_COMPLETED,),
        )
        result = await self.supervisor_for(cfg).run(invocation)
        if not result.success:
            return result.for_step(ordinal)
        return StepResult.ok(
            f"Merged {side_plugin.name} into {cfg.plugin}",
            exit_code=result.exit_code,
            step=ordinal,
            duration_seconds=result.duration_seconds,
        )


def _precondition(ordinal: int, message: str) -> StepResult:
    return StepResult.fail(ErrorKind.PRECONDITION, message, step=ordinal)

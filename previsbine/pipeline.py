"""Previsbine Pipeline Controller.

Drives the eight-step previsbine build for one plugin:

Step 1: Generate Precombines    -- Creation Kit, clean or filtered.
Step 2: Merge Precombine Plugin -- xEdit folds CombinedObjects.esp in.
Step 3: Archive Precombines     -- meshes into the plugin's BA2.
Step 4: Compress Geometry       -- Clean only, PSG -> CSG.
Step 5: Build Spatial Index     -- Clean only, CDX.
Step 6: Generate Previs         -- Creation Kit, always "clean all".
Step 7: Merge Previs Plugin     -- xEdit folds Previs.esp in.
Step 8: Final Archive           -- visibility data merged into one BA2.

The controller is a small state machine over the step ordinals that apply to
the selected build mode. It can start at any step (to resume a failed run),
and asks a prompter what to do whenever a step fails.
"""

from __future__ import annotations

import dataclasses
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from rich.panel import Panel

from previsbine.config import BuildConfiguration, BuildMode, ConfigurationError
from previsbine.models import ErrorKind, StepResult
from previsbine.runner.injection import restore_injectors
from previsbine.steps.library import StepDefinition, StepLibrary
from previsbine.utils import (
    console,
    format_duration,
    load_json,
    print_error,
    print_step_header,
    print_success,
    print_warning,
    remove_path,
    save_json,
)

FIRST_STEP = 1
LAST_STEP = 8

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Raised when the controller itself is misused or cannot proceed."""

    def __init__(self, step: int, message: str) -> None:
        self.step = step
        super().__init__(f"Step {step}: {message}" if step else message)


# ---------------------------------------------------------------------------
# States and recovery decisions
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"
    COMPLETED = "completed"

    @property
    def terminal(self) -> bool:
        return self in (Phase.ABORTED, Phase.COMPLETED)


@dataclass(frozen=True)
class ControllerState:
    """One state of the controller, e.g. ``Pending(3)`` or ``Completed``."""

    phase: Phase
    step: int | None = None

    def __str__(self) -> str:
        name = self.phase.value.capitalize()
        return f"{name}({self.step})" if self.step is not None else name


class RecoveryAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    RESTART_AT = "restart_at"
    ABORT = "abort"


@dataclass(frozen=True)
class Recovery:
    """What to do after a failed step.

    ``config`` optionally replaces the configuration for a retry (for
    example a copy with a longer timeout); ``step`` is the ordinal for
    ``RESTART_AT``.
    """

    action: RecoveryAction
    step: int | None = None
    config: BuildConfiguration | None = None

    @classmethod
    def retry(cls, config: BuildConfiguration | None = None) -> "Recovery":
        return cls(RecoveryAction.RETRY, config=config)

    @classmethod
    def skip(cls) -> "Recovery":
        return cls(RecoveryAction.SKIP)

    @classmethod
    def restart_at(cls, step: int) -> "Recovery":
        return cls(RecoveryAction.RESTART_AT, step=step)

    @classmethod
    def abort(cls) -> "Recovery":
        return cls(RecoveryAction.ABORT)


class Prompter(Protocol):
    """Collaborator that makes the operator-facing decisions."""

    def confirm_clear(
        self, step: StepDefinition, paths: list[Path], config: BuildConfiguration
    ) -> bool:
        """Return ``True`` to delete *paths* so *step* can run."""

    def choose_recovery(
        self, step: StepDefinition, result: StepResult, config: BuildConfiguration
    ) -> Recovery:
        """Decide how to continue after *step* failed with *result*."""


# ---------------------------------------------------------------------------
# Effective pipeline helpers
# ---------------------------------------------------------------------------


def effective_pipeline(definitions: list[StepDefinition], mode: BuildMode) -> list[StepDefinition]:
    """The steps that actually execute in *mode*, in ordinal order."""
    return sorted((d for d in definitions if d.applies_to(mode)), key=lambda d: d.ordinal)


def resolve_step(definitions: list[StepDefinition], mode: BuildMode, ordinal: int) -> int | None:
    """Map *ordinal* onto the effective pipeline.

    Ordinals of steps that do not apply to *mode* (4 and 5 outside Clean)
    are valid targets and resolve to the next step that does apply.

    Raises:
        ConfigurationError: If *ordinal* is outside 1..8.
    """
    if not FIRST_STEP <= ordinal <= LAST_STEP:
        raise ConfigurationError(
            [f"Step {ordinal} does not exist; choose {FIRST_STEP}-{LAST_STEP}"]
        )
    for definition in effective_pipeline(definitions, mode):
        if definition.ordinal >= ordinal:
            return definition.ordinal
    return None


def next_step(definitions: list[StepDefinition], mode: BuildMode, ordinal: int) -> int | None:
    """The effective step after *ordinal*, or ``None`` after the last one."""
    if ordinal >= LAST_STEP:
        return None
    return resolve_step(definitions, mode, ordinal + 1)


def load_run_state(path: Path) -> dict[str, Any]:
    """Read a persisted run-state file; an empty dict if there is none."""
    if not path.is_file():
        return {}
    return load_json(path)


def resume_step(
    definitions: list[StepDefinition], config: BuildConfiguration
) -> int:
    """First step to run when resuming the last recorded run for *config*.

    Falls back to step 1 when no state is recorded, when it belongs to a
    different plugin or mode, or when the recorded run already completed.
    """
    state = load_run_state(config.state_path)
    if state.get("plugin") != config.plugin or state.get("mode") != config.mode.value:
        return FIRST_STEP
    if state.get("outcome") == Phase.COMPLETED.value:
        return FIRST_STEP
    completed = state.get("completed_steps") or []
    if not completed:
        return FIRST_STEP
    following = next_step(definitions, config.mode, max(completed))
    return following if following is not None else FIRST_STEP


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


@dataclass
class PipelineOutcome:
    """Everything a finished controller run produced."""

    plugin: str
    mode: BuildMode
    final_state: ControllerState
    history: list[ControllerState] = field(default_factory=list)
    results: list[StepResult] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def completed(self) -> bool:
        return self.final_state.phase is Phase.COMPLETED

    @property
    def executed_steps(self) -> list[int]:
        """Ordinals that entered ``Running``, in order, including retries."""
        return [s.step for s in self.history if s.phase is Phase.RUNNING and s.step is not None]


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class PipelineController:
    """Sequences the build steps for one plugin.

    A controller instance performs a single run. Once it reaches
    ``Completed`` or ``Aborted`` it cannot be started again.

    Attributes:
        library: Step library providing the step definitions.
        prompter: Collaborator deciding clear-confirmations and recoveries.
        state: The current controller state.
        history: Every state entered so far, in order.
    """

    def __init__(
        self,
        library: StepLibrary,
        prompter: Prompter,
        validate: bool = True,
    ) -> None:
        self.library = library
        self.prompter = prompter
        self.validate = validate
        self.definitions = library.definitions()
        self._by_ordinal = {d.ordinal: d for d in self.definitions}
        self.state: ControllerState | None = None
        self.history: list[ControllerState] = []
        self.results: list[StepResult] = []
        self._completed: set[int] = set()
        self._skipped: list[int] = []
        self._last_failure: StepResult | None = None
        self._stop_requested = False

    def request_stop(self) -> None:
        """Abort the run before the next step starts."""
        self._stop_requested = True

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, config: BuildConfiguration) -> PipelineOutcome:
        """Execute the effective pipeline for *config*.

        Args:
            config: The build configuration. ``config.start_step`` selects
                where the run begins.

        Returns:
            The outcome, with the final state and every step result.

        Raises:
            ConfigurationError: If the configuration fails validation; no
                step has run in that case.
            PipelineError: If this controller has already been used.
        """
        if self.state is not None:
            raise PipelineError(0, "A controller runs once; create a new one for another run")

        if self.validate:
            config.validate_environment()
        start = resolve_step(self.definitions, config.mode, config.start_step)
        if start is None:
            raise ConfigurationError([f"No steps to run from step {config.start_step}"])

        if start > FIRST_STEP:
            self._completed.update(self._earlier_progress(config, start))

        config.ensure_directories()
        restored = restore_injectors(config.game_dir)
        if restored:
            print_warning(
                f"Restored shader injectors left disabled by an earlier run: "
                f"{', '.join(p.name for p in restored)}"
            )

        pipeline_start = time.monotonic()
        self._print_banner(config, start)

        current: int = start
        self._enter(Phase.PENDING, current)

        while not self.state.phase.terminal:
            if self._stop_requested:
                print_warning("Stop requested -- aborting before the next step.")
                self._enter(Phase.ABORTED)
                break

            definition = self._by_ordinal[current]
            print_step_header(definition.ordinal, definition.name)
            result = await self._execute(definition, config)
            self.results.append(result)

            if result.success:
                self._enter(Phase.SUCCEEDED, current)
                self._completed.add(current)
                print_success(
                    f"Step {current} ({definition.name}) completed in "
                    f"{format_duration(result.duration_seconds)}: {result.message}"
                )
                await self._save_state(config, result)
                following = next_step(self.definitions, config.mode, current)
                if following is None:
                    self._enter(Phase.COMPLETED)
                else:
                    current = following
                    self._enter(Phase.PENDING, current)
                continue

            self._enter(Phase.FAILED, current)
            print_error(f"Step {current} ({definition.name}) FAILED: {result.message}")
            if result.remediation:
                console.print(f"  [yellow]Hint:[/yellow] {result.remediation}")
            await self._save_state(config, result)

            recovery = self._choose_recovery(definition, result, config)
            if recovery.action is RecoveryAction.RETRY:
                if recovery.config is not None:
                    config = recovery.config
                self._enter(Phase.PENDING, current)
            elif recovery.action is RecoveryAction.SKIP:
                self._skipped.append(current)
                print_warning(f"Skipping step {current}; output will be incomplete.")
                following = next_step(self.definitions, config.mode, current)
                if following is None:
                    self._enter(Phase.COMPLETED)
                else:
                    current = following
                    self._enter(Phase.PENDING, current)
            elif recovery.action is RecoveryAction.RESTART_AT:
                target = resolve_step(self.definitions, config.mode, recovery.step)
                if target is None:
                    self._enter(Phase.ABORTED)
                else:
                    current = target
                    self._enter(Phase.PENDING, current)
            else:
                self._enter(Phase.ABORTED)

        if self.state.phase is Phase.COMPLETED and not config.keep_temp_files:
            self._remove_intermediates(config)

        outcome = PipelineOutcome(
            plugin=config.plugin,
            mode=config.mode,
            final_state=self.state,
            history=list(self.history),
            results=list(self.results),
            skipped=list(self._skipped),
            duration_seconds=time.monotonic() - pipeline_start,
        )
        await self._save_state(config, None, outcome=outcome)
        self._print_final_summary(config, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    async def _execute(self, definition: StepDefinition, config: BuildConfiguration) -> StepResult:
        ordinal = definition.ordinal
        self._enter(Phase.RUNNING, ordinal)
        step_start = time.monotonic()

        blocking = definition.blocking_paths(config)
        if blocking:
            if not self.prompter.confirm_clear(definition, blocking, config):
                return StepResult.fail(
                    ErrorKind.PRECONDITION,
                    "Output from an earlier run is still present: "
                    + ", ".join(str(p) for p in blocking),
                    step=ordinal,
                    remediation="Delete these paths manually or allow previsbine to clear them.",
                )
            for path in blocking:
                console.print(f"  [dim]Removing {path}[/dim]")
                try:
                    remove_path(path)
                except OSError as exc:
                    return StepResult.fail(
                        ErrorKind.PRECONDITION,
                        f"Could not clear {path}: {exc}",
                        step=ordinal,
                        remediation="Close any program holding these files open and retry.",
                    )

        try:
            result = await definition.action(config)
        except Exception as exc:
            tb = traceback.format_exc()
            console.print(f"[dim]{tb}[/dim]")
            result = StepResult.fail(
                ErrorKind.INTERNAL,
                f"Unexpected error in step {ordinal}: {exc}",
            )

        return dataclasses.replace(
            result,
            step=ordinal,
            duration_seconds=result.duration_seconds or (time.monotonic() - step_start),
        )

    def _choose_recovery(
        self, definition: StepDefinition, result: StepResult, config: BuildConfiguration
    ) -> Recovery:
        """Ask the prompter until it returns a decision valid for *definition*."""
        while True:
            recovery = self.prompter.choose_recovery(definition, result, config)
            if recovery.action is RecoveryAction.SKIP and not definition.skippable:
                print_warning(
                    f"Step {definition.ordinal} ({definition.name}) is required by "
                    "later steps and cannot be skipped."
                )
                continue
            if recovery.action is RecoveryAction.RESTART_AT and (
                recovery.step is None or not FIRST_STEP <= recovery.step <= LAST_STEP
            ):
                print_warning(f"Cannot restart at step {recovery.step}.")
                continue
            return recovery

    def _enter(self, phase: Phase, step: int | None = None) -> None:
        if self.state is not None and self.state.phase.terminal:
            raise PipelineError(0, f"Cannot leave terminal state {self.state}")
        self.state = ControllerState(phase, step)
        self.history.append(self.state)

    # ------------------------------------------------------------------
    # State persistence and cleanup
    # ------------------------------------------------------------------

    async def _save_state(
        self,
        config: BuildConfiguration,
        result: StepResult | None,
        outcome: PipelineOutcome | None = None,
    ) -> None:
        """Persist progress to ``<work_root>/<plugin>-state.json``."""
        state: dict[str, Any] = {
            "plugin": config.plugin,
            "mode": config.mode.value,
            "completed_steps": sorted(self._completed),
            "skipped_steps": list(self._skipped),
            "state": str(self.state),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if result is not None and not result.success:
            self._last_failure = result
        if self._last_failure is not None:
            failure = self._last_failure
            state["last_failure"] = {
                "step": failure.step,
                "message": failure.message,
                "error_kind": failure.error_kind.value if failure.error_kind else None,
                "exit_code": failure.exit_code,
            }
        if outcome is not None:
            state["outcome"] = outcome.final_state.phase.value
            state["duration"] = format_duration(outcome.duration_seconds)
        await save_json(state, config.state_path)

    def _earlier_progress(self, config: BuildConfiguration, start: int) -> set[int]:
        """Ordinals before *start* that an earlier run of this build completed."""
        state = load_run_state(config.state_path)
        if state.get("plugin") != config.plugin or state.get("mode") != config.mode.value:
            return set()
        return {n for n in state.get("completed_steps") or [] if n < start}

    def _remove_intermediates(self, config: BuildConfiguration) -> None:
        for path in config.intermediate_files():
            if path.exists():
                remove_path(path)
        if config.staging_dir.is_dir() and not any(config.staging_dir.iterdir()):
            config.staging_dir.rmdir()

    # ------------------------------------------------------------------
    # Console output
    # ------------------------------------------------------------------

    def _print_banner(self, config: BuildConfiguration, start: int) -> None:
        steps = [d.ordinal for d in effective_pipeline(self.definitions, config.mode)]
        console.print(
            Panel(
                f"[bold bright_cyan]Previsbine Build[/bold bright_cyan]\n"
                f"Plugin   : {config.plugin}\n"
                f"Mode     : {config.mode.value}\n"
                f"Data     : {config.content_root}\n"
                f"Archiver : {config.archive_backend.value}\n"
                f"Steps    : {', '.join(str(s) for s in steps)} (starting at {start})",
                title="[bold]Pipeline Start[/bold]",
                border_style="bright_cyan",
            )
        )

    def _print_final_summary(self, config: BuildConfiguration, outcome: PipelineOutcome) -> None:
        """Print the final pipeline summary panel."""
        if outcome.completed:
            border_style = "bold green"
            status_text = "[bold green]BUILD COMPLETED[/bold green]"
        else:
            border_style = "bold red"
            status_text = "[bold red]BUILD ABORTED[/bold red]"

        detail_lines = [
            status_text,
            "",
            f"Duration  : {format_duration(outcome.duration_seconds)}",
            f"Completed : {', '.join(str(s) for s in sorted(self._completed)) or 'none'}",
        ]
        if outcome.skipped:
            detail_lines.append(f"Skipped   : {', '.join(str(s) for s in outcome.skipped)}")
        failed = [r for r in outcome.results if not r.success]
        if failed:
            last = failed[-1]
            detail_lines.append(f"Last error: step {last.step}: {last.message[:200]}")

        detail_lines.extend([
            "",
            f"Archive   : {config.main_archive if config.main_archive.exists() else '(not built)'}",
            f"State     : {config.state_path}",
        ])

        console.print()
        console.print(
            Panel(
                "\n".join(detail_lines),
                title="[bold]Pipeline Finished[/bold]",
                border_style=border_style,
            )
        )

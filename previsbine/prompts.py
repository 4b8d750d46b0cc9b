"""Operator prompts for the pipeline controller.

The controller never renders anything interactive itself; it asks one of
these prompters. :class:`ConsolePrompter` asks on the terminal with Rich,
:class:`NonInteractivePrompter` answers for unattended runs.
"""

from __future__ import annotations

from pathlib import Path

from rich.panel import Panel
from rich.prompt import Confirm, IntPrompt, Prompt

from previsbine.config import BuildConfiguration
from previsbine.models import ErrorKind, StepResult
from previsbine.pipeline import FIRST_STEP, LAST_STEP, Recovery
from previsbine.steps.library import StepDefinition
from previsbine.utils import console, print_warning


class NonInteractivePrompter:
    """Refuses destructive cleanup and aborts on the first failure."""

    def confirm_clear(
        self, step: StepDefinition, paths: list[Path], config: BuildConfiguration
    ) -> bool:
        print_warning(
            f"Step {step.ordinal} needs these paths cleared; not clearing in "
            f"non-interactive mode: {', '.join(str(p) for p in paths)}"
        )
        return False

    def choose_recovery(
        self, step: StepDefinition, result: StepResult, config: BuildConfiguration
    ) -> Recovery:
        return Recovery.abort()


class ConsolePrompter:
    """Asks the operator on the console using ``rich.prompt``."""

    def confirm_clear(
        self, step: StepDefinition, paths: list[Path], config: BuildConfiguration
    ) -> bool:
        console.print(
            Panel(
                "\n".join(str(p) for p in paths),
                title=f"Step {step.ordinal} ({step.name}): leftover output",
                border_style="yellow",
            )
        )
        return Confirm.ask("Delete these paths and continue?", default=False)

    def choose_recovery(
        self, step: StepDefinition, result: StepResult, config: BuildConfiguration
    ) -> Recovery:
        console.print(
            Panel(result.summary(), title=f"Step {step.ordinal} failed", border_style="red")
        )

        options = {"r": "retry"}
        if result.error_kind is ErrorKind.TIMEOUT:
            options["t"] = "retry with a longer timeout"
        if step.skippable:
            options["s"] = "skip this step"
        options["g"] = "go to another step"
        options["a"] = "abort"

        for key, label in options.items():
            console.print(f"  [bold]{key}[/bold]  {label}")
        choice = Prompt.ask("What now?", choices=list(options), default="a")

        if choice == "r":
            return Recovery.retry()
        if choice == "t":
            minutes = IntPrompt.ask(
                "New timeout in minutes", default=int(config.timeout_minutes * 2)
            )
            return Recovery.retry(config.with_updates(timeout_minutes=max(1, minutes)))
        if choice == "s":
            return Recovery.skip()
        if choice == "g":
            target = IntPrompt.ask(
                "Restart at step",
                choices=[str(n) for n in range(FIRST_STEP, LAST_STEP + 1)],
                default=step.ordinal,
            )
            return Recovery.restart_at(target)
        return Recovery.abort()

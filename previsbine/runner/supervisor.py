"""External tool process supervision.

Launches one Creation Kit, xEdit or archiver process at a time, tails the
log file it writes, and decides the outcome from the exit code and the
marker strings found in that log. Handles timeouts, crash signatures and
tools that never exit on their own in automation mode.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from previsbine.models import ErrorKind, ExternalInvocation, Marker, StepResult
from previsbine.runner.markers import find_first

console = Console()

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_EXIT_GRACE = 15.0


def read_log(path: Path | None) -> str:
    """Return the full text of a tool log, or ``""`` if it is not readable yet."""
    if path is None or not path.is_file():
        return ""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except PermissionError:
        # Locked by the writing process; picked up again on the next poll.
        return ""


class ProcessSupervisor:
    """Runs one :class:`ExternalInvocation` to completion, failure or timeout.

    The supervisor polls the process every ``poll_interval`` seconds. On each
    poll the invocation's log is re-read and scanned for fatal markers, which
    kill the process immediately. Invocations with completion markers are
    given ``exit_grace_seconds`` to exit after announcing completion and are
    then terminated, since some tools hang around in automation mode.
    """

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        exit_grace_seconds: float = DEFAULT_EXIT_GRACE,
        kill_wait_seconds: float = 10.0,
    ):
        self.poll_interval = poll_interval
        self.exit_grace_seconds = exit_grace_seconds
        self.kill_wait_seconds = kill_wait_seconds

    async def run(self, invocation: ExternalInvocation) -> StepResult:
        """Execute *invocation* and classify its outcome.

        Args:
            invocation: The process to launch and the markers to watch for.

        Returns:
            A ``StepResult``. Launch problems, timeouts and crashes are all
            reported as failed results; this method does not raise for them.
        """
        name = invocation.display_name
        log_path = invocation.log_path

        if log_path is not None:
            try:
                log_path.unlink(missing_ok=True)
            except PermissionError:
                return StepResult.fail(
                    ErrorKind.PRECONDITION,
                    f"Cannot delete stale log {log_path}; is {name} still running?",
                )

        console.print(
            Panel(
                f"[cyan]Starting {name}[/cyan]\n"
                f"  Command: {' '.join(invocation.command)}\n"
                f"  Directory: {invocation.working_dir}\n"
                f"  Log: {log_path or '(none)'}\n"
                f"  Timeout: {invocation.timeout_seconds / 60:g} min",
                title="Process Supervisor",
                border_style="cyan",
            )
        )

        start_time = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *invocation.command,
                cwd=str(invocation.working_dir),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            return StepResult.fail(
                ErrorKind.LAUNCH,
                f"Executable not found: '{invocation.executable}'",
            )
        except PermissionError:
            return StepResult.fail(
                ErrorKind.LAUNCH,
                f"Permission denied executing: '{invocation.executable}'",
            )
        except OSError as exc:
            return StepResult.fail(
                ErrorKind.LAUNCH,
                f"Could not start {name}: {exc}",
            )

        deadline = start_time + invocation.timeout_seconds
        completed_at: float | None = None
        log_text = ""

        while True:
            remaining = max(0.0, deadline - time.monotonic())
            exited = await self._wait_for_exit(process, min(self.poll_interval, remaining))

            log_text = read_log(log_path)
            fatal = find_first(log_text, invocation.fatal_markers)
            if fatal is not None:
                if not exited:
                    console.print(f"[red]{name}: fatal log marker seen. Killing...[/red]")
                    await self._terminate(process)
                result = self._marker_failure(
                    fatal[0], fatal[1], process.returncode, time.monotonic() - start_time
                )
                self._display_result(name, result)
                return result

            if exited:
                break

            now = time.monotonic()
            if invocation.completion_markers and find_first(log_text, invocation.completion_markers):
                if completed_at is None:
                    completed_at = now
                elif now - completed_at >= self.exit_grace_seconds:
                    console.print(
                        f"[yellow]{name} reported completion but did not exit. "
                        f"Terminating...[/yellow]"
                    )
                    await self._terminate(process)
                    result = self._inspect(
                        invocation, 0, read_log(log_path), now - start_time
                    )
                    self._display_result(name, result)
                    return result

            if now >= deadline:
                if process.returncode is not None:
                    break
                console.print(
                    f"[red]{name} timed out after {now - start_time:.1f}s. Killing...[/red]"
                )
                await self._terminate(process)
                minutes = invocation.timeout_seconds / 60
                result = StepResult.fail(
                    ErrorKind.TIMEOUT,
                    f"{name} timed out after {minutes:g} minutes",
                    exit_code=process.returncode,
                    duration_seconds=now - start_time,
                    remediation=(
                        f"The timeout is {minutes:g} minutes; raise it with "
                        "--timeout if the tool was still making progress."
                    ),
                )
                self._display_result(name, result)
                return result

        exit_code = process.returncode if process.returncode is not None else -1
        result = self._inspect(
            invocation, exit_code, log_text, time.monotonic() - start_time
        )
        self._display_result(name, result)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _wait_for_exit(self, process: asyncio.subprocess.Process, timeout: float) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Kill *process* and reap it so its file locks are released."""
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_wait_seconds)
        except asyncio.TimeoutError:
            console.print(
                f"[red]Process {process.pid} did not exit {self.kill_wait_seconds:g}s "
                "after being killed.[/red]"
            )

    def _marker_failure(
        self,
        marker: Marker,
        line: str,
        exit_code: int | None,
        elapsed: float,
    ) -> StepResult:
        return StepResult.fail(
            marker.kind,
            f"{marker.message or marker.name}: {line}",
            exit_code=exit_code,
            duration_seconds=elapsed,
            remediation=marker.remediation,
        )

    def _inspect(
        self,
        invocation: ExternalInvocation,
        exit_code: int,
        log_text: str,
        elapsed: float,
    ) -> StepResult:
        """Classify a finished process from its exit code and final log."""
        name = invocation.display_name

        if exit_code != 0:
            return StepResult.fail(
                ErrorKind.TOOL_EXIT,
                f"{name} exited with code {exit_code}",
                exit_code=exit_code,
                duration_seconds=elapsed,
            )

        failure = find_first(log_text, invocation.failure_markers)
        if failure is not None:
            return self._marker_failure(failure[0], failure[1], exit_code, elapsed)

        if invocation.completion_markers and find_first(
            log_text, invocation.completion_markers
        ) is None:
            return StepResult.fail(
                ErrorKind.TOOL_LOG,
                f"{name} exited without reporting completion in {invocation.log_path}",
                exit_code=exit_code,
                duration_seconds=elapsed,
            )

        return StepResult.ok(
            f"{name} finished successfully",
            exit_code=exit_code,
            duration_seconds=elapsed,
        )

    def _display_result(self, name: str, result: StepResult) -> None:
        """Display a formatted result summary to the console."""
        if result.success:
            style = "green"
            title = f"{name} Succeeded"
        else:
            style = "red"
            title = f"{name} Failed"

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="bold")
        table.add_column("Value")

        table.add_row("Exit Code", str(result.exit_code))
        table.add_row("Duration", f"{result.duration_seconds:.1f}s")
        table.add_row("Result", result.message)
        if result.error_kind is not None:
            table.add_row("Error", result.error_kind.value)
        if result.remediation:
            table.add_row("Remediation", result.remediation)

        console.print(Panel(table, title=title, border_style=style))

"""Create-or-merge logic for the plugin's BA2 containers.

A plugin ends up with exactly one container. When a step archives new loose
folders and a container for the plugin already exists, the old container is
extracted, its contents are combined with the new folders and everything is
repacked into a freshly named container. The content root is restored to its
pre-merge state whenever any part of that sequence fails.
"""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console

from previsbine.archive.backends import ArchiveBackend
from previsbine.models import (
    ArchiveOperation,
    ErrorKind,
    ExternalInvocation,
    StepResult,
)
from previsbine.runner.supervisor import ProcessSupervisor
from previsbine.utils import count_files, has_files, move_path, remove_path

console = Console()

PRECOMBINE_MESH_DIR = Path("meshes") / "precombined"
VISIBILITY_DIR = Path("vis")
BACKUP_SUFFIX = ".previsbine-bak"


class _MergeFailed(Exception):
    """Internal signal carrying the failed tool result out of the merge body."""

    def __init__(self, result: StepResult):
        self.result = result
        super().__init__(result.message)


@dataclass
class _MergeJournal:
    """Everything the merge moved, so it can be undone."""

    staging: Path
    moved: list[tuple[Path, Path]] = field(default_factory=list)
    parked: list[tuple[Path, Path]] = field(default_factory=list)
    created_target: Path | None = None


class ArchiveMergeEngine:
    """Decides between a fresh pack and an extract-merge-repack.

    The decision logic is backend-agnostic: the :class:`ArchiveBackend` only
    supplies argument lists, and the :class:`ProcessSupervisor` runs them.
    """

    def __init__(
        self,
        backend: ArchiveBackend,
        supervisor: ProcessSupervisor,
        staging_root: Path,
        timeout_seconds: float = 3600.0,
    ):
        self.backend = backend
        self.supervisor = supervisor
        self.staging_root = staging_root
        self.timeout_seconds = timeout_seconds

    async def merge(self, op: ArchiveOperation) -> StepResult:
        """Pack ``op.sources`` into ``op.target``, absorbing existing containers.

        Args:
            op: The archive mutation to perform.

        Returns:
            A ``StepResult``. On failure the content root, the original
            container and the loose source folders are as they were before
            the call.
        """
        present = [rel for rel in op.sources if has_files(op.content_root / rel)]
        existing = op.existing_containers
        mode = op.mode

        if not present and not existing:
            return StepResult.ok(f"Nothing to archive for {op.target.name}")
        if not present and existing == [op.target]:
            return StepResult.ok(f"{op.target.name} is already up to date")

        console.print(
            f"  Archiving into [bold]{op.target.name}[/bold] "
            f"([cyan]{mode.value}[/cyan]) from "
            f"{', '.join(str(p) for p in present) or 'existing containers only'}"
        )

        self.staging_root.mkdir(parents=True, exist_ok=True)
        journal = _MergeJournal(
            staging=Path(tempfile.mkdtemp(prefix="stage-", dir=self.staging_root))
        )

        try:
            result = await self._merge(op, present, existing, journal)
        except _MergeFailed as exc:
            self._rollback(op, journal)
            return exc.result
        except OSError as exc:
            self._rollback(op, journal)
            return StepResult.fail(
                ErrorKind.ARCHIVE,
                f"Archive merge into {op.target.name} failed: {exc}",
            )
        except BaseException:
            self._rollback(op, journal)
            raise

        self._commit(op, present, journal)
        return result

    # ------------------------------------------------------------------
    # Merge body
    # ------------------------------------------------------------------

    async def _merge(
        self,
        op: ArchiveOperation,
        present: list[Path],
        existing: list[Path],
        journal: _MergeJournal,
    ) -> StepResult:
        pack_root = journal.staging

        # Extract first so a corrupt container fails before anything moves.
        for container in existing:
            await self._run(
                self.backend.extract_command(container, pack_root),
                f"{self.backend.kind.value} extract {container.name}",
            )
            console.print(f"  [dim]Extracted {container.name}[/dim]")

        for container in existing:
            backup = container.with_name(container.name + BACKUP_SUFFIX)
            if backup.exists():
                remove_path(backup)
            container.rename(backup)
            journal.parked.append((container, backup))

        for rel in present:
            self._stage_tree(op.content_root / rel, pack_root / rel, journal)

        has_precombines = has_files(pack_root / PRECOMBINE_MESH_DIR)
        file_count = count_files(pack_root)
        if file_count == 0:
            raise _MergeFailed(
                StepResult.fail(
                    ErrorKind.ARCHIVE,
                    f"No files to pack into {op.target.name} after extraction",
                )
            )
        console.print(
            f"  [dim]Packing {file_count} file(s); precombined meshes "
            f"{'included' if has_precombines else 'not present'}[/dim]"
        )

        journal.created_target = op.target
        await self._run(
            self.backend.pack_command(pack_root, op.target),
            f"{self.backend.kind.value} pack {op.target.name}",
        )
        if not op.target.is_file():
            raise _MergeFailed(
                StepResult.fail(
                    ErrorKind.ARCHIVE,
                    f"Archiver reported success but {op.target} was not created",
                )
            )

        verb = "Merged" if existing else "Created"
        return StepResult.ok(
            f"{verb} {op.target.name} ({file_count} files"
            + (f", absorbed {', '.join(c.name for c in existing)}" if existing else "")
            + ")"
        )

    async def _run(self, arguments: list[str], label: str) -> StepResult:
        invocation = ExternalInvocation(
            executable=self.backend.executable,
            arguments=tuple(arguments),
            working_dir=self.staging_root,
            timeout_seconds=self.timeout_seconds,
            label=label,
        )
        result = await self.supervisor.run(invocation)
        if not result.success:
            raise _MergeFailed(result)
        return result

    def _stage_tree(self, source: Path, destination: Path, journal: _MergeJournal) -> None:
        """Move *source* into the pack root, letting new files win over extracted ones."""
        if not destination.exists():
            move_path(source, destination)
            journal.moved.append((source, destination))
            return
        if source.is_dir() and destination.is_dir():
            for child in sorted(source.iterdir()):
                self._stage_tree(child, destination / child.name, journal)
            return
        # A loose file replaces the copy extracted from the old container.
        remove_path(destination)
        move_path(source, destination)
        journal.moved.append((source, destination))

    # ------------------------------------------------------------------
    # Commit / rollback
    # ------------------------------------------------------------------

    def _commit(self, op: ArchiveOperation, present: list[Path], journal: _MergeJournal) -> None:
        for _, backup in journal.parked:
            remove_path(backup)
        shutil.rmtree(journal.staging)
        for rel in present:
            leftover = op.content_root / rel
            if leftover.exists() and not has_files(leftover):
                remove_path(leftover)

    def _rollback(self, op: ArchiveOperation, journal: _MergeJournal) -> None:
        console.print(
            f"  [yellow]Restoring content root after failed merge into {op.target.name}[/yellow]"
        )
        for original, staged in reversed(journal.moved):
            if staged.exists():
                move_path(staged, original)
        if journal.created_target is not None and journal.created_target.exists():
            # Any pre-existing target was parked before packing started.
            remove_path(journal.created_target)
        for container, backup in reversed(journal.parked):
            if backup.exists():
                if container.exists():
                    remove_path(container)
                backup.rename(container)
        shutil.rmtree(journal.staging, ignore_errors=True)


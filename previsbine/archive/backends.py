"""Command-line conventions of the supported BA2 archivers.

The merge engine only ever asks a backend for two commands: pack a folder
into a container, and extract a container into a folder. Everything that
differs between Archive2 and BSArch stays in this module.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path


class ArchiveBackendKind(str, Enum):
    """Archiver selected for a build."""

    ARCHIVE2 = "archive2"
    BSARCH = "bsarch"


class ArchiveBackend(ABC):
    """Builds argument lists for one archiver executable."""

    kind: ArchiveBackendKind

    def __init__(self, executable: Path, xbox: bool = False):
        self.executable = executable
        self.xbox = xbox

    @abstractmethod
    def pack_command(self, root: Path, archive: Path) -> list[str]:
        """Arguments that pack every file below *root* into *archive*.

        Paths inside the container are relative to *root*.
        """

    @abstractmethod
    def extract_command(self, archive: Path, destination: Path) -> list[str]:
        """Arguments that unpack *archive* into *destination*."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.executable}, xbox={self.xbox})"


class Archive2Backend(ArchiveBackend):
    """Bethesda's Archive2 (ships with the Creation Kit under Tools/Archive2)."""

    kind = ArchiveBackendKind.ARCHIVE2

    def pack_command(self, root: Path, archive: Path) -> list[str]:
        args = [
            str(root),
            f"-c={archive}",
            f"-r={root}",
            "-f=General",
            "-q",
        ]
        if self.xbox:
            args.append("-compression=XBox")
        return args

    def extract_command(self, archive: Path, destination: Path) -> list[str]:
        return [str(archive), f"-e={destination}", "-q"]


class BSArchBackend(ArchiveBackend):
    """BSArch from the xEdit project."""

    kind = ArchiveBackendKind.BSARCH

    def pack_command(self, root: Path, archive: Path) -> list[str]:
        args = ["pack", str(root), str(archive), "-fo4", "-mt"]
        if not self.xbox:
            args.append("-z")
        return args

    def extract_command(self, archive: Path, destination: Path) -> list[str]:
        return ["unpack", str(archive), str(destination), "-q"]


_BACKENDS: dict[ArchiveBackendKind, type[ArchiveBackend]] = {
    ArchiveBackendKind.ARCHIVE2: Archive2Backend,
    ArchiveBackendKind.BSARCH: BSArchBackend,
}


def create_backend(kind: ArchiveBackendKind, executable: Path, xbox: bool = False) -> ArchiveBackend:
    """Instantiate the backend for *kind*."""
    return _BACKENDS[ArchiveBackendKind(kind)](executable, xbox=xbox)

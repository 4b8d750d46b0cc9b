"""Discovery of the external tools and the Creation Kit log location.

Used by the CLI to fill in whatever tool paths the operator did not pass
explicitly. Lookups are memoised in a :class:`ToolCache` owned by the
caller; the pipeline itself never consults discovery.
"""

from __future__ import annotations

import configparser
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from previsbine.archive.backends import ArchiveBackendKind

CREATION_KIT_NAMES = ("CreationKit.exe",)
XEDIT_NAMES = ("FO4Edit64.exe", "FO4Edit.exe", "xEdit64.exe", "xEdit.exe")
BSARCH_NAMES = ("BSArch64.exe", "BSArch.exe")
ARCHIVE2_RELATIVE = Path("Tools") / "Archive2" / "Archive2.exe"

# (ini file, section, key) in order of preference.
CREATION_KIT_LOG_SETTINGS = (
    ("CreationKitPlatformExtended.ini", "Log", "sOutputFile"),
    ("CreationKitCustom.ini", "Log", "OutputFile"),
)


@dataclass
class ToolCache:
    """Memoised discovery results keyed by ``(what, where)``."""

    entries: dict[tuple[str, str], Path | None] = field(default_factory=dict)

    def lookup(self, kind: str, root: Path) -> tuple[bool, Path | None]:
        key = (kind, str(root))
        if key in self.entries:
            return True, self.entries[key]
        return False, None

    def store(self, kind: str, root: Path, value: Path | None) -> Path | None:
        self.entries[(kind, str(root))] = value
        return value

    def clear(self) -> None:
        self.entries.clear()


def _first_existing(directories: list[Path], names: tuple[str, ...]) -> Path | None:
    for directory in directories:
        for name in names:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def _on_path(names: tuple[str, ...]) -> Path | None:
    for name in names:
        found = shutil.which(name)
        if found:
            return Path(found)
    return None


def read_creation_kit_log_setting(game_dir: Path) -> Path | None:
    """Return the log file configured in the Creation Kit extender's ini.

    Relative values are resolved against *game_dir*. Returns ``None`` when no
    ini configures a log file.
    """
    for ini_name, section, key in CREATION_KIT_LOG_SETTINGS:
        ini_path = game_dir / ini_name
        if not ini_path.is_file():
            continue
        parser = configparser.ConfigParser(
            strict=False, interpolation=None, inline_comment_prefixes=(";", "#")
        )
        parser.read(ini_path, encoding="utf-8-sig")
        value = parser.get(section, key, fallback="").strip().strip('"')
        if value:
            path = Path(value)
            return path if path.is_absolute() else game_dir / path
    return None


class ToolLocator:
    """Finds the Creation Kit, xEdit, the archivers and the CK log.

    Args:
        cache: Cache shared across lookups; a private one is created when
            omitted.
        extra_dirs: Additional directories to search for xEdit and BSArch.
    """

    def __init__(self, cache: ToolCache | None = None, extra_dirs: list[Path] | None = None):
        self.cache = cache if cache is not None else ToolCache()
        self.extra_dirs = list(extra_dirs or [])

    def find_creation_kit(self, game_dir: Path) -> Path | None:
        hit, value = self.cache.lookup("creation_kit", game_dir)
        if hit:
            return value
        return self.cache.store(
            "creation_kit", game_dir, _first_existing([game_dir], CREATION_KIT_NAMES)
        )

    def find_xedit(self, game_dir: Path) -> Path | None:
        hit, value = self.cache.lookup("xedit", game_dir)
        if hit:
            return value
        directories = [game_dir, game_dir / "xEdit", game_dir / "FO4Edit", *self.extra_dirs]
        found = _first_existing(directories, XEDIT_NAMES) or _on_path(XEDIT_NAMES)
        return self.cache.store("xedit", game_dir, found)

    def find_archive_tool(
        self,
        kind: ArchiveBackendKind,
        game_dir: Path,
        xedit: Path | None = None,
    ) -> Path | None:
        kind = ArchiveBackendKind(kind)
        hit, value = self.cache.lookup(f"archiver:{kind.value}", game_dir)
        if hit:
            return value
        if kind is ArchiveBackendKind.ARCHIVE2:
            candidate = game_dir / ARCHIVE2_RELATIVE
            found = candidate if candidate.is_file() else None
        else:
            directories = [game_dir, *self.extra_dirs]
            if xedit is not None:
                directories.insert(0, xedit.parent)
            found = _first_existing(directories, BSARCH_NAMES) or _on_path(BSARCH_NAMES)
        return self.cache.store(f"archiver:{kind.value}", game_dir, found)

    def find_creation_kit_log(self, game_dir: Path) -> Path | None:
        hit, value = self.cache.lookup("ck_log", game_dir)
        if hit:
            return value
        return self.cache.store("ck_log", game_dir, read_creation_kit_log_setting(game_dir))

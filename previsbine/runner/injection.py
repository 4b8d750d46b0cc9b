"""Temporarily move shader-injection libraries out of a tool's load path.

ENB and ReShade style proxies (``d3d11.dll``, ``dxgi.dll`` ...) placed next to
the game executable are also picked up by the Creation Kit, where they break
its command-line automation mode. They are renamed away for the duration of
each Creation Kit run and always put back afterwards.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from previsbine.utils import console

INJECTOR_LIBRARIES: tuple[str, ...] = (
    "d3d11.dll",
    "d3d10.dll",
    "d3d9.dll",
    "dxgi.dll",
    "enbimgui.dll",
    "d3dcompiler_46e.dll",
)

DISABLED_SUFFIX = ".previsbine-disabled"


def find_injectors(tool_dir: Path) -> list[Path]:
    """Return the injector libraries present in *tool_dir* (case-insensitive)."""
    if not tool_dir.is_dir():
        return []
    wanted = {name.lower() for name in INJECTOR_LIBRARIES}
    return sorted(
        entry for entry in tool_dir.iterdir()
        if entry.is_file() and entry.name.lower() in wanted
    )


def restore_injectors(tool_dir: Path) -> list[Path]:
    """Rename any previously disabled libraries in *tool_dir* back into place.

    Used both by :func:`suspended_injectors` and on start-up, to repair a
    directory left behind by a run that was killed outright.
    """
    restored: list[Path] = []
    if not tool_dir.is_dir():
        return restored
    for entry in sorted(tool_dir.glob(f"*{DISABLED_SUFFIX}")):
        original = entry.with_name(entry.name[: -len(DISABLED_SUFFIX)])
        if original.exists():
            console.print(
                f"  [yellow]Not restoring {entry.name}: {original.name} already exists[/yellow]"
            )
            continue
        entry.rename(original)
        restored.append(original)
    return restored


@contextmanager
def suspended_injectors(tool_dir: Path) -> Iterator[list[Path]]:
    """Disable injector libraries in *tool_dir* for the duration of the block.

    Yields the list of libraries that were disabled. They are renamed back in
    a ``finally`` clause, so an exception or cancellation inside the block
    never leaves the directory modified.
    """
    disabled: list[Path] = []
    try:
        for library in find_injectors(tool_dir):
            target = library.with_name(library.name + DISABLED_SUFFIX)
            library.rename(target)
            disabled.append(library)
        if disabled:
            names = ", ".join(p.name for p in disabled)
            console.print(f"  [dim]Disabled shader injectors: {names}[/dim]")
        yield disabled
    finally:
        for library in disabled:
            parked = library.with_name(library.name + DISABLED_SUFFIX)
            if parked.exists() and not library.exists():
                parked.rename(library)

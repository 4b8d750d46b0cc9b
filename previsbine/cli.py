"""Command-line entry point.

Usage::

    previsbine MyMod.esp --game-dir "C:/Games/Fallout 4"
    previsbine MyMod.esp --mode filtered --archiver bsarch --xedit D:/xEdit/FO4Edit.exe
    previsbine MyMod.esp --resume
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from previsbine.archive.backends import ArchiveBackendKind
from previsbine.config import BuildConfiguration, BuildMode, ConfigurationError
from previsbine.pipeline import PipelineController, resume_step
from previsbine.prompts import ConsolePrompter, NonInteractivePrompter
from previsbine.steps.library import StepLibrary
from previsbine.tools import ToolCache, ToolLocator
from previsbine.utils import console

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="previsbine",
        description="Build precombines and previs for a plugin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  previsbine MyMod.esp --game-dir \"C:/Games/Fallout 4\"\n"
            "  previsbine MyMod.esp --mode filtered --start-step 6\n"
            "  previsbine MyMod.esp --resume --non-interactive\n"
        ),
    )
    parser.add_argument("plugin", nargs="?", help="Plugin file name, e.g. MyMod.esp")
    parser.add_argument(
        "--mode", choices=[m.value for m in BuildMode], default=None,
        help="Build mode (default: clean)",
    )
    parser.add_argument(
        "--game-dir", type=Path, default=None,
        help="Game directory holding CreationKit.exe (default: $FALLOUT4_DIR)",
    )
    parser.add_argument("--creation-kit", type=Path, default=None, help="Path to CreationKit.exe")
    parser.add_argument("--xedit", type=Path, default=None, help="Path to FO4Edit/xEdit")
    parser.add_argument("--archive-tool", type=Path, default=None, help="Path to Archive2 or BSArch")
    parser.add_argument(
        "--archiver", choices=[k.value for k in ArchiveBackendKind], default=None,
        help="Archiver backend (default: archive2)",
    )
    parser.add_argument("--data-dir", type=Path, default=None, help="Override the Data directory")
    parser.add_argument("--work-dir", type=Path, default=None, help="Working directory")
    parser.add_argument("--ck-log", type=Path, default=None, help="Creation Kit log file")
    parser.add_argument("--timeout", type=float, default=None, help="Per-tool timeout in minutes")
    start = parser.add_mutually_exclusive_group()
    start.add_argument("--start-step", type=int, default=None, help="Step to start at (1-8)")
    start.add_argument(
        "--resume", action="store_true",
        help="Continue after the last step the previous run completed",
    )
    parser.add_argument(
        "--keep-temp-files", action="store_true", default=None,
        help="Keep plugin lists, xEdit logs and side-plugins",
    )
    parser.add_argument(
        "--non-interactive", action="store_true", default=None,
        help="Never prompt; abort on the first failure",
    )
    parser.add_argument("--config", type=Path, default=None, help="Load settings from JSON")
    parser.add_argument("--save-config", type=Path, default=None, help="Write settings to JSON")
    return parser


def _discover(args: argparse.Namespace, locator: ToolLocator) -> dict[str, Any]:
    """Fill tool paths the operator did not supply."""
    game_dir = args.game_dir
    if game_dir is None and os.environ.get("FALLOUT4_DIR"):
        game_dir = Path(os.environ["FALLOUT4_DIR"])
    if game_dir is None and args.creation_kit is not None:
        game_dir = args.creation_kit.parent

    found: dict[str, Any] = {}
    if game_dir is None:
        return found

    creation_kit = args.creation_kit or locator.find_creation_kit(game_dir)
    xedit = args.xedit or locator.find_xedit(game_dir)
    backend = ArchiveBackendKind(args.archiver or ArchiveBackendKind.ARCHIVE2.value)
    found["creation_kit"] = creation_kit
    found["xedit"] = xedit
    found["archive_tool"] = args.archive_tool or locator.find_archive_tool(backend, game_dir, xedit)
    found["ck_log"] = args.ck_log or locator.find_creation_kit_log(game_dir)
    return {k: v for k, v in found.items() if v is not None}


def build_configuration(args: argparse.Namespace, locator: ToolLocator) -> BuildConfiguration:
    """Combine a saved config, environment, discovery and CLI flags."""
    explicit: dict[str, Any] = {
        "plugin": args.plugin,
        "mode": args.mode,
        "creation_kit": args.creation_kit,
        "xedit": args.xedit,
        "archive_tool": args.archive_tool,
        "archive_backend": args.archiver,
        "data_dir": args.data_dir,
        "work_dir": args.work_dir,
        "ck_log": args.ck_log,
        "timeout_minutes": args.timeout,
        "start_step": args.start_step,
        "keep_temp_files": args.keep_temp_files,
        "non_interactive": args.non_interactive,
    }
    explicit = {k: v for k, v in explicit.items() if v is not None}

    if args.config is not None:
        return BuildConfiguration.load(args.config, **explicit)

    discovered = _discover(args, locator)
    return BuildConfiguration.from_env(**{**discovered, **explicit})


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for ``previsbine`` / ``python -m previsbine``."""
    parser = build_parser()
    args = parser.parse_args(argv)

    locator = ToolLocator(ToolCache())
    try:
        config = build_configuration(args, locator)
    except ValidationError as exc:
        console.print(f"[bold red]Error:[/bold red] invalid settings\n{exc}")
        return EXIT_CONFIG

    library = StepLibrary()
    if args.resume:
        config = config.with_updates(start_step=resume_step(library.definitions(), config))
        console.print(f"Resuming at step {config.start_step}")

    if args.save_config is not None:
        written = config.save(args.save_config)
        console.print(f"Configuration written to {written}")

    prompter = NonInteractivePrompter() if config.non_interactive else ConsolePrompter()
    controller = PipelineController(library, prompter)
    try:
        outcome = asyncio.run(controller.run(config))
    except ConfigurationError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return EXIT_CONFIG

    return EXIT_OK if outcome.completed else EXIT_ABORTED


if __name__ == "__main__":
    sys.exit(main())

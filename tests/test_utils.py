"""Unit tests for utility functions (previsbine.utils).

Tests cover:
- load_json / save_json (use tmp_path)
- is_dir_empty / has_files / count_files
- remove_path / move_path
- format_duration
- STEP_COLORS constant
- Rich output helpers (print_step_header, print_success, etc.)
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from previsbine.utils import (
    STEP_COLORS,
    count_files,
    format_duration,
    has_files,
    is_dir_empty,
    load_json,
    move_path,
    print_error,
    print_step_header,
    print_success,
    print_warning,
    remove_path,
    save_json,
)


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


class TestJsonIO:
    @pytest.mark.unit
    def test_load_json_dict(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"completed_steps": [1, 2]}), encoding="utf-8")
        assert load_json(path) == {"completed_steps": [1, 2]}

    @pytest.mark.unit
    def test_load_json_list_wraps_in_dict(self, tmp_path: Path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        assert load_json(path) == {"_root": [1, 2, 3]}

    @pytest.mark.unit
    def test_load_json_file_not_found(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_json(tmp_path / "missing.json")

    @pytest.mark.unit
    def test_load_json_invalid_json(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(json.JSONDecodeError):
            load_json(path)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_save_json_creates_parents(self, tmp_path: Path):
        path = tmp_path / "deep" / "nested" / "state.json"
        await save_json({"plugin": "Test.esp", "where": tmp_path}, path)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["plugin"] == "Test.esp"
        assert data["where"] == str(tmp_path)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_save_json_pretty_printed(self, tmp_path: Path):
        path = tmp_path / "pretty.json"
        await save_json({"a": 1}, path)
        assert "\n" in path.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


class TestDirectoryChecks:
    @pytest.mark.unit
    def test_is_dir_empty(self, tmp_path: Path):
        assert is_dir_empty(tmp_path / "missing") is True
        assert is_dir_empty(tmp_path) is True
        (tmp_path / "sub").mkdir()
        assert is_dir_empty(tmp_path) is False

    @pytest.mark.unit
    def test_is_dir_empty_on_file(self, tmp_path: Path):
        path = tmp_path / "file.txt"
        path.write_text("x")
        assert is_dir_empty(path) is False

    @pytest.mark.unit
    def test_has_files_ignores_empty_subdirectories(self, tmp_path: Path):
        (tmp_path / "a" / "b").mkdir(parents=True)
        assert has_files(tmp_path) is False
        (tmp_path / "a" / "b" / "mesh.nif").write_bytes(b"nif")
        assert has_files(tmp_path) is True
        assert has_files(tmp_path, "*.uvd") is False

    @pytest.mark.unit
    def test_count_files(self, tmp_path: Path):
        (tmp_path / "x").mkdir()
        (tmp_path / "one.nif").write_bytes(b"")
        (tmp_path / "x" / "two.nif").write_bytes(b"")
        (tmp_path / "x" / "three.uvd").write_bytes(b"")
        assert count_files(tmp_path) == 3
        assert count_files(tmp_path, "*.nif") == 2
        assert count_files(tmp_path / "missing") == 0


class TestMoveAndRemove:
    @pytest.mark.unit
    def test_remove_file_and_tree(self, tmp_path: Path):
        tree = tmp_path / "tree"
        (tree / "sub").mkdir(parents=True)
        (tree / "sub" / "f").write_bytes(b"")
        single = tmp_path / "single"
        single.write_bytes(b"")

        remove_path(tree)
        remove_path(single)
        remove_path(tmp_path / "never-existed")

        assert not tree.exists()
        assert not single.exists()

    @pytest.mark.unit
    def test_move_creates_parents(self, tmp_path: Path):
        source = tmp_path / "vis"
        source.mkdir()
        (source / "a.uvd").write_bytes(b"uvd")

        moved = move_path(source, tmp_path / "stage" / "deep" / "vis")

        assert moved == tmp_path / "stage" / "deep" / "vis"
        assert (moved / "a.uvd").read_bytes() == b"uvd"
        assert not source.exists()


# ---------------------------------------------------------------------------
# format_duration
# ---------------------------------------------------------------------------


class TestFormatDuration:
    @pytest.mark.unit
    def test_seconds_only(self):
        assert format_duration(3.7) == "3.7s"

    @pytest.mark.unit
    def test_minutes_and_seconds(self):
        assert format_duration(65.2) == "1m 5s"

    @pytest.mark.unit
    def test_hours_minutes_seconds(self):
        assert format_duration(3661.0) == "1h 1m 1s"

    @pytest.mark.unit
    def test_zero(self):
        assert format_duration(0) == "0.0s"

    @pytest.mark.unit
    def test_negative(self):
        assert format_duration(-5) == "0.0s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


class TestStepColors:
    @pytest.mark.unit
    def test_every_step_has_a_colour(self):
        assert set(STEP_COLORS) == set(range(1, 9))


class TestRichHelpers:
    @pytest.mark.unit
    def test_print_step_header(self):
        with patch("previsbine.utils.console") as mock_console:
            print_step_header(6, "Generate Previs")
            assert mock_console.print.call_count == 3

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "func, colour",
        [(print_success, "green"), (print_error, "red"), (print_warning, "yellow")],
    )
    def test_message_helpers(self, func, colour):
        with patch("previsbine.utils.console") as mock_console:
            func("hello")
            printed = mock_console.print.call_args[0][0]
            assert "hello" in printed
            assert colour in printed

"""Unit tests for the archive create/merge engine (previsbine.archive.engine).

The archiver is simulated with zip files (see ``FakeToolchain`` in
conftest), so container contents can be inspected after each merge.

Tests cover:
- Fresh container creation and removal of the loose folders
- No-op merges (nothing to archive, already up to date)
- Merging into an existing container keeps its contents
- Superseded containers are folded into the target and removed
- Loose files replace extracted copies
- Rollback after pack / extract failures
"""

from __future__ import annotations

import zipfile
from pathlib import Path

import pytest
from conftest import FakeToolchain, archive_names, failed, zip_pack

from previsbine.archive.backends import Archive2Backend
from previsbine.archive.engine import PRECOMBINE_MESH_DIR, VISIBILITY_DIR, ArchiveMergeEngine
from previsbine.config import BuildConfiguration
from previsbine.models import ArchiveOperation, ErrorKind, StepResult


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _write_container(path: Path, files: dict[str, bytes]) -> None:
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)


def _read_member(path: Path, name: str) -> bytes:
    with zipfile.ZipFile(path) as zf:
        return zf.read(name)


def _loose(config: BuildConfiguration, relative: str, data: bytes = b"data") -> Path:
    path = config.content_root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def _stage_leftovers(config: BuildConfiguration) -> list[Path]:
    if not config.staging_dir.exists():
        return []
    return list(config.staging_dir.iterdir())


@pytest.fixture
def engine(config: BuildConfiguration, toolchain: FakeToolchain) -> ArchiveMergeEngine:
    return ArchiveMergeEngine(
        Archive2Backend(config.archive_tool), toolchain, config.staging_dir, timeout_seconds=60
    )


def _precombine_op(config: BuildConfiguration) -> ArchiveOperation:
    return ArchiveOperation(
        target=config.precombine_archive,
        content_root=config.content_root,
        sources=(PRECOMBINE_MESH_DIR,),
        supersedes=(config.main_archive,),
    )


def _final_op(config: BuildConfiguration) -> ArchiveOperation:
    return ArchiveOperation(
        target=config.main_archive,
        content_root=config.content_root,
        sources=(VISIBILITY_DIR, PRECOMBINE_MESH_DIR),
        supersedes=(config.precombine_archive,),
    )


# ---------------------------------------------------------------------------
# Create fresh / no-op
# ---------------------------------------------------------------------------

class TestCreateFresh:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_packs_loose_folder(self, config, toolchain, engine):
        _loose(config, "meshes/precombined/0001_OC.nif")
        result = await engine.merge(_precombine_op(config))

        assert result.success is True
        assert result.message.startswith("Created")
        assert archive_names(config.precombine_archive) == {"meshes/precombined/0001_OC.nif"}
        assert not config.precombine_dir.exists()
        assert toolchain.operations == ["pack"]
        assert _stage_leftovers(config) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nothing_to_archive(self, config, toolchain, engine):
        result = await engine.merge(_precombine_op(config))
        assert result.success is True
        assert "Nothing to archive" in result.message
        assert toolchain.invocations == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_target_without_sources_is_untouched(self, config, toolchain, engine):
        _write_container(config.main_archive, {"vis/a.uvd": b"uvd"})
        result = await engine.merge(_final_op(config))
        assert result.success is True
        assert "already up to date" in result.message
        assert toolchain.invocations == []
        assert archive_names(config.main_archive) == {"vis/a.uvd"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_packs_from_staging_root(self, config, toolchain, engine):
        _loose(config, "vis/Test.esp/0001.uvd")
        await engine.merge(_final_op(config))
        invocation = toolchain.invocations[0]
        assert invocation.working_dir == config.staging_dir
        assert invocation.executable == config.archive_tool


# ---------------------------------------------------------------------------
# Merge into existing
# ---------------------------------------------------------------------------

class TestMergeIntoExisting:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keeps_existing_contents(self, config, toolchain, engine):
        _write_container(config.main_archive, {"textures/armor.dds": b"dds"})
        _loose(config, "vis/Test.esp/0001.uvd")

        result = await engine.merge(_final_op(config))

        assert result.success is True
        assert result.message.startswith("Merged")
        assert archive_names(config.main_archive) == {
            "textures/armor.dds",
            "vis/Test.esp/0001.uvd",
        }
        assert toolchain.operations == ["extract", "pack"]
        assert not config.vis_dir.exists()
        assert not list(config.content_root.glob("*.previsbine-bak"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_superseded_container_is_folded_in(self, config, toolchain, engine):
        _write_container(config.precombine_archive, {"meshes/precombined/0001_OC.nif": b"nif"})
        _loose(config, "vis/Test.esp/0001.uvd")

        result = await engine.merge(_final_op(config))

        assert result.success is True
        assert "Test - Precombine.ba2" in result.message
        assert not config.precombine_archive.exists()
        assert archive_names(config.main_archive) == {
            "meshes/precombined/0001_OC.nif",
            "vis/Test.esp/0001.uvd",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_both_containers_consolidate(self, config, toolchain, engine):
        _write_container(config.main_archive, {"textures/a.dds": b"a"})
        _write_container(config.precombine_archive, {"meshes/precombined/0001_OC.nif": b"nif"})
        _loose(config, "vis/Test.esp/0001.uvd")

        result = await engine.merge(_final_op(config))

        assert result.success is True
        assert not config.precombine_archive.exists()
        assert archive_names(config.main_archive) == {
            "textures/a.dds",
            "meshes/precombined/0001_OC.nif",
            "vis/Test.esp/0001.uvd",
        }
        assert toolchain.operations == ["extract", "extract", "pack"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_loose_file_replaces_extracted_copy(self, config, toolchain, engine):
        _write_container(config.main_archive, {"vis/Test.esp/0001.uvd": b"old"})
        _loose(config, "vis/Test.esp/0001.uvd", b"new")

        result = await engine.merge(_final_op(config))

        assert result.success is True
        assert _read_member(config.main_archive, "vis/Test.esp/0001.uvd") == b"new"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_main_absorbed_into_precombine_container(self, config, toolchain, engine):
        _write_container(config.main_archive, {"textures/a.dds": b"a"})
        _loose(config, "meshes/precombined/0001_OC.nif")

        result = await engine.merge(_precombine_op(config))

        assert result.success is True
        assert not config.main_archive.exists()
        assert archive_names(config.precombine_archive) == {
            "textures/a.dds",
            "meshes/precombined/0001_OC.nif",
        }


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

class TestRollback:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pack_failure_restores_everything(self, config, toolchain, engine):
        _write_container(config.main_archive, {"textures/a.dds": b"a"})
        loose = _loose(config, "vis/Test.esp/0001.uvd", b"uvd")
        toolchain.overrides["pack"] = failed(ErrorKind.TOOL_EXIT, "archive2 exited with code 1")

        result = await engine.merge(_final_op(config))

        assert result.success is False
        assert result.error_kind is ErrorKind.TOOL_EXIT
        assert archive_names(config.main_archive) == {"textures/a.dds"}
        assert loose.read_bytes() == b"uvd"
        assert not list(config.content_root.glob("*.previsbine-bak"))
        assert _stage_leftovers(config) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_target_is_removed(self, config, toolchain, engine):
        loose = _loose(config, "meshes/precombined/0001_OC.nif")
        toolchain.hooks["pack"] = zip_pack
        toolchain.overrides["pack"] = failed()

        result = await engine.merge(_precombine_op(config))

        assert result.success is False
        assert not config.precombine_archive.exists()
        assert loose.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_extract_failure_leaves_content_root_alone(self, config, toolchain, engine):
        _write_container(config.precombine_archive, {"meshes/precombined/0001_OC.nif": b"nif"})
        loose = _loose(config, "vis/Test.esp/0001.uvd")
        toolchain.overrides["extract"] = failed(ErrorKind.TOOL_EXIT, "corrupt container")

        result = await engine.merge(_final_op(config))

        assert result.success is False
        assert "corrupt container" in result.message
        assert config.precombine_archive.exists()
        assert not config.main_archive.exists()
        assert loose.exists()
        assert "pack" not in toolchain.operations

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_output_after_successful_pack(self, config, toolchain, engine):
        loose = _loose(config, "vis/Test.esp/0001.uvd")
        toolchain.overrides["pack"] = StepResult.ok("packed", exit_code=0)

        result = await engine.merge(_final_op(config))

        assert result.success is False
        assert result.error_kind is ErrorKind.ARCHIVE
        assert "was not created" in result.message
        assert loose.exists()

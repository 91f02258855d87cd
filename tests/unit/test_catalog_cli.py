"""
Unit tests for the pgpitr-catalog operator CLI.

Tests cover:
- Each subcommand's output and exit status
- Argument parsing
- main() against a catalog file
"""

import io
from pathlib import Path

import pytest

from pgpitr.pitr_server.models import (
    ArtifactKind,
    BackupStatus,
    BaseBackup,
    RestorePoint,
    WalSegment,
    artifact_key,
    wal_segment_id,
)
from pgpitr.pitr_server.tools import catalog_cli


def segment(start, end, timeline=1):
    return WalSegment(
        name=f"{timeline:08X}{start:016X}",
        timeline=timeline,
        start_lsn=start,
        end_lsn=end,
        produced_at=1000,
        checksum=f"sha256:{start}",
        archived_at=2000,
        storage_key=artifact_key(timeline, ArtifactKind.WAL, wal_segment_id(start, end)),
        size_bytes=end - start,
    )


def backup(backup_id, start, status=BackupStatus.COMPLETE):
    return BaseBackup(
        backup_id=backup_id,
        timeline=1,
        start_lsn=start,
        end_lsn=start + 2,
        created_at=1000 + start,
        status=status,
        storage_key=artifact_key(1, ArtifactKind.BASE_BACKUP, f"{backup_id}.tar.gz"),
        checksum=f"sha256:{backup_id}",
        size_bytes=100,
    )


class TestCommands:
    """Subcommand functions, writing to a buffer."""

    @pytest.mark.asyncio
    async def test_gaps_none(self, catalog):
        await catalog.register_segment(segment(0, 16))
        out = io.StringIO()

        assert await catalog_cli.gaps(catalog, out) == 0
        assert out.getvalue() == "No WAL gaps\n"

    @pytest.mark.asyncio
    async def test_gaps_found(self, catalog):
        await catalog.register_segment(segment(0, 16))
        await catalog.register_segment(segment(32, 48))
        out = io.StringIO()

        assert await catalog_cli.gaps(catalog, out) == 1
        assert out.getvalue() == "timeline 1: 0/10 - 0/20 missing\n"

    @pytest.mark.asyncio
    async def test_backups(self, catalog):
        await catalog.register_backup(backup("b1", 16))
        await catalog.register_backup(backup("b2", 32, BackupStatus.FAILED))
        out = io.StringIO()

        assert await catalog_cli.backups(catalog, out, "complete") == 0

        lines = out.getvalue().splitlines()
        assert len(lines) == 1
        assert lines[0].startswith("b1  tl=1  start=0/10  end=0/12  status=complete")

    @pytest.mark.asyncio
    async def test_backups_empty(self, catalog):
        out = io.StringIO()
        await catalog_cli.backups(catalog, out)
        assert out.getvalue() == "No base backups\n"

    @pytest.mark.asyncio
    async def test_restore_points(self, catalog):
        await catalog.register_restore_point(RestorePoint("before-migration", 20, 5000, 1))
        out = io.StringIO()

        assert await catalog_cli.restore_points(catalog, out) == 0
        assert out.getvalue() == "before-migration  tl=1  lsn=0/14  ts=5000\n"

    @pytest.mark.asyncio
    async def test_plan(self, catalog):
        await catalog.register_backup(backup("b1", 16))
        for start in (0, 16, 32):
            await catalog.register_segment(segment(start, start + 16))
        out = io.StringIO()

        assert await catalog_cli.plan(catalog, out, 40) == 0

        lines = out.getvalue().splitlines()
        assert lines[0] == "backup b1 start=0/10"
        assert len(lines) == 3

    @pytest.mark.asyncio
    async def test_plan_without_backup(self, catalog):
        out = io.StringIO()

        assert await catalog_cli.plan(catalog, out, 40) == 1
        assert "No complete base backup" in out.getvalue()

    @pytest.mark.asyncio
    async def test_plan_with_gap(self, catalog):
        await catalog.register_backup(backup("b1", 16))
        await catalog.register_segment(segment(16, 32))
        await catalog.register_segment(segment(48, 64))
        out = io.StringIO()

        assert await catalog_cli.plan(catalog, out, 50) == 1
        assert "WAL gap on timeline 1" in out.getvalue()


class TestParser:
    def test_plan_requires_lsn(self):
        with pytest.raises(SystemExit):
            catalog_cli.build_parser().parse_args(["plan"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            catalog_cli.build_parser().parse_args([])

    def test_options(self):
        args = catalog_cli.build_parser().parse_args(
            ["--catalog", "/tmp/c.db", "plan", "0/3000028", "--timeline", "2"]
        )
        assert args.catalog == "/tmp/c.db"
        assert args.lsn == "0/3000028"
        assert args.timeline == 2


class TestMain:
    def test_main_runs_against_catalog_file(self, data_dir, monkeypatch, capsys):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        path = str(Path(data_dir) / "cli.db")

        with pytest.raises(SystemExit) as exc_info:
            catalog_cli.main(["--catalog", path, "restore-points"])

        assert exc_info.value.code == 0
        assert capsys.readouterr().out == "No restore points\n"
        assert Path(path).exists()

    def test_main_rebuild_from_empty_storage(self, data_dir, monkeypatch, capsys):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        path = str(Path(data_dir) / "cli.db")

        with pytest.raises(SystemExit) as exc_info:
            catalog_cli.main(["--catalog", path, "rebuild"])

        assert exc_info.value.code == 0
        assert capsys.readouterr().out.startswith(f"Rebuilt catalog {path}")

    def test_main_reports_configuration_error(self, monkeypatch, capsys):
        monkeypatch.setenv("STORAGE_BACKEND", "ftp")

        with pytest.raises(SystemExit) as exc_info:
            catalog_cli.main(["gaps"])

        assert exc_info.value.code == 1
        assert "STORAGE_BACKEND" in capsys.readouterr().err

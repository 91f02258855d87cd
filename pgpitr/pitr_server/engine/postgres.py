"""
PostgreSQL engine driven through its client binaries.

Archiving:
    PostgreSQL's archive_command copies each completed segment into a spool
    directory, e.g.

        archive_command = 'test ! -f /spool/%f && cp %p /spool/%f.tmp && mv /spool/%f.tmp /spool/%f'

    segment_notices() polls the spool, indexes commit and restore point
    records with pg_waldump, and acknowledge() removes the spooled copy. A
    segment stays in the spool (and is re-announced after restart) until it is
    durably archived.

Backups:
    Non-exclusive pg_backup_start() / pg_backup_stop() in one persistent psql
    session, with the data directory copied into a tar archive in between.
    The backup_label returned by the stop marker is added to the archive.

Restoring:
    The backup is unpacked into a fresh directory, fetched segments and the
    target lineage's .history files are staged for restore_command, and the
    instance is started with recovery.signal, a recovery_target_name, _xid or
    _lsn setting, recovery_target_timeline and recovery_target_action =
    'pause'. pg_last_wal_replay_lsn() reports the end of the last replayed
    record, so pg_waldump over the staged segments maps it back to the
    record start the catalog indexes. Promotion calls pg_promote(); the
    promoted instance keeps serving on the restore port and integrity
    reports read it, never the production database.

Invariants:
    - The production data directory is only ever read
    - Every subprocess runs with TZ=UTC so pg_waldump timestamps are UTC

How to change safely:
    - Check the target PostgreSQL major version's recovery settings first
    - Keep the spool protocol compatible with the documented archive_command
"""

from __future__ import annotations

import asyncio
import base64
import gzip
import hashlib
import io
import logging
import os
import re
import shutil
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Sequence

from ..errors import EngineError
from ..models import (
    RecordKind,
    TargetKind,
    TimelineHistory,
    WalRecordRef,
    WalSegment,
    format_lsn,
    now_ms,
    parse_lsn,
)
from .base import BackupStart, IntegrityReport, ReplayPosition, ReplayStop, SegmentNotice

logger = logging.getLogger(__name__)

SEGMENT_NAME_RE = re.compile(r"^[0-9A-F]{24}$")

WALDUMP_RE = re.compile(
    r"rmgr:\s*(?P<rmgr>\w+)\s+.*?tx:\s*(?P<xid>\d+),\s*lsn:\s*(?P<lsn>[0-9A-F]+/[0-9A-F]+),"
    r".*?desc:\s*(?P<op>[A-Z_]+)\s*(?P<rest>.*)$"
)
RECORD_LSN_RE = re.compile(r"\blsn:\s*(?P<lsn>[0-9A-F]+/[0-9A-F]+)")

# Directories whose contents are not part of a base backup
EXCLUDED_CONTENTS = {
    "pg_wal",
    "pg_replslot",
    "pg_dynshmem",
    "pg_notify",
    "pg_serial",
    "pg_snapshots",
    "pg_stat_tmp",
    "pg_subtrans",
}
EXCLUDED_FILES = {"postmaster.pid", "postmaster.opts", "backup_label", "tablespace_map"}


def segment_start_lsn(name: str, segment_size: int) -> tuple[int, int]:
    """Decode a WAL file name into (timeline, start LSN)."""
    timeline = int(name[0:8], 16)
    log_id = int(name[8:16], 16)
    seg_id = int(name[16:24], 16)
    return timeline, (log_id << 32) + seg_id * segment_size


def parse_waldump_line(line: str, timeline: int, default_ts: int) -> WalRecordRef | None:
    """Extract a commit or restore point record from one pg_waldump line.

    Example:
        >>> parse_waldump_line(
        ...     "rmgr: Transaction len (rec/tot): 34/34, tx: 735, lsn: 0/0157A1C8, "
        ...     "prev 0/0157A190, desc: COMMIT 2024-01-15 10:23:45.123456 UTC",
        ...     1, 0,
        ... ).xid
        735
    """
    match = WALDUMP_RE.search(line)
    if not match:
        return None

    rmgr, op, rest = match.group("rmgr"), match.group("op"), match.group("rest")
    lsn = parse_lsn(match.group("lsn"))

    if rmgr == "Transaction" and op == "COMMIT":
        return WalRecordRef(
            lsn=lsn,
            timeline=timeline,
            kind=RecordKind.COMMIT,
            timestamp=_parse_commit_time(rest) or default_ts,
            xid=int(match.group("xid")),
        )
    if rmgr == "XLOG" and op == "RESTORE_POINT":
        return WalRecordRef(
            lsn=lsn,
            timeline=timeline,
            kind=RecordKind.RESTORE_POINT,
            timestamp=default_ts,
            name=rest.strip(),
        )
    return None


def _parse_commit_time(rest: str) -> int | None:
    parts = rest.split()
    if len(parts) < 2:
        return None
    stamp = f"{parts[0]} {parts[1].rstrip(';')}"
    for fmt in ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S"):
        try:
            dt = datetime.strptime(stamp, fmt).replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
        except ValueError:
            continue
    return None


def last_record_lsn(output: str, before: int) -> int | None:
    """Start LSN of the last pg_waldump record that starts below `before`."""
    last = None
    for line in output.splitlines():
        match = RECORD_LSN_RE.search(line)
        if match:
            lsn = parse_lsn(match.group("lsn"))
            if lsn < before:
                last = lsn
    return last


def restore_point_lsn(output: str, name: str) -> int | None:
    """Start LSN of the named restore point record in pg_waldump output."""
    found = None
    for line in output.splitlines():
        ref = parse_waldump_line(line, 0, 0)
        if ref is not None and ref.kind == RecordKind.RESTORE_POINT and ref.name == name:
            found = ref.lsn
    return found


def timeline_history_files(history: Sequence[TimelineHistory]) -> dict[str, str]:
    """Render PostgreSQL .history files for a timeline lineage.

    Each file lists every switch point from the root up to that timeline, one
    "parent<TAB>switchpoint<TAB>reason" line per branch.

    Args:
        history: Branch entries, newest first, as the catalog returns them

    Returns:
        Mapping of file name (e.g. 00000003.history) to content
    """
    files: dict[str, str] = {}
    lines: list[str] = []
    for entry in reversed(history):
        if entry.parent_timeline is None:
            continue
        lines.append(
            f"{entry.parent_timeline}\t{format_lsn(entry.branch_lsn)}\t"
            f"pgpitr recovery onto timeline {entry.timeline}"
        )
        files[f"{entry.timeline:08X}.history"] = "\n".join(lines) + "\n"
    return files


def recovery_settings(stop: ReplayStop, staging_dir: Path, port: int) -> list[str]:
    """postgresql.auto.conf lines that make the instance pause on the target.

    Name and xid targets use PostgreSQL's own matching. Time targets were
    already resolved to a record by the catalog, so they stop on that
    record's LSN like an LSN target.
    """
    settings = [f"restore_command = 'cp \"{staging_dir}/%f\" \"%p\"'"]
    if stop.kind == TargetKind.NAME:
        settings.append(f"recovery_target_name = {_quote(str(stop.value))}")
    elif stop.kind == TargetKind.XID:
        settings.append(f"recovery_target_xid = '{int(stop.value)}'")
    else:
        settings.append(f"recovery_target_lsn = '{format_lsn(stop.lsn)}'")
    settings.extend(
        [
            f"recovery_target_timeline = '{stop.timeline}'",
            "recovery_target_inclusive = on",
            "recovery_target_action = 'pause'",
            f"port = {port}",
            "archive_mode = off",
        ]
    )
    return settings


class _PsqlSession:
    """A long-lived psql process, needed because pg_backup_start() and
    pg_backup_stop() must run in the same connection."""

    MARKER = "__pgpitr_done__"

    def __init__(self, psql: str, dsn: str, env: dict[str, str]) -> None:
        self.psql = psql
        self.dsn = dsn
        self.env = env
        self._proc: asyncio.subprocess.Process | None = None

    async def open(self) -> None:
        self._proc = await asyncio.create_subprocess_exec(
            self.psql, "-X", "-A", "-t", "-q", "-v", "ON_ERROR_STOP=1", "-d", self.dsn,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.env,
        )

    async def query(self, sql: str) -> list[str]:
        if self._proc is None:
            raise EngineError("psql session not open", command=sql)
        self._proc.stdin.write(f"{sql};\n\\echo {self.MARKER}\n".encode("utf-8"))
        await self._proc.stdin.drain()

        lines: list[str] = []
        while True:
            raw = await self._proc.stdout.readline()
            if not raw:
                stderr = (await self._proc.stderr.read()).decode("utf-8", "replace")
                raise EngineError(f"psql session ended: {stderr.strip()}", command=sql)
            text = raw.decode("utf-8").rstrip("\n")
            if text == self.MARKER:
                return lines
            lines.append(text)

    async def close(self) -> None:
        if self._proc is None:
            return
        if self._proc.returncode is None:
            self._proc.stdin.write(b"\\q\n")
            await self._proc.stdin.drain()
            await self._proc.wait()
        self._proc = None


class PostgresEngine:
    """DatabaseEngine backed by a real PostgreSQL installation.

    Example:
        >>> engine = PostgresEngine(config.engine)
        >>> async for notice in engine.segment_notices():
        ...     await archiver.archive_segment(notice)
    """

    def __init__(
        self,
        engine_config: Any,
        sandbox: bool = False,
        poll_interval: float = 1.0,
        replay_timeout: float = 3600.0,
        redeliver_after: float = 60.0,
    ) -> None:
        """Initialize the engine.

        Args:
            engine_config: EngineConfig instance
            sandbox: Restore into the sandbox root and never archive from it
            poll_interval: Seconds between spool / replay polls
            replay_timeout: Maximum seconds to wait for replay to pause
            redeliver_after: Seconds before an unacknowledged segment is announced again
        """
        self.config = engine_config
        self.instance_id = (
            f"{engine_config.instance_id}-sandbox" if sandbox else engine_config.instance_id
        )
        self.sandbox = sandbox
        self.poll_interval = poll_interval
        self.replay_timeout = replay_timeout
        self.redeliver_after = redeliver_after
        self.bin_dir = Path(engine_config.bin_dir)
        self.spool_dir = Path(engine_config.spool_dir)
        self.segment_size = engine_config.wal_segment_size
        self.restore_port = engine_config.sandbox_port if sandbox else engine_config.restore_port
        self._restore_root = Path(engine_config.sandbox_root if sandbox else engine_config.restore_root)
        self._env = {**os.environ, "TZ": "UTC"}
        self._in_flight: dict[str, float] = {}
        self._closed = False
        self._backup_session: _PsqlSession | None = None
        self._backup_label: str | None = None
        self._tablespace_map: str | None = None
        self._restore_dir: Path | None = None
        self._staging_dir: Path | None = None
        self._restore_running = False
        self._staged: dict[str, tuple[int, int]] = {}
        self._promoted_dir: Path | None = None

    def _bin(self, name: str) -> str:
        return str(self.bin_dir / name)

    async def _run(self, *argv: str, check: bool = True) -> str:
        """Run a client binary and return its stdout."""
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env,
        )
        stdout, stderr = await proc.communicate()
        if check and proc.returncode != 0:
            raise EngineError(
                f"{Path(argv[0]).name} exited with {proc.returncode}: "
                f"{stderr.decode('utf-8', 'replace').strip()}",
                command=" ".join(argv[:2]),
            )
        return stdout.decode("utf-8", "replace")

    async def _psql(self, sql: str, dsn: str | None = None) -> list[str]:
        output = await self._run(
            self._bin("psql"), "-X", "-A", "-t", "-q", "-v", "ON_ERROR_STOP=1",
            "-d", dsn or self.config.dsn, "-c", sql,
        )
        return [line for line in output.splitlines() if line]

    def _restore_dsn(self) -> str:
        return f"host=localhost port={self.restore_port} dbname=postgres"

    # Archiving

    async def current_position(self) -> tuple[int, int]:
        rows = await self._psql(
            "SELECT timeline_id, pg_current_wal_insert_lsn() FROM pg_control_checkpoint()"
        )
        timeline, lsn = rows[0].split("|")
        return int(timeline), parse_lsn(lsn)

    async def segment_notices(self) -> AsyncIterator[SegmentNotice]:
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        loop = asyncio.get_event_loop()
        while not self._closed:
            now = loop.time()
            names = sorted(
                p.name
                for p in self.spool_dir.iterdir()
                if SEGMENT_NAME_RE.match(p.name)
                and (
                    p.name not in self._in_flight
                    or now - self._in_flight[p.name] >= self.redeliver_after
                )
            )
            for name in names:
                notice = await self._build_notice(self.spool_dir / name)
                self._in_flight[name] = now
                yield notice
            await asyncio.sleep(self.poll_interval)

    async def _build_notice(self, path: Path) -> SegmentNotice:
        timeline, start_lsn = segment_start_lsn(path.name, self.segment_size)
        produced_at = int(path.stat().st_mtime * 1000)
        payload = await asyncio.get_event_loop().run_in_executor(None, path.read_bytes)
        output = await self._run(self._bin("pg_waldump"), str(path), check=False)
        records = []
        for line in output.splitlines():
            ref = parse_waldump_line(line, timeline, produced_at)
            if ref is not None:
                records.append(ref)
        return SegmentNotice(
            name=path.name,
            timeline=timeline,
            start_lsn=start_lsn,
            end_lsn=start_lsn + self.segment_size,
            produced_at=produced_at,
            payload=payload,
            records=tuple(records),
        )

    async def acknowledge(self, notice: SegmentNotice) -> None:
        try:
            (self.spool_dir / notice.name).unlink()
        except FileNotFoundError:
            pass
        self._in_flight.pop(notice.name, None)

    async def switch_wal(self) -> int:
        rows = await self._psql("SELECT pg_switch_wal()")
        return parse_lsn(rows[0])

    # Backups

    async def start_backup(self, label: str) -> BackupStart:
        if self._backup_session is not None:
            raise EngineError("A backup is already in progress", command="pg_backup_start")
        session = _PsqlSession(self._bin("psql"), self.config.dsn, self._env)
        await session.open()
        try:
            rows = await session.query(
                f"SELECT pg_backup_start({_quote(label)}, true), "
                "(SELECT timeline_id FROM pg_control_checkpoint())"
            )
        except EngineError:
            await session.close()
            raise
        lsn, timeline = rows[0].split("|")
        self._backup_session = session
        return BackupStart(timeline=int(timeline), start_lsn=parse_lsn(lsn), label=label)

    async def read_snapshot(self) -> bytes:
        if self._backup_session is None:
            raise EngineError("No backup in progress", command="read_snapshot")
        return await asyncio.get_event_loop().run_in_executor(
            None, self._tar_data_dir, Path(self.config.data_dir)
        )

    async def stop_backup(self) -> int:
        session = self._backup_session
        if session is None:
            raise EngineError("No backup in progress", command="pg_backup_stop")
        try:
            rows = await session.query(
                "SELECT lsn, "
                "translate(encode(convert_to(labelfile, 'UTF8'), 'base64'), E'\\n', ''), "
                "translate(encode(convert_to(coalesce(spcmapfile, ''), 'UTF8'), 'base64'), E'\\n', '') "
                "FROM pg_backup_stop(false)"
            )
        finally:
            await session.close()
            self._backup_session = None
        lsn, label, spcmap = rows[0].split("|")
        self._backup_label = base64.b64decode(label).decode("utf-8")
        self._tablespace_map = base64.b64decode(spcmap).decode("utf-8") or None
        return parse_lsn(lsn)

    async def finalize_snapshot(self, snapshot: bytes) -> bytes:
        if self._backup_label is None:
            raise EngineError("Backup was not stopped", command="finalize_snapshot")
        extra = {"backup_label": self._backup_label}
        if self._tablespace_map:
            extra["tablespace_map"] = self._tablespace_map
        self._backup_label = None
        self._tablespace_map = None
        return await asyncio.get_event_loop().run_in_executor(
            None, self._seal_archive, snapshot, extra
        )

    def _tar_data_dir(self, data_dir: Path) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            for root, dirs, files in os.walk(data_dir):
                rel_root = Path(root).relative_to(data_dir)
                tar.add(root, arcname=str(rel_root), recursive=False)
                if rel_root.parts and rel_root.parts[0] in EXCLUDED_CONTENTS:
                    dirs[:] = []
                    continue
                for name in files:
                    if not rel_root.parts and name in EXCLUDED_FILES:
                        continue
                    try:
                        tar.add(os.path.join(root, name), arcname=str(rel_root / name))
                    except FileNotFoundError:
                        # Removed while copying; WAL replay recreates it
                        continue
        return buf.getvalue()

    def _seal_archive(self, snapshot: bytes, extra: dict[str, str]) -> bytes:
        buf = io.BytesIO(snapshot)
        with tarfile.open(fileobj=buf, mode="a") as tar:
            for name, content in extra.items():
                data = content.encode("utf-8")
                info = tarfile.TarInfo(name)
                info.size = len(data)
                info.mode = 0o600
                info.mtime = now_ms() // 1000
                tar.addfile(info, io.BytesIO(data))
        return gzip.compress(buf.getvalue())

    async def create_restore_point(self, name: str) -> tuple[int, int, int]:
        rows = await self._psql(
            f"SELECT pg_create_restore_point({_quote(name)}), "
            "(SELECT timeline_id FROM pg_control_checkpoint())"
        )
        end_lsn, timeline = rows[0].split("|")
        created_at = now_ms()
        # pg_create_restore_point() returns the end of its record; the catalog
        # and recovery_target_name both work with the record start
        end = parse_lsn(end_lsn)
        wal_dir = Path(self.config.data_dir) / "pg_wal"
        segment_floor = (end - 1) - (end - 1) % self.segment_size
        for start in (segment_floor, max(segment_floor - self.segment_size, 0)):
            output = await self._run(
                self._bin("pg_waldump"), "--path", str(wal_dir), "--timeline", timeline,
                "--start", format_lsn(start), "--end", format_lsn(end),
                check=False,
            )
            lsn = restore_point_lsn(output, name)
            if lsn is not None:
                return int(timeline), lsn, created_at
        raise EngineError(
            f"Restore point '{name}' not found in WAL before {format_lsn(end)}",
            command="pg_create_restore_point",
        )

    # Restoring

    async def begin_restore(self) -> None:
        if self._restore_dir is not None:
            raise EngineError("A restore is already in progress", command="begin_restore")
        stamp = now_ms()
        self._restore_dir = self._restore_root / f"{self.instance_id}-{stamp}"
        self._staging_dir = self._restore_root / f"{self.instance_id}-{stamp}-wal"
        self._restore_dir.mkdir(parents=True, mode=0o700)
        self._staging_dir.mkdir(parents=True)
        logger.info("Prepared restore directory", extra={"restore_dir": str(self._restore_dir)})

    async def restore_base(self, payload: bytes) -> None:
        restore_dir = self._require_restore("restore_base")
        await asyncio.get_event_loop().run_in_executor(None, self._extract, payload, restore_dir)

    def _extract(self, payload: bytes, restore_dir: Path) -> None:
        try:
            with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
                tar.extractall(restore_dir, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise EngineError(f"Cannot unpack base backup: {e}", command="restore_base")
        (restore_dir / "pg_wal").mkdir(exist_ok=True)
        os.chmod(restore_dir, 0o700)

    async def stage_wal(self, segment: WalSegment, payload: bytes) -> None:
        self._require_restore("stage_wal")
        target = self._staging_dir / segment.name
        await asyncio.get_event_loop().run_in_executor(None, target.write_bytes, payload)
        self._staged[segment.name] = (segment.timeline, segment.start_lsn)

    async def replay_to(self, stop: ReplayStop) -> ReplayPosition:
        restore_dir = self._require_restore("replay_to")
        for name, content in timeline_history_files(stop.history).items():
            (self._staging_dir / name).write_text(content)
        settings = recovery_settings(stop, self._staging_dir, self.restore_port)
        with open(restore_dir / "postgresql.auto.conf", "a") as f:
            f.write("\n# pgpitr recovery\n" + "\n".join(settings) + "\n")
        (restore_dir / "recovery.signal").touch()

        await self._run(
            self._bin("pg_ctl"), "-D", str(restore_dir), "-l", str(restore_dir / "recovery.log"),
            "-w", "-t", "600", "start",
        )
        self._restore_running = True

        loop = asyncio.get_event_loop()
        deadline = loop.time() + self.replay_timeout
        while loop.time() < deadline:
            try:
                rows = await self._psql(
                    "SELECT pg_is_wal_replay_paused(), pg_last_wal_replay_lsn()",
                    dsn=self._restore_dsn(),
                )
            except EngineError:
                if not await self._restore_alive():
                    raise EngineError(
                        f"Recovery stopped before reaching {stop}; "
                        f"see {restore_dir / 'recovery.log'}",
                        command="replay_to",
                    )
                await asyncio.sleep(self.poll_interval)
                continue
            paused, replayed = rows[0].split("|")
            if paused == "t" and replayed:
                end_lsn = parse_lsn(replayed)
                lsn = await self._record_before(stop, end_lsn)
                logger.info(
                    "Replay paused at target",
                    extra={"target": str(stop), "record": format_lsn(lsn), "replayed": replayed},
                )
                return ReplayPosition(lsn=lsn, end_lsn=end_lsn)
            await asyncio.sleep(self.poll_interval)

        raise EngineError(
            f"Replay did not reach {stop} within {self.replay_timeout}s",
            command="replay_to",
        )

    async def _record_before(self, stop: ReplayStop, end_lsn: int) -> int:
        """Start LSN of the replayed record that ends at end_lsn.

        pg_last_wal_replay_lsn() reports where the last record ended; the
        catalog indexes records by where they start.
        """
        floor = min(stop.lsn, end_lsn - 1)
        floor -= floor % self.segment_size
        timelines = [
            timeline
            for timeline, start in self._staged.values()
            if start <= end_lsn - 1 < start + self.segment_size
        ]
        timeline = max(timelines) if timelines else stop.timeline
        output = await self._run(
            self._bin("pg_waldump"), "--path", str(self._staging_dir),
            "--timeline", str(timeline),
            "--start", format_lsn(floor), "--end", format_lsn(end_lsn),
            check=False,
        )
        lsn = last_record_lsn(output, end_lsn)
        if lsn is None:
            raise EngineError(
                f"No WAL record found ending at {format_lsn(end_lsn)} on timeline {timeline}",
                command="pg_waldump",
            )
        return lsn

    async def _restore_alive(self) -> bool:
        output = await self._run(
            self._bin("pg_ctl"), "-D", str(self._restore_dir), "status", check=False
        )
        return "server is running" in output

    async def promote(self, new_timeline: int) -> None:
        self._require_restore("promote")
        await self._psql("SELECT pg_promote(true)", dsn=self._restore_dsn())
        rows = await self._psql(
            "SELECT timeline_id FROM pg_control_checkpoint()", dsn=self._restore_dsn()
        )
        actual = int(rows[0]) if rows else None
        if actual is not None and actual != new_timeline:
            logger.warning(
                "PostgreSQL chose a different timeline than the catalog",
                extra={"expected": new_timeline, "actual": actual},
            )
        logger.info(
            "Restored instance promoted",
            extra={"data_dir": str(self._restore_dir), "port": self.restore_port},
        )
        shutil.rmtree(self._staging_dir, ignore_errors=True)
        self._promoted_dir = self._restore_dir
        self._restore_dir = None
        self._staging_dir = None
        self._staged.clear()
        self._restore_running = False

    async def abandon_restore(self) -> None:
        if self._restore_dir is None:
            return
        if self._restore_running:
            await self._run(
                self._bin("pg_ctl"), "-D", str(self._restore_dir), "-m", "immediate", "stop",
                check=False,
            )
        shutil.rmtree(self._restore_dir, ignore_errors=True)
        shutil.rmtree(self._staging_dir, ignore_errors=True)
        self._restore_dir = None
        self._staging_dir = None
        self._staged.clear()
        self._restore_running = False

    def _report_dsn(self) -> str | None:
        """DSN of the instance a report describes: the restored one once a restore started."""
        if self._restore_running or self._promoted_dir is not None:
            return self._restore_dsn()
        return None

    async def integrity_report(self) -> IntegrityReport:
        dsn = self._report_dsn()
        tables = await self._psql(
            "SELECT quote_ident(table_schema) || '.' || quote_ident(table_name) "
            "FROM information_schema.tables WHERE table_type = 'BASE TABLE' "
            "AND table_schema NOT IN ('pg_catalog', 'information_schema') ORDER BY 1",
            dsn=dsn,
        )
        counts: dict[str, int] = {}
        for table in tables:
            rows = await self._psql(f"SELECT count(*) FROM {table}", dsn=dsn)
            counts[table] = int(rows[0])

        position_sql = (
            "SELECT timeline_id, pg_last_wal_replay_lsn() FROM pg_control_checkpoint()"
            if self._restore_running
            else "SELECT timeline_id, pg_current_wal_lsn() FROM pg_control_checkpoint()"
        )
        timeline, lsn = (await self._psql(position_sql, dsn=dsn))[0].split("|")
        digest = hashlib.sha256(
            "\n".join(f"{name}:{count}" for name, count in counts.items()).encode("utf-8")
        ).hexdigest()
        return IntegrityReport(
            timeline=int(timeline),
            position=parse_lsn(lsn) if lsn else 0,
            tables=counts,
            checksum=f"sha256:{digest}",
        )

    async def close(self) -> None:
        self._closed = True
        if self._backup_session is not None:
            await self._backup_session.close()
            self._backup_session = None
        if self.sandbox and self._promoted_dir is not None:
            # A sandbox instance only exists to be measured
            await self._run(
                self._bin("pg_ctl"), "-D", str(self._promoted_dir), "-m", "fast", "stop",
                check=False,
            )
            shutil.rmtree(self._promoted_dir, ignore_errors=True)
            self._promoted_dir = None

    def _require_restore(self, command: str) -> Path:
        if self._restore_dir is None:
            raise EngineError("No restore in progress", command=command)
        return self._restore_dir


def _quote(value: str) -> str:
    """Quote a string literal for SQL."""
    return "'" + value.replace("'", "''") + "'"

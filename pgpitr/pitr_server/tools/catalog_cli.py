"""
Operator CLI for the backup catalog.

Subcommands:
    rebuild          Rebuild the catalog index from storage manifests
    gaps             List missing WAL ranges per timeline
    backups          List base backups
    restore-points   List restore points
    plan             Show the backup and WAL chain recovery would use for an LSN

Usage:
    pgpitr-catalog [--catalog PATH] <command> [options]

Storage and catalog settings come from the same environment variables as the
server (see config.py); --catalog overrides CATALOG_PATH.

Invariants:
    - Only rebuild writes, and it only writes to the catalog file
    - Exit status is 0 on success, 1 when problems were found or a command failed

How to change safely:
    - Keep output line-oriented; operators grep it
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from typing import TextIO

from ..catalog import BackupCatalog
from ..config import ServerConfig
from ..errors import PitrError
from ..models import BackupStatus, format_lsn, parse_lsn
from ..storage import StorageBackend, create_storage_backend

logger = logging.getLogger(__name__)


async def rebuild(catalog: BackupCatalog, storage: StorageBackend, out: TextIO) -> int:
    """Rebuild the catalog from storage manifests."""
    counts = await catalog.rebuild_from_storage(storage)
    print(
        f"Rebuilt catalog {catalog.path}: "
        + ", ".join(f"{name}={count}" for name, count in counts.items()),
        file=out,
    )
    return 0


async def gaps(catalog: BackupCatalog, out: TextIO, timeline: int | None = None) -> int:
    """Print WAL gaps. Returns 1 when any gap exists."""
    if timeline is not None:
        timelines = [timeline]
    else:
        timelines = sorted({s.timeline for s in await catalog.list_segments()})
    found = False
    for tl in timelines:
        for gap_from, gap_to in await catalog.find_gaps(tl):
            found = True
            print(f"timeline {tl}: {format_lsn(gap_from)} - {format_lsn(gap_to)} missing", file=out)
    if not found:
        print("No WAL gaps", file=out)
    return 1 if found else 0


async def backups(catalog: BackupCatalog, out: TextIO, status: str | None = None) -> int:
    """Print base backups, oldest first."""
    entries = await catalog.list_backups(status=BackupStatus(status) if status else None)
    for b in entries:
        end = format_lsn(b.end_lsn) if b.end_lsn is not None else "-"
        print(
            f"{b.backup_id}  tl={b.timeline}  start={format_lsn(b.start_lsn)}  end={end}  "
            f"status={b.status.value}  size={b.size_bytes}",
            file=out,
        )
    if not entries:
        print("No base backups", file=out)
    return 0


async def restore_points(catalog: BackupCatalog, out: TextIO) -> int:
    """Print restore points."""
    points = await catalog.list_restore_points()
    for p in points:
        print(f"{p.name}  tl={p.timeline}  lsn={format_lsn(p.lsn)}  ts={p.timestamp}", file=out)
    if not points:
        print("No restore points", file=out)
    return 0


async def plan(catalog: BackupCatalog, out: TextIO, lsn: int, timeline: int | None = None) -> int:
    """Print the backup and WAL chain that would reach an LSN."""
    backup = await catalog.find_base_backup_covering(lsn, timeline)
    if backup is None:
        print(f"No complete base backup at or before {format_lsn(lsn)}", file=out)
        return 1
    print(f"backup {backup.backup_id} start={format_lsn(backup.start_lsn)}", file=out)
    try:
        chain = await catalog.wal_chain(backup.start_lsn, lsn, timeline)
    except PitrError as e:
        print(e.message, file=out)
        return 1
    for segment in chain:
        print(f"  {segment}", file=out)
    return 0


async def run_command(args: argparse.Namespace, config: ServerConfig, out: TextIO) -> int:
    catalog = BackupCatalog(config.catalog.path, config.catalog.busy_timeout_ms)
    await catalog.initialize()

    if args.command == "rebuild":
        storage = create_storage_backend(config)
        try:
            return await rebuild(catalog, storage, out)
        finally:
            await storage.close()
    if args.command == "gaps":
        return await gaps(catalog, out, args.timeline)
    if args.command == "backups":
        return await backups(catalog, out, args.status)
    if args.command == "restore-points":
        return await restore_points(catalog, out)
    return await plan(catalog, out, parse_lsn(args.lsn), args.timeline)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pgpitr-catalog", description="Inspect the pgpitr backup catalog")
    parser.add_argument("--catalog", help="Catalog file (default: CATALOG_PATH)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("rebuild", help="Rebuild the catalog from storage manifests")

    gaps_parser = sub.add_parser("gaps", help="List missing WAL ranges")
    gaps_parser.add_argument("--timeline", type=int, help="Only this timeline")

    backups_parser = sub.add_parser("backups", help="List base backups")
    backups_parser.add_argument(
        "--status", choices=[s.value for s in BackupStatus], help="Only backups with this status"
    )

    sub.add_parser("restore-points", help="List restore points")

    plan_parser = sub.add_parser("plan", help="Show the recovery plan for an LSN")
    plan_parser.add_argument("lsn", help="Target LSN (X/Y or integer)")
    plan_parser.add_argument("--timeline", type=int, help="Target timeline (default: latest)")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the catalog tool."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        config = ServerConfig.from_env()
        if args.catalog:
            config = replace(config, catalog=replace(config.catalog, path=args.catalog))
        code = asyncio.run(run_command(args, config, sys.stdout))
    except PitrError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()

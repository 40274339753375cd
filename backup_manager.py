#!/usr/bin/env python3
"""
Scheduled backup manager.

Reads a set of backup targets from an INI config file and, for each target,
decides from the target directory's listing whether a new backup is due,
creates it (optionally GPG-encrypted and copied to a remote host over SSH)
and prunes older copies beyond the configured retention count.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import os
import posixpath
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from backup_schedule import (
    ConfigurationError,
    ListingEntry,
    check_naming_pattern,
    filter_matching,
    find_most_recent_matching,
    offset_by_interval,
    parse_interval,
    parse_listing,
    render_name,
)
from backup_tools import BackupTools, SystemTools
import restore_backup


DEFAULT_ARCHIVE = Path("/tmp/backup.tar.gz")
NOISY_LOGGERS = ("paramiko",)
REQUIRED_KEYS = ("globs", "dir", "format", "interval")
OPTIONAL_KEYS = ("gpg_id", "host", "copies")


@dataclass
class BackupTarget:
    source_patterns: List[str]
    target_directory: str
    naming_pattern: str
    interval: str
    encryption_recipient: Optional[str] = None
    remote_host: Optional[str] = None
    retention_count: Optional[int] = None

    def destination_for(self, name: str) -> str:
        if self.remote_host:
            return posixpath.join(self.target_directory, name)
        return os.path.join(self.target_directory, name)


@dataclass
class BackupRecord:
    name: str
    created_at: datetime
    path: str
    deleted: List[str] = field(default_factory=list)


class SyncError(Exception):
    """Raised when a collaborator fails while syncing one target."""

    def __init__(self, target: str, step: str, message: str) -> None:
        super().__init__(f"[{target}] {step} failed: {message}")
        self.target = target
        self.step = step


class SyncFailures(Exception):
    """Raised after a keep-going sync when one or more targets failed."""

    def __init__(self, errors: List[SyncError]) -> None:
        targets = ", ".join(error.target for error in errors)
        super().__init__(f"{len(errors)} target(s) failed: {targets}")
        self.errors = errors


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create, restore and schedule file backups."
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    backup_parser = subparsers.add_parser("backup", help="Back up files.")
    backup_parser.add_argument("globs", nargs="+", help="The files to back up.")
    backup_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=DEFAULT_ARCHIVE,
        help=f"The destination file (default: {DEFAULT_ARCHIVE}).",
    )
    backup_parser.add_argument(
        "-g",
        "--gpg-id",
        help="The id of the GPG key to encrypt the archive for.",
    )

    restore_parser = subparsers.add_parser("restore", help="Restore files from a backup.")
    restore_parser.add_argument("file", type=Path, help="The archive to restore from.")
    restore_parser.add_argument(
        "globs",
        nargs="*",
        help="Specific files within the archive to restore (default: everything).",
    )
    restore_parser.add_argument(
        "-g",
        "--gpg-id",
        help="The id of the GPG key the archive was encrypted for.",
    )
    restore_parser.add_argument(
        "--target-dir",
        type=Path,
        default=Path("/"),
        help="Directory to restore into (default: /, the original locations).",
    )
    restore_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the files that would be restored without writing them.",
    )

    sync_parser = subparsers.add_parser(
        "sync", help="Synchronize any number of backups according to a schedule."
    )
    sync_parser.add_argument("config", type=Path, help="The INI file describing the backups.")
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show planned backups and deletions without performing them.",
    )
    sync_parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Continue with the remaining targets when one of them fails.",
    )
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Run continuously, re-evaluating every target at a set interval.",
    )
    sync_parser.add_argument(
        "--poll-interval",
        type=int,
        default=60,
        help="Seconds between passes when running in loop mode (default: 60).",
    )
    return parser.parse_args(argv)


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


def parse_globs(value: str) -> List[str]:
    return [line.strip() for line in value.splitlines() if line.strip()]


def parse_target(name: str, section: Dict[str, str]) -> BackupTarget:
    unknown = sorted(set(section) - set(REQUIRED_KEYS) - set(OPTIONAL_KEYS))
    if unknown:
        raise ConfigurationError(f"Target {name}: unknown key(s) {', '.join(unknown)}.")
    missing = [key for key in REQUIRED_KEYS if not section.get(key, "").strip()]
    if missing:
        raise ConfigurationError(f"Target {name}: missing {', '.join(missing)}.")

    globs = parse_globs(section["globs"])
    if not globs:
        raise ConfigurationError(f"Target {name}: globs must list at least one pattern.")

    naming_pattern = section["format"].strip()
    try:
        check_naming_pattern(naming_pattern)
    except ConfigurationError as error:
        raise ConfigurationError(f"Target {name}: {error}") from error

    interval = section["interval"].strip()
    try:
        parse_interval(interval)
    except ConfigurationError as error:
        raise ConfigurationError(f"Target {name}: {error}") from error

    retention_count: Optional[int] = None
    copies = section.get("copies", "").strip()
    if copies:
        retention_count = parse_int(copies, f"Target {name}: copies")
        if retention_count <= 0:
            raise ConfigurationError(f"Target {name}: copies must be a positive integer.")

    return BackupTarget(
        source_patterns=globs,
        target_directory=section["dir"].strip(),
        naming_pattern=naming_pattern,
        interval=interval,
        encryption_recipient=section.get("gpg_id", "").strip() or None,
        remote_host=section.get("host", "").strip() or None,
        retention_count=retention_count,
    )


def _config_parser() -> configparser.ConfigParser:
    # Naming patterns are full of '%' directives.
    return configparser.ConfigParser(interpolation=None)


def read_config_file(config_path: Path) -> Dict[str, BackupTarget]:
    parser = _config_parser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if not parser.sections():
        raise ConfigurationError(f"Config file {config_path} defines no backup targets.")
    return {name: parse_target(name, dict(parser[name])) for name in parser.sections()}


def write_config_file(targets: Dict[str, BackupTarget], config_path: Path) -> None:
    parser = _config_parser()
    for name, target in targets.items():
        section = {
            "globs": "\n".join(target.source_patterns),
            "dir": target.target_directory,
            "format": target.naming_pattern,
            "interval": target.interval,
        }
        if target.encryption_recipient:
            section["gpg_id"] = target.encryption_recipient
        if target.remote_host:
            section["host"] = target.remote_host
        if target.retention_count is not None:
            section["copies"] = str(target.retention_count)
        parser[name] = section
    with open(config_path, "w", encoding="utf-8") as handle:
        parser.write(handle)


def _quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    _quiet_external_loggers()


def select_stale_backups(
    entries: List[ListingEntry],
    naming_pattern: str,
    retention_count: Optional[int],
    *,
    exclude: Optional[str] = None,
) -> List[ListingEntry]:
    """
    Pick the backups to delete once a new backup has been produced.

    ``entries`` is the listing taken before the new backup was created, so the
    new backup is not among them and counts as one of the ``retention_count``
    copies kept.
    """
    if retention_count is None:
        return []
    matching = [
        entry for entry in filter_matching(entries, naming_pattern) if entry.name != exclude
    ]
    return matching[max(retention_count - 1, 0):]


def prune_backups(
    name: str,
    target: BackupTarget,
    entries: List[ListingEntry],
    tools: BackupTools,
    *,
    new_name: str,
    dry_run: bool = False,
) -> List[str]:
    stale = select_stale_backups(
        entries, target.naming_pattern, target.retention_count, exclude=new_name
    )
    paths = [target.destination_for(entry.name) for entry in stale]
    if not paths:
        return []

    action = "Would delete" if dry_run else "Deleting"
    for path in paths:
        logging.info(
            "%s old backup %s of %s (keeping %d)", action, path, name, target.retention_count
        )
    if not dry_run:
        tools.delete_paths(paths, target.remote_host)
    return paths


def _run_step(name: str, step: str, func, *args):
    try:
        return func(*args)
    except Exception as error:  # every collaborator failure is fatal for the target
        raise SyncError(name, step, str(error)) from error


def sync_config(
    name: str,
    target: BackupTarget,
    *,
    tools: Optional[BackupTools] = None,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> Optional[BackupRecord]:
    """
    Produce a new backup for ``target`` if its interval has elapsed.

    Returns the record of the produced backup, or ``None`` when the most
    recent matching backup is still within the interval.
    """
    tools = tools or SystemTools()
    now = now or datetime.now(timezone.utc)

    raw_listing = _run_step(
        name, "listing", tools.list_directory, target.target_directory, target.remote_host
    )
    entries = parse_listing(raw_listing)

    last_backup = find_most_recent_matching(entries, target.naming_pattern)
    threshold = offset_by_interval(now, target.interval)
    if last_backup is not None and last_backup.modified_at > threshold:
        logging.info(
            "Skipping %s: last backup %s at %s is newer than %s",
            name,
            last_backup.name,
            last_backup.modified_at.isoformat(),
            threshold.isoformat(),
        )
        return None

    backup_name = render_name(target.naming_pattern, now)
    destination = target.destination_for(backup_name)
    record = BackupRecord(name=backup_name, created_at=now, path=destination)

    if dry_run:
        logging.info("Would back up %s to %s", name, destination)
        record.deleted = prune_backups(
            name, target, entries, tools, new_name=backup_name, dry_run=True
        )
        return record

    logging.info("Backing up %s to %s", name, destination)
    if target.remote_host:
        staging_dir = tempfile.mkdtemp(prefix="backup_sync_")
        try:
            staged = Path(staging_dir) / backup_name
            _run_step(
                name,
                "create",
                tools.create_archive,
                target.source_patterns,
                staged,
                target.encryption_recipient,
            )
            _run_step(name, "transfer", tools.transfer, staged, target.remote_host, destination)
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)
    else:
        _run_step(
            name,
            "create",
            tools.create_archive,
            target.source_patterns,
            Path(destination),
            target.encryption_recipient,
        )

    record.deleted = _run_step(
        name,
        "prune",
        lambda: prune_backups(name, target, entries, tools, new_name=backup_name),
    )
    return record


def sync(
    targets: Dict[str, BackupTarget],
    *,
    tools: Optional[BackupTools] = None,
    dry_run: bool = False,
    keep_going: bool = False,
) -> List[BackupRecord]:
    tools = tools or SystemTools()
    records: List[BackupRecord] = []
    errors: List[SyncError] = []

    for name, target in targets.items():
        try:
            record = sync_config(name, target, tools=tools, dry_run=dry_run)
        except SyncError as error:
            if not keep_going:
                raise
            logging.error("%s", error)
            errors.append(error)
            continue
        if record is not None:
            records.append(record)

    if errors:
        raise SyncFailures(errors)
    return records


def run_sync(args: argparse.Namespace) -> int:
    try:
        targets = read_config_file(args.config)
    except ConfigurationError as error:
        logging.error("%s", error)
        return 2

    if args.poll_interval <= 0:
        logging.error("poll_interval must be a positive integer.")
        return 2

    while True:
        exit_code, produced = _sync_once(targets, args)
        if not args.loop:
            if exit_code == 0 and not args.dry_run:
                logging.info(
                    "Completed sync: %d of %d target(s) backed up.", produced, len(targets)
                )
            return exit_code
        time.sleep(args.poll_interval)


def _sync_once(targets: Dict[str, BackupTarget], args: argparse.Namespace) -> Tuple[int, int]:
    try:
        records = sync(targets, dry_run=args.dry_run, keep_going=args.keep_going or args.loop)
    except (SyncError, SyncFailures) as error:
        logging.error("%s", error)
        return 1, 0
    return 0, len(records)


def run_backup(args: argparse.Namespace) -> int:
    try:
        SystemTools().create_archive(args.globs, args.output, args.gpg_id)
    except Exception as error:  # pragma: no cover - top-level error handler
        logging.error("Backup failed: %s", error)
        return 1
    logging.info("Wrote %s", args.output)
    return 0


def run_restore(args: argparse.Namespace) -> int:
    try:
        restore_backup.restore_backup_archive(
            args.file,
            args.globs or None,
            target_dir=args.target_dir,
            gpg_id=args.gpg_id,
            dry_run=args.dry_run,
        )
    except Exception as error:  # pragma: no cover - top-level error handler
        logging.error("Restore failed: %s", error)
        return 1
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    if args.command == "backup":
        return run_backup(args)
    if args.command == "restore":
        return run_restore(args)
    return run_sync(args)


if __name__ == "__main__":
    sys.exit(main())

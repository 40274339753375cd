#!/usr/bin/env python3
"""
Utility to create mock backups named after a target's naming pattern.

Each mock backup gets a modification time matching the instant its name was
rendered at, stepped back by an interval expression per backup, so ``sync``
and retention pruning can be exercised without waiting for real intervals to
elapse.
"""
from __future__ import annotations

import argparse
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List

from backup_schedule import ConfigurationError, check_naming_pattern, parse_interval, render_name


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create mock backups with back-dated modification times."
    )
    parser.add_argument(
        "--backup-dir",
        type=Path,
        required=True,
        help="Directory where the mock backups should be placed.",
    )
    parser.add_argument(
        "--format",
        required=True,
        help="strftime naming pattern of the backups (e.g. docs_%%Y-%%m-%%d_%%H:%%M:%%S.tar.gz).",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of backups to create (default: 1).",
    )
    parser.add_argument(
        "--spacing",
        default="1 day",
        help="Interval expression between successive backups, newest first (default: 1 day).",
    )
    parser.add_argument(
        "--content",
        default="mock backup",
        help="Content written into each mock backup file.",
    )
    return parser.parse_args(argv)


def make_mock_backup(
    backup_dir: Path,
    naming_pattern: str,
    timestamp: datetime,
    content: bytes = b"mock backup",
) -> Path:
    backup_dir.mkdir(parents=True, exist_ok=True)
    path = backup_dir / render_name(naming_pattern, timestamp)
    path.write_bytes(content)
    stamp = timestamp.timestamp()
    os.utime(path, (stamp, stamp))
    return path


def make_mock_backups(
    backup_dir: Path,
    naming_pattern: str,
    *,
    count: int,
    spacing: str,
    newest: datetime | None = None,
    content: bytes = b"mock backup",
) -> List[Path]:
    """Create ``count`` backups, the newest at ``newest``, oldest first."""
    interval = parse_interval(spacing)
    moment = newest or datetime.now(timezone.utc)
    moments = [moment]
    for _ in range(count - 1):
        moment = interval.step_back(moment)
        moments.append(moment)
    return [
        make_mock_backup(backup_dir, naming_pattern, timestamp, content)
        for timestamp in reversed(moments)
    ]


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)

    if args.count <= 0:
        print("Error: --count must be a positive integer.")
        return 2

    try:
        check_naming_pattern(args.format)
        paths = make_mock_backups(
            args.backup_dir.resolve(),
            args.format,
            count=args.count,
            spacing=args.spacing,
            content=args.content.encode("utf-8"),
        )
    except ConfigurationError as error:
        print(f"Error: {error}")
        return 2

    for path in paths:
        print(f"Created mock backup: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

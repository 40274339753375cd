#!/usr/bin/env python3
"""
Restore files from a backup archive.

Archives store every file under its absolute path (without the leading
slash), so by default files are restored to the locations they were backed
up from. Encrypted archives (``.gpg``) are decrypted with gpg into a
temporary file first.
"""
from __future__ import annotations

import argparse
import fnmatch
import logging
import sys
import tarfile
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from backup_tools import MANIFEST_NAME, ArchiveError, decrypt_file


logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Restore files from a backup archive."
    )
    parser.add_argument(
        "archive",
        type=Path,
        help="Path to the backup archive to restore.",
    )
    parser.add_argument(
        "patterns",
        nargs="*",
        help="Absolute paths or globs of the files to restore (default: everything).",
    )
    parser.add_argument(
        "--gpg-id",
        help="Id of the GPG key the archive was encrypted for.",
    )
    parser.add_argument(
        "--target-dir",
        type=Path,
        default=Path("/"),
        help="Directory to restore into (default: /).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show planned actions without modifying any files.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))


def _is_encrypted(archive_path: Path, gpg_id: Optional[str]) -> bool:
    return gpg_id is not None or archive_path.suffix == ".gpg"


def _select_members(
    archive: tarfile.TarFile, patterns: Optional[Sequence[str]]
) -> List[tarfile.TarInfo]:
    selected: List[tarfile.TarInfo] = []
    for member in archive.getmembers():
        if member.name == MANIFEST_NAME:
            continue
        if patterns:
            absolute = "/" + member.name
            if not any(
                fnmatch.fnmatch(absolute, pattern) or absolute.startswith(pattern.rstrip("/") + "/")
                for pattern in patterns
            ):
                continue
        selected.append(member)
    return selected


def _extract(
    tarball: Path,
    patterns: Optional[Sequence[str]],
    target_dir: Path,
    dry_run: bool,
) -> List[Path]:
    with tarfile.open(tarball, "r:*") as archive:
        members = _select_members(archive, patterns)
        if not members:
            logger.warning("No files in %s matched %s", tarball, list(patterns or []))
        restored = [target_dir / member.name for member in members]
        for path in restored:
            logger.info("Restoring %s", path)
        if not dry_run:
            archive.extractall(target_dir, members=members, filter="data")
    return restored


def restore_backup_archive(
    archive_path: Path,
    patterns: Optional[Sequence[str]] = None,
    *,
    target_dir: Path = Path("/"),
    gpg_id: Optional[str] = None,
    dry_run: bool = False,
) -> List[Path]:
    archive_path = archive_path.expanduser().resolve()
    target_dir = target_dir.expanduser().resolve()

    if not archive_path.exists():
        raise FileNotFoundError(f"Archive {archive_path} does not exist.")
    if not archive_path.is_file():
        raise ValueError(f"Archive {archive_path} is not a file.")
    if not target_dir.is_dir():
        raise NotADirectoryError(f"Target directory {target_dir} is not a directory.")

    logger.info("Restoring %s into %s", archive_path, target_dir)

    if not _is_encrypted(archive_path, gpg_id):
        try:
            return _extract(archive_path, patterns, target_dir, dry_run)
        except tarfile.TarError as error:
            raise ArchiveError(f"Archive {archive_path} is not a valid tarball: {error}") from error

    with tempfile.TemporaryDirectory() as temp_dir:
        plaintext = Path(temp_dir) / "backup.tar.gz"
        decrypt_file(archive_path, plaintext)
        try:
            return _extract(plaintext, patterns, target_dir, dry_run)
        except tarfile.TarError as error:
            raise ArchiveError(
                f"Decrypted archive {archive_path} is not a valid tarball: {error}"
            ) from error


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        restore_backup_archive(
            args.archive,
            args.patterns or None,
            target_dir=args.target_dir,
            gpg_id=args.gpg_id,
            dry_run=args.dry_run,
        )
    except Exception as error:  # pragma: no cover - top-level error handler
        logger.error("Restore failed: %s", error)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

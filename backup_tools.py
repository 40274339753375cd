"""
External collaborators used by the backup scheduler.

Archive creation (tarfile + gpg), transfer to a remote host (SFTP), deletion
and directory listing, locally or over SSH. The scheduler only talks to these
through the ``BackupTools`` interface so it can be driven by in-memory fakes.
"""
from __future__ import annotations

import glob
import grp
import json
import logging
import os
import posixpath
import pwd
import shlex
import stat
import subprocess
import tarfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Protocol, Sequence


logger = logging.getLogger(__name__)

MANIFEST_NAME = "backup.json"
LISTING_COMMAND = ("ls", "-lAt", "--full-time")


class BackupToolError(Exception):
    """Base class for failures of an external backup collaborator."""


class ArchiveError(BackupToolError):
    """Raised when an archive cannot be created, encrypted or decrypted."""


class RemoteError(BackupToolError):
    """Raised when an SSH or SFTP operation fails."""


class BackupTools(Protocol):
    def create_archive(
        self,
        source_patterns: Sequence[str],
        destination: Path,
        encryption_recipient: Optional[str],
    ) -> None: ...

    def transfer(self, local_path: Path, remote_host: str, remote_path: str) -> None: ...

    def delete_paths(self, paths: Sequence[str], remote_host: Optional[str]) -> None: ...

    def list_directory(self, path: str, remote_host: Optional[str]) -> str: ...


@dataclass(frozen=True)
class RemoteAddress:
    host: str
    username: Optional[str] = None
    port: int = 22


def parse_remote_host(value: str) -> RemoteAddress:
    """Parse ``[user@]host[:port]``."""
    text = value.strip()
    username: Optional[str] = None
    if "@" in text:
        username, text = text.rsplit("@", 1)
        username = username or None

    port = 22
    if text.count(":") == 1:
        text, port_text = text.split(":", 1)
        try:
            port = int(port_text)
        except ValueError as error:
            raise RemoteError(f"Invalid SSH port in host {value!r}") from error

    if not text:
        raise RemoteError(f"Remote host {value!r} has no hostname")
    return RemoteAddress(host=text, username=username, port=port)


def create_ssh_client(address: RemoteAddress):
    try:
        import paramiko
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "paramiko is required for remote targets. Install with `pip install paramiko`."
        ) from exc

    client = paramiko.SSHClient()
    client.load_system_host_keys()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    connect_kwargs = {"hostname": address.host, "port": address.port, "timeout": 30}
    if address.username:
        connect_kwargs["username"] = address.username
    try:
        client.connect(**connect_kwargs)
    except (paramiko.SSHException, OSError) as error:
        client.close()
        raise RemoteError(f"Failed to connect to {address.host}: {error}") from error
    return client


@contextmanager
def ssh_session(remote_host: str) -> Iterator:
    client = create_ssh_client(parse_remote_host(remote_host))
    try:
        yield client
    finally:
        client.close()


def run_remote(client, command: str) -> str:
    logger.debug("Running remote command: %s", command)
    _, stdout, stderr = client.exec_command(command)
    output = stdout.read().decode("utf-8", errors="replace")
    errors = stderr.read().decode("utf-8", errors="replace")
    status = stdout.channel.recv_exit_status()
    if errors:
        logger.error("%s", errors.strip())
    if status != 0:
        raise RemoteError(f"Remote command {command!r} exited with status {status}")
    return output


def run_command(args: Sequence[str]) -> str:
    logger.debug("Running %s", " ".join(shlex.quote(arg) for arg in args))
    try:
        result = subprocess.run(list(args), check=False, capture_output=True, text=True)
    except FileNotFoundError as error:
        raise ArchiveError(f"Command not found: {args[0]}") from error
    if result.stderr:
        logger.debug("%s", result.stderr.strip())
    if result.returncode != 0:
        raise ArchiveError(
            f"{args[0]} exited with status {result.returncode}: {result.stderr.strip()}"
        )
    return result.stdout


def expand_patterns(source_patterns: Iterable[str]) -> List[Path]:
    files: List[Path] = []
    for pattern in source_patterns:
        found = sorted(glob.glob(os.path.expanduser(pattern)))
        if not found:
            raise ArchiveError(f"Source pattern {pattern!r} matched no files")
        for candidate in found:
            resolved = Path(candidate).resolve()
            if resolved not in files:
                files.append(resolved)
    return files


def _member_name(path: Path) -> str:
    return path.as_posix().lstrip("/")


def write_tarball(files: Sequence[Path], destination: Path, manifest: dict) -> None:
    payload = json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")
    manifest_path = destination.with_name(destination.name + ".manifest")
    manifest_path.write_bytes(payload)
    try:
        with tarfile.open(destination, "w:gz") as archive:
            for path in files:
                archive.add(str(path), arcname=_member_name(path))
            archive.add(str(manifest_path), arcname=MANIFEST_NAME)
    finally:
        manifest_path.unlink(missing_ok=True)


def encrypt_file(source: Path, destination: Path, recipient: str) -> None:
    run_command(
        [
            "gpg",
            "--batch",
            "--yes",
            "--trust-model",
            "always",
            "--encrypt",
            "--recipient",
            recipient,
            "--output",
            str(destination),
            str(source),
        ]
    )


def decrypt_file(source: Path, destination: Path) -> None:
    run_command(
        ["gpg", "--batch", "--yes", "--decrypt", "--output", str(destination), str(source)]
    )


def _owner_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def format_listing_line(name: str, info: os.stat_result) -> str:
    seconds, nanos = divmod(info.st_mtime_ns, 1_000_000_000)
    modified = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return (
        f"{stat.filemode(info.st_mode)} {info.st_nlink} "
        f"{_owner_name(info.st_uid)} {_group_name(info.st_gid)} {info.st_size} "
        f"{modified:%Y-%m-%d %H:%M:%S}.{nanos:09d} +0000 {name}"
    )


def list_local_directory(path: Path) -> str:
    """Render a local directory the way ``ls -lAt --full-time`` does."""
    if not path.exists():
        return ""
    if not path.is_dir():
        raise BackupToolError(f"{path} is not a directory")

    stats = []
    with os.scandir(path) as entries:
        for entry in entries:
            stats.append((entry.name, entry.stat(follow_symlinks=False)))
    stats.sort(key=lambda item: item[1].st_mtime_ns, reverse=True)

    lines = [f"total {len(stats)}"]
    lines.extend(format_listing_line(name, info) for name, info in stats)
    return "\n".join(lines) + "\n"


class SystemTools:
    """Collaborators backed by tarfile, gpg and paramiko."""

    def create_archive(
        self,
        source_patterns: Sequence[str],
        destination: Path,
        encryption_recipient: Optional[str],
    ) -> None:
        files = expand_patterns(source_patterns)
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        manifest = {
            "created_at": datetime.now(timezone.utc).isoformat(),
            "sources": [str(path) for path in files],
            "patterns": list(source_patterns),
            "encryption_recipient": encryption_recipient,
        }
        logger.info("Archiving %d path(s) into %s", len(files), destination)

        if encryption_recipient is None:
            tarball = destination
        else:
            tarball = destination.with_name(destination.name + ".tmp.tar.gz")

        try:
            write_tarball(files, tarball, manifest)
            if encryption_recipient is not None:
                logger.info("Encrypting %s for %s", destination.name, encryption_recipient)
                encrypt_file(tarball, destination, encryption_recipient)
        except (OSError, tarfile.TarError) as error:
            tarball.unlink(missing_ok=True)
            raise ArchiveError(f"Failed to create archive {destination}: {error}") from error
        except ArchiveError:
            tarball.unlink(missing_ok=True)
            raise
        if tarball != destination:
            tarball.unlink(missing_ok=True)

    def transfer(self, local_path: Path, remote_host: str, remote_path: str) -> None:
        logger.info("Transferring %s to %s:%s", local_path, remote_host, remote_path)
        with ssh_session(remote_host) as client:
            directory = posixpath.dirname(remote_path)
            if directory:
                run_remote(client, "mkdir -p -- " + shlex.quote(directory))
            sftp = client.open_sftp()
            try:
                sftp.put(str(local_path), remote_path)
            except OSError as error:
                raise RemoteError(
                    f"Failed to upload {local_path} to {remote_host}:{remote_path}: {error}"
                ) from error
            finally:
                sftp.close()

    def delete_paths(self, paths: Sequence[str], remote_host: Optional[str]) -> None:
        if not paths:
            return
        if remote_host is None:
            for path in paths:
                Path(path).unlink(missing_ok=True)
            return
        command = "rm -f -- " + " ".join(shlex.quote(path) for path in paths)
        with ssh_session(remote_host) as client:
            run_remote(client, command)

    def list_directory(self, path: str, remote_host: Optional[str]) -> str:
        if remote_host is None:
            return list_local_directory(Path(path))
        # A directory that does not exist yet holds no backups.
        quoted = shlex.quote(path)
        command = f"if [ -e {quoted} ]; then {' '.join(LISTING_COMMAND)} {quoted}; fi"
        with ssh_session(remote_host) as client:
            return run_remote(client, command)

import posixpath
import shutil
import subprocess
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from backup_tools import ArchiveError, RemoteError

TEST_KEY_ID = "test@backup-sync.invalid"
GENKEY_FILE = Path(__file__).resolve().parent / "genkey"

FileKey = Tuple[Optional[str], str]


class FakeTools:
    """In-memory stand-in for SystemTools keyed by (remote_host, path)."""

    def __init__(self, write_delay: timedelta = timedelta(seconds=5)) -> None:
        self.files: Dict[FileKey, datetime] = {}
        self.current_time: Optional[datetime] = None
        self.write_delay = write_delay
        self.fail_steps: Set[str] = set()
        self.calls: List[Tuple] = []

    def add(self, path: str, modified_at: datetime, host: Optional[str] = None) -> None:
        self.files[(host, path)] = modified_at

    def names(self, directory: str, host: Optional[str] = None) -> List[str]:
        return sorted(
            posixpath.basename(path)
            for file_host, path in self.files
            if file_host == host and posixpath.dirname(path) == directory
        )

    def _written_at(self) -> datetime:
        assert self.current_time is not None, "set current_time before syncing"
        return self.current_time + self.write_delay

    def create_archive(
        self,
        source_patterns: Sequence[str],
        destination: Path,
        encryption_recipient: Optional[str],
    ) -> None:
        self.calls.append(("create", list(source_patterns), str(destination), encryption_recipient))
        if "create" in self.fail_steps:
            raise ArchiveError("tar exploded")
        self.files[(None, str(destination))] = self._written_at()

    def transfer(self, local_path: Path, remote_host: str, remote_path: str) -> None:
        self.calls.append(("transfer", str(local_path), remote_host, remote_path))
        if "transfer" in self.fail_steps:
            raise RemoteError("connection reset")
        modified_at = self.files.pop((None, str(local_path)))
        self.files[(remote_host, remote_path)] = modified_at

    def delete_paths(self, paths: Sequence[str], remote_host: Optional[str]) -> None:
        self.calls.append(("delete", list(paths), remote_host))
        if "delete" in self.fail_steps:
            raise RemoteError("permission denied")
        for path in paths:
            self.files.pop((remote_host, path), None)

    def list_directory(self, path: str, remote_host: Optional[str]) -> str:
        self.calls.append(("list", path, remote_host))
        if "listing" in self.fail_steps:
            raise RemoteError("no route to host")
        entries = [
            (posixpath.basename(file_path), modified_at)
            for (host, file_path), modified_at in self.files.items()
            if host == remote_host and posixpath.dirname(file_path) == path
        ]
        entries.sort(key=lambda item: item[1], reverse=True)
        lines = [f"total {len(entries)}"]
        for name, modified_at in entries:
            lines.append(
                f"-rw-r--r-- 1 backup backup 1024 "
                f"{modified_at:%Y-%m-%d %H:%M:%S}.{modified_at.microsecond:06d}000 +0000 {name}"
            )
        return "\n".join(lines) + "\n"


@pytest.fixture
def fake_tools() -> FakeTools:
    return FakeTools()


def setup_gpg_home(genkey_file: Path, home: Path) -> None:
    """Create a throwaway GNUPGHOME at ``home`` holding the key described by ``genkey_file``."""
    home.mkdir(mode=0o700, parents=True, exist_ok=True)
    subprocess.run(
        ["gpg", "--homedir", str(home), "--batch", "--generate-key", str(genkey_file)],
        check=True,
        capture_output=True,
        timeout=120,
    )


@pytest.fixture
def gpg_home(monkeypatch: pytest.MonkeyPatch):
    if shutil.which("gpg") is None:
        pytest.skip("gpg is not installed")
    # gpg-agent sockets live in the home dir; keep the path short.
    home = Path(tempfile.mkdtemp(prefix="bsync-gpg-", dir="/tmp"))
    try:
        setup_gpg_home(GENKEY_FILE, home)
    except (subprocess.SubprocessError, OSError) as error:
        shutil.rmtree(home, ignore_errors=True)
        pytest.skip(f"could not generate a gpg test key: {error}")
    monkeypatch.setenv("GNUPGHOME", str(home))
    yield home
    if shutil.which("gpgconf"):
        subprocess.run(
            ["gpgconf", "--homedir", str(home), "--kill", "gpg-agent"],
            check=False,
            capture_output=True,
        )
    shutil.rmtree(home, ignore_errors=True)

from fnmatch import fnmatch
from pathlib import Path, PurePosixPath

import pytest

from pmta_import.errors import NotConnectedError
from pmta_import.models import ConnectionConfig, ConnectionHealth, ConnectionState, ConnectionStatus
from pmta_import.ssh_session import CommandResult

HEADER = "type,timeLogged,orig,rcpt,dsnAction,dsnDiag"

CSV_0709 = "\n".join([
    HEADER,
    'd,2025-07-09 08:00:00-0400,news@example.com,a@example.org,relayed,"smtp;250 2.0.0 OK, queued"',
    "b,2025-07-09 09:30:00-0400,news@example.com,b@example.org,failed,smtp;550 mailbox unavailable",
]) + "\n"

CSV_0710 = "\n".join([
    HEADER,
    "d,2025-07-10 07:00:00-0400,news@example.com,c@example.org,relayed,smtp;250 ok",
    "d,2025-07-10 11:15:00-0400,news@example.com,d@example.org,relayed,smtp;250 ok",
    "t,2025-07-10 10:00:00-0400,news@example.com,e@example.org,delayed,smtp;451 try later",
]) + "\n"

MTIME_0709 = 1752062400.0  # 2025-07-09T12:00:00Z
MTIME_0710 = 1752148800.0  # 2025-07-10T12:00:00Z


class FakeSession:
    """In-memory relay host: ``files`` maps remote path to ``(mtime, bytes)``."""

    def __init__(self, files=None, connected=True, log_path="/var/log/pmta", log_pattern="acct-*.csv"):
        self.files = dict(files or {})
        self.config = ConnectionConfig(
            host="relay.test",
            username="pmta",
            password="s3cret",
            log_path=log_path,
            log_pattern=log_pattern,
        )
        self._state = ConnectionState()
        if connected:
            self._state = ConnectionState(status=ConnectionStatus.CONNECTED, health=ConnectionHealth.GOOD)
        self.commands = []
        self.downloads = []
        self.download_error = None
        self.connect_calls = 0
        self.disconnect_calls = 0

    @property
    def state(self):
        return self._state

    @property
    def is_connected(self):
        return self._state.is_connected

    async def connect(self, config):
        self.connect_calls += 1
        self.config = config
        self._state = ConnectionState(status=ConnectionStatus.CONNECTED, health=ConnectionHealth.GOOD)
        return self._state

    async def disconnect(self):
        self.disconnect_calls += 1
        self._state = ConnectionState()

    async def run_command(self, command):
        if not self.is_connected:
            raise NotConnectedError()
        self.commands.append(command)
        lines = [
            f"{mtime} {path}"
            for path, (mtime, _content) in self.files.items()
            if fnmatch(PurePosixPath(path).name, self.config.log_pattern)
        ]
        return CommandResult(0, "\n".join(lines) + "\n", "")

    async def download(self, remote_path, local_path):
        if not self.is_connected:
            raise NotConnectedError()
        self.downloads.append(remote_path)
        if self.download_error is not None:
            Path(local_path).write_bytes(b"partial")
            raise self.download_error
        Path(local_path).write_bytes(self.files[remote_path][1])

    def describe(self):
        return self.config.public_dict(), self._state.to_dict()


@pytest.fixture
def remote_files():
    return {
        "/var/log/pmta/acct-20250709.csv": (MTIME_0709, CSV_0709.encode()),
        "/var/log/pmta/acct-20250710.csv": (MTIME_0710, CSV_0710.encode()),
    }


@pytest.fixture
def fake_session(remote_files):
    return FakeSession(remote_files)


@pytest.fixture
def make_session():
    return FakeSession

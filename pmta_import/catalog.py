"""Remote file discovery on the relay host."""

from __future__ import annotations

import logging
import shlex
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import List, Optional, Tuple

from .cache import FileCache
from .errors import NotConnectedError, RemoteCommandError
from .logger import get_logger
from .models import RemoteFileRef
from .ssh_session import SSHSession

DEFAULT_RECENCY_DAYS = 7


def build_listing_command(log_path: str, pattern: str, recency_days: Optional[int]) -> str:
    """``find`` invocation printing ``<mtime-epoch> <path>`` per matching file."""
    parts = ["find", shlex.quote(log_path), "-maxdepth", "1", "-name", shlex.quote(pattern), "-type", "f"]
    if recency_days:
        parts += ["-mtime", f"-{int(recency_days)}"]
    parts += ["-printf", shlex.quote("%T@ %p\\n")]
    return " ".join(parts)


def parse_listing(output: str) -> List[Tuple[Optional[datetime], str]]:
    """Parse ``find -printf '%T@ %p\\n'`` output into ``(mtime, path)`` pairs."""
    entries: List[Tuple[Optional[datetime], str]] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        stamp, _, path = line.partition(" ")
        try:
            mtime: Optional[datetime] = datetime.fromtimestamp(float(stamp), tz=timezone.utc)
        except ValueError:
            mtime, path = None, line
        if path:
            entries.append((mtime, path))
    return entries


class RemoteFileCatalog:
    """List candidate accounting files and flag the ones already cached."""

    def __init__(
        self,
        session: SSHSession,
        cache: FileCache,
        *,
        recency_days: Optional[int] = DEFAULT_RECENCY_DAYS,
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.cache = cache
        self.recency_days = recency_days
        self.logger = logger or get_logger()
        self.refreshed_at: Optional[datetime] = None
        self._available: Tuple[RemoteFileRef, ...] = ()

    @property
    def available(self) -> List[RemoteFileRef]:
        """Result of the last refresh."""
        return list(self._available)

    def find(self, filename: str) -> Optional[RemoteFileRef]:
        return next((ref for ref in self._available if ref.filename == filename), None)

    async def list_candidates(
        self,
        pattern: Optional[str] = None,
        recency_days: Optional[int] = None,
    ) -> List[RemoteFileRef]:
        """Refresh the catalog, newest file first.

        Raises:
            NotConnectedError: no active session.
            RemoteCommandError: the listing command failed on the host.
        """
        config = self.session.config
        if not self.session.is_connected or config is None:
            raise NotConnectedError()

        pattern = pattern or config.log_pattern
        days = self.recency_days if recency_days is None else recency_days
        command = build_listing_command(config.log_path, pattern, days)
        result = await self.session.run_command(command)
        if result.exit_status != 0:
            raise RemoteCommandError(command, result.exit_status, result.stderr)

        now = datetime.now(timezone.utc)
        imported = self.cache.filenames()
        refs = []
        for mtime, path in parse_listing(result.stdout):
            name = PurePosixPath(path).name
            refs.append(
                RemoteFileRef(
                    filename=name,
                    full_path=path,
                    imported=name in imported,
                    discovered_at=now,
                    modified_at=mtime,
                )
            )
        epoch = datetime.fromtimestamp(0, tz=timezone.utc)
        refs.sort(key=lambda ref: (ref.modified_at or epoch, ref.filename), reverse=True)

        self._available = tuple(refs)
        self.refreshed_at = now
        self.logger.info("Found %d log files on server matching %s", len(refs), pattern)
        return list(refs)

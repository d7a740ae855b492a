"""Transport helpers to copy remote accounting files into the local data directory."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Optional

from .errors import EmptyTransferError
from .logger import get_logger
from .models import RemoteFileRef
from .ssh_session import SSHSession

DEFAULT_FRESHNESS_SECONDS = 300


class FileFetcher:
    """Download remote files, reusing very recent local copies."""

    def __init__(
        self,
        session: SSHSession,
        local_dir: str | Path,
        *,
        freshness_seconds: float = DEFAULT_FRESHNESS_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.local_dir = Path(local_dir)
        self.freshness_seconds = freshness_seconds
        self.logger = logger or get_logger()

    def ensure_local_dir(self) -> Path:
        if not self.local_dir.exists():
            self.local_dir.mkdir(parents=True, exist_ok=True)
            self.logger.info("Created PMTA data directory: %s", self.local_dir)
        return self.local_dir

    def local_path_for(self, filename: str) -> Path:
        return self.local_dir / filename

    def _fresh_copy(self, path: Path) -> bool:
        """Return ``True`` for a non-empty local copy younger than the freshness threshold."""
        try:
            stats = path.stat()
        except FileNotFoundError:
            return False
        age = time.time() - stats.st_mtime
        return stats.st_size > 0 and age < self.freshness_seconds

    async def fetch(self, ref: RemoteFileRef) -> Path:
        """Return a local path holding the content of ``ref``.

        Raises:
            EmptyTransferError: the transfer produced a zero-byte file.
            NotConnectedError: no active session.
            OSError: network or filesystem failure, not retried here.
        """
        local_path = self.local_path_for(ref.filename)
        if self._fresh_copy(local_path):
            self.logger.info("Using existing file: %s (recently downloaded)", ref.filename)
            return local_path

        self.ensure_local_dir()
        partial = local_path.with_name(local_path.name + ".part")
        self.logger.info("Downloading: %s", ref.filename)
        try:
            await self.session.download(ref.full_path, partial)
            size = partial.stat().st_size
            if size == 0:
                raise EmptyTransferError(ref.filename)
            os.replace(partial, local_path)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        self.logger.info("Downloaded: %s (%d bytes)", ref.filename, size)
        return local_path

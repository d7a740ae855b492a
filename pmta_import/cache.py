"""In-memory registry of imported accounting files.

``FileCache`` is the only shared mutable structure of the service. Every
mutation runs under one lock and rebuilds the combined view before the lock
is released, so readers always see a combined view that matches the current
file set. Critical sections never await, which keeps them safe for both
event-loop tasks and threadpool request handlers.
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import FileMissingError
from .logger import get_logger
from .models import ALL_FILES, CacheView, ImportedFile, Record

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SOURCE_COMBINED = "combined_files"
SOURCE_INDIVIDUAL = "individual_file"

_TIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S%z",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%a, %d %b %Y %H:%M:%S %z",
)
_TZ_SUFFIX = re.compile(r"\s+([+-]\d{2}:?\d{2}|Z|UTC|GMT)$")


@lru_cache(maxsize=65536)
def parse_time_logged(value: Optional[str]) -> Optional[datetime]:
    """Parse a PowerMTA ``timeLogged`` value into an aware UTC datetime.

    Accepts ISO-8601 and the ``YYYY-MM-DD HH:MM:SS-0400`` form written by
    PowerMTA. Naive values are taken as UTC. Returns ``None`` when the value
    cannot be parsed.
    """
    if not value:
        return None
    text = value.strip()
    # "2025-07-10 12:00:00 -0400" -> "2025-07-10 12:00:00-0400"
    text = _TZ_SUFFIX.sub(lambda m: "+0000" if m.group(1) in ("Z", "UTC", "GMT") else m.group(1), text)
    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _TIME_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def sort_key(record: Record) -> datetime:
    """Ordering key for the combined view; unparsable times sort as the epoch."""
    return parse_time_logged(record.time_logged) or EPOCH


def combine(files: Iterable[ImportedFile]) -> Tuple[Record, ...]:
    """Concatenate records of ``files`` sorted newest first (stable on ties)."""
    records: List[Record] = []
    for imported in files:
        records.extend(imported.data)
    records.sort(key=sort_key, reverse=True)
    return tuple(records)


class FileCache:
    """Authoritative store of imported files, their records and the selection."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger()
        self._lock = threading.Lock()
        self._files: Dict[str, ImportedFile] = {}
        self._combined: Tuple[Record, ...] = ()
        self._selected: str = ALL_FILES
        self._last_update: Optional[datetime] = None

    # ------------------------------------------------------------------ queries
    def __contains__(self, filename: object) -> bool:
        with self._lock:
            return filename in self._files

    def __len__(self) -> int:
        with self._lock:
            return len(self._files)

    def get(self, filename: str) -> Optional[ImportedFile]:
        with self._lock:
            return self._files.get(filename)

    def files(self) -> List[ImportedFile]:
        """Imported files, most recently imported first."""
        with self._lock:
            files = list(self._files.values())
        return sorted(files, key=lambda f: f.import_time, reverse=True)

    def filenames(self) -> set[str]:
        with self._lock:
            return set(self._files)

    @property
    def selected_file(self) -> str:
        with self._lock:
            return self._selected

    @property
    def last_update(self) -> Optional[datetime]:
        return self._last_update

    @property
    def total_records(self) -> int:
        with self._lock:
            return len(self._combined)

    def combined_records(self) -> Tuple[Record, ...]:
        with self._lock:
            return self._combined

    def read(self, filename: Optional[str] = None) -> CacheView:
        """Return the records of ``filename`` (or of the current selection).

        Never raises: a selection or request naming a file that is no longer
        cached falls back to the combined view.
        """
        with self._lock:
            target = self._selected if filename is None else filename
            if target != ALL_FILES:
                imported = self._files.get(target)
                if imported is not None:
                    return CacheView(selected_file=target, records=imported.data, source=SOURCE_INDIVIDUAL)
                if filename is None:
                    self._selected = ALL_FILES
            return CacheView(selected_file=ALL_FILES, records=self._combined, source=SOURCE_COMBINED)

    # ---------------------------------------------------------------- mutations
    def ingest(
        self,
        filename: str,
        headers: Sequence[str],
        records: Sequence[Record],
        import_time: Optional[datetime] = None,
        local_path: Optional[Path] = None,
    ) -> ImportedFile:
        """Insert ``filename`` or replace it wholesale, then rebuild the combined view."""
        imported = ImportedFile(
            filename=filename,
            headers=tuple(headers),
            data=tuple(records),
            import_time=import_time or datetime.now(timezone.utc),
            local_path=Path(local_path) if local_path else None,
        )
        self._warn_unparsable(imported)
        with self._lock:
            replaced = filename in self._files
            self._files[filename] = imported
            self._combined = combine(self._files.values())
            self._last_update = datetime.now(timezone.utc)
            total = len(self._combined)
        self.logger.info(
            "%s %s (%d records), cache now holds %d records",
            "Replaced" if replaced else "Cached",
            filename,
            imported.record_count,
            total,
        )
        return imported

    def select(self, filename: str) -> str:
        with self._lock:
            if filename != ALL_FILES and filename not in self._files:
                raise FileMissingError(filename)
            self._selected = filename
        return filename

    def delete(self, filename: str, *, unlink: bool = True) -> Tuple[int, int]:
        """Drop ``filename`` and, unless ``unlink`` is false, its local copy.

        Returns:
            ``(remaining_files, remaining_records)``

        Raises:
            FileMissingError: the file is not cached; nothing is changed.
        """
        with self._lock:
            imported = self._files.pop(filename, None)
            if imported is None:
                raise FileMissingError(filename)
            self._combined = combine(self._files.values())
            if self._selected == filename:
                self._selected = ALL_FILES
            self._last_update = datetime.now(timezone.utc)
            remaining = (len(self._files), len(self._combined))

        if unlink:
            self._unlink(imported)
        self.logger.info("Deleted %s from imported files", filename)
        return remaining

    def clear(self, *, delete_files: bool = False, keep: Iterable[str] = ()) -> int:
        """Remove every cached file; optionally unlink the local copies not named in ``keep``."""
        with self._lock:
            removed = list(self._files.values())
            self._files.clear()
            self._combined = ()
            self._selected = ALL_FILES
            self._last_update = datetime.now(timezone.utc)
        if delete_files:
            keep = set(keep)
            for imported in removed:
                if imported.filename not in keep:
                    self._unlink(imported)
        return len(removed)

    # ------------------------------------------------------------------ helpers
    def _unlink(self, imported: ImportedFile) -> None:
        if imported.local_path is None:
            return
        try:
            imported.local_path.unlink()
            self.logger.info("Deleted local file: %s", imported.local_path)
        except FileNotFoundError:
            self.logger.debug("Local file already gone: %s", imported.local_path)
        except OSError as exc:
            self.logger.warning("Could not delete local file %s: %s", imported.local_path, exc)

    def _warn_unparsable(self, imported: ImportedFile) -> None:
        unparsable = 0
        for record in imported.data:
            if parse_time_logged(record.time_logged) is None:
                unparsable += 1
                self.logger.debug(
                    "%s line %d: timeLogged %r not parsable, sorted as epoch",
                    record.filename,
                    record.line_number,
                    record.time_logged,
                )
        if unparsable:
            self.logger.warning(
                "%s: %d of %d records have no parsable timeLogged and sort last",
                imported.filename,
                unparsable,
                imported.record_count,
            )

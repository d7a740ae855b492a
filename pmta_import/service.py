"""Core orchestration of the PMTA import pipeline.

``PmtaImportService`` wires the SSH session, remote catalog, fetcher, CSV
normaliser, file cache and scheduler together and exposes the operations the
HTTP layer and the CLI call. Collaborators are passed in by the composition
root (``main.py``); defaults are built when they are omitted.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from .cache import FileCache
from .catalog import DEFAULT_RECENCY_DAYS, RemoteFileCatalog
from .csv_parser import CsvNormalizer
from .errors import ConnectionFailedError, FileMissingError, NotConnectedError, ParseFailureError, PmtaImportError
from .fetcher import DEFAULT_FRESHNESS_SECONDS, FileFetcher
from .logger import get_logger
from .metrics import ImportMetrics
from .models import ALL_FILES, ConnectionConfig, ConnectionStatus, ImportedFile, RemoteFileRef
from .scheduler import DEFAULT_INTERVAL_SECONDS, ImportScheduler
from .ssh_session import SSHSession

TRIGGER_MANUAL = "manual"
TRIGGER_SCHEDULED = "scheduled"


class PmtaImportService:
    """Coordinate connection, discovery, download, parsing and caching."""

    def __init__(
        self,
        *,
        local_data_path: str | Path = "pmta-data",
        cache: FileCache | None = None,
        session: SSHSession | None = None,
        catalog: RemoteFileCatalog | None = None,
        fetcher: FileFetcher | None = None,
        parser: CsvNormalizer | None = None,
        scheduler: ImportScheduler | None = None,
        metrics: ImportMetrics | None = None,
        logger: logging.Logger | None = None,
        default_config: ConnectionConfig | None = None,
        import_interval: float = DEFAULT_INTERVAL_SECONDS,
        auto_import: bool = True,
        restore_on_start: bool = True,
        recency_days: Optional[int] = DEFAULT_RECENCY_DAYS,
        freshness_seconds: float = DEFAULT_FRESHNESS_SECONDS,
        reachability_timeout: float = 10.0,
        handshake_timeout: float = 30.0,
        command_timeout: float = 60.0,
    ):
        """Prepare the runtime collaborators."""
        self.logger = logger or get_logger()
        # an injected empty cache is falsy
        self.cache = cache if cache is not None else FileCache(logger=self.logger)
        self.session = session or SSHSession(
            reachability_timeout=reachability_timeout,
            handshake_timeout=handshake_timeout,
            command_timeout=command_timeout,
            logger=self.logger,
        )
        self.catalog = catalog or RemoteFileCatalog(
            self.session, self.cache, recency_days=recency_days, logger=self.logger
        )
        self.fetcher = fetcher or FileFetcher(
            self.session, local_data_path, freshness_seconds=freshness_seconds, logger=self.logger
        )
        self.parser = parser or CsvNormalizer(logger=self.logger)
        self.metrics = metrics or ImportMetrics()
        self.scheduler = scheduler or ImportScheduler(
            self._scheduled_refresh,
            lambda: self.session.is_connected,
            interval=import_interval,
            logger=self.logger,
        )
        self.default_config = default_config
        self._auto_import = bool(auto_import)
        self._restore_on_start = bool(restore_on_start)

        self._last_import: Optional[datetime] = None
        self._last_import_error: Optional[str] = None
        self._files_processed = 0
        self._total_files = 0
        # filenames between fetch and ingest; their local copies must survive a delete
        self._in_flight: Counter[str] = Counter()

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    def _refresh_cache_gauges(self) -> None:
        self.metrics.set_cache_size(len(self.cache), self.cache.total_records)

    def _record_cycle(self, files_processed: int, total_files: int) -> None:
        self._last_import = self._utc_now()
        self._last_import_error = None
        self._files_processed = files_processed
        self._total_files = total_files

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Prepare the data directory and rebuild the cache from earlier downloads."""
        self.fetcher.ensure_local_dir()
        if self._restore_on_start:
            await self.restore_from_disk()

    async def stop(self) -> None:
        """Stop the scheduler and close the session."""
        await self.scheduler.aclose()
        await self.session.disconnect()
        self.metrics.set_connected(False)

    async def restore_from_disk(self) -> Dict[str, Any]:
        """Load every ``*.csv`` left in the local data directory into the cache."""
        local_dir = self.fetcher.local_dir
        if not local_dir.is_dir():
            return {"files_loaded": 0, "total_records": self.cache.total_records}

        loaded = 0
        for path in sorted(local_dir.glob("*.csv")):
            if path.name in self.cache:
                continue
            try:
                parsed = await self.parser.parse(path)
            except ParseFailureError as exc:
                self.logger.error("Failed to load %s: %s", path.name, exc)
                self.metrics.inc_error("restore")
                continue
            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            self.cache.ingest(path.name, parsed.headers, parsed.records, mtime, path)
            loaded += 1

        self._refresh_cache_gauges()
        self.logger.info(
            "Loaded %d existing files with %d total records", loaded, self.cache.total_records
        )
        return {"files_loaded": loaded, "total_records": self.cache.total_records}

    # ---------------------------------------------------------------- connection
    async def connect(self, config: ConnectionConfig | Mapping[str, Any] | None = None) -> Dict[str, Any]:
        """Open a session, replacing any existing one, and arm the scheduler.

        Raises:
            ConnectionFailedError: the session could not be established.
            pydantic.ValidationError: no usable connection parameters.
        """
        if config is None:
            config = self.default_config
        if not isinstance(config, ConnectionConfig):
            config = ConnectionConfig.model_validate(dict(config or {}))

        if self.session.state.status is not ConnectionStatus.DISCONNECTED:
            await self.disconnect()

        try:
            state = await self.session.connect(config)
        except ConnectionFailedError:
            self.metrics.set_connected(False)
            self.metrics.inc_error("connect")
            raise
        self.metrics.set_connected(True)
        if self._auto_import:
            self.scheduler.start()
        return {"connected": True, "diagnostic": "Connected successfully", "connection": state.to_dict()}

    async def disconnect(self) -> Dict[str, Any]:
        """Stop periodic imports and close the session; cached files are kept."""
        self.scheduler.stop()
        await self.session.disconnect()
        self.metrics.set_connected(False)
        return {"disconnected": True, "connection": self.session.state.to_dict()}

    def connection_status(self) -> Dict[str, Any]:
        return self.session.state.to_dict()

    # ------------------------------------------------------------------ catalog
    def _describe_ref(self, ref: RemoteFileRef) -> Dict[str, Any]:
        cached = self.cache.get(ref.filename)
        return {
            "filename": ref.filename,
            "full_path": ref.full_path,
            "imported": ref.imported,
            "record_count": cached.record_count if cached else 0,
            "modified_at": self._iso(ref.modified_at),
        }

    async def list_available_files(self) -> List[Dict[str, Any]]:
        """Refresh the remote catalog and flag files already imported."""
        refs = await self.catalog.list_candidates()
        self._total_files = len(refs)
        return [self._describe_ref(ref) for ref in refs]

    # ------------------------------------------------------------------- import
    async def _import_ref(self, ref: RemoteFileRef, trigger: str) -> ImportedFile:
        """Fetch, parse and ingest one file; the cache is untouched on failure."""
        stage = "fetch"
        self._in_flight[ref.filename] += 1
        try:
            local_path = await self.fetcher.fetch(ref)
            stage = "parse"
            parsed = await self.parser.parse(local_path)
        except Exception as exc:
            self.metrics.inc_error(stage)
            self._last_import_error = str(exc) or type(exc).__name__
            self.logger.error("Failed to import %s (%s): %s", ref.filename, stage, self._last_import_error)
            raise
        finally:
            self._in_flight[ref.filename] -= 1
            if not self._in_flight[ref.filename]:
                del self._in_flight[ref.filename]
        imported = self.cache.ingest(ref.filename, parsed.headers, parsed.records, self._utc_now(), local_path)
        self.metrics.inc_imported(trigger, imported.record_count)
        self._refresh_cache_gauges()
        return imported

    async def import_file(self, filename: str) -> Dict[str, Any]:
        """Import one remote file by name; already cached files are skipped.

        Raises:
            FileMissingError: the file is not in the remote catalog.
            NotConnectedError: no session and the catalog must be refreshed.
        """
        existing = self.cache.get(filename)
        if existing is not None:
            return {
                "filename": filename,
                "record_count": existing.record_count,
                "already_imported": True,
                "skipped": True,
                "total_records": self.cache.total_records,
            }

        ref = self.catalog.find(filename)
        if ref is None:
            await self.catalog.list_candidates()
            ref = self.catalog.find(filename)
        if ref is None:
            raise FileMissingError(filename, "available files")

        self.logger.info("Importing specific file: %s", filename)
        imported = await self._import_ref(ref, TRIGGER_MANUAL)
        self._record_cycle(1, len(self.catalog.available))
        return {
            "filename": filename,
            "record_count": imported.record_count,
            "already_imported": False,
            "skipped": False,
            "total_records": self.cache.total_records,
        }

    async def import_all(self) -> Dict[str, Any]:
        """Import every candidate not yet cached; each file succeeds or fails whole."""
        refs = await self.catalog.list_candidates()
        self.logger.info("Full import mode: %d candidate files", len(refs))
        imported_files = 0
        records_imported = 0
        skipped: List[str] = []
        failed: List[Dict[str, str]] = []
        for ref in refs:
            if ref.filename in self.cache:
                skipped.append(ref.filename)
                continue
            try:
                imported = await self._import_ref(ref, TRIGGER_MANUAL)
            except NotConnectedError as exc:
                failed.append({"filename": ref.filename, "error": str(exc)})
                break
            except Exception as exc:
                failed.append({"filename": ref.filename, "error": str(exc) or type(exc).__name__})
                continue
            imported_files += 1
            records_imported += imported.record_count

        self._record_cycle(imported_files, len(refs))
        if failed:
            self._last_import_error = failed[-1]["error"]
        self.logger.info(
            "Import completed: %d/%d files imported, %d total records",
            imported_files,
            len(refs),
            self.cache.total_records,
        )
        return {
            "files_imported": imported_files,
            "records_imported": records_imported,
            "total_records": self.cache.total_records,
            "skipped": skipped,
            "failed": failed,
        }

    async def import_latest_only(self, *, refresh: bool = False, trigger: str = TRIGGER_MANUAL) -> Dict[str, Any]:
        """Import only the newest remote file.

        With ``refresh`` the newest file is re-read and replaces its cached
        entry, which is how the scheduler follows a file PowerMTA is still writing.
        """
        refs = await self.catalog.list_candidates()
        if not refs:
            self.logger.info("No files found matching pattern")
            self._record_cycle(0, 0)
            return {"files_imported": 0, "total_records": self.cache.total_records, "filename": None}

        latest = refs[0]
        if latest.filename in self.cache and not refresh:
            return {
                "files_imported": 0,
                "total_records": self.cache.total_records,
                "filename": latest.filename,
                "skipped": True,
            }

        self.logger.info("Latest-only import: %s", latest.filename)
        imported = await self._import_ref(latest, trigger)
        self._record_cycle(1, len(refs))
        return {
            "files_imported": 1,
            "total_records": self.cache.total_records,
            "filename": latest.filename,
            "record_count": imported.record_count,
        }

    async def _scheduled_refresh(self) -> Dict[str, Any]:
        return await self.import_latest_only(refresh=True, trigger=TRIGGER_SCHEDULED)

    # -------------------------------------------------------------------- reads
    def select_file(self, filename: str) -> Dict[str, Any]:
        return {"selected_file": self.cache.select(filename)}

    def get_data(self, filename: Optional[str] = None) -> Dict[str, Any]:
        """Records of ``filename``, of the current selection, or the combined view."""
        view = self.cache.read(filename)
        return {
            "records": [record.to_dict() for record in view.records],
            "total_records": view.total_records,
            "source": view.source,
            "selected_file": view.selected_file,
            "last_update": self._iso(self.cache.last_update),
        }

    def delete_file(self, filename: str) -> Dict[str, Any]:
        in_flight = filename in self._in_flight
        remaining_files, remaining_records = self.cache.delete(filename, unlink=not in_flight)
        if in_flight:
            self.logger.info("Keeping local copy of %s, an import of it is in progress", filename)
        self._refresh_cache_gauges()
        return {"deleted": filename, "remaining_files": remaining_files, "remaining_records": remaining_records}

    def clear_cache(self, *, delete_files: bool = True) -> Dict[str, Any]:
        """Bulk cleanup of every cached file and, by default, its local copy."""
        removed = self.cache.clear(delete_files=delete_files, keep=self._in_flight)
        self._refresh_cache_gauges()
        self.logger.info("Cleared %d imported files", removed)
        return {"removed": removed}

    def imported_files(self) -> List[Dict[str, Any]]:
        return [imported.summary() for imported in self.cache.files()]

    def import_status(self) -> Dict[str, Any]:
        state = self.session.state
        return {
            "status": state.status.value,
            "connection_health": state.health.value,
            "last_error": state.last_error or self._last_import_error,
            "last_import": self._iso(self._last_import),
            "total_files": self._total_files,
            "files_processed": self._files_processed,
            "total_records": self.cache.total_records,
            "imported_files": len(self.cache),
            "selected_file": self.cache.selected_file,
            "last_data_update": self._iso(self.cache.last_update),
            "periodic_import_active": self.scheduler.active,
        }

    def debug_state(self) -> Dict[str, Any]:
        """Full internal snapshot for diagnostics; the password is masked."""
        config, state = self.session.describe()
        return {
            "connection": state,
            "config": config,
            "import_status": self.import_status(),
            "scheduler": {
                "active": self.scheduler.active,
                "interval_seconds": self.scheduler.interval,
                "last_run": self._iso(self.scheduler.last_run),
                "last_error": self.scheduler.last_error,
            },
            "catalog": {
                "refreshed_at": self._iso(self.catalog.refreshed_at),
                "files": [self._describe_ref(ref) for ref in self.catalog.available],
            },
            "cache": {
                "selected_file": self.cache.selected_file,
                "total_records": self.cache.total_records,
                "files": self.imported_files(),
            },
            "local_data_path": str(self.fetcher.local_dir),
        }

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        try:
            return await self._dispatch(cmd, payload)
        except ConnectionFailedError as exc:
            result = exc.to_payload()
            result["connected"] = False
            result["connection"] = self.session.state.to_dict()
            return result
        except PmtaImportError as exc:
            return exc.to_payload()
        except ValidationError as exc:
            return {"ok": False, "error": f"invalid payload: {exc.error_count()} error(s)", "code": "invalid_payload"}

    async def _dispatch(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "connect":
            return {"ok": True, **await self.connect(payload or None)}
        if cmd == "disconnect":
            return {"ok": True, **await self.disconnect()}
        if cmd == "connectionStatus":
            return {"ok": True, **self.connection_status()}
        if cmd == "importStatus":
            return {"ok": True, **self.import_status()}
        if cmd == "listFiles":
            return {"ok": True, "files": await self.list_available_files()}
        if cmd == "listImported":
            return {"ok": True, "files": self.imported_files()}
        if cmd == "importFile":
            filename = payload.get("filename")
            if not filename:
                return {"ok": False, "error": "missing 'filename'"}
            return {"ok": True, **await self.import_file(filename)}
        if cmd == "importAll":
            return {"ok": True, **await self.import_all()}
        if cmd == "importLatest":
            return {"ok": True, **await self.import_latest_only()}
        if cmd == "selectFile":
            return {"ok": True, **self.select_file(payload.get("filename") or ALL_FILES)}
        if cmd == "getData":
            return {"ok": True, **self.get_data(payload.get("filename"))}
        if cmd == "deleteFile":
            filename = payload.get("filename")
            if not filename:
                return {"ok": False, "error": "missing 'filename'"}
            return {"ok": True, **self.delete_file(filename)}
        if cmd == "clearCache":
            return {"ok": True, **self.clear_cache(delete_files=bool(payload.get("delete_files", True)))}
        if cmd == "restore":
            return {"ok": True, **await self.restore_from_disk()}
        if cmd == "run now":
            return {"ok": True, "triggered": self.scheduler.run_now()}
        if cmd == "debugState":
            return {"ok": True, **self.debug_state()}
        return {"ok": False, "error": "unknown command"}

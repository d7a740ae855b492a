"""Prometheus metrics exposed by the import service."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class ImportMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.files_imported = Counter("pmta_files_imported_total", "Total imported accounting files", ["trigger"], registry=self.registry)
        self.records_imported = Counter("pmta_records_imported_total", "Total imported accounting records", registry=self.registry)
        self.errors = Counter("pmta_import_errors_total", "Total import failures", ["stage"], registry=self.registry)
        self.cached_files = Gauge("pmta_cached_files", "Files currently held in the cache", registry=self.registry)
        self.cached_records = Gauge("pmta_cached_records", "Records currently held in the cache", registry=self.registry)
        self.connected = Gauge("pmta_connected", "1 when the SSH session is connected", registry=self.registry)

    def inc_imported(self, trigger: str, records: int):
        """Count one imported file and its records."""
        self.files_imported.labels(trigger=trigger or "manual").inc()
        self.records_imported.inc(records)

    def inc_error(self, stage: str):
        """Increase the ``errors`` counter for the failing pipeline stage."""
        self.errors.labels(stage=stage or "unknown").inc()

    def set_cache_size(self, files: int, records: int):
        """Update the gauges describing the cache content."""
        self.cached_files.set(files)
        self.cached_records.set(records)

    def set_connected(self, connected: bool):
        self.connected.set(1 if connected else 0)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)

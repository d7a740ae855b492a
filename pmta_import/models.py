"""Data model for imported accounting logs and connection state.

Models:
    - ConnectionConfig: SSH target and remote log location (pydantic)
    - ConnectionState: status/health snapshot owned by the SSH session
    - RemoteFileRef: one candidate file found by a catalog refresh
    - Record: one CSV row keyed by header, with provenance
    - ImportedFile: one cached file and its records
    - CacheView: what a reader sees for the current selection
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

ALL_FILES = "all"
TIME_LOGGED_FIELD = "timeLogged"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ConnectionHealth(str, Enum):
    UNKNOWN = "unknown"
    GOOD = "good"
    POOR = "poor"


class ConnectionConfig(BaseModel):
    """SSH target and remote log location."""

    model_config = ConfigDict(extra="ignore")

    host: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str
    password: str = Field(repr=False)
    log_path: str = "/var/log/pmta"
    log_pattern: str = "acct-*.csv"

    def public_dict(self) -> Dict[str, Any]:
        """Return the configuration without the secret."""
        data = self.model_dump(exclude={"password"})
        data["password"] = "*" * len(self.password) if self.password else None
        return data


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    health: ConnectionHealth = ConnectionHealth.UNKNOWN
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    connected_at: Optional[datetime] = None

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    def evolve(self, **changes: Any) -> "ConnectionState":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "health": self.health.value,
            "last_error": self.last_error,
            "error_kind": self.error_kind,
            "is_connected": self.is_connected,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
        }


@dataclass(frozen=True)
class RemoteFileRef:
    filename: str
    full_path: str
    imported: bool = False
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    modified_at: Optional[datetime] = None


@dataclass(frozen=True)
class Record:
    """One accounting row.

    Values are header-keyed strings, trimmed and unquoted but otherwise not coerced.
    """

    fields: Mapping[str, str]
    filename: str
    line_number: int

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Return the value of ``name`` or ``default`` when the column is missing."""
        return self.fields.get(name, default)

    @property
    def time_logged(self) -> Optional[str]:
        """Raw ``timeLogged`` value, ``None`` when absent or blank."""
        value = self.fields.get(TIME_LOGGED_FIELD)
        return value or None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.fields)
        data["_filename"] = self.filename
        data["_lineNumber"] = self.line_number
        return data


@dataclass(frozen=True)
class ImportedFile:
    filename: str
    headers: Tuple[str, ...]
    data: Tuple[Record, ...]
    import_time: datetime
    local_path: Optional[Path] = None

    @property
    def record_count(self) -> int:
        return len(self.data)

    def summary(self) -> Dict[str, Any]:
        """Describe the file without its records."""
        return {
            "filename": self.filename,
            "record_count": self.record_count,
            "import_time": self.import_time.isoformat(),
            "local_path": str(self.local_path) if self.local_path else None,
            "headers": list(self.headers),
        }


@dataclass(frozen=True)
class CacheView:
    selected_file: str
    records: Tuple[Record, ...]
    source: str

    @property
    def total_records(self) -> int:
        return len(self.records)

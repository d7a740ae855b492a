"""Error taxonomy shared by the import pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """Classification of a failed connection attempt."""

    AUTH = "auth"
    TIMEOUT = "timeout"
    REFUSED = "refused"
    UNREACHABLE = "unreachable"
    OTHER = "other"


class PmtaImportError(RuntimeError):
    """Base class for failures reported to API consumers."""

    code = "import_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        """Return the ``{"ok": False, ...}`` shape used by command responses."""
        return {"ok": False, "error": self.message, "code": self.code}


class NotConnectedError(PmtaImportError):
    """Raised when an operation needs an SSH session and none is active."""

    code = "not_connected"

    def __init__(self, message: str = "Not connected to PMTA server"):
        super().__init__(message)


class ConnectionFailedError(PmtaImportError):
    """Raised when the SSH session cannot be established."""

    code = "connection_failed"

    def __init__(self, kind: FailureKind, message: str, diagnostic: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.diagnostic = diagnostic or message

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["kind"] = self.kind.value
        payload["details"] = self.diagnostic
        return payload


class RemoteCommandError(PmtaImportError):
    """Raised when a remote command exits with a non-zero status."""

    code = "remote_command_failed"

    def __init__(self, command: str, exit_status: int, stderr: str):
        super().__init__(f"Remote command failed ({exit_status}): {stderr.strip() or command}")
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr


class EmptyTransferError(PmtaImportError):
    """Raised when a download produces a zero-byte local file."""

    code = "empty_transfer"

    def __init__(self, filename: str):
        super().__init__(f"Downloaded file is empty: {filename}")
        self.filename = filename


class FileMissingError(PmtaImportError):
    """Raised on a catalog or cache miss."""

    code = "file_not_found"

    def __init__(self, filename: str, where: str = "imported files"):
        super().__init__(f"File {filename} not found in {where}")
        self.filename = filename


class ParseFailureError(PmtaImportError):
    """Raised when a downloaded file cannot be read or decoded.

    Malformed individual rows never raise; they are parsed best-effort.
    """

    code = "parse_failure"

    def __init__(self, filename: str, reason: str):
        super().__init__(f"Unable to parse {filename}: {reason}")
        self.filename = filename

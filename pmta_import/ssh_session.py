"""SSH session lifecycle for the PowerMTA relay host.

paramiko is blocking, so every call into it runs on a worker thread via
``asyncio.to_thread``. A single paramiko client is not safe for concurrent
command execution: commands and transfers are serialised on ``self.lock``.
This module is the only writer of :class:`ConnectionState`.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import re
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import NamedTuple, Optional, Tuple

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from .errors import ConnectionFailedError, FailureKind, NotConnectedError, RemoteCommandError
from .logger import get_logger
from .models import ConnectionConfig, ConnectionHealth, ConnectionState, ConnectionStatus

LIVENESS_COMMAND = "pwd"

_UNREACHABLE_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH, errno.EHOSTDOWN, errno.EADDRNOTAVAIL}

# asyncio folds per-address failures into one OSError with errno=None
_MULTIPLE_ERRORS_PREFIX = "multiple exceptions:"
_ERRNO_IN_MESSAGE = re.compile(r"\[Errno (\d+)\]")

_FRIENDLY_MESSAGES = {
    FailureKind.AUTH: "Authentication failed. Please check your username and password.",
    FailureKind.TIMEOUT: "Connection timed out. Please check if the server is reachable.",
    FailureKind.REFUSED: "Connection refused. Please check if SSH service is running on the server.",
    FailureKind.UNREACHABLE: "Host not found or unreachable. Please check the server address.",
    FailureKind.OTHER: "Connection failed. Please check your connection settings.",
}


class CommandResult(NamedTuple):
    exit_status: int
    stdout: str
    stderr: str


def classify_connection_error(exc: BaseException) -> FailureKind:
    """Map a connection failure onto a :class:`FailureKind`."""
    if isinstance(exc, paramiko.AuthenticationException):
        return FailureKind.AUTH
    if isinstance(exc, NoValidConnectionsError):
        # One entry per resolved address; refused only when every attempt was refused
        errors = list(exc.errors.values())
        if errors and all(isinstance(err, ConnectionRefusedError) for err in errors):
            return FailureKind.REFUSED
        return FailureKind.UNREACHABLE
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, socket.timeout)):
        return FailureKind.TIMEOUT
    if isinstance(exc, ConnectionRefusedError):
        return FailureKind.REFUSED
    if isinstance(exc, socket.gaierror):
        return FailureKind.UNREACHABLE
    if isinstance(exc, OSError) and exc.errno in _UNREACHABLE_ERRNOS:
        return FailureKind.UNREACHABLE

    error_msg = str(exc).lower()
    if isinstance(exc, OSError) and error_msg.startswith(_MULTIPLE_ERRORS_PREFIX):
        codes = [int(code) for code in _ERRNO_IN_MESSAGE.findall(error_msg)]
        if codes and all(code == errno.ECONNREFUSED for code in codes):
            return FailureKind.REFUSED
        return FailureKind.UNREACHABLE

    patterns = [
        ("authentication", FailureKind.AUTH),
        ("timed out", FailureKind.TIMEOUT),
        ("timeout", FailureKind.TIMEOUT),
        ("banner", FailureKind.TIMEOUT),
        ("refused", FailureKind.REFUSED),
        ("unreachable", FailureKind.UNREACHABLE),
        ("name or service not known", FailureKind.UNREACHABLE),
        ("not known", FailureKind.UNREACHABLE),
    ]
    for pattern, kind in patterns:
        if pattern in error_msg:
            return kind
    return FailureKind.OTHER


class SSHSession:
    """Own one authenticated SSH/SFTP session and its connection state."""

    def __init__(
        self,
        *,
        reachability_timeout: float = 10.0,
        handshake_timeout: float = 30.0,
        command_timeout: float = 60.0,
        keepalive_interval: int = 5,
        strict_host_keys: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.reachability_timeout = reachability_timeout
        self.handshake_timeout = handshake_timeout
        self.command_timeout = command_timeout
        self.keepalive_interval = keepalive_interval
        self.strict_host_keys = strict_host_keys
        self.logger = logger or get_logger()
        self.config: Optional[ConnectionConfig] = None
        self.lock = asyncio.Lock()
        self._client: Optional[paramiko.SSHClient] = None
        self._state = ConnectionState()

    # -------------------------------------------------------------------- state
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected and self._client is not None

    def _set_state(self, **changes) -> None:
        previous = self._state.status
        self._state = self._state.evolve(**changes)
        if previous is not self._state.status:
            self.logger.debug("SSH session %s -> %s", previous.value, self._state.status.value)

    def _fail(self, exc: BaseException, message: Optional[str] = None) -> ConnectionFailedError:
        kind = classify_connection_error(exc)
        if message is None:
            message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        diagnostic = message
        self._set_state(
            status=ConnectionStatus.ERROR,
            health=ConnectionHealth.POOR,
            last_error=diagnostic,
            error_kind=kind.value,
            connected_at=None,
        )
        self.logger.error("Failed to connect to PMTA server (%s): %s", kind.value, diagnostic)
        return ConnectionFailedError(kind, _FRIENDLY_MESSAGES[kind], diagnostic)

    # --------------------------------------------------------------- reachability
    async def _probe(self, host: str, port: int, timeout: float) -> Optional[BaseException]:
        """Open and close a raw TCP connection; return the failure, if any.

        Every resolved address is tried in turn. When more than one address
        fails, the per-address errors come back as a paramiko
        ``NoValidConnectionsError`` so they classify like a failed handshake.
        """
        loop = asyncio.get_running_loop()
        errors = {}
        try:
            async with asyncio.timeout(timeout):
                infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
                for family, _type, _proto, _canonname, sockaddr in infos:
                    try:
                        _reader, writer = await asyncio.open_connection(sockaddr[0], port, family=family)
                    except OSError as exc:
                        errors[sockaddr] = exc
                        continue
                    writer.close()
                    try:
                        await writer.wait_closed()
                    except OSError:
                        pass
                    return None
        except (OSError, asyncio.TimeoutError) as exc:
            return exc
        if not errors:
            return OSError(f"No address found for {host}")
        if len(errors) == 1:
            return next(iter(errors.values()))
        return NoValidConnectionsError(errors)

    async def test_reachability(self, host: str, port: int, timeout: Optional[float] = None) -> bool:
        """Return ``True`` when ``host:port`` accepts TCP connections. Never raises."""
        try:
            return await self._probe(host, port, timeout or self.reachability_timeout) is None
        except Exception:
            return False

    # ---------------------------------------------------------------- lifecycle
    def _open_client(self, config: ConnectionConfig) -> paramiko.SSHClient:
        """Blocking: authenticate a new paramiko client."""
        client = paramiko.SSHClient()
        if self.strict_host_keys:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=config.host,
                port=config.port,
                username=config.username,
                password=config.password,
                timeout=self.handshake_timeout,
                banner_timeout=self.handshake_timeout,
                auth_timeout=self.handshake_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except Exception:
            client.close()
            raise
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(self.keepalive_interval)
        return client

    async def connect(self, config: ConnectionConfig) -> ConnectionState:
        """Probe, authenticate and verify a session to ``config.host``.

        Raises:
            ConnectionFailedError: with ``kind`` set to the failure classification.
        """
        async with self.lock:
            self._close_client()
            self.config = config
            self._set_state(
                status=ConnectionStatus.CONNECTING,
                health=ConnectionHealth.UNKNOWN,
                last_error=None,
                error_kind=None,
            )
            self.logger.info("Attempting SSH connection to %s:%s as %s", config.host, config.port, config.username)

            probe_error = await self._probe(config.host, config.port, self.reachability_timeout)
            if probe_error is not None:
                raise self._fail(
                    probe_error,
                    f"Server {config.host} is not reachable on port {config.port}: "
                    f"{type(probe_error).__name__} {probe_error}".rstrip(),
                ) from probe_error

            try:
                client = await asyncio.wait_for(
                    asyncio.to_thread(self._open_client, config),
                    timeout=self.handshake_timeout + self.reachability_timeout,
                )
            except Exception as exc:
                raise self._fail(exc) from exc

            self._client = client
            try:
                result = await asyncio.to_thread(self._exec_blocking, client, LIVENESS_COMMAND, self.command_timeout)
                if result.exit_status != 0:
                    raise RemoteCommandError(LIVENESS_COMMAND, result.exit_status, result.stderr)
            except Exception as exc:
                self._close_client()
                raise self._fail(exc, f"Liveness check failed: {exc}") from exc

            self._set_state(
                status=ConnectionStatus.CONNECTED,
                health=ConnectionHealth.GOOD,
                last_error=None,
                error_kind=None,
                connected_at=datetime.now(timezone.utc),
            )
            self.logger.info("Connected to PMTA server, working directory: %s", result.stdout.strip())
            return self._state

    async def reconnect(self) -> ConnectionState:
        """Retry the last successful or attempted configuration."""
        if self.config is None:
            raise NotConnectedError("No previous connection settings to retry")
        return await self.connect(self.config)

    async def disconnect(self) -> None:
        """Close the session. Safe to call in any state."""
        async with self.lock:
            if self._client is not None:
                self.logger.info("Disconnecting from PMTA server...")
            self._close_client()
            self._set_state(
                status=ConnectionStatus.DISCONNECTED,
                health=ConnectionHealth.UNKNOWN,
                last_error=None,
                error_kind=None,
                connected_at=None,
            )

    def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.close()
        except Exception as exc:  # pragma: no cover - paramiko close is best effort
            self.logger.debug("Error while closing SSH client: %s", exc)

    def _mark_dropped(self, exc: BaseException) -> None:
        """Move ``connected -> error`` when the transport died under a command."""
        client = self._client
        transport = client.get_transport() if client is not None else None
        if transport is not None and transport.is_active():
            return
        self.logger.warning("SSH session dropped: %s", exc)
        self._close_client()
        self._set_state(
            status=ConnectionStatus.ERROR,
            health=ConnectionHealth.POOR,
            last_error=f"Session dropped: {exc}",
            error_kind=classify_connection_error(exc).value,
            connected_at=None,
        )

    # -------------------------------------------------------------- remote work
    def _require_client(self) -> paramiko.SSHClient:
        if not self._state.is_connected or self._client is None:
            raise NotConnectedError()
        return self._client

    @staticmethod
    def _exec_blocking(client: paramiko.SSHClient, command: str, timeout: float) -> CommandResult:
        _stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        status = stdout.channel.recv_exit_status()
        return CommandResult(status, out, err)

    @staticmethod
    def _get_blocking(client: paramiko.SSHClient, remote_path: str, local_path: Path) -> None:
        sftp = client.open_sftp()
        try:
            sftp.get(remote_path, str(local_path))
        finally:
            sftp.close()

    async def run_command(self, command: str) -> CommandResult:
        """Run ``command`` on the relay host and collect its output."""
        async with self.lock:
            client = self._require_client()
            try:
                return await asyncio.to_thread(self._exec_blocking, client, command, self.command_timeout)
            except Exception as exc:
                self._mark_dropped(exc)
                raise

    async def download(self, remote_path: str, local_path: Path) -> None:
        """Copy ``remote_path`` to ``local_path`` over SFTP."""
        async with self.lock:
            client = self._require_client()
            try:
                await asyncio.to_thread(self._get_blocking, client, remote_path, local_path)
            except Exception as exc:
                self._mark_dropped(exc)
                raise

    async def check_health(self) -> bool:
        """Run the liveness command; a failure moves the session to ``error``."""
        if not self.is_connected:
            return False
        try:
            result = await self.run_command(LIVENESS_COMMAND)
        except NotConnectedError:
            return False
        except Exception as exc:
            self._mark_unhealthy(str(exc))
            return False
        if result.exit_status != 0:
            self._mark_unhealthy(result.stderr.strip() or f"exit status {result.exit_status}")
            return False
        self._set_state(health=ConnectionHealth.GOOD)
        return True

    def _mark_unhealthy(self, reason: str) -> None:
        self.logger.warning("SSH health check failed: %s", reason)
        self._close_client()
        self._set_state(
            status=ConnectionStatus.ERROR,
            health=ConnectionHealth.POOR,
            last_error=f"Health check failed: {reason}",
            error_kind=FailureKind.OTHER.value,
            connected_at=None,
        )

    def describe(self) -> Tuple[Optional[dict], dict]:
        """Return ``(public_config, state)`` for diagnostics."""
        config = self.config.public_dict() if self.config else None
        return config, self._state.to_dict()

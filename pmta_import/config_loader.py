"""Settings loader: INI file with ``PMTA_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .models import ConnectionConfig


def load_settings(config_path: str | Path | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with PMTA_):
      PMTA_CONFIG - Path to config.ini file (default: config.ini)
      PMTA_LOG_LEVEL - Logging level (default: INFO)
      PMTA_SSH_HOST, PMTA_SSH_PORT, PMTA_SSH_USER, PMTA_SSH_PASSWORD - Relay host credentials
      PMTA_LOG_PATH - Remote accounting directory (default: /var/log/pmta)
      PMTA_LOG_PATTERN - Remote file glob (default: acct-*.csv)
      PMTA_RECENCY_DAYS - Only list files modified in the last N days (default: 7, 0 disables)
      PMTA_IMPORT_INTERVAL - Periodic import interval in seconds (default: 30)
      PMTA_AUTO_IMPORT - Start periodic import on connect (default: True)
      PMTA_DATA_PATH - Local download directory (default: pmta-data)
      PMTA_FRESHNESS_SECONDS - Reuse local copies younger than this (default: 300)
      PMTA_RESTORE_ON_START - Load local CSV files at startup (default: True)
      PMTA_HOST - Server host (default: 0.0.0.0)
      PMTA_PORT - Server port (default: 8000)
      PMTA_API_TOKEN - API authentication token
      PMTA_REACHABILITY_TIMEOUT, PMTA_HANDSHAKE_TIMEOUT, PMTA_COMMAND_TIMEOUT - Seconds

    Config file sections/keys:
      [remote] host, port, username, password, log_path, log_pattern, recency_days
      [import] interval_seconds, auto_import, local_data_path, freshness_seconds, restore_on_start
      [server] host, port, api_token
      [timeouts] reachability_seconds, handshake_seconds, command_seconds
    """
    config_path = Path(config_path or os.getenv("PMTA_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        # an empty key in the file defers to the environment
        if parser.has_option(section, option) and parser.get(section, option).strip():
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return float(value)

    settings: Dict[str, Any] = {
        "ssh_host": get("remote", "host", os.getenv("PMTA_SSH_HOST")),
        "ssh_port": get_int("remote", "port", os.getenv("PMTA_SSH_PORT"), default=22),
        "ssh_username": get("remote", "username", os.getenv("PMTA_SSH_USER")),
        "ssh_password": get("remote", "password", os.getenv("PMTA_SSH_PASSWORD")),
        "log_path": get("remote", "log_path", os.getenv("PMTA_LOG_PATH", "/var/log/pmta")),
        "log_pattern": get("remote", "log_pattern", os.getenv("PMTA_LOG_PATTERN", "acct-*.csv")),
        "recency_days": get_int("remote", "recency_days", os.getenv("PMTA_RECENCY_DAYS"), default=7),
        "import_interval": get_float("import", "interval_seconds", os.getenv("PMTA_IMPORT_INTERVAL"), default=30.0),
        "auto_import": get_bool("import", "auto_import", os.getenv("PMTA_AUTO_IMPORT"), default=True),
        "local_data_path": get("import", "local_data_path", os.getenv("PMTA_DATA_PATH", "pmta-data")),
        "freshness_seconds": get_float(
            "import", "freshness_seconds", os.getenv("PMTA_FRESHNESS_SECONDS"), default=300.0
        ),
        "restore_on_start": get_bool("import", "restore_on_start", os.getenv("PMTA_RESTORE_ON_START"), default=True),
        "http_host": get("server", "host", os.getenv("PMTA_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("PMTA_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("PMTA_API_TOKEN")),
        "reachability_timeout": get_float(
            "timeouts", "reachability_seconds", os.getenv("PMTA_REACHABILITY_TIMEOUT"), default=10.0
        ),
        "handshake_timeout": get_float(
            "timeouts", "handshake_seconds", os.getenv("PMTA_HANDSHAKE_TIMEOUT"), default=30.0
        ),
        "command_timeout": get_float("timeouts", "command_seconds", os.getenv("PMTA_COMMAND_TIMEOUT"), default=60.0),
    }

    data_path = settings["local_data_path"]
    if isinstance(data_path, str):
        settings["local_data_path"] = os.path.expanduser(data_path)
    if not settings["recency_days"]:
        settings["recency_days"] = None
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


def connection_config_from(settings: dict[str, object]) -> Optional[ConnectionConfig]:
    """Build the default connection from settings, or ``None`` when incomplete."""
    host = settings.get("ssh_host")
    username = settings.get("ssh_username")
    password = settings.get("ssh_password")
    if not (host and username and password):
        return None
    return ConnectionConfig(
        host=str(host),
        port=int(settings.get("ssh_port") or 22),
        username=str(username),
        password=str(password),
        log_path=str(settings.get("log_path") or "/var/log/pmta"),
        log_pattern=str(settings.get("log_pattern") or "acct-*.csv"),
    )


def service_kwargs(settings: dict[str, object]) -> dict[str, object]:
    """Translate settings into :class:`PmtaImportService` keyword arguments."""
    return dict(
        local_data_path=settings["local_data_path"],
        default_config=connection_config_from(settings),
        import_interval=float(settings.get("import_interval") or 30.0),
        auto_import=bool(settings.get("auto_import")),
        restore_on_start=bool(settings.get("restore_on_start")),
        recency_days=settings.get("recency_days"),
        freshness_seconds=float(settings.get("freshness_seconds") or 300.0),
        reachability_timeout=float(settings.get("reachability_timeout") or 10.0),
        handshake_timeout=float(settings.get("handshake_timeout") or 30.0),
        command_timeout=float(settings.get("command_timeout") or 60.0),
    )

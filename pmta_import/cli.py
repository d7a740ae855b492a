"""Command-line interface for the PMTA import service.

Usage:
    pmta-import serve
    pmta-import check-connection --host relay.example.com --username pmta
    pmta-import list-files
    pmta-import import            # newest file only
    pmta-import import --all
    pmta-import import --file acct-2025-07-10-0000.csv
    pmta-import parse ./pmta-data/acct-2025-07-10-0000.csv

Connection parameters default to the ``[remote]`` section of the config file
and the ``PMTA_SSH_*`` environment variables; command-line options win.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from . import __version__
from .config_loader import connection_config_from, load_settings, service_kwargs
from .csv_parser import CsvNormalizer
from .errors import ConnectionFailedError, PmtaImportError
from .logger import configure_logging
from .models import ConnectionConfig
from .service import PmtaImportService

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


def make_service(settings: dict[str, object]) -> PmtaImportService:
    """Service for one-shot commands: no periodic import."""
    kwargs = service_kwargs(settings)
    kwargs["auto_import"] = False
    return PmtaImportService(**kwargs)


def connection_options(func):
    """Attach the connection overrides shared by remote commands."""
    options = [
        click.option("--host", "-H", default=None, help="Relay host (default: [remote] host)."),
        click.option("--port", "-p", type=int, default=None, help="SSH port (default: 22)."),
        click.option("--username", "-u", default=None, help="SSH username."),
        click.option("--password", default=None, help="SSH password (prefer PMTA_SSH_PASSWORD)."),
        click.option("--log-path", default=None, help="Remote accounting directory."),
        click.option("--log-pattern", default=None, help="Remote file glob."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def resolve_connection(settings: dict[str, object], **overrides: Optional[object]) -> ConnectionConfig:
    """Merge command-line overrides into the configured connection."""
    merged = dict(settings)
    for key, setting in (
        ("host", "ssh_host"),
        ("port", "ssh_port"),
        ("username", "ssh_username"),
        ("password", "ssh_password"),
        ("log_path", "log_path"),
        ("log_pattern", "log_pattern"),
    ):
        if overrides.get(key) is not None:
            merged[setting] = overrides[key]
    try:
        config = connection_config_from(merged)
    except (ValidationError, ValueError) as exc:
        raise click.UsageError(f"Invalid connection parameters: {exc}") from exc
    if config is None:
        raise click.UsageError("Missing connection parameters: host, username and password are required.")
    return config


def run_connected(
    settings: dict[str, object],
    config: ConnectionConfig,
    action: Callable[[PmtaImportService], Awaitable[Any]],
) -> Any:
    """Start a service, connect, run ``action`` and always shut down."""

    async def _runner():
        service = make_service(settings)
        await service.start()
        try:
            await service.connect(config)
            return await action(service)
        finally:
            await service.stop()

    return run_async(_runner())


def render_files(files: list[dict]) -> None:
    if not files:
        console.print("[dim]No files found matching pattern.[/dim]")
        return
    table = Table(title="Remote accounting files")
    table.add_column("File", style="cyan")
    table.add_column("Modified")
    table.add_column("Imported", justify="center")
    table.add_column("Records", justify="right")
    for item in files:
        table.add_row(
            item["filename"],
            item.get("modified_at") or "[dim]-[/dim]",
            "[green]yes[/green]" if item["imported"] else "[dim]no[/dim]",
            str(item.get("record_count", 0)),
        )
    console.print(table)


@click.group()
@click.version_option(version=__version__, prog_name="pmta-import")
@click.option("--config", "-c", "config_path", default=None, help="INI file (default: $PMTA_CONFIG or config.ini).")
@click.option("--log-level", default=None, help="Logging level (default: $PMTA_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], log_level: Optional[str]) -> None:
    """pmta-import CLI - Import PowerMTA accounting logs over SSH."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = load_settings(config_path)


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: [server] host).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: [server] port).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API with periodic import."""
    import uvicorn

    from .server import build_app

    settings = ctx.obj["settings"]
    app = build_app(settings)
    uvicorn.run(app, host=host or str(settings["http_host"]), port=port or int(settings["http_port"]))


@main.command("check-connection")
@connection_options
@click.pass_context
def check_connection(ctx: click.Context, **overrides: Any) -> None:
    """Probe the relay host, log in and list accounting files."""
    settings = ctx.obj["settings"]
    config = resolve_connection(settings, **overrides)
    console.print(f"Testing SSH connection to [bold]{config.username}@{config.host}:{config.port}[/bold]")

    async def _check(service: PmtaImportService) -> list[dict]:
        print_success("Connected successfully")
        return await service.list_available_files()

    try:
        files = run_connected(settings, config, _check)
    except ConnectionFailedError as exc:
        print_error(f"{exc.message} [{exc.kind.value}]")
        sys.exit(1)
    except PmtaImportError as exc:
        print_error(exc.message)
        sys.exit(1)

    console.print(f"Found {len(files)} files matching [cyan]{config.log_pattern}[/cyan] in {config.log_path}")
    render_files(files)


@main.command("list-files")
@connection_options
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_files(ctx: click.Context, as_json: bool, **overrides: Any) -> None:
    """List remote accounting files, flagging the ones already downloaded."""
    settings = ctx.obj["settings"]
    config = resolve_connection(settings, **overrides)
    try:
        files = run_connected(settings, config, lambda service: service.list_available_files())
    except PmtaImportError as exc:
        print_error(exc.message)
        sys.exit(1)
    if as_json:
        print_json(files)
    else:
        render_files(files)


@main.command("import")
@connection_options
@click.option("--all", "import_all", is_flag=True, help="Import every recent file not yet imported.")
@click.option("--file", "filename", default=None, help="Import one file by name.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def import_files(
    ctx: click.Context,
    import_all: bool,
    filename: Optional[str],
    as_json: bool,
    **overrides: Any,
) -> None:
    """Download and parse files into the local data directory (default: newest only)."""
    if import_all and filename:
        raise click.UsageError("--all and --file are mutually exclusive.")
    settings = ctx.obj["settings"]
    config = resolve_connection(settings, **overrides)

    async def _import(service: PmtaImportService) -> dict:
        if filename:
            return await service.import_file(filename)
        if import_all:
            return await service.import_all()
        return await service.import_latest_only()

    try:
        result = run_connected(settings, config, _import)
    except PmtaImportError as exc:
        print_error(exc.message)
        sys.exit(1)

    if as_json:
        print_json(result)
        return
    if result.get("skipped") is True:
        console.print(f"[yellow]{result.get('filename')} already imported[/yellow]")
    else:
        print_success(f"Imported {result.get('files_imported', 1)} file(s)")
    for failure in result.get("failed", []):
        print_error(f"{failure['filename']}: {failure['error']}")
    console.print(f"Total records: {result.get('total_records', 0)}")
    if result.get("failed"):
        sys.exit(1)


@main.command("parse")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--limit", "-n", type=int, default=10, show_default=True, help="Rows to display.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def parse_file(path: str, limit: int, as_json: bool) -> None:
    """Preview a local accounting CSV file."""
    try:
        parsed = run_async(CsvNormalizer().parse(path))
    except PmtaImportError as exc:
        print_error(exc.message)
        sys.exit(1)

    rows = [record.to_dict() for record in parsed.records[:max(limit, 0)]]
    if as_json:
        print_json({"headers": list(parsed.headers), "record_count": parsed.record_count, "records": rows})
        return

    console.print(f"{parsed.record_count} records, {len(parsed.headers)} columns")
    if not parsed.headers:
        return
    table = Table(title=path)
    table.add_column("#", justify="right", style="dim")
    for header in parsed.headers:
        table.add_column(header)
    for record in parsed.records[:max(limit, 0)]:
        table.add_row(str(record.line_number), *(record.get(header, "") for header in parsed.headers))
    console.print(table)


if __name__ == "__main__":
    main()

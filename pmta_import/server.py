"""ASGI application assembly.

Builds a :class:`PmtaImportService` from settings and wraps it in the FastAPI
app with a lifespan that starts and stops it.

Usage:
    uvicorn pmta_import.server:create_server_app --factory --host 0.0.0.0 --port 8000

Environment variables:
    PMTA_CONFIG: Path to the INI file (default: config.ini), see
    :func:`pmta_import.config_loader.load_settings`.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import load_settings, service_kwargs
from .service import PmtaImportService


def build_service(settings: dict[str, object]) -> PmtaImportService:
    return PmtaImportService(**service_kwargs(settings))


def build_app(settings: dict[str, object], service: PmtaImportService | None = None) -> FastAPI:
    """Create the application; the service starts and stops with it."""
    core = service or build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=settings.get("api_token"), lifespan=lifespan)


def create_server_app() -> FastAPI:
    return build_app(load_settings())

"""
FastAPI application factory and HTTP schemas for the PMTA import service.

The module exposes a `create_app` function that builds the REST API used by
dashboards and export tools to drive the import pipeline, and defines the
pydantic payloads that document each command. Authentication is enforced
through a configurable API token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .service import PmtaImportService

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

ERROR_STATUS = {
    "not_connected": status.HTTP_409_CONFLICT,
    "file_not_found": status.HTTP_404_NOT_FOUND,
    "connection_failed": status.HTTP_502_BAD_GATEWAY,
    "invalid_payload": 422,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


def get_service(request: Request) -> PmtaImportService:
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        raise HTTPException(500, "Service not initialized")
    return svc


auth_dependency = Depends(require_token)


def raise_for_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Turn a failed command result into an HTTP error.

    ``not_connected`` maps to 409, ``file_not_found`` to 404,
    ``connection_failed`` to 502 and anything else to 500.
    """
    if isinstance(result, dict) and result.get("ok") is True:
        return result
    code = result.get("code") if isinstance(result, dict) else None
    status_code = ERROR_STATUS.get(code or "", status.HTTP_500_INTERNAL_SERVER_ERROR)
    if code is None and isinstance(result, dict) and result.get("error"):
        status_code = status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=status_code, detail=result)


class ConnectPayload(BaseModel):
    """Relay host credentials and remote log location."""
    host: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str
    password: str = Field(repr=False)
    log_path: Optional[str] = None
    log_pattern: Optional[str] = None


class FilenamePayload(BaseModel):
    filename: str


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class ConnectionInfo(BaseModel):
    status: str
    health: str
    is_connected: bool
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    connected_at: Optional[str] = None


class ConnectResponse(CommandStatus):
    connected: bool
    diagnostic: Optional[str] = None
    connection: ConnectionInfo


class DisconnectResponse(CommandStatus):
    disconnected: bool
    connection: ConnectionInfo


class ConnectionStatusResponse(CommandStatus, ConnectionInfo):
    pass


class ImportStatusResponse(CommandStatus):
    """Progress of the import pipeline, as polled by dashboards."""
    status: str
    connection_health: str
    last_error: Optional[str] = None
    last_import: Optional[str] = None
    total_files: int = 0
    files_processed: int = 0
    total_records: int = 0
    imported_files: int = 0
    selected_file: str = "all"
    last_data_update: Optional[str] = None
    periodic_import_active: bool = False


class AvailableFile(BaseModel):
    """Remote file as listed by the catalog."""
    filename: str
    full_path: Optional[str] = None
    imported: bool
    record_count: int = 0
    modified_at: Optional[str] = None


class AvailableFilesResponse(CommandStatus):
    files: List[AvailableFile]


class ImportedFileInfo(BaseModel):
    filename: str
    record_count: int
    import_time: str
    local_path: Optional[str] = None
    headers: List[str] = Field(default_factory=list)


class ImportedFilesResponse(CommandStatus):
    files: List[ImportedFileInfo]


class ImportFileResponse(CommandStatus):
    filename: str
    record_count: int
    already_imported: bool
    skipped: bool
    total_records: int


class FailedImport(BaseModel):
    filename: str
    error: str


class ImportAllResponse(CommandStatus):
    files_imported: int
    records_imported: int = 0
    total_records: int
    skipped: List[str] = Field(default_factory=list)
    failed: List[FailedImport] = Field(default_factory=list)


class ImportLatestResponse(CommandStatus):
    files_imported: int
    total_records: int
    filename: Optional[str] = None
    record_count: Optional[int] = None
    skipped: Optional[bool] = None


class SelectFileResponse(CommandStatus):
    selected_file: str


class DataResponse(CommandStatus):
    """Records of the current selection; each record keeps its CSV columns."""
    records: List[Dict[str, Any]]
    total_records: int
    source: str
    selected_file: str
    last_update: Optional[str] = None


class DeleteFileResponse(CommandStatus):
    deleted: str
    remaining_files: int
    remaining_records: int


class ClearCacheResponse(CommandStatus):
    removed: int


class RestoreResponse(CommandStatus):
    files_loaded: int
    total_records: int


class RunNowResponse(CommandStatus):
    triggered: bool


def create_app(
    svc: PmtaImportService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`pmta_import.service.PmtaImportService` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    api = FastAPI(title="PMTA Import Service", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.service = svc
    router = APIRouter(prefix="/integration", tags=["integration"], dependencies=[auth_dependency])
    service_dependency = Depends(get_service)

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def health():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics(service: PmtaImportService = service_dependency):
        """Expose Prometheus metrics collected by the import pipeline."""
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/connect", response_model=ConnectResponse, response_model_exclude_none=True)
    async def connect(payload: ConnectPayload, service: PmtaImportService = service_dependency):
        """Connect to the relay host; an existing session is replaced."""
        result = await service.handle_command("connect", payload.model_dump(exclude_none=True))
        return ConnectResponse.model_validate(raise_for_result(result))

    @router.post("/disconnect", response_model=DisconnectResponse, response_model_exclude_none=True)
    async def disconnect(service: PmtaImportService = service_dependency):
        result = await service.handle_command("disconnect", {})
        return DisconnectResponse.model_validate(raise_for_result(result))

    @router.get("/connection-status", response_model=ConnectionStatusResponse, response_model_exclude_none=True)
    async def connection_status(service: PmtaImportService = service_dependency):
        result = await service.handle_command("connectionStatus", {})
        return ConnectionStatusResponse.model_validate(raise_for_result(result))

    @router.get("/import-status", response_model=ImportStatusResponse, response_model_exclude_none=True)
    async def import_status(service: PmtaImportService = service_dependency):
        result = await service.handle_command("importStatus", {})
        return ImportStatusResponse.model_validate(raise_for_result(result))

    @router.get("/files", response_model=AvailableFilesResponse, response_model_exclude_none=True)
    async def available_files(service: PmtaImportService = service_dependency):
        """List remote files and flag those already imported."""
        result = await service.handle_command("listFiles", {})
        return AvailableFilesResponse.model_validate(raise_for_result(result))

    @router.get("/imported-files", response_model=ImportedFilesResponse, response_model_exclude_none=True)
    async def imported_files(service: PmtaImportService = service_dependency):
        result = await service.handle_command("listImported", {})
        return ImportedFilesResponse.model_validate(raise_for_result(result))

    @router.post("/import-file", response_model=ImportFileResponse, response_model_exclude_none=True)
    async def import_file(payload: FilenamePayload, service: PmtaImportService = service_dependency):
        """Import one remote file; already imported files are reported as skipped."""
        result = await service.handle_command("importFile", payload.model_dump())
        return ImportFileResponse.model_validate(raise_for_result(result))

    @router.post("/import-all", response_model=ImportAllResponse, response_model_exclude_none=True)
    async def import_all(service: PmtaImportService = service_dependency):
        result = await service.handle_command("importAll", {})
        return ImportAllResponse.model_validate(raise_for_result(result))

    @router.post("/import-latest", response_model=ImportLatestResponse, response_model_exclude_none=True)
    async def import_latest(service: PmtaImportService = service_dependency):
        result = await service.handle_command("importLatest", {})
        return ImportLatestResponse.model_validate(raise_for_result(result))

    @router.post("/select-file", response_model=SelectFileResponse, response_model_exclude_none=True)
    async def select_file(payload: FilenamePayload, service: PmtaImportService = service_dependency):
        """Select one imported file, or ``all`` for the combined view."""
        result = await service.handle_command("selectFile", payload.model_dump())
        return SelectFileResponse.model_validate(raise_for_result(result))

    @router.get("/data", response_model=DataResponse, response_model_exclude_none=True)
    async def data(filename: Optional[str] = None, service: PmtaImportService = service_dependency):
        """Records of ``filename``, of the current selection, or of every file."""
        result = await service.handle_command("getData", {"filename": filename})
        return DataResponse.model_validate(raise_for_result(result))

    @router.delete("/files/{filename}", response_model=DeleteFileResponse, response_model_exclude_none=True)
    async def delete_file(filename: str, service: PmtaImportService = service_dependency):
        """Remove an imported file from the cache and the local data directory."""
        result = await service.handle_command("deleteFile", {"filename": filename})
        return DeleteFileResponse.model_validate(raise_for_result(result))

    @router.delete("/files", response_model=ClearCacheResponse, response_model_exclude_none=True)
    async def clear_files(delete_files: bool = True, service: PmtaImportService = service_dependency):
        result = await service.handle_command("clearCache", {"delete_files": delete_files})
        return ClearCacheResponse.model_validate(raise_for_result(result))

    @router.post("/restore", response_model=RestoreResponse, response_model_exclude_none=True)
    async def restore(service: PmtaImportService = service_dependency):
        result = await service.handle_command("restore", {})
        return RestoreResponse.model_validate(raise_for_result(result))

    @router.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now(service: PmtaImportService = service_dependency):
        """Wake the periodic import for an immediate refresh."""
        result = await service.handle_command("run now", {})
        return RunNowResponse.model_validate(raise_for_result(result))

    @router.get("/debug")
    async def debug(service: PmtaImportService = service_dependency):
        """Full internal snapshot; the password is masked."""
        return raise_for_result(await service.handle_command("debugState", {}))

    api.include_router(router)
    return api

import asyncio

import pytest

from pmta_import.errors import ConnectionFailedError, FailureKind, FileMissingError, NotConnectedError, ParseFailureError
from pmta_import.metrics import ImportMetrics
from pmta_import.models import ALL_FILES, ConnectionStatus
from pmta_import.service import PmtaImportService

from conftest import CSV_0709, CSV_0710, HEADER

CONNECT_PAYLOAD = {"host": "relay.test", "port": 22, "username": "pmta", "password": "s3cret"}


class DummyScheduler:
    def __init__(self):
        self.started = 0
        self.stopped = 0
        self.active = False
        self.interval = 30.0
        self.last_run = None
        self.last_error = None

    def start(self, interval=None):
        self.started += 1
        self.active = True

    def stop(self):
        self.stopped += 1
        self.active = False

    def run_now(self):
        return self.active

    async def aclose(self):
        self.stop()


@pytest.fixture
def service(fake_session, tmp_path):
    return PmtaImportService(
        local_data_path=tmp_path / "data",
        session=fake_session,
        scheduler=DummyScheduler(),
        metrics=ImportMetrics(),
    )


def metric_value(svc, name, labels=None):
    return svc.metrics.registry.get_sample_value(name, labels or {})


@pytest.mark.asyncio
async def test_latest_only_imports_newest_file(service):
    result = await service.import_latest_only()

    assert result["files_imported"] == 1
    assert result["filename"] == "acct-20250710.csv"
    assert result["total_records"] == 3
    assert service.cache.filenames() == {"acct-20250710.csv"}

    files = await service.list_available_files()
    assert [(f["filename"], f["imported"]) for f in files] == [
        ("acct-20250710.csv", True),
        ("acct-20250709.csv", False),
    ]
    assert files[0]["record_count"] == 3


@pytest.mark.asyncio
async def test_latest_only_skips_cached_file_unless_refreshing(service, fake_session):
    await service.import_latest_only()

    again = await service.import_latest_only()
    assert again["files_imported"] == 0
    assert again["skipped"] is True
    assert len(fake_session.downloads) == 1


@pytest.mark.asyncio
async def test_scheduled_refresh_replaces_newest_file(fake_session, tmp_path):
    svc = PmtaImportService(
        local_data_path=tmp_path,
        session=fake_session,
        scheduler=DummyScheduler(),
        metrics=ImportMetrics(),
        freshness_seconds=0,
    )
    await svc.import_latest_only()
    mtime, _ = fake_session.files["/var/log/pmta/acct-20250710.csv"]
    grown = CSV_0710 + "d,2025-07-10 12:00:00-0400,news@example.com,f@example.org,relayed,smtp;250 ok\n"
    fake_session.files["/var/log/pmta/acct-20250710.csv"] = (mtime, grown.encode())

    result = await svc._scheduled_refresh()

    assert result["files_imported"] == 1
    assert svc.cache.get("acct-20250710.csv").record_count == 4
    assert svc.cache.total_records == 4
    assert metric_value(svc, "pmta_files_imported_total", {"trigger": "scheduled"}) == 1.0


@pytest.mark.asyncio
async def test_import_file_is_idempotent(service, fake_session):
    first = await service.import_file("acct-20250709.csv")
    second = await service.import_file("acct-20250709.csv")

    assert first["already_imported"] is False
    assert first["record_count"] == 2
    assert second == {
        "filename": "acct-20250709.csv",
        "record_count": 2,
        "already_imported": True,
        "skipped": True,
        "total_records": 2,
    }
    assert len(service.cache) == 1
    assert service.cache.total_records == 2
    assert fake_session.downloads == ["/var/log/pmta/acct-20250709.csv"]


@pytest.mark.asyncio
async def test_import_file_unknown_name(service):
    with pytest.raises(FileMissingError):
        await service.import_file("acct-19990101.csv")


@pytest.mark.asyncio
async def test_import_file_requires_connection(make_session, tmp_path):
    svc = PmtaImportService(local_data_path=tmp_path, session=make_session(connected=False), scheduler=DummyScheduler())

    with pytest.raises(NotConnectedError):
        await svc.import_file("acct-20250710.csv")


@pytest.mark.asyncio
async def test_import_all_continues_after_a_failed_file(service, fake_session):
    fake_session.files["/var/log/pmta/acct-20250708.csv"] = (1752000000.0, b"")

    result = await service.import_all()

    assert result["files_imported"] == 2
    assert result["total_records"] == 5
    assert [f["filename"] for f in result["failed"]] == ["acct-20250708.csv"]
    assert "acct-20250708.csv" not in service.cache
    assert metric_value(service, "pmta_import_errors_total", {"stage": "fetch"}) == 1.0
    assert service.import_status()["last_error"]


@pytest.mark.asyncio
async def test_import_all_skips_already_imported(service):
    await service.import_file("acct-20250709.csv")

    result = await service.import_all()

    assert result["files_imported"] == 1
    assert result["skipped"] == ["acct-20250709.csv"]


@pytest.mark.asyncio
async def test_parse_failure_leaves_cache_untouched(service, fake_session):
    await service.import_file("acct-20250709.csv")
    fake_session.files["/var/log/pmta/acct-20250710.csv"] = (1752148800.0, b"\xff\xfe\xfa,\n\xff,\n")

    with pytest.raises(ParseFailureError):
        await service.import_file("acct-20250710.csv")

    assert service.cache.filenames() == {"acct-20250709.csv"}
    assert service.cache.total_records == 2
    assert metric_value(service, "pmta_import_errors_total", {"stage": "parse"}) == 1.0


@pytest.mark.asyncio
async def test_select_get_and_delete(service, tmp_path):
    await service.import_all()

    assert service.select_file("acct-20250709.csv") == {"selected_file": "acct-20250709.csv"}
    data = service.get_data()
    assert data["source"] == "individual_file"
    assert data["total_records"] == 2
    assert data["records"][0]["_filename"] == "acct-20250709.csv"
    assert data["records"][0]["_lineNumber"] == 1

    combined = service.get_data(ALL_FILES)
    assert combined["total_records"] == 5
    assert combined["records"][0]["timeLogged"] == "2025-07-10 11:15:00-0400"

    deleted = service.delete_file("acct-20250709.csv")
    assert deleted == {"deleted": "acct-20250709.csv", "remaining_files": 1, "remaining_records": 3}
    assert service.get_data()["selected_file"] == ALL_FILES
    assert not (tmp_path / "data" / "acct-20250709.csv").exists()
    assert metric_value(service, "pmta_cached_records") == 3.0


@pytest.mark.asyncio
async def test_delete_during_refresh_keeps_downloaded_copy(service, monkeypatch, tmp_path):
    await service.import_latest_only()
    local_copy = tmp_path / "data" / "acct-20250710.csv"
    parsing = asyncio.Event()
    release = asyncio.Event()
    parse = service.parser.parse

    async def gated_parse(path):
        parsing.set()
        await release.wait()
        return await parse(path)

    monkeypatch.setattr(service.parser, "parse", gated_parse)
    refresh = asyncio.create_task(service._scheduled_refresh())
    await parsing.wait()

    deleted = service.delete_file("acct-20250710.csv")
    assert deleted["remaining_files"] == 0
    assert local_copy.exists()

    release.set()
    result = await refresh

    assert result["record_count"] == 3
    assert service.cache.filenames() == {"acct-20250710.csv"}
    assert local_copy.exists()


@pytest.mark.asyncio
async def test_delete_after_import_finished_removes_copy(service, tmp_path):
    await service.import_latest_only()

    service.delete_file("acct-20250710.csv")

    assert service._in_flight == {}
    assert not (tmp_path / "data" / "acct-20250710.csv").exists()


@pytest.mark.asyncio
async def test_delete_never_imported_file(service):
    await service.import_latest_only()

    result = await service.handle_command("deleteFile", {"filename": "acct-20250709.csv"})

    assert result["ok"] is False
    assert result["code"] == "file_not_found"
    assert service.cache.filenames() == {"acct-20250710.csv"}


@pytest.mark.asyncio
async def test_connect_starts_scheduler_and_disconnect_stops_it(make_session, tmp_path):
    session = make_session(connected=False)
    scheduler = DummyScheduler()
    svc = PmtaImportService(local_data_path=tmp_path, session=session, scheduler=scheduler, metrics=ImportMetrics())

    result = await svc.connect(CONNECT_PAYLOAD)
    assert result["connected"] is True
    assert scheduler.active
    assert metric_value(svc, "pmta_connected") == 1.0

    await svc.connect(CONNECT_PAYLOAD)
    assert session.disconnect_calls == 1
    assert scheduler.started == 2

    await svc.disconnect()
    assert not scheduler.active
    assert svc.connection_status()["status"] == "disconnected"
    assert metric_value(svc, "pmta_connected") == 0.0


@pytest.mark.asyncio
async def test_connect_without_auto_import(make_session, tmp_path):
    scheduler = DummyScheduler()
    svc = PmtaImportService(
        local_data_path=tmp_path,
        session=make_session(connected=False),
        scheduler=scheduler,
        auto_import=False,
    )

    await svc.connect(CONNECT_PAYLOAD)

    assert scheduler.started == 0


@pytest.mark.asyncio
async def test_connect_failure_is_reported_by_handle_command(make_session, tmp_path):
    session = make_session(connected=False)

    async def refuse(config):
        raise ConnectionFailedError(FailureKind.REFUSED, "Connection refused.", "ConnectionRefusedError")

    session.connect = refuse
    scheduler = DummyScheduler()
    svc = PmtaImportService(local_data_path=tmp_path, session=session, scheduler=scheduler, metrics=ImportMetrics())

    result = await svc.handle_command("connect", CONNECT_PAYLOAD)

    assert result["ok"] is False
    assert result["connected"] is False
    assert result["code"] == "connection_failed"
    assert result["kind"] == "refused"
    assert scheduler.started == 0
    assert metric_value(svc, "pmta_import_errors_total", {"stage": "connect"}) == 1.0


@pytest.mark.asyncio
async def test_connect_with_invalid_payload(service):
    result = await service.handle_command("connect", {"host": "relay.test"})

    assert result["ok"] is False
    assert result["code"] == "invalid_payload"


@pytest.mark.asyncio
async def test_restore_from_disk_rebuilds_cache(fake_session, tmp_path):
    (tmp_path / "acct-20250709.csv").write_text(CSV_0709)
    (tmp_path / "acct-20250710.csv").write_text(CSV_0710)
    (tmp_path / "broken.csv").write_bytes(b"\xff\xfe\xfa\n")
    (tmp_path / "notes.txt").write_text(HEADER)
    svc = PmtaImportService(local_data_path=tmp_path, session=fake_session, scheduler=DummyScheduler())

    await svc.start()

    assert svc.cache.filenames() == {"acct-20250709.csv", "acct-20250710.csv"}
    assert svc.cache.total_records == 5
    assert svc.cache.selected_file == ALL_FILES

    files = await svc.list_available_files()
    assert all(f["imported"] for f in files)


@pytest.mark.asyncio
async def test_restore_from_missing_directory(fake_session, tmp_path):
    svc = PmtaImportService(local_data_path=tmp_path / "absent", session=fake_session, scheduler=DummyScheduler())

    assert await svc.restore_from_disk() == {"files_loaded": 0, "total_records": 0}


@pytest.mark.asyncio
async def test_status_and_debug_state(service):
    await service.import_latest_only()

    status = service.import_status()
    assert status["status"] == "connected"
    assert status["total_records"] == 3
    assert status["imported_files"] == 1
    assert status["files_processed"] == 1
    assert status["total_files"] == 2
    assert status["last_import"] is not None

    debug = service.debug_state()
    assert debug["config"]["password"] == "******"
    assert "s3cret" not in repr(debug)
    assert debug["cache"]["files"][0]["filename"] == "acct-20250710.csv"
    assert len(debug["catalog"]["files"]) == 2


@pytest.mark.asyncio
async def test_handle_command_dispatch(service):
    assert (await service.handle_command("importLatest", {}))["ok"] is True
    assert (await service.handle_command("importFile", {}))["ok"] is False
    listed = await service.handle_command("listImported", {})
    assert [f["filename"] for f in listed["files"]] == ["acct-20250710.csv"]
    data = await service.handle_command("getData", {"filename": "acct-20250710.csv"})
    assert data["source"] == "individual_file"
    missing = await service.handle_command("selectFile", {"filename": "nope.csv"})
    assert missing["code"] == "file_not_found"
    cleared = await service.handle_command("clearCache", {})
    assert cleared == {"ok": True, "removed": 1}
    assert await service.handle_command("bogus", {}) == {"ok": False, "error": "unknown command"}


@pytest.mark.asyncio
async def test_concurrent_imports_of_different_files(service):
    first, second = await asyncio.gather(
        service.import_file("acct-20250709.csv"),
        service.import_file("acct-20250710.csv"),
    )

    assert first["record_count"] + second["record_count"] == 5
    assert service.cache.total_records == 5


@pytest.mark.asyncio
async def test_stop_closes_session(service, fake_session):
    await service.stop()

    assert fake_session.disconnect_calls == 1
    assert service.connection_status()["status"] == ConnectionStatus.DISCONNECTED.value

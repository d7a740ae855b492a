import pytest

from pmta_import.cache import FileCache
from pmta_import.catalog import RemoteFileCatalog, build_listing_command, parse_listing
from pmta_import.errors import NotConnectedError, RemoteCommandError
from pmta_import.ssh_session import CommandResult


def test_build_listing_command_quotes_arguments():
    command = build_listing_command("/var/log/my pmta", "acct-*.csv", 7)

    assert command == "find '/var/log/my pmta' -maxdepth 1 -name 'acct-*.csv' -type f -mtime -7 -printf '%T@ %p\\n'"


def test_build_listing_command_without_recency_window():
    assert "-mtime" not in build_listing_command("/var/log/pmta", "acct-*.csv", None)


def test_parse_listing_handles_fractional_mtime_and_blank_lines():
    entries = parse_listing("1752148800.1234567890 /var/log/pmta/acct-20250710.csv\n\n/odd/path.csv\n")

    assert entries[0][0].year == 2025
    assert entries[0][1] == "/var/log/pmta/acct-20250710.csv"
    assert entries[1] == (None, "/odd/path.csv")


@pytest.mark.asyncio
async def test_list_candidates_newest_first_and_flags_imported(fake_session):
    cache = FileCache()
    cache.ingest("acct-20250709.csv", ("type",), ())
    catalog = RemoteFileCatalog(fake_session, cache)

    refs = await catalog.list_candidates()

    assert [ref.filename for ref in refs] == ["acct-20250710.csv", "acct-20250709.csv"]
    assert [ref.imported for ref in refs] == [False, True]
    assert refs[0].full_path == "/var/log/pmta/acct-20250710.csv"
    assert catalog.find("acct-20250709.csv").imported is True
    assert catalog.refreshed_at is not None
    assert "-mtime -7" in fake_session.commands[0]
    assert fake_session.commands[0].startswith("find /var/log/pmta -maxdepth 1 ")


@pytest.mark.asyncio
async def test_list_candidates_uses_pattern_override(fake_session):
    catalog = RemoteFileCatalog(fake_session, FileCache(), recency_days=None)

    await catalog.list_candidates(pattern="diag-*.csv", recency_days=3)

    assert "'diag-*.csv'" in fake_session.commands[0]
    assert "-mtime -3" in fake_session.commands[0]


@pytest.mark.asyncio
async def test_each_refresh_supersedes_the_previous(fake_session):
    catalog = RemoteFileCatalog(fake_session, FileCache())
    await catalog.list_candidates()
    del fake_session.files["/var/log/pmta/acct-20250709.csv"]

    refs = await catalog.list_candidates()

    assert [ref.filename for ref in refs] == ["acct-20250710.csv"]
    assert catalog.find("acct-20250709.csv") is None


@pytest.mark.asyncio
async def test_list_candidates_requires_connection(make_session):
    catalog = RemoteFileCatalog(make_session(connected=False), FileCache())

    with pytest.raises(NotConnectedError):
        await catalog.list_candidates()


@pytest.mark.asyncio
async def test_list_candidates_remote_failure(fake_session):
    async def failing(command):
        return CommandResult(1, "", "find: '/var/log/pmta': Permission denied")

    fake_session.run_command = failing
    catalog = RemoteFileCatalog(fake_session, FileCache())

    with pytest.raises(RemoteCommandError) as excinfo:
        await catalog.list_candidates()
    assert "Permission denied" in excinfo.value.message
    assert catalog.available == []

"""Tests for the local installation client."""

import asyncio
from pathlib import Path

import pytest

from casc_source.core.errors import (
    CASCLookupError,
    ConfigFetchError,
    DecodeError,
    HostResolutionError,
    LookupReason,
)
from casc_source.core.local import CASCLocal
from casc_source.core.types import ClientState, LocaleFlags
from casc_source.core.utils import format_cdn_key
from casc_source.database.listfile import CSVListfile
from tests.conftest import (
    BUILD_CONFIG_KEY,
    FILE_DATA_ID,
    FILE_EKEY,
    FILE_PAYLOAD,
    INSTALL_FILES,
    LOOSE_EKEY,
    LOOSE_FILE_DATA_ID,
    LOOSE_PAYLOAD,
    FakeCDN,
    LocalInstall,
)


def load(client: CASCLocal) -> CASCLocal:
    async def run():
        await client.init()
        await client.load(0)
    asyncio.run(run())
    return client


@pytest.mark.integration
class TestCASCLocal:
    """Test loading a synthetic installation."""

    def test_init_lists_active_builds(self, local_install: LocalInstall):
        client = CASCLocal(local_install.path)
        builds = asyncio.run(client.init())

        assert len(builds) == 1
        assert builds[0].build_config == BUILD_CONFIG_KEY
        assert client.get_product_list() == ["Retail 10.0.0.12345"]

    def test_init_without_build_info(self, temp_dir: Path):
        with pytest.raises(ConfigFetchError):
            asyncio.run(CASCLocal(temp_dir).init())

    def test_load_and_read(self, local_install: LocalInstall):
        states = []
        client = CASCLocal(local_install.path)
        original = client._set_state

        def record(state: ClientState) -> None:
            states.append(state)
            original(state)

        client._set_state = record
        load(client)

        assert client.state == ClientState.READY
        assert states == [
            ClientState.UNLOADED,
            ClientState.CONFIGS_LOADED,
            ClientState.ENCODING_LOADED,
            ClientState.ROOT_LOADED,
            ClientState.READY,
        ]
        assert asyncio.run(client.get_file(FILE_DATA_ID)) == FILE_PAYLOAD
        assert client.get_file_info(FILE_DATA_ID).encoding_key == FILE_EKEY.hex()

    def test_storage_keys_are_truncated(self, local_install: LocalInstall):
        """Local indices hold 9-byte keys; lookups use the first 18 hex chars."""
        client = load(CASCLocal(local_install.path))

        assert FILE_EKEY.hex()[:18] in client.tables.archives

    def test_locale_without_variant(self, local_install: LocalInstall):
        client = load(CASCLocal(local_install.path, locale=LocaleFlags.koKR))

        with pytest.raises(CASCLookupError) as exc_info:
            asyncio.run(client.get_file(FILE_DATA_ID))

        assert exc_info.value.reason == LookupReason.NO_LOCALE_ENTRY
        assert client.get_valid_root_entries() == []

    def test_load_by_name(self, local_install: LocalInstall, listfile_path):
        path = listfile_path(f"{FILE_DATA_ID};Interface/Test/File.blp\n999;Not/In/Root.txt\n")
        client = load(CASCLocal(local_install.path, listfile=CSVListfile(str(path))))

        assert asyncio.run(client.get_file_by_name("interface\\test\\file.blp")) == FILE_PAYLOAD
        with pytest.raises(CASCLookupError) as exc_info:
            asyncio.run(client.get_file_by_name("Not/In/Root.txt"))
        assert exc_info.value.reason == LookupReason.NOT_IN_LISTFILE

    def test_missing_config_fails_load(self, local_install: LocalInstall):
        (local_install.path / "Data" / "config" / format_cdn_key(BUILD_CONFIG_KEY)).unlink()
        client = CASCLocal(local_install.path)
        asyncio.run(client.init())

        with pytest.raises(ConfigFetchError):
            asyncio.run(client.load(0))

        assert client.state == ClientState.UNLOADED

    def test_missing_indices_fail_load(self, local_install: LocalInstall):
        for path in (local_install.path / "Data" / "data").glob("*.idx"):
            path.unlink()
        client = CASCLocal(local_install.path)
        asyncio.run(client.init())

        with pytest.raises(DecodeError, match="No local index files"):
            asyncio.run(client.load(0))

    def test_build_index_out_of_range(self, local_install: LocalInstall):
        client = CASCLocal(local_install.path)
        asyncio.run(client.init())

        with pytest.raises(ValueError):
            asyncio.run(client.load(3))

    def test_install_manifest(self, local_install: LocalInstall):
        client = load(CASCLocal(local_install.path))

        manifest = asyncio.run(client.get_install_manifest())

        assert [entry.name for entry in manifest.files] == [name for name, _, _ in INSTALL_FILES]


def read_with_client(client: CASCLocal, action):
    """Run `action(client)` and close the fallback client afterwards."""
    async def run():
        try:
            return await action(client)
        finally:
            await client.close()
    return asyncio.run(run())


@pytest.mark.integration
class TestRemoteFallback:
    """Test reading blobs missing from local storage off the CDN."""

    def test_missing_blob_without_fallback(self, local_install: LocalInstall):
        client = load(CASCLocal(local_install.path))

        with pytest.raises(CASCLookupError) as exc_info:
            asyncio.run(client.get_file(LOOSE_FILE_DATA_ID))

        assert exc_info.value.reason == LookupReason.NO_ARCHIVE_ENTRY

    def test_missing_blob_read_from_cdn(self, local_install: LocalInstall, fake_cdn: FakeCDN):
        client = load(CASCLocal(local_install.path, remote_fallback=True, transport=fake_cdn.transport()))

        data = read_with_client(client, lambda c: c.get_file(LOOSE_FILE_DATA_ID))

        assert data == LOOSE_PAYLOAD
        assert "/tpr/wow/data/" + format_cdn_key(LOOSE_EKEY.hex()) in fake_cdn.paths()
        hosts = {request.url.host for request in fake_cdn.requests if request.method == "HEAD"}
        assert hosts == {"a.example", "b.example"}

    def test_local_blob_does_not_touch_cdn(self, local_install: LocalInstall, fake_cdn: FakeCDN):
        client = load(CASCLocal(local_install.path, remote_fallback=True, transport=fake_cdn.transport()))

        assert read_with_client(client, lambda c: c.get_file(FILE_DATA_ID)) == FILE_PAYLOAD
        assert fake_cdn.requests == []

    def test_force_fallback(self, local_install: LocalInstall, fake_cdn: FakeCDN):
        """Forcing the fallback downloads even blobs that are stored locally."""
        fake_cdn.routes["/tpr/wow/data/" + format_cdn_key(FILE_EKEY.hex())] = b"remote copy"
        client = load(CASCLocal(local_install.path, transport=fake_cdn.transport()))

        data = read_with_client(
            client, lambda c: c.get_data_file_with_remote_fallback(FILE_EKEY.hex(), force_fallback=True)
        )

        assert data == b"remote copy"

    def test_build_without_cdn_hosts(self, local_install: LocalInstall, fake_cdn: FakeCDN):
        build_info = local_install.path / ".build.info"
        build_info.write_text(build_info.read_text().replace("|a.example b.example|", "||"))
        client = load(CASCLocal(local_install.path, remote_fallback=True, transport=fake_cdn.transport()))

        with pytest.raises(HostResolutionError):
            read_with_client(client, lambda c: c.get_file(LOOSE_FILE_DATA_ID))

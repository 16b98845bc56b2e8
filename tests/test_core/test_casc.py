"""Tests for the CASC client base: lookups, locale selection and lifecycle."""

import asyncio
from pathlib import Path

import pytest

from casc_source.core.casc import ArchiveEntry, CASCTables
from casc_source.core.errors import CASCLookupError, ClientNotReadyError, DecodeError, LookupReason
from casc_source.core.local import CASCLocal
from casc_source.core.types import ClientState, ContentFlags, LocaleFlags
from casc_source.formats.config import BuildConfig
from casc_source.formats.root import RootType


def ready_client(install_dir: Path, locale: int = LocaleFlags.enUS) -> CASCLocal:
    """A client with hand-built tables, as if a load had succeeded."""
    client = CASCLocal(install_dir, locale=locale)

    tables = CASCTables()
    en = tables.root.types.append(RootType(content_flags=0, locale_flags=LocaleFlags.enUS))
    de = tables.root.types.append(RootType(content_flags=0, locale_flags=LocaleFlags.deDE))
    low = tables.root.types.append(RootType(
        content_flags=ContentFlags.LOW_VIOLENCE,
        locale_flags=LocaleFlags.enUS,
    ))
    tables.root.add(1, en, "c1")
    tables.root.add(2, de, "c2")
    tables.root.add(3, en, "c3")
    tables.root.add(4, low, "c4")
    tables.root.add(5, de, "c5")
    tables.root.add(5, en, "c1")
    tables.encoding.add("c1", "e1", 10)
    tables.encoding.add("c2", "e2", 20)
    tables.encoding.add("c4", "e4", 40)
    tables.encoding.add("c5", "e5", 50)
    tables.archives["e9"] = ArchiveEntry(archive=0, offset=0, size=64)

    client._tables = tables
    client._state = ClientState.READY
    return client


class TestLookups:
    """Test FileDataID resolution."""

    def test_get_file_info(self, temp_dir: Path):
        info = ready_client(temp_dir).get_file_info(1)

        assert info.file_data_id == 1
        assert info.content_key == "c1"
        assert info.encoding_key == "e1"
        assert info.size == 10

    def test_variant_for_active_locale(self, temp_dir: Path):
        """With several variants, the one serving the active locale is used."""
        assert ready_client(temp_dir).get_file_info(5).content_key == "c1"
        assert ready_client(temp_dir, locale=LocaleFlags.deDE).get_file_info(5).content_key == "c5"

    @pytest.mark.parametrize("file_data_id, reason", [
        (999, LookupReason.NO_ROOT_ENTRY),
        (2, LookupReason.NO_LOCALE_ENTRY),
        (4, LookupReason.NO_LOCALE_ENTRY),
        (3, LookupReason.NO_ENCODING_ENTRY),
    ])
    def test_lookup_failure_reasons(self, temp_dir: Path, file_data_id: int, reason: LookupReason):
        with pytest.raises(CASCLookupError) as exc_info:
            ready_client(temp_dir).get_file_info(file_data_id)

        assert exc_info.value.reason == reason

    def test_missing_storage_entry(self, temp_dir: Path):
        """An EKey no index maps fails with NO_ARCHIVE_ENTRY."""
        with pytest.raises(CASCLookupError) as exc_info:
            asyncio.run(ready_client(temp_dir).get_file(1))

        assert exc_info.value.reason == LookupReason.NO_ARCHIVE_ENTRY

    def test_get_file_by_name_without_listfile(self, temp_dir: Path):
        with pytest.raises(CASCLookupError) as exc_info:
            asyncio.run(ready_client(temp_dir).get_file_by_name("world/maps/test.wdt"))

        assert exc_info.value.reason == LookupReason.NOT_IN_LISTFILE

    def test_valid_root_entries(self, temp_dir: Path):
        assert ready_client(temp_dir).get_valid_root_entries() == [1, 3, 5]
        assert ready_client(temp_dir, locale=LocaleFlags.deDE).get_valid_root_entries() == [2, 5]

    def test_encoding_key_for_content_key(self, temp_dir: Path):
        client = ready_client(temp_dir)

        assert client.get_encoding_key_for_content_key("C1") == "e1"
        with pytest.raises(CASCLookupError) as exc_info:
            client.get_encoding_key_for_content_key("c3")
        assert exc_info.value.reason == LookupReason.NO_ENCODING_ENTRY

    @pytest.mark.parametrize("install, ekey", [
        ("c1", "e1"),
        ("C1 E7", "e7"),
    ])
    def test_install_key(self, temp_dir: Path, install: str, ekey: str):
        """A bare content key is resolved through encoding; a key pair names the encoding key."""
        client = ready_client(temp_dir)
        client.tables.build_config = BuildConfig(install=install)

        assert client._install_encoding_key() == ekey

    def test_install_manifest_without_install_entry(self, temp_dir: Path):
        client = ready_client(temp_dir)
        client.tables.build_config = BuildConfig()

        with pytest.raises(DecodeError, match="no install entry"):
            asyncio.run(client.get_install_manifest())


class TestLifecycle:
    """Test readiness and cleanup."""

    def test_lookups_require_ready(self, temp_dir: Path):
        client = CASCLocal(temp_dir)

        assert client.state == ClientState.UNLOADED
        with pytest.raises(ClientNotReadyError):
            client.get_valid_root_entries()
        with pytest.raises(ClientNotReadyError):
            asyncio.run(client.get_file(1))

    def test_cleanup_once(self, temp_dir: Path):
        client = ready_client(temp_dir)
        client.cleanup()

        with pytest.raises(ClientNotReadyError):
            client.get_file_info(1)
        with pytest.raises(RuntimeError, match="already been called"):
            client.cleanup()

    def test_invalid_locale_falls_back_to_enus(self, temp_dir: Path):
        client = CASCLocal(temp_dir, locale=0)
        assert client.locale == LocaleFlags.enUS

        client.set_locale(LocaleFlags.frFR)
        assert client.locale == LocaleFlags.frFR

        client.set_locale(-5)
        assert client.locale == LocaleFlags.enUS

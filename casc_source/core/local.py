"""CASC client reading from a local game installation."""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import structlog

from casc_source.core.cache import DiskCache
from casc_source.core.casc import CASC, ArchiveEntry, CASCTables
from casc_source.core.cdn import CDNResolver
from casc_source.core.config import CDNSettings
from casc_source.core.errors import (
    CASCLookupError,
    ConfigFetchError,
    DecodeError,
    HostResolutionError,
    LookupReason,
)
from casc_source.core.pipeline import LoadContext, Stage
from casc_source.core.types import BuildInfo, ClientState, LocaleFlags
from casc_source.core.utils import format_cdn_key
from casc_source.database.listfile import ListfileProvider
from casc_source.formats.blte import KeyStore
from casc_source.formats.config import BuildConfigParser, CDNConfigParser, parse_build_info
from casc_source.formats.local_index import format_data_filename, latest_index_files, parse_local_index

logger = structlog.get_logger()

BUILD_INFO_FILE = ".build.info"
# Each blob in data.NNN is preceded by a 30-byte header
DATA_HEADER_SIZE = 0x1E
# Local indices store truncated keys: 9 bytes, 18 hex characters
LOCAL_KEY_HEX_LENGTH = 18


class CASCLocal(CASC):
    """CASC client backed by a local installation directory.

    With `remote_fallback` enabled, blobs missing from local storage are
    downloaded from the CDN hosts listed in the build's .build.info row.
    """

    def __init__(
        self,
        install_dir: Path | str,
        locale: int = LocaleFlags.enUS,
        key_store: KeyStore | None = None,
        listfile: ListfileProvider | None = None,
        cache: DiskCache | None = None,
        remote_fallback: bool = False,
        settings: CDNSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize local client.

        Args:
            install_dir: Installation root containing .build.info
            locale: Active locale flags
            key_store: TACT keys for encrypted blocks
            listfile: Name lookup collaborator
            cache: Disk cache for the listfile
            remote_fallback: Read blobs missing locally from the CDN
            settings: CDN settings for the fallback
            transport: Optional httpx transport, used by tests
        """
        super().__init__(locale=locale, key_store=key_store, listfile=listfile, cache=cache)
        self.install_dir = Path(install_dir)
        self.data_dir = self.install_dir / "Data"
        self.builds: list[BuildInfo] = []
        self.build: BuildInfo | None = None
        self.remote_fallback = remote_fallback
        self.settings = settings or CDNSettings()
        self._transport = transport
        self._resolver: CDNResolver | None = None

    async def init(self) -> list[BuildInfo]:
        """Read the builds listed in the installation's .build.info.

        Raises:
            ConfigFetchError: If .build.info cannot be read
        """
        path = self.install_dir / BUILD_INFO_FILE
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise ConfigFetchError(f"Cannot read {path}: {e}", url=str(path)) from e

        self.builds = parse_build_info(text)
        logger.info("local_casc_init", install_dir=str(self.install_dir), builds=len(self.builds))
        return self.builds

    def get_product_list(self) -> list[str]:
        """Display labels of the installed builds."""
        return [build.label for build in self.builds]

    async def load(self, build_index: int = 0) -> None:
        """Load an installed build.

        Raises:
            ValueError: If `build_index` does not name an installed build
            CASCError: If any load stage fails
        """
        if not 0 <= build_index < len(self.builds):
            raise ValueError(f"No build at index {build_index} ({len(self.builds)} installed)")

        self.build = self.builds[build_index]
        logger.info("local_casc_load", product=self.build.product, version=self.build.version_name)
        # CDN hosts are per build
        await self.close()
        await self._run_load(self.build)

    def _load_stages(self) -> list[Stage]:
        return [
            Stage("configs", self._stage_configs, ClientState.CONFIGS_LOADED),
            Stage("indices", self._stage_indices),
            Stage("encoding", self._stage_encoding, ClientState.ENCODING_LOADED),
            Stage("root", self._stage_root, ClientState.ROOT_LOADED),
            Stage("listfile", self._stage_listfile),
        ]

    def _read_config(self, key: str) -> bytes:
        path = self.data_dir / "config" / format_cdn_key(key.lower())
        try:
            return path.read_bytes()
        except OSError as e:
            raise ConfigFetchError(f"Cannot read config {key}: {e}", url=str(path)) from e

    async def _stage_configs(self, context: LoadContext) -> None:
        build: BuildInfo = context.build
        tables: CASCTables = context.tables

        tables.build_config = BuildConfigParser().parse(await asyncio.to_thread(self._read_config, build.build_config))
        tables.cdn_config = CDNConfigParser().parse(await asyncio.to_thread(self._read_config, build.cdn_config))
        context["build_key"] = build.build_config

    async def _stage_indices(self, context: LoadContext) -> None:
        tables: CASCTables = context.tables
        index_files = latest_index_files(self.data_dir / "data")
        if not index_files:
            raise DecodeError(f"No local index files found in {self.data_dir / 'data'}")

        for path in index_files:
            index = parse_local_index(await asyncio.to_thread(path.read_bytes))
            for entry in index.entries:
                tables.archives.setdefault(
                    entry.key.hex()[:LOCAL_KEY_HEX_LENGTH],
                    ArchiveEntry(archive=entry.archive_id, offset=entry.archive_offset, size=entry.size),
                )

        logger.info("local_indices_loaded", files=len(index_files), entries=len(tables.archives))

    async def _stage_encoding(self, context: LoadContext) -> None:
        tables: CASCTables = context.tables
        assert tables.build_config is not None
        ekey = tables.build_config.encoding_ekey
        if ekey is None:
            raise DecodeError("Build config has no encoding key")

        data = await self._read_with_fallback(tables, ekey)
        self.parse_encoding_file(data, ekey)

    async def _stage_root(self, context: LoadContext) -> None:
        tables: CASCTables = context.tables
        root_ekey = self._root_encoding_key(tables)

        data = await self._read_with_fallback(tables, root_ekey)
        self._check_root_count(self.parse_root_file(data, root_ekey))

    async def _read_from(self, tables: CASCTables, ekey: str) -> bytes:
        entry = tables.archives.get(ekey.lower()[:LOCAL_KEY_HEX_LENGTH])
        if entry is None:
            raise CASCLookupError(LookupReason.NO_ARCHIVE_ENTRY, ekey)

        assert isinstance(entry.archive, int)
        path = self.data_dir / "data" / format_data_filename(entry.archive)
        return await asyncio.to_thread(self._read_blob, path, entry)

    @staticmethod
    def _read_blob(path: Path, entry: ArchiveEntry) -> bytes:
        if entry.size < DATA_HEADER_SIZE:
            raise DecodeError(f"Local entry in {path.name} is smaller than its header")
        try:
            with open(path, "rb") as f:
                f.seek(entry.offset + DATA_HEADER_SIZE)
                data = f.read(entry.size - DATA_HEADER_SIZE)
        except OSError as e:
            raise DecodeError(f"Cannot read {path}: {e}") from e

        if len(data) != entry.size - DATA_HEADER_SIZE:
            raise DecodeError(f"Truncated read from {path.name} at offset {entry.offset}")
        return data

    async def _remote_resolver(self) -> CDNResolver:
        if self._resolver is not None:
            return self._resolver

        build = self.build
        hosts = str(getattr(build, "cdn_hosts", "") or "").split() if build is not None else []
        if not hosts:
            raise HostResolutionError("Build has no CDN hosts for remote fallback")

        resolver = CDNResolver(build.region or "us", self.settings, transport=self._transport)
        try:
            await resolver.resolve_cdn_host(hosts, str(getattr(build, "cdn_path", "") or ""))
        except HostResolutionError:
            await resolver.close()
            raise
        self._resolver = resolver
        return resolver

    async def _read_with_fallback(self, tables: CASCTables, ekey: str, force_fallback: bool = False) -> bytes:
        if not force_fallback:
            try:
                return await self._read_from(tables, ekey)
            except (CASCLookupError, DecodeError) as e:
                if not self.remote_fallback:
                    raise
                logger.info("local_read_fallback", key=ekey, error=str(e))

        resolver = await self._remote_resolver()
        return await resolver.get_data_file(format_cdn_key(ekey))

    async def get_data_file_with_remote_fallback(self, ekey: str, force_fallback: bool = False) -> bytes:
        """Read the raw BLTE bytes of an encoding key, from the CDN if needed.

        Args:
            ekey: Encoding key
            force_fallback: Skip local storage and download from the CDN

        Raises:
            CASCLookupError: NO_ARCHIVE_ENTRY with the fallback disabled
            HostResolutionError: If no CDN host of the build answers
            ConfigFetchError: If the CDN download fails
        """
        return await self._read_with_fallback(self.tables, ekey, force_fallback=force_fallback)

    async def _read_encoded(self, ekey: str) -> bytes:
        return await self.get_data_file_with_remote_fallback(ekey)

    async def close(self) -> None:
        """Close the fallback HTTP client, if one was opened."""
        if self._resolver is not None:
            await self._resolver.close()
            self._resolver = None

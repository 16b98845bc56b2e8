"""CASC client reading from the Blizzard CDN."""

from __future__ import annotations

import asyncio

import httpx
import structlog

from casc_source.core.cache import DiskCache
from casc_source.core.casc import CASC, ArchiveEntry, CASCTables
from casc_source.core.cdn import CDNResolver
from casc_source.core.config import CDNSettings
from casc_source.core.errors import CacheIOError, CASCLookupError, ConfigFetchError, DecodeError, LookupReason
from casc_source.core.pipeline import LoadContext, Stage
from casc_source.core.types import PRODUCTS, BuildInfo, ClientState, LocaleFlags
from casc_source.core.utils import format_cdn_key
from casc_source.database.listfile import ListfileProvider
from casc_source.formats.archive_index import ArchiveIndexEntry, ArchiveIndexParser
from casc_source.formats.blte import KeyStore
from casc_source.formats.config import BuildConfigParser, CDNConfigParser

logger = structlog.get_logger()


class CASCRemote(CASC):
    """CASC client backed by a region's CDN.

    Usage:
        client = CASCRemote("eu")
        await client.init()
        await client.load(0)
        data = await client.get_file(fdid)
    """

    def __init__(
        self,
        region: str = "us",
        settings: CDNSettings | None = None,
        locale: int = LocaleFlags.enUS,
        key_store: KeyStore | None = None,
        listfile: ListfileProvider | None = None,
        cache: DiskCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize remote client.

        Args:
            region: Region tag (eu, us, etc)
            settings: CDN settings
            locale: Active locale flags
            key_store: TACT keys for encrypted blocks
            listfile: Name lookup collaborator
            cache: Disk cache for archive indices
            transport: Optional httpx transport, used by tests
        """
        super().__init__(locale=locale, key_store=key_store, listfile=listfile, cache=cache)
        self.region = region
        self.settings = settings or CDNSettings()
        self.resolver = CDNResolver(region, self.settings, transport=transport)
        self.builds: list[BuildInfo] = []
        self.build: BuildInfo | None = None
        self.server_config: dict[str, str] | None = None

    @property
    def host(self) -> str:
        return self.resolver.host

    async def init(self) -> list[BuildInfo]:
        """Discover the region's build of every known product.

        Products whose version config fails to load, or has no row for the
        region, are left out.
        """
        logger.info("remote_casc_init", region=self.region)
        products = list(PRODUCTS)
        results = await asyncio.gather(
            *(self.resolver.get_version_config(product) for product in products),
            return_exceptions=True,
        )

        builds: list[BuildInfo] = []
        for product, result in zip(products, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("version_config_failed", product=product, error=str(result))
                continue

            build = next((b for b in result if b.region == self.region), None)
            if build is None:
                logger.debug("version_config_no_region", product=product, region=self.region)
                continue
            builds.append(build)

        self.builds = builds
        logger.info("remote_builds_discovered", count=len(builds), products=[b.product for b in builds])
        return builds

    async def get_version_config(self, product: str) -> list[BuildInfo]:
        """Download the version config for a specific product."""
        return await self.resolver.get_version_config(product)

    def get_product_list(self) -> list[str]:
        """Display labels of the discovered builds, e.g. "PTR 10.2.5.53040"."""
        return [build.label for build in self.builds]

    async def load(self, build_index: int) -> None:
        """Load a discovered build.

        Raises:
            ValueError: If `build_index` does not name a discovered build
            CASCError: If any load stage fails
        """
        if not 0 <= build_index < len(self.builds):
            raise ValueError(f"No build at index {build_index} ({len(self.builds)} discovered)")

        self.build = self.builds[build_index]
        logger.info("remote_casc_load", product=self.build.product, version=self.build.version_name)
        await self._run_load(self.build)

    def _load_stages(self) -> list[Stage]:
        return [
            Stage("server_config", self._stage_server_config),
            Stage("cdn_host", self._stage_cdn_host),
            Stage("configs", self._stage_configs, ClientState.CONFIGS_LOADED),
            Stage("encoding", self._stage_encoding, ClientState.ENCODING_LOADED),
            Stage("root", self._stage_root, ClientState.ROOT_LOADED),
            Stage("archives", self._stage_archives, ClientState.ARCHIVES_LOADED),
            Stage("listfile", self._stage_listfile),
        ]

    async def _stage_server_config(self, context: LoadContext) -> None:
        build: BuildInfo = context.build
        rows = await self.resolver.get_server_config(build.product)

        server_config = next((row for row in rows if row.get("Name") == self.region), None)
        if server_config is None:
            url = self.resolver.patch_host + build.product + self.settings.server_config_path
            raise ConfigFetchError(f"CDN config does not contain entry for region {self.region}", url=url)

        self.server_config = server_config
        context["server_config"] = server_config

    async def _stage_cdn_host(self, context: LoadContext) -> None:
        server_config = context["server_config"]
        hosts = server_config.get("Hosts", "").split()
        await self.resolver.resolve_cdn_host(hosts, server_config.get("Path", ""))

    async def _stage_configs(self, context: LoadContext) -> None:
        build: BuildInfo = context.build
        tables: CASCTables = context.tables

        cdn_text = await self.resolver.get_cdn_config_text(build.cdn_config)
        tables.cdn_config = CDNConfigParser().parse(cdn_text.encode("utf-8"))

        build_text = await self.resolver.get_cdn_config_text(build.build_config)
        tables.build_config = BuildConfigParser().parse(build_text.encode("utf-8"))

        context["build_key"] = build.build_config
        logger.debug(
            "configs_loaded",
            archives=len(tables.cdn_config.archives),
            build_name=tables.build_config.build_name,
        )

    async def _stage_archives(self, context: LoadContext) -> None:
        tables: CASCTables = context.tables
        assert tables.cdn_config is not None
        archive_keys = tables.cdn_config.archives
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_indices)

        async def index_with_semaphore(key: str) -> list[ArchiveIndexEntry]:
            async with semaphore:
                return await self.get_archive_index(key)

        results = await asyncio.gather(
            *(index_with_semaphore(key) for key in archive_keys),
            return_exceptions=True,
        )

        failed = 0
        for key, result in zip(archive_keys, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failed += 1
                logger.warning("archive_index_failed", key=key, error=str(result))
                continue
            for entry in result:
                tables.archives.setdefault(
                    entry.ekey, ArchiveEntry(archive=key, offset=entry.offset, size=entry.size)
                )

        if tables.cdn_config.file_index:
            await self._index_loose_files(tables, tables.cdn_config.file_index)

        logger.info(
            "archives_indexed",
            archives=len(archive_keys),
            failed=failed,
            entries=len(tables.archives),
            index_bytes=sum(tables.cdn_config.archives_index_size),
        )

    async def _index_loose_files(self, tables: CASCTables, file_index_key: str) -> None:
        try:
            entries = await self.get_archive_index(file_index_key)
        except (ConfigFetchError, DecodeError) as e:
            logger.warning("file_index_failed", key=file_index_key, error=str(e))
            return

        for entry in entries:
            tables.archives.setdefault(entry.ekey, ArchiveEntry(archive=None, size=entry.size))

    async def _stage_encoding(self, context: LoadContext) -> None:
        tables: CASCTables = context.tables
        assert tables.build_config is not None
        ekey = tables.build_config.encoding_ekey
        if ekey is None:
            raise DecodeError("Build config has no encoding key")

        data = await self.get_data_file(self.format_cdn_key(ekey))
        logger.debug("encoding_downloaded", size=len(data))
        self.parse_encoding_file(data, ekey)

    async def _stage_root(self, context: LoadContext) -> None:
        tables: CASCTables = context.tables
        root_ekey = self._root_encoding_key(tables)

        data = await self.get_data_file(self.format_cdn_key(root_ekey))
        logger.debug("root_downloaded", size=len(data))
        self._check_root_count(self.parse_root_file(data, root_ekey))

    async def get_archive_index(self, key: str) -> list[ArchiveIndexEntry]:
        """Load and parse an archive index, cache first.

        On a cache miss the index is downloaded and its raw bytes persisted
        before parsing, so later calls never hit the network.
        """
        data: bytes | None = None
        if self.cache is not None:
            try:
                data = self.cache.read_archive_index(key)
            except CacheIOError:
                data = None

        if data is None:
            data = await self.get_data_file(self.format_cdn_key(key) + ".index")
            if self.cache is not None:
                try:
                    self.cache.write_archive_index(key, data)
                except CacheIOError as e:
                    logger.warning("archive_index_cache_write_failed", key=key, error=str(e))

        return ArchiveIndexParser().parse(data).entries

    async def get_data_file(self, path: str, byte_range: tuple[int, int] | None = None) -> bytes:
        """Download a data file from the current CDN host."""
        return await self.resolver.get_data_file(path, byte_range=byte_range)

    @staticmethod
    def format_cdn_key(key: str) -> str:
        """Format a CDN key for use in CDN requests."""
        return format_cdn_key(key)

    async def _read_encoded(self, ekey: str) -> bytes:
        entry = self.tables.archives.get(ekey)
        if entry is None:
            raise CASCLookupError(LookupReason.NO_ARCHIVE_ENTRY, ekey)

        if entry.archive is None:
            return await self.get_data_file(self.format_cdn_key(ekey))

        end = entry.offset + entry.size - 1
        return await self.get_data_file(
            self.format_cdn_key(str(entry.archive)), byte_range=(entry.offset, end)
        )

    async def _read_loose(self, ekey: str) -> bytes:
        return await self.get_data_file(self.format_cdn_key(ekey))

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.resolver.close()

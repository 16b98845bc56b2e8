"""CASC client base: owns the build tables and resolves files by FileDataID.

Variants (local install, remote CDN) supply the load stages and the way
encoded bytes are read; everything that only depends on the tables lives
here.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import structlog
from pydantic import BaseModel, Field

from casc_source.core.cache import DiskCache
from casc_source.core.errors import (
    CASCLookupError,
    ClientNotReadyError,
    DecodeError,
    EmptyListfileError,
    LookupReason,
)
from casc_source.core.pipeline import LoadContext, LoadPipeline, Stage
from casc_source.core.types import ClientState, LocaleFlags, ResolvedFile
from casc_source.database.listfile import ListfileProvider
from casc_source.formats.blte import BLTEReader, KeyStore
from casc_source.formats.config import BuildConfig, CDNConfig
from casc_source.formats.encoding import EncodingParser, EncodingTable
from casc_source.formats.install import InstallManifest, InstallParser
from casc_source.formats.root import RootParser, RootTable

logger = structlog.get_logger()


class ArchiveEntry(BaseModel):
    """Physical location of an encoded blob."""

    archive: str | int | None = Field(
        description="CDN archive key, local data.NNN number, or None for a loose CDN file"
    )
    offset: int = Field(default=0, description="Byte offset inside the archive")
    size: int = Field(description="Encoded size in bytes")


@dataclass
class CASCTables:
    """Everything built for one build session."""
    encoding: EncodingTable = field(default_factory=EncodingTable)
    root: RootTable = field(default_factory=RootTable)
    archives: dict[str, ArchiveEntry] = field(default_factory=dict)
    build_config: BuildConfig | None = None
    cdn_config: CDNConfig | None = None


class CASC(ABC):
    """Base CASC client.

    Lookups are only allowed once a load has fully succeeded. A load builds
    a fresh set of tables and swaps them in at the end, so a failed load
    leaves the client unloaded and a successful one never exposes partial
    tables.
    """

    def __init__(
        self,
        locale: int = LocaleFlags.enUS,
        key_store: KeyStore | None = None,
        listfile: ListfileProvider | None = None,
        cache: DiskCache | None = None,
    ):
        """Initialize client.

        Args:
            locale: Active locale flags
            key_store: TACT keys for encrypted BLTE blocks
            listfile: Name lookup collaborator, required by get_file_by_name
            cache: Disk cache, None disables caching
        """
        self.locale = int(LocaleFlags.enUS)
        self.set_locale(locale)
        self.key_store = key_store
        self.listfile = listfile
        self.cache = cache

        self._state = ClientState.UNLOADED
        self._tables: CASCTables | None = None
        self._staging: CASCTables | None = None
        self._cleaned_up = False

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def tables(self) -> CASCTables:
        """Tables of the loaded build.

        Raises:
            ClientNotReadyError: If no build has been loaded
        """
        self._require_ready()
        assert self._tables is not None
        return self._tables

    def set_locale(self, locale: int) -> None:
        """Change the active locale; invalid values fall back to enUS."""
        try:
            locale = int(locale)
        except (TypeError, ValueError):
            locale = 0

        if locale <= 0:
            logger.warning("invalid_locale", locale=locale, fallback="enUS")
            locale = int(LocaleFlags.enUS)

        self.locale = locale

    def _require_ready(self) -> None:
        if self._cleaned_up:
            raise ClientNotReadyError("CASC client has been cleaned up")
        if self._state != ClientState.READY or self._tables is None:
            raise ClientNotReadyError(f"CASC client is not ready (state: {self._state})")

    def _set_state(self, state: ClientState) -> None:
        logger.debug("casc_state_changed", old=self._state.value, new=state.value)
        self._state = state

    # Loading

    @abstractmethod
    def _load_stages(self) -> list[Stage]:
        """Stages of a load, in order."""

    async def _run_load(self, build: object) -> None:
        """Run the variant's stages for `build` and commit the result.

        Raises:
            Exception: The failing stage's error; the client is left unloaded
        """
        if self._cleaned_up:
            raise ClientNotReadyError("CASC client has been cleaned up")

        # Previous build's tables are released before the new build starts
        self._tables = None
        self._set_state(ClientState.UNLOADED)
        self._staging = CASCTables()

        pipeline = LoadPipeline(self._load_stages(), on_state=self._set_state)
        try:
            await pipeline.run(LoadContext(build=build, tables=self._staging))
        except Exception:
            self._staging = None
            self._set_state(ClientState.UNLOADED)
            raise

        self._tables = self._staging
        self._staging = None
        self._set_state(ClientState.READY)
        logger.info(
            "casc_ready",
            encoding_entries=len(self._tables.encoding),
            root_entries=len(self._tables.root),
            root_types=len(self._tables.root.types),
            archive_entries=len(self._tables.archives),
        )

    def _building(self) -> CASCTables:
        if self._staging is None:
            self._staging = CASCTables()
        return self._staging

    def parse_encoding_file(self, data: bytes, ekey: str | None = None) -> EncodingTable:
        """Decode and parse an encoding file into the tables being built.

        Args:
            data: BLTE-encoded encoding file
            ekey: Encoding key of the file, for diagnostics

        Raises:
            DecodeError: On bad magic or malformed data
        """
        decoded = BLTEReader(data, key=ekey, key_store=self.key_store).decode()
        tables = self._building()
        tables.encoding = EncodingParser().parse(decoded)
        logger.info("encoding_parsed", key=ekey, entries=len(tables.encoding))
        return tables.encoding

    def parse_root_file(self, data: bytes, ckey: str | None = None) -> int:
        """Decode and parse a root file into the tables being built.

        Args:
            data: BLTE-encoded root file
            ckey: Content key of the file, for diagnostics

        Returns:
            Number of distinct FileDataIDs in the root table

        Raises:
            DecodeError: On malformed data
        """
        decoded = BLTEReader(data, key=ckey, key_store=self.key_store).decode()
        tables = self._building()
        RootParser(tables.root).parse(decoded)
        count = len(tables.root)
        logger.info("root_parsed", key=ckey, entries=count, types=len(tables.root.types))
        return count

    def _root_encoding_key(self, tables: CASCTables) -> str:
        """Encoding key of the build's root file."""
        assert tables.build_config is not None
        root_ckey = tables.build_config.root_ckey
        if root_ckey is None:
            raise DecodeError("Build config has no root entry")
        entry = tables.encoding.get(root_ckey)
        if entry is None:
            raise CASCLookupError(LookupReason.NO_ENCODING_ENTRY, root_ckey)
        return entry.ekey

    def _check_root_count(self, count: int) -> None:
        if count == 0:
            raise DecodeError("Root file contains no entries")

    async def _stage_listfile(self, context: LoadContext) -> None:
        if self.listfile is None:
            logger.info("listfile_skipped")
            return

        tables: CASCTables = context.tables
        build_key = context["build_key"]
        count = await asyncio.to_thread(
            self.listfile.load_listfile, build_key, self.cache, tables.root.entries
        )
        if count == 0:
            raise EmptyListfileError("No listfile entries found")

    # Lookups

    def get_valid_root_entries(self) -> list[int]:
        """FileDataIDs with a variant for the active locale, in load order."""
        return self.tables.root.valid_file_data_ids(self.locale)

    def get_encoding_key_for_content_key(self, ckey: str) -> str:
        """Map a content key to its encoding key.

        Raises:
            CASCLookupError: NO_ENCODING_ENTRY
        """
        entry = self.tables.encoding.get(ckey)
        if entry is None:
            raise CASCLookupError(LookupReason.NO_ENCODING_ENTRY, ckey)
        return entry.ekey

    def get_file_info(self, file_data_id: int) -> ResolvedFile:
        """Resolve a FileDataID to its keys without reading any data.

        Raises:
            CASCLookupError: NO_ROOT_ENTRY, NO_LOCALE_ENTRY or NO_ENCODING_ENTRY
        """
        tables = self.tables
        if file_data_id not in tables.root:
            raise CASCLookupError(LookupReason.NO_ROOT_ENTRY, file_data_id)

        ckey = tables.root.select(file_data_id, self.locale)
        if ckey is None:
            raise CASCLookupError(LookupReason.NO_LOCALE_ENTRY, file_data_id)

        entry = tables.encoding.get(ckey)
        if entry is None:
            raise CASCLookupError(LookupReason.NO_ENCODING_ENTRY, ckey)

        return ResolvedFile(
            file_data_id=file_data_id,
            content_key=ckey,
            encoding_key=entry.ekey,
            size=entry.size,
        )

    @abstractmethod
    async def _read_encoded(self, ekey: str) -> bytes:
        """Read the raw BLTE bytes stored under an encoding key.

        Raises:
            CASCLookupError: NO_ARCHIVE_ENTRY if no storage maps the key
        """

    async def get_file(self, file_data_id: int, partial_decrypt: bool = False) -> bytes:
        """Read and decode a file by FileDataID.

        Args:
            file_data_id: FileDataID to read
            partial_decrypt: Zero-fill blocks whose TACT key is unknown

        Raises:
            CASCLookupError: When a resolution stage fails
            DecodeError: When the stored data is malformed
        """
        info = self.get_file_info(file_data_id)
        raw = await self._read_encoded(info.encoding_key)
        return BLTEReader(
            raw,
            key=info.encoding_key,
            key_store=self.key_store,
            partial_decrypt=partial_decrypt,
        ).decode()

    async def _read_loose(self, ekey: str) -> bytes:
        """Read a file the build config names directly, outside the indexed archives."""
        return await self._read_encoded(ekey)

    def _install_encoding_key(self) -> str:
        build_config = self.tables.build_config
        if build_config is None or not build_config.install:
            raise DecodeError("Build config has no install entry")

        # "ckey ekey", or a bare content key resolved through encoding
        keys = build_config.install.split()
        if len(keys) > 1:
            return keys[1].lower()
        return self.get_encoding_key_for_content_key(keys[0].lower())

    async def get_install_manifest(self) -> InstallManifest:
        """Read and parse the install manifest of the loaded build.

        Returns:
            Parsed manifest

        Raises:
            DecodeError: If the build config names no install file or the
                manifest is malformed
            CASCLookupError: If the install key cannot be resolved
        """
        ekey = self._install_encoding_key()
        raw = await self._read_loose(ekey)
        manifest = InstallParser().parse(BLTEReader(raw, key=ekey, key_store=self.key_store).decode())
        logger.info("install_manifest_loaded", key=ekey, files=len(manifest.files), tags=len(manifest.tags))
        return manifest

    async def get_file_by_name(self, name: str, partial_decrypt: bool = False) -> bytes:
        """Read and decode a file by its listfile path.

        Raises:
            CASCLookupError: NOT_IN_LISTFILE, or any get_file reason
        """
        self._require_ready()
        file_data_id = self.listfile.get_by_filename(name) if self.listfile is not None else None
        if file_data_id is None:
            raise CASCLookupError(LookupReason.NOT_IN_LISTFILE, name)
        return await self.get_file(file_data_id, partial_decrypt=partial_decrypt)

    def cleanup(self) -> None:
        """Release the build tables and collaborators; callable once.

        Raises:
            RuntimeError: If called a second time
        """
        if self._cleaned_up:
            raise RuntimeError("cleanup() has already been called on this client")

        self._cleaned_up = True
        self._tables = None
        self._staging = None
        self.listfile = None
        self._state = ClientState.UNLOADED
        logger.debug("casc_cleaned_up")

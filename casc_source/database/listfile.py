"""Listfile: FileDataID <-> path mappings from a community CSV listfile."""

from __future__ import annotations

from collections.abc import Container
from pathlib import Path
from typing import Protocol

import httpx
import structlog

from casc_source.core.cache import DiskCache
from casc_source.core.errors import CacheIOError, ConfigFetchError, DecodeError

logger = structlog.get_logger()

LISTFILE_CACHE_NAME = "listfile.csv"


class ListfileProvider(Protocol):
    """Name lookup collaborator used by CASC clients."""

    def load_listfile(
        self,
        build_key: str,
        cache: DiskCache | None,
        root_entries: Container[int] | None,
    ) -> int:
        """Load mappings for a build and return how many were kept."""
        ...

    def get_by_filename(self, name: str) -> int | None:
        ...


def normalize_path(path: str) -> str:
    """Normalize a game path for lookups: lower case, forward slashes."""
    return path.strip().replace("\\", "/").lower()


class CSVListfile:
    """Listfile backed by a `fdid;path` CSV, from a URL or a local file.

    Downloaded listfiles are stored in the build's cache directory so a
    reload of the same build reads them from disk.
    """

    def __init__(self, source: str, timeout: float = 30.0):
        """Initialize listfile.

        Args:
            source: http(s) URL or local path of the CSV
            timeout: Download timeout in seconds
        """
        self.source = source
        self.timeout = timeout
        self._by_name: dict[str, int] = {}
        self._by_id: dict[int, str] = {}

    def load_listfile(
        self,
        build_key: str,
        cache: DiskCache | None = None,
        root_entries: Container[int] | None = None,
    ) -> int:
        """Load the listfile, keeping only FileDataIDs present in `root_entries`.

        Args:
            build_key: Build config key, scopes the cached copy
            cache: Optional disk cache
            root_entries: FileDataIDs of the loaded root, None keeps everything

        Returns:
            Number of entries kept

        Raises:
            ConfigFetchError: If the listfile cannot be downloaded or read
            DecodeError: If the listfile is not UTF-8
        """
        data = self._read_source(build_key, cache)
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Listfile {self.source} is not valid UTF-8: {e}") from e

        self._by_name.clear()
        self._by_id.clear()
        skipped = 0
        for line in text.splitlines():
            fdid, sep, path = line.partition(";")
            if not sep:
                continue
            try:
                file_data_id = int(fdid)
            except ValueError:
                skipped += 1
                continue
            if root_entries is not None and file_data_id not in root_entries:
                continue

            path = path.strip()
            self._by_id[file_data_id] = path
            self._by_name[normalize_path(path)] = file_data_id

        logger.info("listfile_loaded", build=build_key, entries=len(self._by_id), skipped=skipped)
        return len(self._by_id)

    def _read_source(self, build_key: str, cache: DiskCache | None) -> bytes:
        if cache is not None:
            try:
                return cache.read_build_file(build_key, LISTFILE_CACHE_NAME)
            except CacheIOError:
                logger.debug("listfile_cache_miss", build=build_key)

        if self.source.startswith(("http://", "https://")):
            logger.info("listfile_downloading", url=self.source)
            try:
                with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                    response = client.get(self.source)
                    response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ConfigFetchError(
                    f"Listfile download failed: {e}", url=self.source, status_code=e.response.status_code
                ) from e
            except httpx.HTTPError as e:
                raise ConfigFetchError(f"Listfile download failed: {e}", url=self.source) from e
            data = response.content
        else:
            try:
                data = Path(self.source).read_bytes()
            except OSError as e:
                raise ConfigFetchError(f"Cannot read listfile: {e}", url=self.source) from e

        if cache is not None:
            try:
                cache.write_build_file(build_key, LISTFILE_CACHE_NAME, data)
            except CacheIOError as e:
                logger.warning("listfile_cache_write_failed", build=build_key, error=str(e))
        return data

    def get_by_filename(self, name: str) -> int | None:
        """Get the FileDataID of a path, None if unknown."""
        return self._by_name.get(normalize_path(name))

    def get_by_id(self, file_data_id: int) -> str | None:
        """Get the path of a FileDataID, None if unknown."""
        return self._by_id.get(file_data_id)

    def __len__(self) -> int:
        return len(self._by_id)

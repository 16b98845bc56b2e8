"""Disk cache for downloaded CASC data."""

from __future__ import annotations

from pathlib import Path

import structlog

from casc_source.core.errors import CacheIOError

logger = structlog.get_logger()


class DiskCache:
    """Disk cache for archive indices and per-build files.

    Cache layout:
    ~/.cache/casc-source/
    ├── indices/                  # CDN archive indices, shared by all builds
    │   └── {archive_key}.index
    └── builds/                   # Files scoped to one build
        └── {build_key}/
            └── {name}
    """

    def __init__(self, base_dir: Path | None = None):
        """Initialize disk cache.

        Args:
            base_dir: Base cache directory, defaults to ~/.cache/casc-source
        """
        self.base_dir = base_dir or (Path.home() / ".cache" / "casc-source")
        self.indices_dir = self.base_dir / "indices"
        self.builds_dir = self.base_dir / "builds"

    def archive_index_path(self, archive_key: str) -> Path:
        """Get the cache path of an archive index."""
        if not archive_key:
            raise ValueError("Archive key cannot be empty")
        return self.indices_dir / f"{archive_key.lower()}.index"

    def has_archive_index(self, archive_key: str) -> bool:
        """Check if an archive index is cached."""
        return self.archive_index_path(archive_key).exists()

    def read_archive_index(self, archive_key: str) -> bytes:
        """Read a cached archive index.

        Raises:
            CacheIOError: If the index is not cached or cannot be read
        """
        return self._read(self.archive_index_path(archive_key))

    def write_archive_index(self, archive_key: str, data: bytes) -> Path:
        """Persist raw archive index bytes verbatim.

        Raises:
            CacheIOError: If the file cannot be written
        """
        path = self.archive_index_path(archive_key)
        self._write(path, data)
        logger.debug("archive_index_cached", key=archive_key, size=len(data))
        return path

    def build_file_path(self, build_key: str, name: str) -> Path:
        """Get the cache path of a build-scoped file."""
        return self.builds_dir / build_key.lower() / name

    def read_build_file(self, build_key: str, name: str) -> bytes:
        """Read a build-scoped cached file.

        Raises:
            CacheIOError: If the file is not cached or cannot be read
        """
        return self._read(self.build_file_path(build_key, name))

    def write_build_file(self, build_key: str, name: str, data: bytes) -> Path:
        """Store a build-scoped file.

        Raises:
            CacheIOError: If the file cannot be written
        """
        path = self.build_file_path(build_key, name)
        self._write(path, data)
        return path

    def _read(self, path: Path) -> bytes:
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise CacheIOError(f"Cannot read cache file {path}: {e}", path=str(path)) from e

    def _write(self, path: Path, data: bytes) -> None:
        # Write atomically with temp file
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "wb") as f:
                f.write(data)
            temp_path.replace(path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise CacheIOError(f"Cannot write cache file {path}: {e}", path=str(path)) from e

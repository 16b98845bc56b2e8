"""Install manifest parser.

The install manifest lists the files a launcher writes next to the game
data (executables, DLLs, shaders) together with tags such as `Windows` or
`enUS` that select which of them apply to an installation.
"""

from __future__ import annotations

import struct
from io import BytesIO
from typing import BinaryIO

import structlog
from pydantic import BaseModel, Field

from casc_source.core.errors import DecodeError
from casc_source.formats.base import FormatParser, read_exact

logger = structlog.get_logger()

INSTALL_MAGIC = b"IN"


class InstallTag(BaseModel):
    """Install manifest tag with bitmask for file association."""

    name: str = Field(description="Tag name (e.g., Windows, enUS)")
    tag_type: int = Field(description="Tag type identifier")
    bit_mask: bytes = Field(description="Bitmask indicating which files have this tag")

    def has_file(self, file_index: int) -> bool:
        """Check if file at given index has this tag.

        Bit 0 of byte 0 is file 0; bits are read LSB first within a byte.
        """
        byte_index, bit_offset = divmod(file_index, 8)
        if byte_index >= len(self.bit_mask):
            return False
        return (self.bit_mask[byte_index] & (1 << bit_offset)) != 0


class InstallEntry(BaseModel):
    """Install manifest file entry."""

    name: str = Field(description="File path")
    content_key: str = Field(description="Content key, hex")
    size: int = Field(description="File size in bytes")
    file_type: int | None = Field(default=None, description="File type byte (version 2 only)")
    tags: list[str] = Field(default_factory=list, description="Tag names")


class InstallManifest(BaseModel):
    """Parsed install manifest."""

    version: int = Field(description="Format version")
    hash_size: int = Field(description="Content key size in bytes")
    tags: list[InstallTag] = Field(description="Tag definitions")
    files: list[InstallEntry] = Field(description="File entries")

    def files_with_tags(self, *tags: str) -> list[InstallEntry]:
        """Entries carrying every tag in `tags`."""
        wanted = set(tags)
        return [entry for entry in self.files if wanted.issubset(entry.tags)]


def _read_cstring(stream: BinaryIO, what: str) -> str:
    buffer = bytearray()
    while True:
        byte = stream.read(1)
        if not byte:
            raise DecodeError(f"Unterminated {what}")
        if byte == b"\x00":
            break
        buffer.extend(byte)
    return buffer.decode("utf-8", errors="replace")


class InstallParser(FormatParser[InstallManifest]):
    """Parser for decoded install manifests (version 1 and 2)."""

    def parse(self, data: bytes | BinaryIO) -> InstallManifest:
        """Parse install manifest.

        Args:
            data: Decoded (not BLTE) manifest bytes or stream

        Returns:
            Parsed manifest

        Raises:
            DecodeError: On bad magic, unknown version or truncation
        """
        stream = BytesIO(data) if isinstance(data, bytes) else data

        magic = stream.read(2)
        if magic != INSTALL_MAGIC:
            raise DecodeError(f"Invalid install manifest magic: {magic!r}")

        version, hash_size = read_exact(stream, 2, "install header")
        tag_count, entry_count = struct.unpack(">HI", read_exact(stream, 6, "install header"))
        if version not in (1, 2):
            raise DecodeError(f"Unsupported install manifest version: {version}")

        logger.debug("install_header_parsed", version=version, tags=tag_count, entries=entry_count)

        mask_size = (entry_count + 7) // 8
        tags: list[InstallTag] = []
        for _ in range(tag_count):
            name = _read_cstring(stream, "install tag name")
            tag_type = struct.unpack(">H", read_exact(stream, 2, f"tag type of {name}"))[0]
            bit_mask = read_exact(stream, mask_size, f"bit mask of {name}")
            tags.append(InstallTag(name=name, tag_type=tag_type, bit_mask=bit_mask))

        files: list[InstallEntry] = []
        for index in range(entry_count):
            name = _read_cstring(stream, "install file name")
            content_key = read_exact(stream, hash_size, f"content key of {name}").hex()
            size = struct.unpack(">I", read_exact(stream, 4, f"size of {name}"))[0]
            file_type = read_exact(stream, 1, f"file type of {name}")[0] if version >= 2 else None

            files.append(InstallEntry(
                name=name,
                content_key=content_key,
                size=size,
                file_type=file_type,
                tags=[tag.name for tag in tags if tag.has_file(index)],
            ))

        return InstallManifest(version=version, hash_size=hash_size, tags=tags, files=files)


def is_install(data: bytes) -> bool:
    """Check if data starts with the install manifest magic."""
    return data[:2] == INSTALL_MAGIC

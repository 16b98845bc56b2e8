"""CDN archive index format parser.

An archive index (`<archive key>.index`) maps encoding keys to byte ranges
inside one CDN archive blob. Entries are packed into fixed-size pages that
are never split across, followed by a table of contents and a 28-byte footer.

The footer's offset field size tells the variants apart:

- 4: regular archive index (EKey, size, offset)
- 0: file index, listing unarchived files (EKey, size)
- 6: archive-group, where the offset carries a 2-byte archive number
"""

from __future__ import annotations

import math
import struct
from typing import BinaryIO

import structlog
from pydantic import BaseModel, Field

from casc_source.core.errors import DecodeError
from casc_source.formats.base import FormatParser

logger = structlog.get_logger()


class ArchiveIndexEntry(BaseModel):
    """One EKey's location inside an archive."""

    ekey: str = Field(description="Encoding key, hex")
    size: int = Field(description="Encoded size")
    offset: int = Field(default=0, description="Offset in archive data file")
    archive_index: int | None = Field(default=None, description="Archive number (archive-groups only)")


class ArchiveIndexFooter(BaseModel):
    """CDN archive index footer."""

    toc_hash: bytes = Field(description="First 8 bytes of the TOC MD5")
    version: int = Field(description="Index format version")
    page_size_kb: int = Field(description="Page size in KB")
    offset_bytes: int = Field(description="Offset field size (0, 4 or 6)")
    size_bytes: int = Field(description="Size field size")
    key_bytes: int = Field(description="Key length in bytes")
    checksum_bytes: int = Field(description="Footer hash length")
    entry_count: int = Field(description="Number of entries")
    footer_hash: bytes = Field(description="Footer hash")

    @property
    def entry_size(self) -> int:
        return self.key_bytes + self.size_bytes + self.offset_bytes

    @property
    def page_size(self) -> int:
        return self.page_size_kb * 1024

    @property
    def is_file_index(self) -> bool:
        """Check if this is a file index (no offsets)."""
        return self.offset_bytes == 0

    @property
    def is_archive_group(self) -> bool:
        """Check if this is an archive-group (6-byte offsets)."""
        return self.offset_bytes == 6


class ArchiveIndex(BaseModel):
    """Complete CDN archive index structure."""

    footer: ArchiveIndexFooter = Field(description="Index footer")
    entries: list[ArchiveIndexEntry] = Field(description="Archive entries")


class ArchiveIndexParser(FormatParser[ArchiveIndex]):
    """Parser for CDN archive indices, file indices and archive-groups."""

    FOOTER_SIZE = 28

    def parse(self, data: bytes | BinaryIO) -> ArchiveIndex:
        """Parse a CDN archive index.

        Args:
            data: Binary data or stream

        Returns:
            Parsed archive index

        Raises:
            DecodeError: If the footer is invalid or entries are truncated
        """
        all_data = bytes(data) if isinstance(data, (bytes, bytearray)) else data.read()

        footer = self._parse_footer(all_data)
        entries = self._parse_entries(all_data, footer)

        return ArchiveIndex(footer=footer, entries=entries)

    def _parse_footer(self, data: bytes) -> ArchiveIndexFooter:
        if len(data) < self.FOOTER_SIZE:
            raise DecodeError(f"Data too short for footer: {len(data)} < {self.FOOTER_SIZE}")

        footer_data = data[-self.FOOTER_SIZE:]

        footer = ArchiveIndexFooter(
            toc_hash=footer_data[0:8],
            version=footer_data[8],
            page_size_kb=footer_data[11],
            offset_bytes=footer_data[12],
            size_bytes=footer_data[13],
            key_bytes=footer_data[14],
            checksum_bytes=footer_data[15],
            # Element count is little-endian, unlike everything else
            entry_count=struct.unpack("<I", footer_data[16:20])[0],
            footer_hash=footer_data[20:28],
        )

        if footer.offset_bytes not in (0, 4, 6) or footer.key_bytes == 0 or footer.page_size_kb == 0:
            raise DecodeError(
                f"Unsupported archive index footer: offset_bytes={footer.offset_bytes}, "
                f"key_bytes={footer.key_bytes}, page_size_kb={footer.page_size_kb}"
            )
        return footer

    def _parse_entries(self, data: bytes, footer: ArchiveIndexFooter) -> list[ArchiveIndexEntry]:
        entry_size = footer.entry_size
        per_page = footer.page_size // entry_size
        if per_page == 0:
            raise DecodeError(f"Archive index page too small for {entry_size}-byte entries")

        page_count = math.ceil(footer.entry_count / per_page)
        if page_count * footer.page_size > len(data) - self.FOOTER_SIZE:
            raise DecodeError(
                f"Archive index truncated: {footer.entry_count} entries need {page_count} pages"
            )

        empty_key = b"\x00" * footer.key_bytes
        entries: list[ArchiveIndexEntry] = []
        remaining = footer.entry_count

        for page in range(page_count):
            pos = page * footer.page_size
            for _ in range(min(per_page, remaining)):
                key = data[pos:pos + footer.key_bytes]
                pos += footer.key_bytes
                size = int.from_bytes(data[pos:pos + footer.size_bytes], "big")
                pos += footer.size_bytes

                archive_index = None
                offset = 0
                if footer.is_archive_group:
                    archive_index = struct.unpack(">H", data[pos:pos + 2])[0]
                    offset = struct.unpack(">I", data[pos + 2:pos + 6])[0]
                elif footer.offset_bytes:
                    offset = int.from_bytes(data[pos:pos + footer.offset_bytes], "big")
                pos += footer.offset_bytes

                remaining -= 1
                if key == empty_key:
                    continue

                entries.append(ArchiveIndexEntry(
                    ekey=key.hex(),
                    size=size,
                    offset=offset,
                    archive_index=archive_index,
                ))

        logger.debug(
            "archive_index_parsed",
            entries=len(entries),
            expected=footer.entry_count,
            file_index=footer.is_file_index,
        )
        return entries


def parse_archive_index(data: bytes) -> ArchiveIndex:
    """Convenience function to parse an archive index."""
    return ArchiveIndexParser().parse(data)

"""Encoding table parser for CASC.

The encoding file converts content keys (CKeys) into encoding keys (EKeys)
and decoded sizes. Only the CKey pages are read; the EKey pages and the
ESpec block are skipped.
"""

from __future__ import annotations

import struct
from collections.abc import Iterator
from io import BytesIO
from typing import BinaryIO

import structlog
from pydantic import BaseModel, Field

from casc_source.core.errors import DecodeError
from casc_source.core.utils import read_uint40_be
from casc_source.formats.base import FormatParser, read_exact

logger = structlog.get_logger()


class EncodingHeader(BaseModel):
    """Encoding file header."""

    version: int = Field(description="Format version")
    ckey_size: int = Field(description="Content key size in bytes")
    ekey_size: int = Field(description="Encoding key size in bytes")
    ckey_page_size_kb: int = Field(description="CKey page size in KB")
    ekey_page_size_kb: int = Field(description="EKey page size in KB")
    ckey_page_count: int = Field(description="Number of CKey pages")
    ekey_page_count: int = Field(description="Number of EKey pages")
    espec_size: int = Field(description="ESpec table size in bytes")

    @property
    def ckey_page_size(self) -> int:
        return self.ckey_page_size_kb * 1024


class EncodingEntry(BaseModel):
    """Physical representation of one content key."""

    ekey: str = Field(description="First encoding key, hex")
    size: int = Field(description="Decoded file size (40-bit)")


class EncodingTable:
    """CKey -> EncodingEntry lookup built from the encoding file."""

    def __init__(self, header: EncodingHeader | None = None):
        self.header = header
        self._entries: dict[str, EncodingEntry] = {}

    def add(self, ckey: str, ekey: str, size: int) -> None:
        self._entries[ckey] = EncodingEntry(ekey=ekey, size=size)

    def get(self, ckey: str) -> EncodingEntry | None:
        return self._entries.get(ckey.lower())

    def __contains__(self, ckey: object) -> bool:
        return isinstance(ckey, str) and ckey.lower() in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def items(self):
        return self._entries.items()


class EncodingParser(FormatParser[EncodingTable]):
    """Parser for the encoding file."""

    ENCODING_MAGIC = 0x454E  # 'EN'
    HEADER_SIZE = 22
    PAGE_INDEX_CHECKSUM_SIZE = 16

    def parse(self, data: bytes | BinaryIO) -> EncodingTable:
        """Parse an already BLTE-decoded encoding file.

        Args:
            data: Binary data or stream

        Returns:
            Encoding table keyed by content key

        Raises:
            DecodeError: On bad magic or truncated pages
        """
        stream = BytesIO(data) if isinstance(data, bytes) else data

        header = self._parse_header(stream)

        # ESpec block then the CKey page index: first key + page checksum
        skip = header.espec_size + header.ckey_page_count * (header.ckey_size + self.PAGE_INDEX_CHECKSUM_SIZE)
        stream.seek(skip, 1)

        table = EncodingTable(header)
        for page_index in range(header.ckey_page_count):
            page = read_exact(stream, header.ckey_page_size, f"CKey page {page_index}")
            self._parse_page(page, header, table)

        logger.debug("encoding_parsed", pages=header.ckey_page_count, entries=len(table))
        return table

    def _parse_header(self, stream: BinaryIO) -> EncodingHeader:
        header_data = read_exact(stream, self.HEADER_SIZE, "encoding header")

        magic = struct.unpack(">H", header_data[0:2])[0]
        if magic != self.ENCODING_MAGIC:
            raise DecodeError(f"Invalid encoding magic: {header_data[0:2]!r}")

        ckey_page_count, ekey_page_count = struct.unpack(">iI", header_data[9:17])
        espec_size = struct.unpack(">i", header_data[18:22])[0]
        if ckey_page_count < 0 or espec_size < 0:
            raise DecodeError("Negative page count or ESpec size in encoding header")

        return EncodingHeader(
            version=header_data[2],
            ckey_size=header_data[3],
            ekey_size=header_data[4],
            ckey_page_size_kb=struct.unpack(">H", header_data[5:7])[0],
            ekey_page_size_kb=struct.unpack(">H", header_data[7:9])[0],
            ckey_page_count=ckey_page_count,
            ekey_page_count=ekey_page_count,
            espec_size=espec_size,
        )

    def _parse_page(self, page: bytes, header: EncodingHeader, table: EncodingTable) -> None:
        """Parse one CKey page.

        Entry layout: key_count u8 (0 ends the page), size u40 BE, CKey,
        key_count EKeys of which only the first is kept.
        """
        entry_fixed = 1 + 5 + header.ckey_size
        offset = 0
        while offset + entry_fixed <= len(page):
            key_count = page[offset]
            if key_count == 0:
                break
            offset += 1

            size = read_uint40_be(page, offset)
            offset += 5

            ckey = page[offset:offset + header.ckey_size].hex()
            offset += header.ckey_size

            if offset + header.ekey_size * key_count > len(page):
                raise DecodeError(f"Encoding entry for {ckey} extends past its page")

            ekey = page[offset:offset + header.ekey_size].hex()
            offset += header.ekey_size * key_count

            table.add(ckey, ekey, size)


def parse_encoding_table(data: bytes) -> EncodingTable:
    """Convenience function to parse a decoded encoding file."""
    return EncodingParser().parse(data)


def is_encoding(data: bytes) -> bool:
    """Check if data starts with the encoding magic."""
    return len(data) >= 2 and data[:2] == b"EN"

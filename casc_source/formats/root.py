"""Root manifest parser for CASC.

The root manifest maps FileDataIDs to content keys. Each block of the file
carries one (content flags, locale flags) pair shared by all of its records;
that pair is stored once in a RootTypeArena and referenced by index.

Two on-disk layouts exist, told apart by the leading magic:

- legacy: blocks start at offset 0 and every record is CKey + name hash
- modern ('TSFM'): a header with total/named file counts, then blocks of
  FileDataID deltas, CKeys, and optional name hashes
"""

from __future__ import annotations

import struct
from collections.abc import Iterator
from io import BytesIO
from typing import BinaryIO

import structlog
from pydantic import BaseModel, ConfigDict, Field

from casc_source.core.errors import DecodeError
from casc_source.core.types import ContentFlags, LocaleFlags
from casc_source.formats.base import FormatParser, read_exact

logger = structlog.get_logger()

CONTENT_KEY_SIZE = 16
NAME_HASH_SIZE = 8


class RootType(BaseModel):
    """Locale and content flags shared by one root block."""

    model_config = ConfigDict(frozen=True)

    content_flags: int = Field(description="Content flags")
    locale_flags: int = Field(description="Locale flags")

    def matches(self, locale: int) -> bool:
        """True if this type serves `locale` and is not a low-violence variant."""
        return bool(self.locale_flags & locale) and not self.content_flags & ContentFlags.LOW_VIOLENCE


class RootTypeArena:
    """Ordered list of RootType records addressed by index."""

    def __init__(self):
        self._types: list[RootType] = []

    def append(self, root_type: RootType) -> int:
        """Append a type and return its index."""
        self._types.append(root_type)
        return len(self._types) - 1

    def __getitem__(self, index: int) -> RootType:
        return self._types[index]

    def __len__(self) -> int:
        return len(self._types)

    def __iter__(self) -> Iterator[RootType]:
        return iter(self._types)


class RootLayout(BaseModel):
    """Describes how a root file's blocks are laid out."""

    model_config = ConfigDict(frozen=True)

    name: str
    interleaved_name_hashes: bool = Field(
        description="Each record is CKey followed by its name hash"
    )
    split_content_flags: bool = Field(
        default=False,
        description="Block header is locale, three content flag fields (version 2 header)"
    )


LEGACY_LAYOUT = RootLayout(name="legacy", interleaved_name_hashes=True)
MODERN_LAYOUT = RootLayout(name="modern", interleaved_name_hashes=False)
MODERN_V2_LAYOUT = RootLayout(name="modern_v2", interleaved_name_hashes=False, split_content_flags=True)


class RootTable:
    """FileDataID -> {root type index -> CKey} mapping plus its type arena."""

    def __init__(self):
        self.types = RootTypeArena()
        self.entries: dict[int, dict[int, str]] = {}

    def add(self, file_data_id: int, type_index: int, ckey: str) -> None:
        self.entries.setdefault(file_data_id, {})[type_index] = ckey

    def select(self, file_data_id: int, locale: int) -> str | None:
        """Return the CKey of the first variant serving `locale`.

        Raises:
            KeyError: If the FileDataID has no entry at all
        """
        for type_index, ckey in self.entries[file_data_id].items():
            if self.types[type_index].matches(locale):
                return ckey
        return None

    def valid_file_data_ids(self, locale: int) -> list[int]:
        """FileDataIDs with at least one variant serving `locale`, in load order."""
        return [
            file_data_id
            for file_data_id, variants in self.entries.items()
            if any(self.types[type_index].matches(locale) for type_index in variants)
        ]

    def __contains__(self, file_data_id: object) -> bool:
        return file_data_id in self.entries

    def __len__(self) -> int:
        return len(self.entries)


class RootParser(FormatParser[RootTable]):
    """Parser for both root manifest layouts.

    Args:
        table: Existing table to extend, a new one is created if None
    """

    ROOT_MAGIC = 0x4D465354  # 'TSFM' read little-endian
    V2_HEADER_SIZE = 24

    def __init__(self, table: RootTable | None = None):
        self.table = table if table is not None else RootTable()

    def parse(self, data: bytes | BinaryIO) -> RootTable:
        """Parse an already BLTE-decoded root file.

        Args:
            data: Binary data or stream

        Returns:
            The populated root table

        Raises:
            DecodeError: If a block is truncated
        """
        if not isinstance(data, bytes):
            data = data.read()
        stream = BytesIO(data)
        end = len(data)

        layout, allow_nameless = self._read_header(stream, end)
        logger.debug("root_layout_detected", layout=layout.name, allow_nameless=allow_nameless)

        blocks = 0
        while stream.tell() < end:
            self._parse_block(stream, layout, allow_nameless)
            blocks += 1

        logger.debug("root_parsed", layout=layout.name, blocks=blocks, files=len(self.table))
        return self.table

    def _read_header(self, stream: BinaryIO, end: int) -> tuple[RootLayout, bool]:
        """Detect the layout and consume the header.

        Returns:
            (layout, whether records without name hashes are allowed)
        """
        if end < 4 or struct.unpack("<I", stream.read(4))[0] != self.ROOT_MAGIC:
            stream.seek(0)
            return LEGACY_LAYOUT, False

        first, second = struct.unpack("<II", read_exact(stream, 8, "root header"))
        layout = MODERN_LAYOUT
        if first == self.V2_HEADER_SIZE and second in (1, 2):
            # header_size, version, total, named, padding
            total, named = struct.unpack("<II", read_exact(stream, 8, "root header"))
            read_exact(stream, 4, "root header padding")
            if second == 2:
                layout = MODERN_V2_LAYOUT
        else:
            total, named = first, second

        return layout, total != named

    def _parse_block(self, stream: BinaryIO, layout: RootLayout, allow_nameless: bool) -> None:
        num_records = struct.unpack("<I", read_exact(stream, 4, "root block header"))[0]
        if layout.split_content_flags:
            locale_flags, flags1, flags2 = struct.unpack("<III", read_exact(stream, 12, "root block header"))
            flags3 = read_exact(stream, 1, "root block header")[0]
            content_flags = flags1 | flags2 | (flags3 << 17)
        else:
            content_flags, locale_flags = struct.unpack("<II", read_exact(stream, 8, "root block header"))

        file_data_ids = self._read_file_data_ids(stream, num_records)

        # Entries reference the index the block's type will receive on append
        type_index = len(self.table.types)

        if layout.interleaved_name_hashes:
            for file_data_id in file_data_ids:
                ckey = read_exact(stream, CONTENT_KEY_SIZE, "root content key").hex()
                read_exact(stream, NAME_HASH_SIZE, "root name hash")
                self.table.add(file_data_id, type_index, ckey)
        else:
            for file_data_id in file_data_ids:
                ckey = read_exact(stream, CONTENT_KEY_SIZE, "root content key").hex()
                self.table.add(file_data_id, type_index, ckey)

            if not (allow_nameless and content_flags & ContentFlags.NO_NAME_HASH):
                read_exact(stream, NAME_HASH_SIZE * num_records, "root name hashes")

        appended = self.table.types.append(RootType(content_flags=content_flags, locale_flags=locale_flags))
        assert appended == type_index

    @staticmethod
    def _read_file_data_ids(stream: BinaryIO, count: int) -> list[int]:
        """Decode delta-encoded FileDataIDs: next = prev + delta + 1."""
        deltas = struct.unpack(f"<{count}i", read_exact(stream, 4 * count, "root FileDataID deltas"))
        file_data_ids = []
        next_id = 0
        for delta in deltas:
            file_data_id = next_id + delta
            file_data_ids.append(file_data_id)
            next_id = file_data_id + 1
        return file_data_ids


def describe_locale(flags: int) -> str:
    """Render locale flags as a comma separated list of locale names."""
    names = [flag.name for flag in LocaleFlags if flag.name and flag.value and bin(flag.value).count("1") == 1
             and flags & flag.value and not flag.name.startswith("UNK")]
    return ", ".join(names) if names else "none"

"""Local installation index (.idx) parser.

Layout of an index file:
  0x00: Guarded block header (size u32, hash u32)
  0x08: Index header (16 bytes)
  0x20: Guarded block header for the entry block
  0x28: Entries, each key + packed archive location + size
"""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from casc_source.core.errors import DecodeError

logger = structlog.get_logger()

IDX_FILENAME = re.compile(r"^([0-9a-f]{2})([0-9a-f]{8})\.idx$", re.IGNORECASE)
ENTRY_BLOCK_OFFSET = 0x20


@dataclass
class LocalIndexEntry:
    """Location of an EKey inside a local data.NNN archive."""
    key: bytes  # truncated encoding key
    archive_id: int
    archive_offset: int
    size: int


@dataclass
class LocalIndexFile:
    """Parsed local index file."""
    version: int
    bucket: int
    ekey_length: int
    storage_offset_length: int
    encoded_size_length: int
    file_offset_bits: int
    segment_size: int
    entries: list[LocalIndexEntry] = field(default_factory=list)


def parse_local_index(data: bytes) -> LocalIndexFile:
    """Parse a local .idx file.

    Args:
        data: Raw .idx file bytes

    Returns:
        Parsed header and entries

    Raises:
        DecodeError: If the file is too short or the key size is invalid
    """
    if len(data) < ENTRY_BLOCK_OFFSET + 8:
        raise DecodeError(f"Data too short for local idx file: {len(data)} < {ENTRY_BLOCK_OFFSET + 8}")

    version = struct.unpack("<H", data[8:10])[0]
    bucket = data[10]
    encoded_size_length = data[12]
    storage_offset_length = data[13]
    ekey_length = data[14]
    file_offset_bits = data[15]
    segment_size = struct.unpack("<Q", data[16:24])[0]

    if ekey_length not in (9, 16):
        raise DecodeError(f"Invalid key size: {ekey_length}")
    if version != 7:
        logger.debug("local_index_unexpected_version", version=version)

    entry_size = ekey_length + storage_offset_length + encoded_size_length
    entry_block_size = struct.unpack("<I", data[ENTRY_BLOCK_OFFSET:ENTRY_BLOCK_OFFSET + 4])[0]
    start = ENTRY_BLOCK_OFFSET + 8
    entry_data = data[start:start + entry_block_size]

    offset_mask = (1 << file_offset_bits) - 1
    empty_key = b"\x00" * ekey_length
    entries: list[LocalIndexEntry] = []

    for pos in range(0, len(entry_data) - entry_size + 1, entry_size):
        key = entry_data[pos:pos + ekey_length]
        if key == empty_key:
            continue

        location_pos = pos + ekey_length
        location = int.from_bytes(entry_data[location_pos:location_pos + storage_offset_length], "big")
        size_pos = location_pos + storage_offset_length
        size = int.from_bytes(entry_data[size_pos:size_pos + encoded_size_length], "little")

        entries.append(LocalIndexEntry(
            key=key,
            archive_id=location >> file_offset_bits,
            archive_offset=location & offset_mask,
            size=size,
        ))

    return LocalIndexFile(
        version=version,
        bucket=bucket,
        ekey_length=ekey_length,
        storage_offset_length=storage_offset_length,
        encoded_size_length=encoded_size_length,
        file_offset_bits=file_offset_bits,
        segment_size=segment_size,
        entries=entries,
    )


def latest_index_files(data_dir: Path) -> list[Path]:
    """Pick the newest generation of each bucket's index file.

    Args:
        data_dir: The install's Data/data directory

    Returns:
        One path per bucket, sorted by bucket
    """
    latest: dict[int, tuple[int, Path]] = {}
    for path in data_dir.glob("*.idx"):
        match = IDX_FILENAME.match(path.name)
        if match is None:
            continue
        bucket = int(match.group(1), 16)
        generation = int(match.group(2), 16)
        if bucket not in latest or generation > latest[bucket][0]:
            latest[bucket] = (generation, path)

    return [latest[bucket][1] for bucket in sorted(latest)]


def format_data_filename(archive_id: int) -> str:
    """Format data filename for an archive, e.g. "data.001"."""
    return f"data.{archive_id:03d}"

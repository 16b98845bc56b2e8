"""Shared utilities for casc_source."""

from __future__ import annotations

import hashlib


def hexlify(data: bytes, upper: bool = False) -> str:
    """Convert bytes to hex string.

    Args:
        data: Binary data to convert
        upper: Use uppercase hex if True, lowercase if False

    Returns:
        Hex string representation of the data

    Example:
        >>> hexlify(b"hello")
        '68656c6c6f'
    """
    result = data.hex()
    return result.upper() if upper else result


def compute_md5(data: bytes) -> bytes:
    """Compute MD5 hash.

    Args:
        data: Input data to hash

    Returns:
        16-byte MD5 hash digest
    """
    return hashlib.md5(data).digest()


def format_cdn_key(key: str) -> str:
    """Shard a key into the CDN directory layout.

    Example:
        >>> format_cdn_key("49299eae4e3a195953764bb4adb3c91f")
        '49/29/49299eae4e3a195953764bb4adb3c91f'
    """
    return f"{key[0:2]}/{key[2:4]}/{key}"


def read_uint40_be(data: bytes, offset: int = 0) -> int:
    """Read a 40-bit big-endian unsigned integer."""
    return int.from_bytes(data[offset:offset + 5], "big")


def format_size(size: int) -> str:
    """Format byte size as human-readable string.

    Example:
        >>> format_size(1536)
        '1.5 KB'
    """
    if size < 0:
        return "0 B"

    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_float < 1024.0:
            if unit == "B":
                return f"{int(size_float)} {unit}"
            return f"{size_float:.1f} {unit}"
        size_float /= 1024.0
    return f"{size_float:.1f} PB"


def validate_hash_string(hash_str: str, length: int | None = None) -> bool:
    """Validate a hex hash string, optionally of an exact length.

    Example:
        >>> validate_hash_string("deadbeef")
        True
        >>> validate_hash_string("deadbeef", length=16)
        False
    """
    if not hash_str or (length is not None and len(hash_str) != length):
        return False
    if len(hash_str) % 2 != 0:
        return False
    return all(c in "0123456789abcdefABCDEF" for c in hash_str)

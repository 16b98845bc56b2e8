"""Base classes for format parsers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import BinaryIO, Generic, TypeVar

from casc_source.core.errors import DecodeError

T = TypeVar("T")


class FormatParser(ABC, Generic[T]):
    """Base class for format parsers."""

    @abstractmethod
    def parse(self, data: bytes | BinaryIO) -> T:
        """Parse binary data.

        Args:
            data: Binary data or stream

        Returns:
            Parsed format object

        Raises:
            DecodeError: If the data is malformed
        """
        ...


def read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    """Read exactly `size` bytes or raise DecodeError."""
    data = stream.read(size)
    if len(data) != size:
        raise DecodeError(f"Truncated {what}: expected {size} bytes, got {len(data)}")
    return data

"""BLTE (Block Table Encoded) format reader."""

from __future__ import annotations

import struct
import zlib
from io import BytesIO
from typing import BinaryIO, Protocol

import lz4.block
import structlog
from Crypto.Cipher import ARC4, Salsa20
from pydantic import BaseModel, Field

from casc_source.core.errors import DecodeError
from casc_source.core.types import CompressionMode, EncryptionType
from casc_source.core.utils import compute_md5, hexlify
from casc_source.formats.base import FormatParser, read_exact

logger = structlog.get_logger()


class KeyStore(Protocol):
    """Anything that can look up a TACT key by its 16 hex-char name."""

    def get_key(self, key_name: str) -> bytes | None:
        ...


class BLTEChunk(BaseModel):
    """BLTE chunk information."""

    compressed_size: int = Field(description="Compressed size, including the mode byte")
    decompressed_size: int = Field(description="Decompressed size, 0 when unknown")
    checksum: bytes = Field(default=b"", description="MD5 of the raw chunk bytes")
    compression_mode: CompressionMode = Field(description="Compression mode")
    data: bytes = Field(description="Chunk payload after the mode byte")


class BLTEHeader(BaseModel):
    """BLTE file header."""

    header_size: int = Field(description="Header size")
    flags: int | None = Field(default=None, description="Flags")
    chunk_count: int | None = Field(default=None, description="Number of chunks")

    def is_single_chunk(self) -> bool:
        """Check if this is a single chunk file."""
        return self.header_size == 0


class BLTEFile(BaseModel):
    """Complete BLTE file structure."""

    header: BLTEHeader = Field(description="File header")
    chunks: list[BLTEChunk] = Field(description="Data chunks")


class MissingKeyError(DecodeError):
    """Raised when an encrypted block names a key the store does not hold."""

    def __init__(self, key_name: str):
        self.key_name = key_name
        super().__init__(f"Encryption key not found: {key_name}")


class BLTEParser(FormatParser[BLTEFile]):
    """Parser for the BLTE container.

    Every block of a multi-chunk file is checked against the MD5 stored in
    the block table; a mismatch raises DecodeError.
    """

    BLTE_MAGIC = b"BLTE"

    def parse(self, data: bytes | BinaryIO) -> BLTEFile:
        """Parse BLTE file.

        Args:
            data: Binary data or stream

        Returns:
            Parsed BLTE file
        """
        stream = BytesIO(data) if isinstance(data, bytes) else data

        header = self._parse_header(stream)
        chunks = self._parse_chunks(stream, header)

        return BLTEFile(header=header, chunks=chunks)

    def _parse_header(self, stream: BinaryIO) -> BLTEHeader:
        magic = stream.read(4)
        if magic != self.BLTE_MAGIC:
            raise DecodeError(f"Invalid BLTE magic: {magic!r}")

        header_size = struct.unpack(">I", read_exact(stream, 4, "BLTE header size"))[0]
        header = BLTEHeader(header_size=header_size)

        if header_size > 0:
            header.flags = read_exact(stream, 1, "BLTE flags")[0]
            # 24-bit big-endian chunk count
            header.chunk_count = int.from_bytes(read_exact(stream, 3, "BLTE chunk count"), "big")
            if header.chunk_count == 0:
                raise DecodeError("BLTE block table is empty")

        return header

    def _parse_chunks(self, stream: BinaryIO, header: BLTEHeader) -> list[BLTEChunk]:
        if header.is_single_chunk():
            raw = stream.read()
            return [self._parse_chunk(raw, 0)]

        assert header.chunk_count is not None
        chunk_infos = []
        for _ in range(header.chunk_count):
            comp_size, decomp_size = struct.unpack(">II", read_exact(stream, 8, "BLTE chunk info"))
            checksum = read_exact(stream, 16, "BLTE chunk checksum")
            chunk_infos.append((comp_size, decomp_size, checksum))

        chunks = []
        for index, (comp_size, decomp_size, checksum) in enumerate(chunk_infos):
            raw = read_exact(stream, comp_size, f"BLTE chunk {index}")
            actual = compute_md5(raw)
            if actual != checksum:
                raise DecodeError(
                    f"BLTE chunk {index} checksum mismatch: "
                    f"expected {checksum.hex()}, got {actual.hex()}"
                )
            chunk = self._parse_chunk(raw, decomp_size)
            chunk.checksum = checksum
            chunks.append(chunk)

        return chunks

    def _parse_chunk(self, raw: bytes, decomp_size: int) -> BLTEChunk:
        if not raw:
            raise DecodeError("Empty chunk data")

        return BLTEChunk(
            compressed_size=len(raw),
            decompressed_size=decomp_size,
            compression_mode=_mode_from_byte(raw[0:1]),
            data=raw[1:],
        )


class BLTEReader:
    """Decodes a BLTE container into its logical payload.

    Args:
        data: Raw BLTE bytes
        key: Expected encoding key, used for diagnostics
        key_store: TACT key lookup for encrypted blocks
        partial_decrypt: Replace blocks whose key is unknown with zeroes
            instead of raising
    """

    def __init__(
        self,
        data: bytes,
        key: str | None = None,
        key_store: KeyStore | None = None,
        partial_decrypt: bool = False,
    ):
        self.data = data
        self.key = key
        self.key_store = key_store
        self.partial_decrypt = partial_decrypt
        self.missing_keys: list[str] = []

    def decode(self) -> bytes:
        """Decode every block and return the concatenated payload.

        Raises:
            DecodeError: On bad magic, checksum mismatch, unknown block mode
                or a missing key outside partial mode
        """
        try:
            blte = BLTEParser().parse(self.data)
        except DecodeError as e:
            logger.debug("blte_parse_failed", key=self.key, error=str(e))
            raise

        result = BytesIO()
        for index, chunk in enumerate(blte.chunks):
            result.write(self._decode_chunk(index, chunk))

        if self.missing_keys:
            logger.warning("blte_partial_decrypt", key=self.key, missing=sorted(set(self.missing_keys)))

        return result.getvalue()

    def _decode_chunk(self, index: int, chunk: BLTEChunk) -> bytes:
        if chunk.compression_mode != CompressionMode.ENCRYPTED:
            return self._decompress(chunk.compression_mode, chunk.data)

        try:
            decrypted = self._decrypt_chunk(index, chunk.data)
        except MissingKeyError as e:
            if not self.partial_decrypt:
                raise
            self.missing_keys.append(e.key_name)
            return b"\x00" * chunk.decompressed_size

        # Decrypted data is itself a block with its own mode byte
        if not decrypted:
            return b""
        inner_mode = _mode_from_byte(decrypted[0:1])
        if inner_mode == CompressionMode.ENCRYPTED:
            raise DecodeError(f"Nested encrypted block in chunk {index}")
        return self._decompress(inner_mode, decrypted[1:])

    def _decompress(self, compression_mode: CompressionMode, data: bytes) -> bytes:
        if compression_mode != CompressionMode.FRAME:
            return _decompress_block_data(compression_mode, data)

        # Nested files share the key store and partial mode of the outer file
        nested = BLTEReader(
            data, key=self.key, key_store=self.key_store, partial_decrypt=self.partial_decrypt
        )
        decoded = nested.decode()
        self.missing_keys.extend(nested.missing_keys)
        return decoded

    def _decrypt_chunk(self, index: int, data: bytes) -> bytes:
        """Decrypt an encrypted block.

        Layout: key name length (8), key name, IV length (4), IV, cipher type.
        """
        stream = BytesIO(data)
        name_len = read_exact(stream, 1, "encrypted key name length")[0]
        if name_len != 8:
            raise DecodeError(f"Unsupported key name length: {name_len}")
        # Stored little-endian; key lists use the reversed form
        key_name = hexlify(read_exact(stream, name_len, "encrypted key name")[::-1], upper=True)

        iv_len = read_exact(stream, 1, "encrypted IV length")[0]
        if iv_len not in (4, 8):
            raise DecodeError(f"Unsupported IV length: {iv_len}")
        iv = bytearray(read_exact(stream, iv_len, "encrypted IV"))
        for i in range(min(4, iv_len)):
            iv[i] ^= (index >> (i * 8)) & 0xFF
        nonce = bytes(iv).ljust(8, b"\x00")

        type_byte = read_exact(stream, 1, "encryption type")[0]
        try:
            encryption_type = EncryptionType(type_byte)
        except ValueError as e:
            raise DecodeError(f"Unknown encryption type: {type_byte:02x}") from e

        key = self.key_store.get_key(key_name) if self.key_store is not None else None
        if key is None:
            raise MissingKeyError(key_name)

        payload = stream.read()
        if encryption_type == EncryptionType.SALSA20:
            return Salsa20.new(key=key, nonce=nonce).decrypt(payload)
        return ARC4.new(key + nonce).decrypt(payload)


def _mode_from_byte(mode_byte: bytes) -> CompressionMode:
    try:
        return CompressionMode(mode_byte.decode())
    except (ValueError, UnicodeDecodeError) as e:
        raise DecodeError(f"Unknown compression mode: {mode_byte!r}") from e


def _decompress_block_data(compression_mode: CompressionMode, data: bytes) -> bytes:
    """Decompress a single block based on compression type."""
    if compression_mode == CompressionMode.NONE:
        return data
    elif compression_mode == CompressionMode.ZLIB:
        try:
            return zlib.decompress(data)
        except zlib.error as e:
            raise DecodeError(f"ZLIB decompression failed: {e}") from e
    elif compression_mode in (CompressionMode.LZ4, CompressionMode.LZ4_LEGACY):
        try:
            return lz4.block.decompress(data)
        except lz4.block.LZ4BlockError as e:
            raise DecodeError(f"LZ4 decompression failed: {e}") from e
    raise DecodeError(f"Unsupported compression mode: {compression_mode}")


def decode_blte(
    data: bytes,
    key: str | None = None,
    key_store: KeyStore | None = None,
    partial_decrypt: bool = False,
) -> bytes:
    """Convenience function to decode BLTE data.

    Args:
        data: BLTE-encoded data
        key: Expected encoding key, used for diagnostics
        key_store: Optional TACT key lookup for encrypted chunks
        partial_decrypt: Zero-fill blocks whose key is missing

    Returns:
        Decoded data
    """
    return BLTEReader(data, key=key, key_store=key_store, partial_decrypt=partial_decrypt).decode()


def is_blte(data: bytes) -> bool:
    """Check if data starts with BLTE magic."""
    return len(data) >= 4 and data[:4] == BLTEParser.BLTE_MAGIC

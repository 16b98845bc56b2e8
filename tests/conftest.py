"""Pytest configuration and shared fixtures for casc_source tests."""

import hashlib
import struct
import tempfile
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from pathlib import Path

import httpx
import pytest

from casc_source.core.types import ContentFlags, LocaleFlags
from casc_source.core.utils import format_cdn_key


# Binary builders


def make_blte(blocks: list[bytes], decompressed_sizes: list[int] | None = None) -> bytes:
    """Build a multi-chunk BLTE file from raw blocks (mode byte + data)."""
    sizes = decompressed_sizes or [len(block) - 1 for block in blocks]
    header_size = 12 + 24 * len(blocks)
    out = b"BLTE" + struct.pack(">I", header_size) + b"\x0f" + len(blocks).to_bytes(3, "big")
    for block, size in zip(blocks, sizes, strict=True):
        out += struct.pack(">II", len(block), size) + hashlib.md5(block).digest()
    return out + b"".join(blocks)


def make_single_blte(payload: bytes, mode: bytes = b"N") -> bytes:
    """Build a single-chunk BLTE file (header size 0)."""
    return b"BLTE" + struct.pack(">I", 0) + mode + payload


def make_encoding(
    entries: list[tuple[bytes, bytes, int]],
    page_size_kb: int = 1,
    espec: bytes = b"",
    extra_ekeys: int = 0,
) -> bytes:
    """Build a decoded encoding file holding `(ckey, ekey, size)` entries in one page."""
    page = b""
    for ckey, ekey, size in entries:
        page += bytes([1 + extra_ekeys]) + size.to_bytes(5, "big") + ckey + ekey + b"\xee" * 16 * extra_ekeys
    page_size = page_size_kb * 1024
    assert len(page) <= page_size
    page = page.ljust(page_size, b"\x00")

    header = b"EN" + bytes([1, 16, 16])
    header += struct.pack(">HH", page_size_kb, page_size_kb)
    header += struct.pack(">iI", 1, 0)
    header += b"\x00" + struct.pack(">i", len(espec))

    page_index = entries[0][0] + hashlib.md5(page).digest()
    return header + espec + page_index + page


def fdid_deltas(file_data_ids: list[int]) -> list[int]:
    deltas = []
    previous = -1
    for file_data_id in file_data_ids:
        deltas.append(file_data_id - previous - 1)
        previous = file_data_id
    return deltas


@dataclass
class RootBlock:
    """One root block for the builders below."""
    locale_flags: int
    records: list[tuple[int, bytes]]
    content_flags: int = 0
    name_hashes: bool = True


def _block_fdids(block: RootBlock) -> bytes:
    deltas = fdid_deltas([fdid for fdid, _ in block.records])
    return struct.pack(f"<{len(deltas)}i", *deltas)


def make_legacy_root(blocks: list[RootBlock]) -> bytes:
    out = b""
    for block in blocks:
        out += struct.pack("<III", len(block.records), block.content_flags, block.locale_flags)
        out += _block_fdids(block)
        for _, ckey in block.records:
            out += ckey + b"\x11" * 8
    return out


def make_modern_root(blocks: list[RootBlock], total: int | None = None, named: int | None = None) -> bytes:
    count = sum(len(block.records) for block in blocks)
    out = b"TSFM" + struct.pack("<II", total if total is not None else count, named if named is not None else count)
    for block in blocks:
        out += struct.pack("<III", len(block.records), block.content_flags, block.locale_flags)
        out += _block_fdids(block)
        out += b"".join(ckey for _, ckey in block.records)
        if block.name_hashes:
            out += b"\x22" * 8 * len(block.records)
    return out


def make_modern_v2_root(blocks: list[RootBlock]) -> bytes:
    count = sum(len(block.records) for block in blocks)
    out = b"TSFM" + struct.pack("<IIIII", 24, 2, count, count, 0)
    for block in blocks:
        flags1 = block.content_flags & 0xFFFF
        flags2 = block.content_flags & ~0xFFFF & 0x1FFFF
        flags3 = block.content_flags >> 17
        out += struct.pack("<IIII", len(block.records), block.locale_flags, flags1, flags2) + bytes([flags3])
        out += _block_fdids(block)
        out += b"".join(ckey for _, ckey in block.records)
        out += b"\x22" * 8 * len(block.records)
    return out


def make_archive_index(
    entries: list[tuple[bytes, int, int]],
    page_size_kb: int = 4,
    offset_bytes: int = 4,
) -> bytes:
    """Build a CDN archive index from `(ekey, size, offset)` entries."""
    entry_size = 16 + 4 + offset_bytes
    page_size = page_size_kb * 1024
    per_page = page_size // entry_size

    pages = []
    for start in range(0, len(entries), per_page):
        page = b""
        for ekey, size, offset in entries[start:start + per_page]:
            page += ekey + struct.pack(">I", size)
            if offset_bytes:
                page += offset.to_bytes(offset_bytes, "big")
        pages.append(page.ljust(page_size, b"\x00"))

    toc = b"".join(page[:16] for page in pages) + b"\x00" * 8 * len(pages)
    footer = b"\x00" * 8 + bytes([1, 0, 0, page_size_kb, offset_bytes, 4, 16, 8])
    footer += struct.pack("<I", len(entries)) + b"\x00" * 8
    return b"".join(pages) + toc + footer


def make_install(
    files: list[tuple[str, bytes, int]],
    tags: list[tuple[str, int, list[int]]],
    version: int = 1,
) -> bytes:
    """Build a decoded install manifest; each tag lists the indices of its files."""
    mask_size = (len(files) + 7) // 8
    data = b"IN" + bytes([version, 16]) + struct.pack(">HI", len(tags), len(files))
    for name, tag_type, indices in tags:
        mask = bytearray(mask_size)
        for index in indices:
            mask[index // 8] |= 1 << (index % 8)
        data += name.encode() + b"\x00" + struct.pack(">H", tag_type) + bytes(mask)
    for name, ckey, size in files:
        data += name.encode() + b"\x00" + ckey + struct.pack(">I", size)
        if version >= 2:
            data += bytes([1])
    return data


def make_local_index(entries: list[tuple[bytes, int, int, int]], bucket: int = 0) -> bytes:
    """Build a local .idx from `(key, archive_id, offset, size)` entries."""
    header = struct.pack("<II", 0x10, 0)
    header += struct.pack("<HBB", 7, bucket, 0) + bytes([4, 5, 9, 30])
    header += struct.pack("<Q", 0x4000000000)
    header = header.ljust(0x20, b"\x00")

    body = b""
    for key, archive_id, offset, size in entries:
        location = (archive_id << 30) | offset
        body += key[:9] + location.to_bytes(5, "big") + struct.pack("<I", size)

    return header + struct.pack("<II", len(body), 0) + body


# Keys shared by the synthetic builds

ROOT_CKEY = bytes.fromhex("aa" * 16)
FILE_CKEY = bytes.fromhex("bb" * 16)
ENCODING_EKEY = bytes.fromhex("e0" * 16)
ROOT_EKEY = bytes.fromhex("e1" * 16)
FILE_EKEY = bytes.fromhex("e2" * 16)
LOOSE_CKEY = bytes.fromhex("cc" * 16)
LOOSE_EKEY = bytes.fromhex("e3" * 16)
INSTALL_CKEY = bytes.fromhex("dd" * 16)
INSTALL_EKEY = bytes.fromhex("e4" * 16)
BUILD_CONFIG_KEY = "b0" * 16
CDN_CONFIG_KEY = "c0" * 16
ARCHIVE_KEY = "a0" * 16
FILE_INDEX_KEY = "f0" * 16

FILE_DATA_ID = 100
LOOSE_FILE_DATA_ID = 200
FILE_PAYLOAD = b"synthetic file payload"
LOOSE_PAYLOAD = b"loose file payload"
INSTALL_FILES = [
    ("Wow.exe", bytes.fromhex("01" * 16), 1000),
    ("WowClassic.exe", bytes.fromhex("02" * 16), 2000),
    ("Data/enUS/locale.dat", bytes.fromhex("03" * 16), 30),
]
INSTALL_TAGS = [("Windows", 1, [0, 1]), ("enUS", 3, [0, 2])]


def _encoding_bytes() -> bytes:
    return make_single_blte(make_encoding([
        (ROOT_CKEY, ROOT_EKEY, 64),
        (FILE_CKEY, FILE_EKEY, len(FILE_PAYLOAD)),
        (LOOSE_CKEY, LOOSE_EKEY, len(LOOSE_PAYLOAD)),
        (INSTALL_CKEY, INSTALL_EKEY, 256),
    ]))


def _install_bytes() -> bytes:
    return make_single_blte(make_install(INSTALL_FILES, INSTALL_TAGS))


def _root_bytes() -> bytes:
    return make_single_blte(make_modern_root([
        RootBlock(
            locale_flags=LocaleFlags.enUS | LocaleFlags.enGB,
            records=[(FILE_DATA_ID, FILE_CKEY), (LOOSE_FILE_DATA_ID, LOOSE_CKEY)],
        ),
        RootBlock(
            locale_flags=LocaleFlags.deDE,
            content_flags=ContentFlags.LOAD_ON_WINDOWS,
            records=[(300, FILE_CKEY)],
        ),
    ]))


def _build_config_text() -> str:
    return (
        "# Build Configuration\n\n"
        f"root = {ROOT_CKEY.hex()}\n"
        f"encoding = {'d0' * 16} {ENCODING_EKEY.hex()}\n"
        "encoding-size = 1024 512\n"
        f"install = {INSTALL_CKEY.hex()} {INSTALL_EKEY.hex()}\n"
        "build-name = WOW-12345patch10.0.0_Retail\n"
        "build-product = WoW\n"
    )


# Local installation


@dataclass
class LocalInstall:
    path: Path
    payload: bytes = FILE_PAYLOAD


def build_local_install(root: Path) -> LocalInstall:
    """Lay out a minimal installation: .build.info, configs, one index and one data file."""
    (root / ".build.info").write_text(
        "Branch!STRING:0|Active!DEC:1|Build Key!HEX:16|CDN Key!HEX:16|CDN Path!STRING:0"
        "|CDN Hosts!STRING:0|Version!STRING:0|KeyRing!HEX:16|Product!STRING:0\n"
        f"us|1|{BUILD_CONFIG_KEY}|{CDN_CONFIG_KEY}|tpr/wow|a.example b.example|10.0.0.12345||wow\n"
        f"eu|0|{'b1' * 16}|{CDN_CONFIG_KEY}|tpr/wow|a.example|9.0.0.1||wow\n",
        encoding="utf-8",
    )

    for key, text in (
        (BUILD_CONFIG_KEY, _build_config_text()),
        (CDN_CONFIG_KEY, "# CDN Configuration\n"),
    ):
        path = root / "Data" / "config" / format_cdn_key(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    data_dir = root / "Data" / "data"
    data_dir.mkdir(parents=True, exist_ok=True)

    blob = b""
    index_entries = []
    for ekey, content in (
        (ENCODING_EKEY, _encoding_bytes()),
        (ROOT_EKEY, _root_bytes()),
        (FILE_EKEY, make_single_blte(FILE_PAYLOAD)),
        (INSTALL_EKEY, _install_bytes()),
    ):
        record = b"\x00" * 0x1E + content
        index_entries.append((ekey, 0, len(blob), len(record)))
        blob += record

    (data_dir / "data.000").write_bytes(blob)
    # An older generation of the same bucket must be ignored
    (data_dir / "0000000001.idx").write_bytes(make_local_index([]))
    (data_dir / "0000000002.idx").write_bytes(make_local_index(index_entries))
    return LocalInstall(path=root)


# Remote CDN


VERSIONS_TEXT = (
    "Region!STRING:0|BuildConfig!HEX:16|CDNConfig!HEX:16|KeyRing!HEX:16|BuildId!DEC:4"
    "|VersionsName!String:0|ProductConfig!HEX:16\n"
    "## seqn = 2241282\n"
    f"us|{BUILD_CONFIG_KEY}|{CDN_CONFIG_KEY}||12345|10.0.0.12345|\n"
    f"eu|{BUILD_CONFIG_KEY}|{CDN_CONFIG_KEY}||12345|10.0.0.12345|\n"
)

CDNS_TEXT = (
    "Name!STRING:0|Path!STRING:0|Hosts!STRING:0|Servers!STRING:0|ConfigPath!STRING:0\n"
    "## seqn = 2241280\n"
    "eu|tpr/wow|eu.cdn.example|http://eu.cdn.example/?maxhosts=4|tpr/configs/data\n"
    "us|tpr/wow|us.cdn.example|http://us.cdn.example/?maxhosts=4|tpr/configs/data\n"
)


@dataclass
class FakeCDN:
    """Serves a synthetic build from patch server and CDN routes."""
    routes: dict[str, bytes] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "HEAD":
            return httpx.Response(200)

        content = self.routes.get(request.url.path)
        if content is None:
            return httpx.Response(404)

        range_header = request.headers.get("Range")
        if range_header:
            start, end = (int(v) for v in range_header.removeprefix("bytes=").split("-"))
            return httpx.Response(206, content=content[start:end + 1])
        return httpx.Response(200, content=content)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


def build_fake_cdn() -> FakeCDN:
    cdn = FakeCDN()

    def data_path(key: str) -> str:
        return "/tpr/wow/data/" + format_cdn_key(key)

    archive = b"\xff" * 100 + make_single_blte(FILE_PAYLOAD)
    cdn.routes.update({
        "/wow/versions": VERSIONS_TEXT.encode(),
        "/wow/cdns": CDNS_TEXT.encode(),
        "/tpr/wow/config/" + format_cdn_key(BUILD_CONFIG_KEY): _build_config_text().encode(),
        "/tpr/wow/config/" + format_cdn_key(CDN_CONFIG_KEY): (
            f"archives = {ARCHIVE_KEY} {'a1' * 16}\n"
            "archives-index-size = 4124 4124\n"
            f"file-index = {FILE_INDEX_KEY}\n"
            "file-index-size = 4124\n"
        ).encode(),
        data_path(ARCHIVE_KEY) + ".index": make_archive_index([
            (FILE_EKEY, len(archive) - 100, 100),
        ]),
        # The second archive's index is missing and must not fail the load
        data_path(FILE_INDEX_KEY) + ".index": make_archive_index(
            [(LOOSE_EKEY, len(make_single_blte(LOOSE_PAYLOAD)), 0)],
            offset_bytes=0,
        ),
        data_path(ARCHIVE_KEY): archive,
        data_path(ENCODING_EKEY.hex()): _encoding_bytes(),
        data_path(ROOT_EKEY.hex()): _root_bytes(),
        data_path(LOOSE_EKEY.hex()): make_single_blte(LOOSE_PAYLOAD),
        data_path(INSTALL_EKEY.hex()): _install_bytes(),
    })
    return cdn


# Fixtures


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def local_install(temp_dir: Path) -> LocalInstall:
    """A synthetic local installation."""
    install_dir = temp_dir / "install"
    install_dir.mkdir()
    return build_local_install(install_dir)


@pytest.fixture
def fake_cdn() -> FakeCDN:
    """A synthetic patch server and CDN."""
    return build_fake_cdn()


@pytest.fixture
def listfile_path(temp_dir: Path) -> Callable[[str], Path]:
    """Write a listfile CSV and return its path."""
    def write(text: str) -> Path:
        path = temp_dir / "listfile.csv"
        path.write_text(text, encoding="utf-8")
        return path
    return write


# Pytest configuration
def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest settings."""
    config.addinivalue_line(
        "markers", "integration: marks tests that run a full client load"
    )

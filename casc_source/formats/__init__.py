"""Format parsers for CASC data.

- BLTE: Block Table Encoded compression/encryption
- Encoding: Content key to encoding key mappings
- Root: FileDataID to content key mappings
- Archive indices: CDN archive and file indices
- Local indices: .idx files of a local installation
- Configuration files: build/CDN configs and BPSV documents
- Install: install manifests
"""

from casc_source.formats.archive_index import ArchiveIndex, ArchiveIndexEntry, ArchiveIndexParser
from casc_source.formats.base import FormatParser
from casc_source.formats.blte import BLTEParser, BLTEReader, decode_blte, is_blte
from casc_source.formats.config import (
    BPSVParser,
    BuildConfig,
    BuildConfigParser,
    CDNConfig,
    CDNConfigParser,
)
from casc_source.formats.encoding import EncodingEntry, EncodingParser, EncodingTable
from casc_source.formats.install import InstallEntry, InstallManifest, InstallParser
from casc_source.formats.local_index import LocalIndexEntry, parse_local_index
from casc_source.formats.root import RootLayout, RootParser, RootTable, RootType, RootTypeArena

__all__ = [
    "ArchiveIndex",
    "ArchiveIndexEntry",
    "ArchiveIndexParser",
    "BLTEParser",
    "BLTEReader",
    "BPSVParser",
    "BuildConfig",
    "BuildConfigParser",
    "CDNConfig",
    "CDNConfigParser",
    "EncodingEntry",
    "EncodingParser",
    "EncodingTable",
    "FormatParser",
    "InstallEntry",
    "InstallManifest",
    "InstallParser",
    "LocalIndexEntry",
    "RootLayout",
    "RootParser",
    "RootTable",
    "RootType",
    "RootTypeArena",
    "decode_blte",
    "is_blte",
    "parse_local_index",
]

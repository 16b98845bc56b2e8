"""Core functionality for casc_source.

- Configuration management
- Type definitions and errors
- Disk cache and CDN resolution
- CASC clients (local and remote) and their load pipeline
"""

from casc_source.core.cache import DiskCache
from casc_source.core.config import AppConfig, CacheConfig, CDNSettings
from casc_source.core.types import (
    PRODUCTS,
    BuildInfo,
    ClientState,
    CompressionMode,
    ContentFlags,
    EncryptionType,
    LocaleFlags,
    ResolvedFile,
)
from casc_source.core.utils import compute_md5, format_cdn_key, format_size, hexlify, validate_hash_string

__all__ = [
    # Types
    "BuildInfo",
    "ClientState",
    "CompressionMode",
    "ContentFlags",
    "EncryptionType",
    "LocaleFlags",
    "PRODUCTS",
    "ResolvedFile",
    # Config
    "AppConfig",
    "CacheConfig",
    "CDNSettings",
    "DiskCache",
    # Utils
    "compute_md5",
    "format_cdn_key",
    "format_size",
    "hexlify",
    "validate_hash_string",
]

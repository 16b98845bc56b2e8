"""casc-source - CASC content resolution for local installs and Blizzard CDNs.

This package resolves game assets by FileDataID from Blizzard's content
addressable storage, either from a local game installation or from the
remote CDN.

Key modules:
- core: Client orchestration, CDN resolution, caching, configuration
- formats: Binary and text format parsers (BLTE, encoding, root, indices)
- database: External collaborators (TACT keys, listfile)
- commands: CLI command implementations
"""

__version__ = "0.1.0"
__author__ = "casc-source contributors"

from casc_source.core.errors import (
    CacheIOError,
    CASCError,
    CASCLookupError,
    ConfigFetchError,
    DecodeError,
    HostResolutionError,
    LookupReason,
)
from casc_source.core.types import ClientState, ContentFlags, LocaleFlags

__all__ = [
    "__version__",
    "__author__",
    "CASCError",
    "CASCLookupError",
    "CacheIOError",
    "ClientState",
    "ConfigFetchError",
    "ContentFlags",
    "DecodeError",
    "HostResolutionError",
    "LocaleFlags",
    "LookupReason",
]

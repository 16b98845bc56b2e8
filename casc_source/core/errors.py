"""Exception types raised by the CASC client.

Load-pipeline failures (config fetch, decode, host resolution) are terminal
for the load attempt. Lookup failures carry a reason so callers can tell an
unknown FileDataID from a missing locale variant or a missing storage mapping.
"""

from __future__ import annotations

from enum import StrEnum


class CASCError(Exception):
    """Base class for all casc_source errors."""


class ConfigFetchError(CASCError):
    """Raised when a required text document cannot be fetched.

    Attributes:
        url: Requested URL
        status_code: HTTP status code, or None when no response was received
    """

    def __init__(self, message: str, *, url: str, status_code: int | None = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class DecodeError(CASCError):
    """Raised on bad magic or structural inconsistency in binary data."""


class LookupReason(StrEnum):
    """Resolution stage at which a lookup failed."""
    NO_ROOT_ENTRY = "no root entry"
    NO_LOCALE_ENTRY = "no entry for locale"
    NO_ENCODING_ENTRY = "no encoding entry"
    NO_ARCHIVE_ENTRY = "no archive entry"
    NOT_IN_LISTFILE = "not in listfile"


class CASCLookupError(CASCError, LookupError):
    """Raised when an identifier cannot be resolved.

    Attributes:
        reason: Resolution stage that failed
        key: FileDataID, key or name being resolved
    """

    def __init__(self, reason: LookupReason, key: int | str | None = None):
        self.reason = reason
        self.key = key
        message = reason.value if key is None else f"{reason.value}: {key}"
        super().__init__(message)


class HostResolutionError(CASCError):
    """Raised when no CDN host answered a ping."""


class CacheIOError(CASCError):
    """Raised when a local cache file cannot be read or written.

    Attributes:
        path: Cache file path
    """

    def __init__(self, message: str, *, path: str):
        self.path = path
        super().__init__(message)


class EmptyListfileError(CASCError):
    """Raised when the listfile collaborator loads no entries for a build."""


class ClientNotReadyError(RuntimeError):
    """Raised when a lookup is attempted before the client finished loading."""

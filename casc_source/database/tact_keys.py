"""TACT encryption key registry."""

from __future__ import annotations

import httpx
import structlog
from pydantic import BaseModel, Field

from casc_source.core.utils import hexlify, validate_hash_string

logger = structlog.get_logger()

KEY_NAME_LENGTH = 16
KEY_VALUE_LENGTH = 32


class TACTKey(BaseModel):
    """TACT encryption key entry."""

    key_name: str = Field(description="Key name (8 bytes hex)")
    key_value: str = Field(description="Key value (16 bytes hex)")
    description: str | None = Field(default=None, description="Key description")


class TACTKeyRegistry:
    """In-memory registry of TACT keys, consumed by the BLTE reader.

    Key names are stored upper-case, in the byte order used by the
    community key lists.
    """

    def __init__(self):
        self._keys: dict[str, TACTKey] = {}

    def add_key(self, key_name: str, key_value: str, description: str | None = None) -> bool:
        """Validate and register a key.

        Args:
            key_name: 16 hex characters
            key_value: 32 hex characters

        Returns:
            True if registered, False if either value is malformed
        """
        if not isinstance(key_name, str) or not isinstance(key_value, str):
            return False
        key_name = key_name.strip()
        key_value = key_value.strip()
        if not validate_hash_string(key_name, KEY_NAME_LENGTH) or not validate_hash_string(key_value, KEY_VALUE_LENGTH):
            logger.debug("tact_key_rejected", key_name=key_name)
            return False

        self._keys[key_name.upper()] = TACTKey(
            key_name=key_name.upper(),
            key_value=key_value.upper(),
            description=description,
        )
        return True

    def get_key(self, key_name: str | bytes) -> bytes | None:
        """Get a key's raw value by name.

        Args:
            key_name: Key name (hex string or bytes)

        Returns:
            16-byte key if known, None otherwise
        """
        if isinstance(key_name, bytes):
            key_name = hexlify(key_name, upper=True)
        key = self._keys.get(key_name.upper())
        return bytes.fromhex(key.key_value) if key else None

    def has_key(self, key_name: str) -> bool:
        return key_name.upper() in self._keys

    def load_text(self, text: str) -> int:
        """Register keys from a key list.

        Lines are `NAME KEY [description]` or `NAME;KEY;description`;
        blank lines and `#` comments are skipped.

        Returns:
            Number of keys registered
        """
        added = 0
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            parts = line.split(";") if ";" in line else line.split(None, 2)
            if len(parts) < 2:
                continue

            description = parts[2].strip() if len(parts) > 2 and parts[2].strip() else None
            if self.add_key(parts[0], parts[1], description):
                added += 1

        logger.info("tact_keys_loaded", count=added, total=len(self._keys))
        return added

    def fetch(self, url: str, timeout: float = 30.0) -> int:
        """Download a key list and register its keys.

        Raises:
            httpx.HTTPError: On fetch errors
        """
        logger.info("tact_keys_fetching", url=url)
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            response = client.get(url)
            response.raise_for_status()
        return self.load_text(response.text)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key_name: object) -> bool:
        return isinstance(key_name, str) and key_name.upper() in self._keys

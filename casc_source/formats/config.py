"""Text configuration parsers for CASC.

Two text formats are handled here:

- `key = value` documents (build config, CDN config), fetched from
  `config/<2>/<2>/<key>` on the CDN or `Data/config/...` locally
- Blizzard pipe-separated values (BPSV): the patch server's version and
  server (CDN) configs and a local install's `.build.info`
"""

from __future__ import annotations

from typing import BinaryIO

import structlog
from pydantic import BaseModel, Field

from casc_source.core.types import BuildInfo
from casc_source.formats.base import FormatParser

logger = structlog.get_logger()


def _decode_text(data: bytes | BinaryIO) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode("utf-8", errors="replace")
    return data.read().decode("utf-8", errors="replace")


def parse_key_value_config(content: str) -> dict[str, str]:
    """Parse `key = value` lines, skipping blanks and `#` comments."""
    config: dict[str, str] = {}

    for line in content.strip().split("\n"):
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        if " = " in line:
            key, value = line.split(" = ", 1)
            config[key.strip()] = value.strip()
        elif line.endswith(" ="):
            config[line[:-2].strip()] = ""

    return config


class BuildConfig(BaseModel):
    """Build configuration structure."""

    root: str | None = Field(default=None, description="Root content key")
    encoding: str | None = Field(default=None, description="Encoding content and encoding keys")
    encoding_size: str | None = Field(default=None, description="Encoding sizes")
    install: str | None = Field(default=None, description="Install content and encoding keys")
    build_name: str | None = Field(default=None, description="Build name")
    build_product: str | None = Field(default=None, description="Build product")
    build_uid: str | None = Field(default=None, description="Build UID")
    extra_fields: dict[str, str] = Field(default_factory=dict, description="Additional fields")

    @property
    def root_ckey(self) -> str | None:
        """Root content key (first token of the root field)."""
        return self.root.split()[0] if self.root else None

    @property
    def encoding_ckey(self) -> str | None:
        """Encoding file content key."""
        return self.encoding.split()[0] if self.encoding else None

    @property
    def encoding_ekey(self) -> str | None:
        """Encoding file encoding key, the second token of the encoding field."""
        if not self.encoding:
            return None
        keys = self.encoding.split()
        return keys[1] if len(keys) > 1 else None


class CDNConfig(BaseModel):
    """CDN configuration structure."""

    archives: list[str] = Field(default_factory=list, description="Archive hashes")
    archives_index_size: list[int] = Field(default_factory=list, description="Archive index sizes")
    archive_group: str | None = Field(default=None, description="Archive group")
    file_index: str | None = Field(default=None, description="File index hash")
    file_index_size: int | None = Field(default=None, description="File index size")
    builds: list[str] = Field(default_factory=list, description="Build config hashes")
    extra_fields: dict[str, str] = Field(default_factory=dict, description="Additional fields")


class BuildConfigParser(FormatParser[BuildConfig]):
    """Parser for build configuration files."""

    FIELDS = {
        "root": "root",
        "encoding": "encoding",
        "encoding-size": "encoding_size",
        "install": "install",
        "build-name": "build_name",
        "build-product": "build_product",
        "build-uid": "build_uid",
    }

    def parse(self, data: bytes | BinaryIO) -> BuildConfig:
        """Parse build configuration.

        Args:
            data: Binary data or stream

        Returns:
            Parsed build configuration
        """
        config_dict = parse_key_value_config(_decode_text(data))

        values: dict[str, str] = {}
        extra: dict[str, str] = {}
        for key, value in config_dict.items():
            if key in self.FIELDS:
                values[self.FIELDS[key]] = value
            else:
                extra[key] = value

        return BuildConfig(**values, extra_fields=extra)


class CDNConfigParser(FormatParser[CDNConfig]):
    """Parser for CDN configuration files."""

    def parse(self, data: bytes | BinaryIO) -> CDNConfig:
        """Parse CDN configuration.

        Args:
            data: Binary data or stream

        Returns:
            Parsed CDN configuration
        """
        config_dict = parse_key_value_config(_decode_text(data))

        config = CDNConfig()
        for key, value in config_dict.items():
            if key == "archives":
                config.archives = value.split()
            elif key == "archives-index-size":
                config.archives_index_size = [int(v) for v in value.split() if v.isdigit()]
            elif key == "archive-group":
                config.archive_group = value or None
            elif key == "file-index":
                config.file_index = value or None
            elif key == "file-index-size":
                config.file_index_size = int(value) if value.isdigit() else None
            elif key == "builds":
                config.builds = value.split()
            else:
                config.extra_fields[key] = value

        return config


class BPSVParser:
    """Parser for Blizzard Pipe-Separated Values format."""

    def parse(self, manifest: str) -> list[dict[str, str]]:
        """Parse BPSV manifest into list of dictionaries.

        The first non-comment line is the header (`Name!TYPE:size|...`);
        lines starting with `##` (e.g. `## seqn = 123`) are skipped.

        Args:
            manifest: BPSV manifest text

        Returns:
            List of parsed entries
        """
        lines = [
            line.strip() for line in manifest.splitlines()
            if line.strip() and not line.strip().startswith("##")
        ]
        if not lines:
            return []

        columns = [column_def.split("!")[0] for column_def in lines[0].split("|")]

        results = []
        for line in lines[1:]:
            values = line.split("|")
            # Missing trailing values become empty strings
            results.append({
                column: values[i] if i < len(values) else ""
                for i, column in enumerate(columns)
            })

        return results


def parse_version_config(product: str, text: str) -> list[BuildInfo]:
    """Turn a product's version config into one BuildInfo per region row."""
    builds = []
    for row in BPSVParser().parse(text):
        build_id = row.get("BuildId", "")
        builds.append(BuildInfo(
            product=product,
            region=row.get("Region", ""),
            build_config=row.get("BuildConfig", ""),
            cdn_config=row.get("CDNConfig", ""),
            keyring=row.get("KeyRing") or None,
            build_id=int(build_id) if build_id.isdigit() else None,
            version_name=row.get("VersionsName") or None,
            product_config=row.get("ProductConfig") or None,
        ))
    return builds


def parse_build_info(text: str) -> list[BuildInfo]:
    """Parse a local install's `.build.info` into builds.

    Only rows marked active are returned when the file has an Active column.
    """
    rows = BPSVParser().parse(text)
    if rows and "Active" in rows[0]:
        rows = [row for row in rows if row.get("Active") == "1"]

    return [
        BuildInfo(
            product=row.get("Product", "wow"),
            region=row.get("Branch", ""),
            build_config=row.get("Build Key", ""),
            cdn_config=row.get("CDN Key", ""),
            keyring=row.get("KeyRing") or None,
            version_name=row.get("Version") or None,
            cdn_path=row.get("CDN Path", ""),
            cdn_hosts=row.get("CDN Hosts", ""),
        )
        for row in rows
    ]

"""Core type definitions for casc_source."""

from enum import Enum, IntFlag, StrEnum

from pydantic import BaseModel, ConfigDict, Field


class CompressionMode(StrEnum):
    """BLTE block modes."""
    NONE = "N"
    ZLIB = "Z"
    LZ4 = "4"
    LZ4_LEGACY = "L"
    ENCRYPTED = "E"
    FRAME = "F"


class EncryptionType(Enum):
    """BLTE encryption types."""
    SALSA20 = 0x53
    ARC4 = 0x41


class LocaleFlags(IntFlag):
    """Root manifest locale bits."""
    ALL = 0xFFFFFFFF
    NONE = 0
    UNK_1 = 0x1
    enUS = 0x2
    koKR = 0x4
    UNK_8 = 0x8
    frFR = 0x10
    deDE = 0x20
    zhCN = 0x40
    esES = 0x80
    zhTW = 0x100
    enGB = 0x200
    enCN = 0x400
    enTW = 0x800
    esMX = 0x1000
    ruRU = 0x2000
    ptBR = 0x4000
    itIT = 0x8000
    ptPT = 0x10000


class ContentFlags(IntFlag):
    """Root manifest content bits."""
    NONE = 0
    LOAD_ON_WINDOWS = 0x8
    LOAD_ON_MACOS = 0x10
    LOW_VIOLENCE = 0x80
    DO_NOT_LOAD = 0x100
    UPDATE_PLUGIN = 0x800
    ENCRYPTED = 0x8000000
    NO_NAME_HASH = 0x10000000
    UNCOMMON_RESOLUTION = 0x20000000
    BUNDLE = 0x40000000
    NO_COMPRESSION = 0x80000000


class ClientState(StrEnum):
    """Load progress of a CASC client."""
    UNLOADED = "unloaded"
    CONFIGS_LOADED = "configs_loaded"
    ENCODING_LOADED = "encoding_loaded"
    ROOT_LOADED = "root_loaded"
    ARCHIVES_LOADED = "archives_loaded"
    READY = "ready"


# Product code -> display label.
PRODUCTS: dict[str, str] = {
    "wow": "Retail",
    "wowt": "PTR",
    "wowxptr": "PTR 2",
    "wow_beta": "Beta",
    "wowe1": "Event",
    "wow_classic": "Classic",
    "wow_classic_beta": "Classic Beta",
    "wow_classic_ptr": "Classic PTR",
    "wow_classic_era": "Classic Era",
    "wow_classic_era_ptr": "Classic Era PTR",
}


class BuildInfo(BaseModel):
    """A selectable build, from a remote version config or a local .build.info."""
    product: str = Field(..., description="Product code")
    region: str = Field(default="", description="Region code")
    build_config: str = Field(..., description="Build config hash")
    cdn_config: str = Field(..., description="CDN config hash")
    keyring: str | None = Field(None, description="Keyring hash")
    build_id: int | None = Field(None, description="Build ID")
    version_name: str | None = Field(None, description="Version string")
    product_config: str | None = Field(None, description="Product config hash")

    model_config = ConfigDict(extra="allow")

    @property
    def label(self) -> str:
        """Display label, e.g. 'Retail 10.2.0.52607'."""
        name = PRODUCTS.get(self.product, self.product)
        return f"{name} {self.version_name or ''}".strip()


class ResolvedFile(BaseModel):
    """The keys a FileDataID resolves to under the active locale."""
    file_data_id: int
    content_key: str
    encoding_key: str
    size: int

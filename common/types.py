"""Shared data type definitions (RawRecord, Page, Game, CartridgeInfo, results)."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from common.records import Header, SemVer


@dataclass
class RawRecord:
    """
    One ledger record as yielded by a driver scan.

    Payload is carried either as bytes or as the hex string the backend
    returned; `payload_bytes()` decodes hex lazily so magic checks on
    `payload_hex` avoid decoding foreign records.
    """
    record_id: str
    sender: str = ""
    recipient: str = ""
    height: int = 0
    payload: bytes = b""
    payload_hex: str = ""
    fields: Optional[Dict[str, Any]] = None

    def payload_bytes(self) -> bytes:
        if self.payload or not self.payload_hex:
            return self.payload
        text = self.payload_hex[2:] if self.payload_hex[:2] in ("0x", "0X") else self.payload_hex
        try:
            return bytes.fromhex(text)
        except ValueError:
            return b""


@dataclass
class Page:
    """
    One page from a backend listing.

    Attributes:
        records: Records in newest-first order
        next_cursor: Native continuation token, or None when the cursor is the
            last record id
        exhausted: True when the backend reports no further pages
    """
    records: List[RawRecord]
    next_cursor: Optional[str] = None
    exhausted: bool = False


@dataclass(frozen=True)
class CartridgeInfo:
    """
    A discovered cartridge header and where it was found.
    """
    address: str
    header: Header
    record_id: str
    height: int = 0
    sender: str = ""
    content_ref: Optional[str] = None

    @property
    def cache_id(self) -> str:
        """Cache identifier: object location for blob-backed cartridges, else the numeric id."""
        if self.content_ref:
            return self.address
        return str(self.header.cartridge_id)


@dataclass(frozen=True)
class GameVersion:
    """
    One published version of a game.
    """
    semver: SemVer
    cartridge_address: str
    flags: int
    record_id: str
    height: int

    @property
    def sort_key(self):
        return (self.semver.major, self.semver.minor, self.semver.patch, self.height)


@dataclass
class Game:
    """
    All catalog entries for one app id, versions newest first.
    """
    app_id: int
    title: str
    platform: str
    retired: bool = False
    versions: List[GameVersion] = field(default_factory=list)

    @property
    def latest(self) -> Optional[GameVersion]:
        return self.versions[0] if self.versions else None


@dataclass(frozen=True)
class DownloadProgress:
    """
    Snapshot reported to download progress callbacks.
    """
    phase: str
    chunks_found: int = 0
    expected_chunks: int = 0
    bytes: int = 0
    pages_fetched: int = 0
    records_fetched: int = 0
    rate: float = 0.0


@dataclass(frozen=True)
class DownloadResult:
    """Verified cartridge content."""
    data: bytes
    info: CartridgeInfo
    verified: bool
    from_cache: bool = False


@dataclass(frozen=True)
class UploadResult:
    """
    Outcome of one upload run.
    """
    complete: bool
    sent_chunks: int
    total_chunks: int
    failed_chunks: List[int]
    checksum_hex: str
    header_reference: Optional[str] = None
    catalog_reference: Optional[str] = None
    progress_path: Optional[str] = None
    cartridge_address: Optional[str] = None

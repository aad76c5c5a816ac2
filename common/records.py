"""
Fixed-size binary record codec.

Every record is exactly 64 bytes, starts with a 4-byte ASCII magic and stores
multi-byte integers little-endian:

    CART  header         schema, platform, chunkSize, flags, cartridgeId u32,
                         totalSize u64, sha256[32], reserved[12]
    DATA  chunk          cartridgeId u32, chunkIndex u32, len u8, data[51]
    CENT  catalog entry  schema, platform, flags, appId u32, semver[3],
                         cartridgeRef[20], title[16], reserved[14]

Decoders never raise on malformed input; they return None so that scanning
code can skip unrelated or corrupt payloads.
"""

import dataclasses
import struct
from dataclasses import dataclass
from typing import List, NamedTuple, Optional

from common.constants import (
    CARTRIDGE_REF_SIZE,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_SCHEMA,
    FLAG_RETIRED,
    MAGIC_CATALOG_ENTRY,
    MAGIC_CHUNK,
    MAGIC_HEADER,
    MAX_CHUNK_DATA,
    MAX_TITLE_BYTES,
    RECORD_SIZE,
)
from common.exceptions import MalformedRecordError

_HEADER_STRUCT = struct.Struct("<4sBBBBIQ32s12x")
_CHUNK_STRUCT = struct.Struct("<4sIIB51s")
_CATALOG_STRUCT = struct.Struct("<4sBBBIBBB20s16s14x")

KIND_HEADER = "header"
KIND_CHUNK = "chunk"
KIND_CATALOG_ENTRY = "catalog_entry"

_KINDS_BY_MAGIC = {
    MAGIC_HEADER: KIND_HEADER,
    MAGIC_CHUNK: KIND_CHUNK,
    MAGIC_CATALOG_ENTRY: KIND_CATALOG_ENTRY,
}


class SemVer(NamedTuple):
    """Three-part version; each component fits in one byte."""
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @classmethod
    def parse(cls, text: str) -> "SemVer":
        """
        Parse a "major.minor.patch" string.

        Raises:
            ValueError: If the text is not three integers separated by dots
        """
        parts = text.strip().lstrip("vV").split(".")
        if len(parts) != 3:
            raise ValueError(f"Invalid semantic version: {text!r}")
        return cls(*(int(p) for p in parts))


@dataclass(frozen=True)
class Header:
    """
    Cartridge header: announces size, chunking and checksum of one cartridge.
    """
    cartridge_id: int
    total_size: int
    checksum: bytes
    chunk_size: int = DEFAULT_CHUNK_SIZE
    platform: int = 0
    schema: int = DEFAULT_SCHEMA
    flags: int = 0

    @property
    def checksum_hex(self) -> str:
        return self.checksum.hex()

    @property
    def expected_chunks(self) -> int:
        return expected_chunk_count(self.total_size, self.chunk_size)


@dataclass(frozen=True)
class Chunk:
    """
    One slice of cartridge data. `len(data)` is the wire `len` field.
    """
    cartridge_id: int
    chunk_index: int
    data: bytes

    @property
    def length(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class CatalogEntry:
    """
    Catalog index record pointing at a cartridge header location.
    """
    app_id: int
    semver: SemVer
    cartridge_ref: bytes
    title: str
    platform: int = 0
    schema: int = DEFAULT_SCHEMA
    flags: int = 0

    @property
    def retired(self) -> bool:
        return bool(self.flags & FLAG_RETIRED)

    def as_retired(self) -> "CatalogEntry":
        """Return a copy with the retired flag set."""
        return dataclasses.replace(self, flags=self.flags | FLAG_RETIRED)


def _check_byte(name: str, value: int) -> None:
    if not 0 <= value <= 0xFF:
        raise ValueError(f"{name} must fit in one byte, got {value}")


def _check_u32(name: str, value: int) -> None:
    if not 0 <= value <= 0xFFFFFFFF:
        raise ValueError(f"{name} must fit in 32 bits, got {value}")


def encode_header(header: Header) -> bytes:
    """
    Encode a header record.

    Args:
        header: Header to encode

    Returns:
        64-byte record

    Raises:
        ValueError: If a field is out of range or the checksum is not 32 bytes
    """
    for name in ("schema", "platform", "chunk_size", "flags"):
        _check_byte(name, getattr(header, name))
    _check_u32("cartridge_id", header.cartridge_id)
    if not 0 <= header.total_size <= 0xFFFFFFFFFFFFFFFF:
        raise ValueError(f"total_size out of range: {header.total_size}")
    if len(header.checksum) != 32:
        raise ValueError(f"checksum must be 32 bytes, got {len(header.checksum)}")
    return _HEADER_STRUCT.pack(
        MAGIC_HEADER,
        header.schema,
        header.platform,
        header.chunk_size,
        header.flags,
        header.cartridge_id,
        header.total_size,
        header.checksum,
    )


def decode_header(buffer: bytes) -> Optional[Header]:
    """Decode a header record, or return None if the buffer is not one."""
    if buffer is None or len(buffer) < RECORD_SIZE:
        return None
    magic, schema, platform, chunk_size, flags, cartridge_id, total_size, checksum = (
        _HEADER_STRUCT.unpack_from(buffer)
    )
    if magic != MAGIC_HEADER:
        return None
    return Header(
        cartridge_id=cartridge_id,
        total_size=total_size,
        checksum=checksum,
        chunk_size=chunk_size,
        platform=platform,
        schema=schema,
        flags=flags,
    )


def encode_chunk(chunk: Chunk) -> bytes:
    """
    Encode a chunk record; data shorter than 51 bytes is zero padded.

    Raises:
        ValueError: If the data exceeds 51 bytes or an id is out of range
    """
    if chunk.length > MAX_CHUNK_DATA:
        raise ValueError(f"chunk data must be at most {MAX_CHUNK_DATA} bytes, got {chunk.length}")
    _check_u32("cartridge_id", chunk.cartridge_id)
    _check_u32("chunk_index", chunk.chunk_index)
    return _CHUNK_STRUCT.pack(
        MAGIC_CHUNK, chunk.cartridge_id, chunk.chunk_index, chunk.length, chunk.data
    )


def decode_chunk(buffer: bytes) -> Optional[Chunk]:
    """Decode a chunk record, or return None if the buffer is not one."""
    if buffer is None or len(buffer) < RECORD_SIZE:
        return None
    magic, cartridge_id, chunk_index, length, data = _CHUNK_STRUCT.unpack_from(buffer)
    if magic != MAGIC_CHUNK or length > MAX_CHUNK_DATA:
        return None
    return Chunk(cartridge_id=cartridge_id, chunk_index=chunk_index, data=data[:length])


def _encode_title(title: str) -> bytes:
    raw = title.encode("utf-8")
    if len(raw) > MAX_TITLE_BYTES:
        raise ValueError(f"title must be at most {MAX_TITLE_BYTES} bytes, got {len(raw)}")
    return raw


def _decode_title(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace").strip()


def encode_catalog_entry(entry: CatalogEntry) -> bytes:
    """
    Encode a catalog entry record.

    Raises:
        ValueError: If the title is too long, the reference is not 20 bytes
            or a numeric field is out of range
    """
    for name in ("schema", "platform", "flags"):
        _check_byte(name, getattr(entry, name))
    _check_u32("app_id", entry.app_id)
    for name, value in zip(("major", "minor", "patch"), entry.semver):
        _check_byte(name, value)
    if len(entry.cartridge_ref) != CARTRIDGE_REF_SIZE:
        raise ValueError(
            f"cartridge_ref must be {CARTRIDGE_REF_SIZE} bytes, got {len(entry.cartridge_ref)}"
        )
    return _CATALOG_STRUCT.pack(
        MAGIC_CATALOG_ENTRY,
        entry.schema,
        entry.platform,
        entry.flags,
        entry.app_id,
        entry.semver.major,
        entry.semver.minor,
        entry.semver.patch,
        entry.cartridge_ref,
        _encode_title(entry.title),
    )


def decode_catalog_entry(buffer: bytes) -> Optional[CatalogEntry]:
    """Decode a catalog entry record, or return None if the buffer is not one."""
    if buffer is None or len(buffer) < RECORD_SIZE:
        return None
    (magic, schema, platform, flags, app_id,
     major, minor, patch, cartridge_ref, title) = _CATALOG_STRUCT.unpack_from(buffer)
    if magic != MAGIC_CATALOG_ENTRY:
        return None
    return CatalogEntry(
        app_id=app_id,
        semver=SemVer(major, minor, patch),
        cartridge_ref=cartridge_ref,
        title=_decode_title(title),
        platform=platform,
        schema=schema,
        flags=flags,
    )


def has_magic(payload: Optional[bytes], magic: bytes) -> bool:
    """Check the first four bytes of a raw payload."""
    return payload is not None and payload[:4] == magic


def has_magic_hex(payload_hex: Optional[str], magic: bytes) -> bool:
    """Check the first eight hex digits of a hex payload without decoding it."""
    if not payload_hex:
        return False
    if payload_hex[:2] in ("0x", "0X"):
        payload_hex = payload_hex[2:]
    return payload_hex[:8].lower() == magic.hex()


def record_kind(payload: Optional[bytes]) -> Optional[str]:
    """Classify a payload by its magic, or None for foreign payloads."""
    if payload is None:
        return None
    return _KINDS_BY_MAGIC.get(bytes(payload[:4]))


def decode_strict(payload: bytes):
    """
    Decode any known record kind, raising instead of returning None.

    Raises:
        MalformedRecordError: If the payload is not a well-formed record
    """
    kind = record_kind(payload)
    decoder = {
        KIND_HEADER: decode_header,
        KIND_CHUNK: decode_chunk,
        KIND_CATALOG_ENTRY: decode_catalog_entry,
    }.get(kind)
    record = decoder(payload) if decoder else None
    if record is None:
        raise MalformedRecordError(f"Not a valid record ({len(payload)} bytes, magic={payload[:4]!r})")
    return record


def expected_chunk_count(total_size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Number of chunks needed for `total_size` bytes (ceiling division)."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return (total_size + chunk_size - 1) // chunk_size


def split_chunks(cartridge_id: int, data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[Chunk]:
    """
    Split file content into chunk records in index order.

    Args:
        cartridge_id: Cartridge the chunks belong to
        data: File content
        chunk_size: Bytes per chunk (1..51)

    Returns:
        List of chunks; the last one may be shorter
    """
    if not 1 <= chunk_size <= MAX_CHUNK_DATA:
        raise ValueError(f"chunk_size must be between 1 and {MAX_CHUNK_DATA}, got {chunk_size}")
    return [
        Chunk(cartridge_id=cartridge_id, chunk_index=index, data=data[offset:offset + chunk_size])
        for index, offset in enumerate(range(0, len(data), chunk_size))
    ]

"""Backend driver contract and the binary record format shared by byte-payload ledgers."""

from functools import partial
from typing import AsyncIterator, Callable, List, Optional, Protocol, runtime_checkable

from common import records
from common.cancellation import CancellationToken
from common.constants import DEFAULT_PAGE_SIZE, MAGIC_CATALOG_ENTRY, MAGIC_CHUNK, MAGIC_HEADER
from common.records import CatalogEntry, Chunk, Header, SemVer
from common.types import Page, RawRecord
from drivers.pagination import iter_records, stream_pages


@runtime_checkable
class RecordFormat(Protocol):
    """Recognises and decodes cartridge records inside a backend's RawRecords."""

    def is_header(self, raw: RawRecord) -> bool: ...

    def decode_header(self, raw: RawRecord) -> Optional[Header]: ...

    def is_chunk(self, raw: RawRecord) -> bool: ...

    def decode_chunk(self, raw: RawRecord) -> Optional[Chunk]: ...

    def is_catalog_entry(self, raw: RawRecord) -> bool: ...

    def decode_catalog_entry(self, raw: RawRecord) -> Optional[CatalogEntry]: ...

    def content_ref(self, raw: RawRecord) -> Optional[str]: ...

    def entry_key(self, raw: RawRecord) -> str: ...


@runtime_checkable
class BackendDriver(Protocol):
    """
    Capability set every backend implements.

    Drivers are chosen at construction time and hold only their own
    connection state.
    """

    name: str
    record_format: RecordFormat
    content_addressed: bool

    def scan_by_owner(
        self,
        address: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        cancel: Optional[CancellationToken] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[RawRecord]: ...

    async def stream_by_owner(
        self,
        address: str,
        on_page: Callable[[List[RawRecord]], object],
        page_size: int = DEFAULT_PAGE_SIZE,
        cancel: Optional[CancellationToken] = None,
        max_pages: Optional[int] = None,
    ) -> int: ...

    async def fetch_by_id(self, record_id: str) -> bytes: ...

    async def write(self, address: str, payload: bytes) -> str: ...

    async def current_height(self) -> int: ...

    async def create_address(self) -> str: ...

    def platform_name(self, code: int) -> str: ...

    def address_for_ref(self, ref: bytes) -> str: ...

    def ref_for_address(self, address: str) -> bytes: ...

    def normalize_address(self, address: str) -> str: ...

    async def close(self) -> None: ...


@runtime_checkable
class ContentPublisher(Protocol):
    """
    Publishing hooks of content-addressed drivers (`content_addressed = True`).

    The whole cartridge is stored as one blob, a cartridge object carrying
    its checksum and size is created, and the catalog entry points at that
    object. No Header or Chunk records are written.
    """

    async def store_content(self, data: bytes) -> str:
        """Store the cartridge content; returns its content reference."""
        ...

    async def publish_cartridge(
        self, header: Header, content_ref: str, title: str, semver: SemVer, slug: str
    ) -> str:
        """Create the cartridge object; returns its address."""
        ...

    async def publish_catalog_entry(
        self, catalog_address: str, entry: CatalogEntry, slug: str, size_bytes: int = 0
    ) -> str:
        """Add `entry` to the catalog under `slug`; returns the write reference."""
        ...


class BinaryRecordFormat:
    """
    64-byte magic-prefixed records carried as transaction or account payloads.

    The `is_*` checks look only at the first four bytes (or eight hex digits)
    so foreign payloads are rejected without a full decode.
    """

    @staticmethod
    def _has(raw: RawRecord, magic: bytes) -> bool:
        if raw.payload:
            return records.has_magic(raw.payload, magic)
        return records.has_magic_hex(raw.payload_hex, magic)

    def is_header(self, raw: RawRecord) -> bool:
        return self._has(raw, MAGIC_HEADER)

    def decode_header(self, raw: RawRecord) -> Optional[Header]:
        if not self.is_header(raw):
            return None
        return records.decode_header(raw.payload_bytes())

    def is_chunk(self, raw: RawRecord) -> bool:
        return self._has(raw, MAGIC_CHUNK)

    def decode_chunk(self, raw: RawRecord) -> Optional[Chunk]:
        if not self.is_chunk(raw):
            return None
        return records.decode_chunk(raw.payload_bytes())

    def is_catalog_entry(self, raw: RawRecord) -> bool:
        return self._has(raw, MAGIC_CATALOG_ENTRY)

    def decode_catalog_entry(self, raw: RawRecord) -> Optional[CatalogEntry]:
        if not self.is_catalog_entry(raw):
            return None
        return records.decode_catalog_entry(raw.payload_bytes())

    def content_ref(self, raw: RawRecord) -> Optional[str]:
        return None

    def entry_key(self, raw: RawRecord) -> str:
        return ""


class PagedScanMixin:
    """
    Implements `scan_by_owner` / `stream_by_owner` on top of a driver's
    `fetch_page(address, cursor, page_size)` coroutine.
    """

    async def fetch_page(self, address: str, cursor: Optional[str], page_size: int) -> Page:
        raise NotImplementedError

    def scan_by_owner(
        self,
        address: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        cancel: Optional[CancellationToken] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[RawRecord]:
        return iter_records(partial(self.fetch_page, address), page_size, cancel=cancel, max_pages=max_pages)

    async def stream_by_owner(
        self,
        address: str,
        on_page: Callable[[List[RawRecord]], object],
        page_size: int = DEFAULT_PAGE_SIZE,
        cancel: Optional[CancellationToken] = None,
        max_pages: Optional[int] = None,
    ) -> int:
        return await stream_pages(
            partial(self.fetch_page, address), page_size, on_page, cancel=cancel, max_pages=max_pages
        )

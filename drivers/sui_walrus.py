"""
Object ledger + blob store driver (Sui JSON-RPC and Walrus HTTP).

A catalog is a Sui object whose dynamic fields are catalog entries; a
cartridge is a single Sui object whose `blob_id` points at the file content
stored in Walrus. Scanning a cartridge object yields just that object.
"""

import asyncio
import base64
import binascii
import re
import zlib
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from common.addressing import b58encode
from common.constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_SCHEMA,
    FLAG_RETIRED,
    PLATFORM_NAMES,
    SUI_DYNAMIC_FIELD_PAGE_LIMIT,
    WALRUS_DEFAULT_AGGREGATOR,
    WALRUS_DEFAULT_EPOCHS,
    WALRUS_DEFAULT_PUBLISHER,
)
from common.exceptions import (
    IncompleteUploadError,
    NotAuthorizedError,
    RpcError,
    TransientError,
    WriterLockedError,
)
from common.logging_config import get_logger
from common.records import CatalogEntry, Chunk, Header, SemVer
from common.types import Page, RawRecord
from drivers import parsing
from drivers.base import PagedScanMixin
from drivers.rpc import JsonRpcClient

logger = get_logger(__name__)

_OBJECT_OPTIONS = {"showContent": True, "showOwner": True, "showType": True}
_PLATFORM_CODES = {name: code for code, name in PLATFORM_NAMES.items()}


class ObjectWriter(Protocol):
    """Signs and submits Sui transactions; key handling lives outside this package."""

    address: str

    def is_ready(self) -> bool: ...

    async def register_blob(self, address: str, blob_id: str, payload: bytes) -> str:
        """Attach a stored blob to the object at `address`; returns the transaction digest."""
        ...

    async def create_cartridge(self, fields: Dict[str, Any]) -> str:
        """Call `cartridge::create_cartridge` with `fields`; returns the new object id."""
        ...

    async def add_catalog_entry(self, catalog_id: str, fields: Dict[str, Any]) -> str:
        """Call `catalog::add_entry` keyed by `fields["slug"]`; returns the transaction digest."""
        ...

    async def create_object(self) -> str:
        """Create an empty cartridge object; returns its id."""
        ...


def bytes_field(value: Any) -> bytes:
    """
    Decode a Move `vector<u8>` as returned over JSON-RPC.

    Accepts a list of ints, a hex string (with or without 0x) or base64.
    """
    if isinstance(value, list):
        return bytes(int(v) & 0xFF for v in value)
    if isinstance(value, str) and value:
        text = value[2:] if value.startswith("0x") else value
        try:
            return bytes.fromhex(text)
        except ValueError:
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError):
                return b""
    return b""


def version_to_semver(version: int) -> SemVer:
    """Packed u16 version, e.g. 123 -> 1.2.3."""
    return SemVer(version // 100, (version % 100) // 10, version % 10)


def semver_to_version(semver: SemVer) -> int:
    """
    Pack a version into the u16 used on chain, e.g. 1.2.3 -> 123.

    Raises:
        ValueError: If minor or patch exceeds 9 or the result overflows a u16
    """
    version = semver.major * 100 + semver.minor * 10 + semver.patch
    if semver.minor > 9 or semver.patch > 9 or version > 0xFFFF:
        raise ValueError(f"Version {semver} cannot be packed (minor and patch must be 0..9)")
    return version


def slugify(title: str) -> str:
    """Catalog key derived from a title, e.g. "Super Mario!" -> "super-mario"."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug or "cartridge"


def platform_code(value: Any) -> int:
    if isinstance(value, str) and not value.isdigit():
        return _PLATFORM_CODES.get(value.upper(), 0)
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def numeric_id(text: str) -> int:
    """Stable 32-bit identifier derived from an object id or slug."""
    return zlib.crc32(text.encode("utf-8")) & 0xFFFFFFFF


def object_fields(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Extract the Move struct fields of an object, unwrapping dynamic-field values."""
    parsed = parsing.parse_with(parsing.OBJECT_FIELDS, data, "object content")
    if not parsed.ok:
        return None
    fields = parsed.value
    value = fields.get("value")
    if isinstance(value, dict):
        return value.get("fields", value)
    return fields


class SuiObjectFormat:
    """Interprets Sui objects as cartridge headers and catalog entries."""

    def is_header(self, raw: RawRecord) -> bool:
        return bool(raw.fields) and "blob_id" in raw.fields and "sha256" in raw.fields

    def decode_header(self, raw: RawRecord) -> Optional[Header]:
        if not self.is_header(raw):
            return None
        checksum = bytes_field(raw.fields.get("sha256"))
        if len(checksum) != 32:
            return None
        try:
            size = int(raw.fields.get("size_bytes", 0))
        except (TypeError, ValueError):
            return None
        return Header(
            cartridge_id=numeric_id(raw.record_id),
            total_size=size,
            checksum=checksum,
            chunk_size=DEFAULT_CHUNK_SIZE,
            platform=platform_code(raw.fields.get("platform", 0)),
            schema=DEFAULT_SCHEMA,
        )

    def is_chunk(self, raw: RawRecord) -> bool:
        return False

    def decode_chunk(self, raw: RawRecord) -> Optional[Chunk]:
        return None

    def is_catalog_entry(self, raw: RawRecord) -> bool:
        return bool(raw.fields) and "cartridge_id" in raw.fields

    def decode_catalog_entry(self, raw: RawRecord) -> Optional[CatalogEntry]:
        if not self.is_catalog_entry(raw):
            return None
        fields = raw.fields
        cartridge_id = str(fields.get("cartridge_id") or "")
        ref = bytes_field(cartridge_id)
        if not ref:
            return None
        try:
            version = int(fields.get("version") or 1)
        except (TypeError, ValueError):
            version = 1
        slug = str(fields.get("slug") or cartridge_id)
        return CatalogEntry(
            app_id=numeric_id(slug),
            semver=version_to_semver(version),
            cartridge_ref=ref,
            title=str(fields.get("title") or ""),
            platform=platform_code(fields.get("platform", 0)),
            schema=DEFAULT_SCHEMA,
            flags=FLAG_RETIRED if fields.get("retired") else 0,
        )

    def content_ref(self, raw: RawRecord) -> Optional[str]:
        if not raw.fields:
            return None
        blob_id = raw.fields.get("blob_id")
        if isinstance(blob_id, str) and not blob_id.startswith("0x"):
            return blob_id
        blob = bytes_field(blob_id)
        return b58encode(blob) if blob else None

    def entry_key(self, raw: RawRecord) -> str:
        """Slug under which a catalog entry is stored."""
        return str((raw.fields or {}).get("slug") or "")


class WalrusClient:
    """HTTP client for a Walrus aggregator (reads) and publisher (writes)."""

    def __init__(
        self,
        aggregator_url: str = WALRUS_DEFAULT_AGGREGATOR,
        publisher_url: str = WALRUS_DEFAULT_PUBLISHER,
        epochs: int = WALRUS_DEFAULT_EPOCHS,
        max_retries: int = 3,
        base_delay: float = 1.0,
        timeout: float = 60,
    ):
        self.aggregator_url = aggregator_url.rstrip("/")
        self.publisher_url = publisher_url.rstrip("/")
        self.epochs = epochs
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout

    async def read_blob(self, blob_id: str) -> bytes:
        """
        Download a blob from the aggregator.

        Raises:
            IncompleteUploadError: If the aggregator does not know the blob
            TransientError: If retries are exhausted
        """
        url = f"{self.aggregator_url}/v1/blobs/{blob_id}"
        last_error = ""
        for attempt in range(self.max_retries):
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                        if resp.status == 200:
                            data = await resp.read()
                            logger.debug(f"Read blob {blob_id} ({len(data)} bytes)")
                            return data
                        if resp.status == 404:
                            raise IncompleteUploadError(f"Blob {blob_id} not found")
                        last_error = f"HTTP {resp.status}"
                        if resp.status < 500 and resp.status != 429:
                            raise RpcError("read_blob", last_error)
            except asyncio.TimeoutError:
                last_error = "timeout"
            except aiohttp.ClientError as e:
                last_error = f"{type(e).__name__}: {e}"

            if attempt < self.max_retries - 1:
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Blob read failed (attempt {attempt + 1}/{self.max_retries}): "
                    f"{blob_id} error={last_error}, retrying in {delay}s"
                )
                await asyncio.sleep(delay)

        raise TransientError(f"Failed to read blob {blob_id} after {self.max_retries} attempts: {last_error}")

    async def store_blob(self, data: bytes) -> str:
        """
        Store a blob through the publisher.

        Returns:
            Blob id (newly created or already certified)

        Raises:
            RpcError: If the publisher rejects the blob or the response is unrecognised
            TransientError: On network failure
        """
        paths = ("/v1/store", "/v1/blobs")
        try:
            async with aiohttp.ClientSession() as session:
                for path in paths:
                    url = f"{self.publisher_url}{path}?epochs={self.epochs}"
                    async with session.put(
                        url, data=data, timeout=aiohttp.ClientTimeout(total=self.timeout)
                    ) as resp:
                        if resp.status == 404 and path != paths[-1]:
                            logger.debug(f"Publisher has no {path}, falling back")
                            continue
                        if resp.status >= 500:
                            raise TransientError(f"Publisher returned HTTP {resp.status}")
                        if resp.status >= 400:
                            raise RpcError("store_blob", f"HTTP {resp.status}: {(await resp.text())[:200]}")
                        body = await resp.json(content_type=None)
                        break
        except asyncio.TimeoutError as e:
            raise TransientError("Publisher request timed out") from e
        except aiohttp.ClientError as e:
            raise TransientError(f"Publisher request failed: {e}") from e

        parsed = parsing.parse_with(parsing.BLOB_STORE, body, "store response")
        if not parsed.ok:
            raise RpcError("store_blob", parsed.error)
        logger.info(f"Stored blob {parsed.value} ({len(data)} bytes, {parsed.strategy})")
        return parsed.value


class SuiWalrusDriver(PagedScanMixin):
    """Driver for catalogs and cartridges kept as Sui objects with Walrus content."""

    name = "sui"
    content_addressed = True

    def __init__(
        self,
        rpc: JsonRpcClient,
        walrus: WalrusClient,
        writer: Optional[ObjectWriter] = None,
    ):
        self.rpc = rpc
        self.walrus = walrus
        self.writer = writer
        self.record_format = SuiObjectFormat()

    async def close(self) -> None:
        await self.rpc.close()

    async def get_object(self, object_id: str) -> Optional[Dict[str, Any]]:
        result = await self.rpc.call("sui_getObject", [object_id, _OBJECT_OPTIONS])
        if not isinstance(result, dict) or not result.get("data"):
            return None
        return result["data"]

    def _to_record(self, data: Dict[str, Any], owner: str) -> Optional[RawRecord]:
        fields = object_fields(data)
        if fields is None:
            return None
        try:
            height = int(data.get("version") or 0)
        except (TypeError, ValueError):
            height = 0
        return RawRecord(
            record_id=data.get("objectId", ""),
            sender=str(fields.get("publisher") or ""),
            recipient=owner,
            height=height,
            fields=fields,
        )

    async def fetch_page(self, address: str, cursor: Optional[str], page_size: int) -> Page:
        if cursor is None:
            data = await self.get_object(address)
            if data is None:
                return Page(records=[], exhausted=True)
            record = self._to_record(data, address)
            if record is not None and self.record_format.is_header(record):
                return Page(records=[record], exhausted=True)

        limit = min(page_size, SUI_DYNAMIC_FIELD_PAGE_LIMIT)
        result = await self.rpc.call("suix_getDynamicFields", [address, cursor, limit])
        if not isinstance(result, dict):
            raise RpcError("suix_getDynamicFields", "unexpected response shape")
        fields = result.get("data") or []
        ids = [f["objectId"] for f in fields if isinstance(f, dict) and f.get("objectId")]

        records: List[RawRecord] = []
        if ids:
            objects = await self.rpc.call("sui_multiGetObjects", [ids, _OBJECT_OPTIONS])
            for item in objects or []:
                data = item.get("data") if isinstance(item, dict) else None
                if data:
                    record = self._to_record(data, address)
                    if record is not None:
                        records.append(record)
        records.sort(key=lambda r: r.height, reverse=True)

        next_cursor = result.get("nextCursor")
        logger.debug(f"Fetched {len(records)} dynamic field(s) of {address} [cursor={cursor}]")
        return Page(
            records=records,
            next_cursor=next_cursor,
            exhausted=not result.get("hasNextPage") or next_cursor is None,
        )

    async def fetch_by_id(self, record_id: str) -> bytes:
        return await self.walrus.read_blob(record_id)

    def _require_writer(self) -> ObjectWriter:
        if self.writer is None:
            raise NotAuthorizedError("No Sui object writer configured")
        if not self.writer.is_ready():
            raise WriterLockedError(f"Sui writer {self.writer.address} is not ready")
        return self.writer

    async def write(self, address: str, payload: bytes) -> str:
        writer = self._require_writer()
        blob_id = await self.walrus.store_blob(payload)
        digest = await writer.register_blob(address, blob_id, payload)
        logger.debug(f"Registered blob {blob_id} on {address} [digest={digest}]")
        return digest

    async def store_content(self, data: bytes) -> str:
        """
        Store a whole cartridge as one Walrus blob.

        Returns:
            Blob id

        Raises:
            NotAuthorizedError: If no writer is configured
            WriterLockedError: If the writer is not ready
        """
        self._require_writer()
        return await self.walrus.store_blob(data)

    async def publish_cartridge(
        self, header: Header, content_ref: str, title: str, semver: SemVer, slug: str
    ) -> str:
        """
        Create the cartridge object pointing at a stored blob.

        Returns:
            Object id of the new cartridge (its address for downloads)

        Raises:
            ValueError: If the version cannot be packed into a u16
        """
        writer = self._require_writer()
        slug = slug or slugify(title)
        fields = {
            "slug": slug,
            "title": title,
            "platform": header.platform,
            "version": semver_to_version(semver),
            "blob_id": content_ref,
            "sha256": "0x" + header.checksum.hex(),
            "size_bytes": header.total_size,
            "publisher": writer.address,
        }
        object_id = await writer.create_cartridge(fields)
        logger.info(f"Created cartridge object {object_id} for blob {content_ref} [slug={slug}]")
        return object_id

    async def publish_catalog_entry(
        self, catalog_address: str, entry: CatalogEntry, slug: str, size_bytes: int = 0
    ) -> str:
        """
        Add a catalog entry (dynamic field keyed by slug) referencing a cartridge object.

        Returns:
            Transaction digest
        """
        writer = self._require_writer()
        slug = slug or slugify(entry.title)
        fields = {
            "slug": slug,
            "cartridge_id": self.address_for_ref(entry.cartridge_ref),
            "title": entry.title,
            "platform": entry.platform,
            "size_bytes": size_bytes,
            "version": semver_to_version(entry.semver),
            "retired": entry.retired,
        }
        digest = await writer.add_catalog_entry(catalog_address, fields)
        logger.info(f"Added catalog entry {slug} to {catalog_address} [digest={digest}]")
        return digest

    async def current_height(self) -> int:
        return int(await self.rpc.call("sui_getLatestCheckpointSequenceNumber", []))

    async def create_address(self) -> str:
        return await self._require_writer().create_object()

    def platform_name(self, code: int) -> str:
        return PLATFORM_NAMES.get(code, f"Platform {code}")

    def address_for_ref(self, ref: bytes) -> str:
        return "0x" + ref.hex()

    def ref_for_address(self, address: str) -> bytes:
        return bytes_field(address.strip())

    def normalize_address(self, address: str) -> str:
        return address.strip().lower()

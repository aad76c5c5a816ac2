"""In-process ledger driver for dry runs and tests."""

import hashlib
import os
from typing import Dict, List, Optional, Tuple

from common import addressing
from common.constants import PLATFORM_NAMES
from common.exceptions import NotAuthorizedError, RpcError, UnavailableError, WriterLockedError
from common.logging_config import get_logger
from common.types import Page, RawRecord
from drivers.base import BinaryRecordFormat, PagedScanMixin

logger = get_logger(__name__)


class InMemoryLedgerDriver(PagedScanMixin):
    """
    Append-only ledger held in memory, addressed like the transaction ledger.

    Every write gets a monotonically increasing height; listings are newest
    first and paginate on the last record id, like a node would.
    """

    name = "memory"
    content_addressed = False

    def __init__(
        self,
        writer: str = "",
        authorized: bool = True,
        locked: bool = False,
        available: bool = True,
    ):
        self.writer = writer or addressing.encode_address(b"\x01" * 20)
        self.authorized = authorized
        self.locked = locked
        self.available = available
        self.record_format = BinaryRecordFormat()
        self.writes: List[Tuple[str, bytes]] = []
        self._height = 0
        self._by_owner: Dict[str, List[RawRecord]] = {}
        self._by_id: Dict[str, RawRecord] = {}

    async def close(self) -> None:
        pass

    def append(self, address: str, payload: bytes, sender: Optional[str] = None) -> RawRecord:
        """
        Add a record directly (no authorization checks).

        Returns:
            The stored record
        """
        self._height += 1
        owner = self.normalize_address(address)
        record_id = hashlib.sha256(f"{self._height}:{owner}:{payload.hex()}".encode()).hexdigest()
        record = RawRecord(
            record_id=record_id,
            sender=sender if sender is not None else self.writer,
            recipient=address,
            height=self._height,
            payload=payload,
        )
        self._by_owner.setdefault(owner, []).insert(0, record)
        self._by_id[record_id] = record
        return record

    def records_for(self, address: str) -> List[RawRecord]:
        return list(self._by_owner.get(self.normalize_address(address), []))

    async def fetch_page(self, address: str, cursor: Optional[str], page_size: int) -> Page:
        records = self._by_owner.get(self.normalize_address(address), [])
        start = 0
        if cursor:
            for index, record in enumerate(records):
                if record.record_id == cursor:
                    start = index + 1
                    break
        return Page(records=list(records[start:start + page_size]))

    async def fetch_by_id(self, record_id: str) -> bytes:
        record = self._by_id.get(record_id)
        if record is None:
            raise RpcError("fetch_by_id", f"record {record_id} not found")
        return record.payload

    async def write(self, address: str, payload: bytes) -> str:
        if not self.authorized:
            raise NotAuthorizedError(f"Writer {self.writer} is not authorized")
        if self.locked:
            raise WriterLockedError(f"Writer {self.writer} is locked")
        if not self.available:
            raise UnavailableError("Ledger unavailable")
        record = self.append(address, payload)
        self.writes.append((address, payload))
        logger.debug(f"Stored {len(payload)} bytes at {address} [id={record.record_id[:12]}]")
        return record.record_id

    async def current_height(self) -> int:
        return self._height

    async def create_address(self) -> str:
        return addressing.encode_address(os.urandom(20))

    def platform_name(self, code: int) -> str:
        return PLATFORM_NAMES.get(code, f"Platform {code}")

    def address_for_ref(self, ref: bytes) -> str:
        return addressing.encode_address(ref)

    def ref_for_address(self, address: str) -> bytes:
        return addressing.decode_address(address)

    def normalize_address(self, address: str) -> str:
        return addressing.normalize_address(address)

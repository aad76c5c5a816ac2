"""
Account-addressed ledger driver (Solana JSON-RPC).

Each record lives in its own program-owned account:

    discriminator[8] ownerTag[20] slot u64 writer[32] payload[64]

An "address" is the base58 form of the 20-byte owner tag. Records for an
owner are listed with `getProgramAccounts` (memcmp on the tag, data slice on
the slot only), ordered newest first by slot, and materialised page by page
with `getMultipleAccounts`.
"""

import base64
import os
import struct
from typing import Dict, List, Optional, Protocol, Tuple

from common.addressing import b58decode, b58encode
from common.constants import (
    CARTRIDGE_REF_SIZE,
    PLATFORM_NAMES,
    RECORD_SIZE,
    SOLANA_MAX_ACCOUNTS_PER_REQUEST,
    SOLANA_PROGRAM_ID,
    SOLANA_RECORD_DISCRIMINATOR,
)
from common.exceptions import (
    NotAuthorizedError,
    RpcError,
    TransientError,
    UnavailableError,
    WriterLockedError,
)
from common.logging_config import get_logger
from common.types import Page, RawRecord
from drivers import parsing
from drivers.base import BinaryRecordFormat, PagedScanMixin
from drivers.rpc import JsonRpcClient

logger = get_logger(__name__)

OWNER_OFFSET = 8
SLOT_OFFSET = OWNER_OFFSET + CARTRIDGE_REF_SIZE
WRITER_OFFSET = SLOT_OFFSET + 8
PAYLOAD_OFFSET = WRITER_OFFSET + 32
RECORD_ACCOUNT_SIZE = PAYLOAD_OFFSET + RECORD_SIZE


class TransactionSigner(Protocol):
    """Holds the writer key; key loading lives outside this package."""

    public_key: str

    def is_ready(self) -> bool: ...

    async def sign_record_write(self, owner_tag: bytes, payload: bytes, recent_blockhash: str) -> str:
        """Return a base64 serialized, signed transaction creating one record account."""
        ...


def _account_bytes(account: dict) -> bytes:
    data = account.get("data")
    if isinstance(data, list) and data:
        return base64.b64decode(data[0])
    if isinstance(data, str):
        return base64.b64decode(data)
    return b""


def decode_record_account(pubkey: str, raw: bytes, address: str) -> Optional[RawRecord]:
    """
    Decode a record account; None for foreign or truncated accounts.
    """
    if len(raw) < RECORD_ACCOUNT_SIZE or raw[:OWNER_OFFSET] != SOLANA_RECORD_DISCRIMINATOR:
        return None
    (slot,) = struct.unpack_from("<Q", raw, SLOT_OFFSET)
    return RawRecord(
        record_id=pubkey,
        sender=b58encode(raw[WRITER_OFFSET:PAYLOAD_OFFSET]),
        recipient=address,
        height=slot,
        payload=raw[PAYLOAD_OFFSET:RECORD_ACCOUNT_SIZE],
    )


class SolanaDriver(PagedScanMixin):
    """Driver for the record-store program on Solana."""

    name = "solana"
    content_addressed = False

    def __init__(
        self,
        rpc: JsonRpcClient,
        signer: Optional[TransactionSigner] = None,
        program_id: str = SOLANA_PROGRAM_ID,
    ):
        self.rpc = rpc
        self.signer = signer
        self.program_id = program_id
        self.record_format = BinaryRecordFormat()
        self._listings: Dict[str, List[Tuple[int, str]]] = {}

    async def close(self) -> None:
        await self.rpc.close()

    async def list_record_keys(self, address: str) -> List[Tuple[int, str]]:
        """
        List (slot, pubkey) for all record accounts of an owner, newest first.
        """
        owner_tag = self.ref_for_address(address)
        result = await self.rpc.call(
            "getProgramAccounts",
            [
                self.program_id,
                {
                    "encoding": "base64",
                    "dataSlice": {"offset": SLOT_OFFSET, "length": 8},
                    "filters": [
                        {"dataSize": RECORD_ACCOUNT_SIZE},
                        {"memcmp": {"offset": OWNER_OFFSET, "bytes": b58encode(owner_tag)}},
                    ],
                },
            ],
        )
        parsed = parsing.parse_with(parsing.ACCOUNT_LIST, result, "program accounts")
        if not parsed.ok:
            raise RpcError("getProgramAccounts", parsed.error)

        keys = []
        for item in parsed.value:
            slot_bytes = _account_bytes(item.get("account", {}))
            if len(slot_bytes) < 8:
                continue
            (slot,) = struct.unpack_from("<Q", slot_bytes)
            keys.append((slot, item["pubkey"]))
        keys.sort(key=lambda k: (-k[0], k[1]))
        logger.debug(f"Listed {len(keys)} record account(s) for {address}")
        return keys

    async def fetch_page(self, address: str, cursor: Optional[str], page_size: int) -> Page:
        if cursor is None or address not in self._listings:
            self._listings[address] = await self.list_record_keys(address)
        listing = self._listings[address]

        start = 0
        if cursor is not None:
            start = next((i + 1 for i, (_, key) in enumerate(listing) if key == cursor), len(listing))
        window = listing[start:start + min(page_size, SOLANA_MAX_ACCOUNTS_PER_REQUEST)]
        if not window:
            return Page(records=[], exhausted=True)

        result = await self.rpc.call(
            "getMultipleAccounts", [[key for _, key in window], {"encoding": "base64"}]
        )
        parsed = parsing.parse_with(parsing.ACCOUNT_LIST, result, "multiple accounts")
        if not parsed.ok:
            raise RpcError("getMultipleAccounts", parsed.error)

        records = []
        for (_, key), account in zip(window, parsed.value):
            if not account:
                continue
            record = decode_record_account(key, _account_bytes(account), address)
            if record is not None:
                records.append(record)

        return Page(
            records=records,
            next_cursor=window[-1][1],
            exhausted=start + len(window) >= len(listing),
        )

    async def fetch_by_id(self, record_id: str) -> bytes:
        result = await self.rpc.call("getAccountInfo", [record_id, {"encoding": "base64"}])
        parsed = parsing.parse_with(parsing.CONTEXT_VALUE, result, "account info")
        if not parsed.ok or not parsed.value:
            raise RpcError("getAccountInfo", f"account {record_id} not found")
        record = decode_record_account(record_id, _account_bytes(parsed.value), "")
        if record is None:
            raise RpcError("getAccountInfo", f"account {record_id} is not a record account")
        return record.payload

    async def current_height(self) -> int:
        return int(await self.rpc.call("getSlot", [{"commitment": "confirmed"}]))

    async def _ensure_available(self) -> None:
        try:
            health = await self.rpc.call("getHealth", [])
        except (RpcError, TransientError) as e:
            raise UnavailableError(f"Node unhealthy: {e}") from e
        if health != "ok":
            raise UnavailableError(f"Node unhealthy: {health}")

    async def write(self, address: str, payload: bytes) -> str:
        if self.signer is None:
            raise NotAuthorizedError("No transaction signer configured")
        if not self.signer.is_ready():
            raise WriterLockedError(f"Signer {self.signer.public_key} is not ready")
        await self._ensure_available()

        result = await self.rpc.call("getLatestBlockhash", [{"commitment": "confirmed"}])
        parsed = parsing.parse_with(parsing.CONTEXT_VALUE, result, "latest blockhash")
        if not parsed.ok or "blockhash" not in parsed.value:
            raise RpcError("getLatestBlockhash", parsed.error or "missing blockhash")

        signed = await self.signer.sign_record_write(
            self.ref_for_address(address), payload, parsed.value["blockhash"]
        )
        signature = await self.rpc.call("sendTransaction", [signed, {"encoding": "base64"}])
        logger.debug(f"Submitted record for {address} [signature={signature}]")
        return str(signature)

    async def create_address(self) -> str:
        return b58encode(os.urandom(CARTRIDGE_REF_SIZE))

    def platform_name(self, code: int) -> str:
        return PLATFORM_NAMES.get(code, f"Platform {code}")

    def address_for_ref(self, ref: bytes) -> str:
        return b58encode(ref)

    def ref_for_address(self, address: str) -> bytes:
        ref = b58decode(address.strip())
        if len(ref) != CARTRIDGE_REF_SIZE:
            raise ValueError(f"Owner tag must be {CARTRIDGE_REF_SIZE} bytes, got {len(ref)}")
        return ref

    def normalize_address(self, address: str) -> str:
        return address.strip()

"""Transaction-scanning ledger driver (Nimiq JSON-RPC)."""

import asyncio
import time
from typing import Optional

from common import addressing
from common.constants import NIMIQ_DEFAULT_FEE, NIMIQ_TX_VALUE, PLATFORM_NAMES
from common.exceptions import (
    NotAuthorizedError,
    RpcError,
    UnavailableError,
    WriterLockedError,
)
from common.logging_config import get_logger
from common.types import Page, RawRecord
from drivers import parsing
from drivers.base import BinaryRecordFormat, PagedScanMixin
from drivers.rpc import JsonRpcClient

logger = get_logger(__name__)

WRITER_CHECK_TTL_SECONDS = 30.0


def transaction_to_record(tx: dict) -> Optional[RawRecord]:
    """
    Normalise one transaction object; returns None when it has no hash.

    Payload hex is taken from `recipientData`, `data` or `senderData`, and
    height from `blockNumber` or `height`, whichever the node reports.
    """
    if not isinstance(tx, dict):
        return None
    tx_hash = tx.get("hash") or tx.get("transactionHash")
    if not tx_hash:
        return None
    return RawRecord(
        record_id=tx_hash,
        sender=tx.get("from") or tx.get("fromAddress") or "",
        recipient=tx.get("to") or tx.get("toAddress") or "",
        height=int(tx.get("blockNumber") or tx.get("height") or 0),
        payload_hex=tx.get("recipientData") or tx.get("data") or tx.get("senderData") or "",
    )


class NimiqDriver(PagedScanMixin):
    """
    Records are basic transactions whose data field carries a 64-byte record.

    Pages come from `getTransactionsByAddress` newest first; the cursor is the
    hash of the last transaction on the previous page.
    """

    name = "nimiq"
    content_addressed = False

    def __init__(self, rpc: JsonRpcClient, wallet: str = "", fee: int = NIMIQ_DEFAULT_FEE):
        """
        Initialize driver.

        Args:
            rpc: JSON-RPC client for the node
            wallet: Writer address (must be imported and unlocked on the node)
            fee: Transaction fee in Luna
        """
        self.rpc = rpc
        self.wallet = wallet
        self.fee = fee
        self.record_format = BinaryRecordFormat()
        self._writer_checked_at: Optional[float] = None
        self._writer_lock = asyncio.Lock()

    async def close(self) -> None:
        await self.rpc.close()

    async def fetch_page(self, address: str, cursor: Optional[str], page_size: int) -> Page:
        params = {"address": addressing.format_address(address), "max": page_size}
        if cursor:
            params["startAt"] = cursor
        result = await self.rpc.call("getTransactionsByAddress", params)
        parsed = parsing.parse_with(parsing.TRANSACTION_LIST, result, "transaction list")
        if not parsed.ok:
            raise RpcError("getTransactionsByAddress", parsed.error)

        records = [r for r in (transaction_to_record(tx) for tx in parsed.value) if r is not None]
        logger.debug(
            f"Fetched {len(records)} transaction(s) for {address} "
            f"[cursor={cursor}, shape={parsed.strategy}]"
        )
        return Page(records=records)

    async def fetch_by_id(self, record_id: str) -> bytes:
        result = await self.rpc.call("getTransactionByHash", {"hash": record_id})
        tx = result.get("data", result) if isinstance(result, dict) else result
        record = transaction_to_record(tx)
        if record is None:
            raise RpcError("getTransactionByHash", f"transaction {record_id} not found")
        return record.payload_bytes()

    async def current_height(self) -> int:
        result = await self.rpc.call("getBlockNumber", {})
        parsed = parsing.parse_with(parsing.SCALAR, result, "block number")
        if not parsed.ok:
            raise RpcError("getBlockNumber", parsed.error)
        return int(parsed.value)

    async def _call_bool(self, method: str, params: dict) -> bool:
        result = await self.rpc.call(method, params)
        parsed = parsing.parse_with(parsing.BOOLEAN, result, method)
        if not parsed.ok:
            raise RpcError(method, parsed.error)
        return parsed.value

    async def ensure_writer_ready(self) -> None:
        """
        Confirm the writer account is imported, unlocked and the node has consensus.

        A positive result is reused for a short period so chunk writes do not
        each repeat three round trips.

        Raises:
            NotAuthorizedError: No wallet configured or account not imported
            WriterLockedError: Account is locked
            UnavailableError: Node has no consensus
        """
        async with self._writer_lock:
            now = time.monotonic()
            if self._writer_checked_at is not None and now - self._writer_checked_at < WRITER_CHECK_TTL_SECONDS:
                return
            if not self.wallet:
                raise NotAuthorizedError("No writer wallet configured")
            wallet = addressing.format_address(self.wallet)
            if not await self._call_bool("isAccountImported", {"address": wallet}):
                raise NotAuthorizedError(f"Account {wallet} is not imported on the node")
            if not await self._call_bool("isAccountUnlocked", {"address": wallet}):
                raise WriterLockedError(f"Account {wallet} is locked")
            if not await self._call_bool("isConsensusEstablished", {}):
                raise UnavailableError("Node has not established consensus")
            self._writer_checked_at = now

    async def write(self, address: str, payload: bytes) -> str:
        await self.ensure_writer_ready()
        height = await self.current_height()
        result = await self.rpc.call(
            "sendBasicTransactionWithData",
            {
                "wallet": addressing.format_address(self.wallet),
                "recipient": addressing.format_address(address),
                "data": payload.hex(),
                "value": NIMIQ_TX_VALUE,
                "fee": self.fee,
                "validityStartHeight": height,
            },
        )
        parsed = parsing.parse_with(parsing.SCALAR, result, "transaction hash")
        if not parsed.ok:
            raise RpcError("sendBasicTransactionWithData", parsed.error)
        logger.debug(f"Sent {len(payload)} bytes to {address} [tx={parsed.value}]")
        return str(parsed.value)

    async def create_address(self) -> str:
        result = await self.rpc.call("createAccount", {})
        parsed = parsing.parse_with(parsing.ACCOUNT_ADDRESS, result, "account")
        if not parsed.ok:
            raise RpcError("createAccount", parsed.error)
        return addressing.format_address(parsed.value)

    def platform_name(self, code: int) -> str:
        return PLATFORM_NAMES.get(code, f"Platform {code}")

    def address_for_ref(self, ref: bytes) -> str:
        return addressing.encode_address(ref)

    def ref_for_address(self, address: str) -> bytes:
        return addressing.decode_address(address)

    def normalize_address(self, address: str) -> str:
        return addressing.normalize_address(address)

"""Build the configured backend driver."""

from typing import Optional

import httpx

from common.config import Config
from common.constants import SOLANA_DEFAULT_RPC_URL, SOLANA_PUBLIC_RATE_BURST, SOLANA_PUBLIC_RATE_LIMIT
from common.logging_config import get_logger
from common.rate_limiter import AsyncTokenBucket
from drivers.base import BackendDriver
from drivers.memory import InMemoryLedgerDriver
from drivers.nimiq import NimiqDriver
from drivers.rpc import JsonRpcClient
from drivers.solana import SolanaDriver, TransactionSigner
from drivers.sui_walrus import ObjectWriter, SuiWalrusDriver, WalrusClient

logger = get_logger(__name__)

PROTOCOLS = ("nimiq", "solana", "sui", "memory")


def _is_public_solana_endpoint(url: str) -> bool:
    return url == SOLANA_DEFAULT_RPC_URL or "api.mainnet-beta.solana.com" in url or "api.devnet.solana.com" in url


def create_driver(
    config: Config,
    signer: Optional[TransactionSigner] = None,
    writer: Optional[ObjectWriter] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> BackendDriver:
    """
    Create the driver selected by `config.get_protocol()`.

    Args:
        config: Client configuration
        signer: Solana transaction signer (writes only)
        writer: Sui object writer (writes only)
        client: Optional shared httpx client for the JSON-RPC transport

    Returns:
        A driver instance

    Raises:
        ValueError: If the protocol is unknown
    """
    protocol = config.get_protocol()
    if protocol not in PROTOCOLS:
        raise ValueError(f"Unknown protocol {protocol!r}, expected one of {', '.join(PROTOCOLS)}")

    if protocol == "memory":
        logger.info("Using in-memory ledger (dry run)")
        return InMemoryLedgerDriver()

    url = config.get_rpc_url()
    retry = config.get_retry_config()
    limiter = None
    if protocol == "solana" and _is_public_solana_endpoint(url):
        limiter = AsyncTokenBucket(SOLANA_PUBLIC_RATE_LIMIT, SOLANA_PUBLIC_RATE_BURST)
        logger.info(f"Public Solana endpoint, throttling to {SOLANA_PUBLIC_RATE_BURST} requests per 10s")

    rpc = JsonRpcClient(
        url,
        timeout=config.get_timeout(),
        max_retries=retry["max_retries"],
        backoff_multiplier=retry["retry_backoff_multiplier"],
        limiter=limiter,
        client=client,
    )
    logger.info(f"Created {protocol} driver [rpc_url={url}]")

    if protocol == "nimiq":
        upload = config.get_upload_config()
        return NimiqDriver(rpc, wallet=upload["wallet"], fee=upload["fee"])
    if protocol == "solana":
        return SolanaDriver(rpc, signer=signer)

    walrus = config.get_walrus_config()
    return SuiWalrusDriver(
        rpc,
        WalrusClient(walrus["aggregator"], walrus["publisher"], walrus["epochs"]),
        writer=writer,
    )

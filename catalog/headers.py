"""Header discovery at a cartridge address."""

from typing import Optional

from common.cancellation import CancellationToken
from common.constants import DEFAULT_PAGE_SIZE, HEADER_SEARCH_PAGES
from common.logging_config import get_logger
from common.types import CartridgeInfo
from drivers.base import BackendDriver

logger = get_logger(__name__)


def sender_matches(driver: BackendDriver, sender: str, publisher: Optional[str]) -> bool:
    """True when no publisher is required or the sender is that publisher."""
    if not publisher:
        return True
    return driver.normalize_address(sender) == driver.normalize_address(publisher)


async def locate_header(
    driver: BackendDriver,
    address: str,
    publisher: Optional[str] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_pages: int = HEADER_SEARCH_PAGES,
) -> Optional[CartridgeInfo]:
    """
    Find the newest header record at an address.

    Args:
        driver: Backend driver
        address: Cartridge address (or object id)
        publisher: Only accept headers written by this address
        page_size: Records per page
        max_pages: Pages to search before giving up

    Returns:
        CartridgeInfo for the first matching header, or None
    """
    fmt = driver.record_format
    cancel = CancellationToken()
    scanned = 0
    records = driver.scan_by_owner(address, page_size=page_size, cancel=cancel, max_pages=max_pages)
    try:
        async for raw in records:
            scanned += 1
            if not fmt.is_header(raw) or not sender_matches(driver, raw.sender, publisher):
                continue
            header = fmt.decode_header(raw)
            if header is None:
                continue
            cancel.cancel("header found")
            logger.debug(
                f"Header found at {address} after {scanned} record(s) "
                f"[cartridge_id={header.cartridge_id}, size={header.total_size}]"
            )
            return CartridgeInfo(
                address=address,
                header=header,
                record_id=raw.record_id,
                height=raw.height,
                sender=raw.sender,
                content_ref=fmt.content_ref(raw),
            )
    finally:
        await records.aclose()

    logger.debug(f"No header at {address} within {max_pages} page(s) ({scanned} record(s))")
    return None

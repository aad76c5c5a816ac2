"""Catalog-side helpers for publishing: identifier assignment and retirement."""

from typing import Optional, Tuple

from common.logging_config import get_logger
from common.rate_limiter import AsyncTokenBucket
from common.records import encode_catalog_entry
from catalog.indexer import CatalogIndexer, retired_app_ids
from drivers.base import BackendDriver

logger = get_logger(__name__)


async def resolve_identifiers(
    indexer: CatalogIndexer,
    title: str,
    app_id: Optional[int] = None,
    cartridge_id: Optional[int] = None,
) -> Tuple[int, int]:
    """
    Fill in missing app and cartridge ids from the catalog.

    An existing title keeps its app id; a new title gets the next free one.
    The cartridge id is the next one after the app's published headers.

    Returns:
        (app_id, cartridge_id)
    """
    records = await indexer.load_entries()
    if app_id is None:
        app_id = await indexer.find_app_id_by_title(title, records)
        if app_id is None:
            app_id = await indexer.next_app_id(records)
            logger.info(f"New title {title!r}, assigned app id {app_id}")
        else:
            logger.info(f"Title {title!r} already published as app {app_id}")
    if cartridge_id is None:
        cartridge_id = await indexer.next_cartridge_id(app_id, records)
        logger.info(f"Assigned cartridge id {cartridge_id} for app {app_id}")
    return app_id, cartridge_id


async def retire_app(
    driver: BackendDriver,
    indexer: CatalogIndexer,
    app_id: int,
    limiter: Optional[AsyncTokenBucket] = None,
) -> Optional[str]:
    """
    Retire an app by re-publishing its latest catalog entry with the retired flag.

    Returns:
        Write reference, or None when the app was already retired

    Raises:
        LookupError: If the catalog has no entry for the app
    """
    records = await indexer.load_entries()
    if app_id in retired_app_ids(records):
        logger.info(f"App {app_id} is already retired")
        return None

    app_records = [r for r in records if r.entry.app_id == app_id]
    if not app_records:
        raise LookupError(f"App {app_id} not found in catalog {indexer.catalog_address}")
    latest = max(app_records, key=lambda r: (r.height, r.sort_key))

    if limiter is not None:
        await limiter.acquire()
    retired = latest.entry.as_retired()
    if driver.content_addressed:
        reference = await driver.publish_catalog_entry(indexer.catalog_address, retired, latest.key)
    else:
        reference = await driver.write(indexer.catalog_address, encode_catalog_entry(retired))
    logger.info(f"Retired app {app_id} ({latest.entry.title}, v{latest.entry.semver}) [ref={reference}]")
    return reference

"""Builds the game list from catalog entries and answers catalog queries."""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from common.config import Config
from common.constants import CATALOG_MAX_PAGES, DEFAULT_PAGE_SIZE
from common.logging_config import get_logger
from common.records import CatalogEntry
from common.types import Game, GameVersion
from catalog.headers import locate_header, sender_matches
from drivers.base import BackendDriver

logger = get_logger(__name__)


@dataclass(frozen=True)
class CatalogRecord:
    """
    A decoded catalog entry with its ledger position.

    `key` is the backend's own name for the entry (the slug on object
    ledgers, empty for binary records).
    """
    entry: CatalogEntry
    record_id: str
    height: int
    sender: str
    key: str = ""

    @property
    def sort_key(self):
        semver = self.entry.semver
        return (semver.major, semver.minor, semver.patch, self.height)


def retired_app_ids(records: Iterable[CatalogRecord]) -> Set[int]:
    """App ids with at least one retired entry."""
    return {r.entry.app_id for r in records if r.entry.retired}


def build_games(
    records: List[CatalogRecord],
    driver: BackendDriver,
    include_retired: bool = False,
) -> List[Game]:
    """
    Group catalog records into games.

    Versions are ordered by (major, minor, patch, height) descending; the
    title and platform come from the newest version. Games are ordered by
    app id descending. Retired apps are dropped unless `include_retired`.

    Args:
        records: Decoded catalog records
        driver: Driver used to render cartridge references and platform names
        include_retired: Keep retired apps (flagged `retired=True`)

    Returns:
        List of games
    """
    retired = retired_app_ids(records)
    groups: Dict[int, List[CatalogRecord]] = {}
    for record in records:
        groups.setdefault(record.entry.app_id, []).append(record)

    games = []
    for app_id, group in groups.items():
        if app_id in retired and not include_retired:
            continue
        group.sort(key=lambda r: r.sort_key, reverse=True)
        newest = group[0].entry
        versions = [
            GameVersion(
                semver=r.entry.semver,
                cartridge_address=driver.address_for_ref(r.entry.cartridge_ref),
                flags=r.entry.flags,
                record_id=r.record_id,
                height=r.height,
            )
            for r in group
        ]
        games.append(Game(
            app_id=app_id,
            title=newest.title or f"App {app_id}",
            platform=driver.platform_name(newest.platform),
            retired=app_id in retired,
            versions=versions,
        ))

    games.sort(key=lambda g: g.app_id, reverse=True)
    return games


class CatalogIndexer:
    """Reads a catalog address and derives games, ids and latest entries."""

    def __init__(
        self,
        driver: BackendDriver,
        catalog_address: str,
        publisher: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = CATALOG_MAX_PAGES,
    ):
        self.driver = driver
        self.catalog_address = catalog_address
        self.publisher = publisher
        self.page_size = page_size
        self.max_pages = max_pages

    @classmethod
    def from_config(cls, driver: BackendDriver, config: Config) -> "CatalogIndexer":
        """Indexer for the configured catalog, publisher filter and page size."""
        return cls(
            driver,
            config.get_catalog_address(),
            publisher=config.get_publisher(),
            page_size=config.get_page_size(),
        )

    async def load_entries(self) -> List[CatalogRecord]:
        """
        Scan the catalog and decode every catalog entry record.

        Foreign payloads, undecodable entries and (with a publisher filter)
        entries from other senders are skipped.

        Returns:
            Decoded records in scan order (newest first)
        """
        fmt = self.driver.record_format
        results = []
        scanned = 0
        skipped = 0
        async for raw in self.driver.scan_by_owner(
            self.catalog_address, page_size=self.page_size, max_pages=self.max_pages
        ):
            scanned += 1
            if not fmt.is_catalog_entry(raw):
                continue
            if not sender_matches(self.driver, raw.sender, self.publisher):
                skipped += 1
                continue
            entry = fmt.decode_catalog_entry(raw)
            if entry is None:
                skipped += 1
                continue
            results.append(CatalogRecord(
                entry=entry,
                record_id=raw.record_id,
                height=raw.height,
                sender=raw.sender,
                key=fmt.entry_key(raw),
            ))

        logger.info(
            f"Catalog {self.catalog_address}: {len(results)} entr(y/ies) from {scanned} record(s), "
            f"{skipped} skipped"
        )
        return results

    async def list_games(self, include_retired: bool = False) -> List[Game]:
        return build_games(await self.load_entries(), self.driver, include_retired)

    async def next_app_id(self, records: Optional[List[CatalogRecord]] = None) -> int:
        """Highest app id in the catalog plus one (1 for an empty catalog)."""
        if records is None:
            records = await self.load_entries()
        return max((r.entry.app_id for r in records), default=0) + 1

    async def find_app_id_by_title(
        self, title: str, records: Optional[List[CatalogRecord]] = None
    ) -> Optional[int]:
        """
        Look up an app id by title (case-insensitive, surrounding whitespace ignored).

        Returns:
            App id of the newest matching entry, or None
        """
        if records is None:
            records = await self.load_entries()
        wanted = title.strip().lower()
        matches = [r for r in records if r.entry.title.strip().lower() == wanted]
        if not matches:
            return None
        return max(matches, key=lambda r: r.height).entry.app_id

    async def latest_entry(self, app_id: int) -> Optional[CatalogRecord]:
        """
        The most recently written entry for an app (highest height, then version).
        """
        records = [r for r in await self.load_entries() if r.entry.app_id == app_id]
        if not records:
            return None
        return max(records, key=lambda r: (r.height, r.sort_key))

    async def is_retired(self, app_id: int) -> bool:
        return app_id in retired_app_ids(await self.load_entries())

    async def next_cartridge_id(self, app_id: int, records: Optional[List[CatalogRecord]] = None) -> int:
        """
        Next cartridge id for an app: highest id among its published headers plus one.

        Each distinct cartridge address referenced by the app's entries is
        searched for its header. Returns 1 when none is found.
        """
        if records is None:
            records = await self.load_entries()
        addresses = []
        for record in records:
            if record.entry.app_id != app_id:
                continue
            address = self.driver.address_for_ref(record.entry.cartridge_ref)
            if address not in addresses:
                addresses.append(address)

        highest = 0
        for address in addresses:
            info = await locate_header(self.driver, address, publisher=self.publisher, page_size=self.page_size)
            if info is None:
                logger.warning(f"No header found for app {app_id} cartridge at {address}")
                continue
            highest = max(highest, info.header.cartridge_id)
        return highest + 1

"""Cartridge download: header discovery, chunk streaming, reassembly and verification."""

import sqlite3
import time
from typing import Callable, List, Optional

from common.cancellation import CancellationToken
from common.checksum import checksums_equal, compute_checksum
from common.config import Config
from common.constants import (
    DEFAULT_PAGE_SIZE,
    HEADER_SEARCH_PAGES,
    PROGRESS_BATCH_SIZE,
    PROGRESS_MIN_INTERVAL_SECONDS,
    STREAM_MAX_PAGES,
)
from common.exceptions import HeaderNotFoundError, IntegrityFailureError, MissingChunksError
from common.logging_config import get_logger
from common.types import CartridgeInfo, DownloadProgress, DownloadResult, RawRecord
from catalog.headers import locate_header, sender_matches
from downloader.cache import CacheService
from downloader.reconstructor import ChunkCollector, reconstruct
from drivers.base import BackendDriver

logger = get_logger(__name__)

PHASE_FETCHING = "fetching"
PHASE_RECONSTRUCTING = "reconstructing"
PHASE_VERIFYING = "verifying"
PHASE_COMPLETE = "complete"

ProgressCallback = Callable[[DownloadProgress], None]


class ProgressReporter:
    """
    Forwards progress to a callback, throttling repeats within one phase.

    Phase changes and forced reports always go through.
    """

    def __init__(self, callback: Optional[ProgressCallback], min_interval: float = PROGRESS_MIN_INTERVAL_SECONDS):
        self.callback = callback
        self.min_interval = min_interval
        self._last_phase: Optional[str] = None
        self._last_time = 0.0

    def report(self, progress: DownloadProgress, force: bool = False) -> None:
        if self.callback is None:
            return
        now = time.monotonic()
        if not force and progress.phase == self._last_phase and now - self._last_time < self.min_interval:
            return
        self._last_phase = progress.phase
        self._last_time = now
        try:
            self.callback(progress)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")


class DownloadPipeline:
    """Downloads and verifies one cartridge at a time."""

    def __init__(
        self,
        driver: BackendDriver,
        cache: Optional[CacheService] = None,
        publisher: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        header_search_pages: int = HEADER_SEARCH_PAGES,
        max_pages: int = STREAM_MAX_PAGES,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """
        Initialize download pipeline.

        Args:
            driver: Backend driver used for reads
            cache: Open cache service, or None to disable caching
            publisher: Only accept records written by this address
            page_size: Records per page
            header_search_pages: Pages searched for the header
            max_pages: Page cap for chunk streaming
            progress_callback: Receives DownloadProgress snapshots
        """
        self.driver = driver
        self.cache = cache
        self.publisher = publisher
        self.page_size = page_size
        self.header_search_pages = header_search_pages
        self.max_pages = max_pages
        self.reporter = ProgressReporter(progress_callback)

    @classmethod
    def from_config(
        cls,
        driver: BackendDriver,
        config: Config,
        cache: Optional[CacheService] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> "DownloadPipeline":
        """Pipeline using the configured publisher filter and page size."""
        return cls(
            driver,
            cache=cache,
            publisher=config.get_publisher(),
            page_size=config.get_page_size(),
            progress_callback=progress_callback,
        )

    async def load_info(self, address: str) -> CartridgeInfo:
        """
        Find the cartridge header without downloading content.

        Raises:
            HeaderNotFoundError: If no (matching) header is found
        """
        info = await locate_header(
            self.driver,
            address,
            publisher=self.publisher,
            page_size=self.page_size,
            max_pages=self.header_search_pages,
        )
        if info is None:
            raise HeaderNotFoundError(
                f"No cartridge header at {address} within {self.header_search_pages} page(s)"
            )
        return info

    async def download(self, address: str) -> DownloadResult:
        """
        Download, reassemble and verify a cartridge.

        Returns:
            DownloadResult with verified content

        Raises:
            HeaderNotFoundError: If the address holds no header
            MissingChunksError: If fewer chunks than announced are found
            IntegrityFailureError: If the content does not match the header checksum
        """
        info = await self.load_info(address)
        header = info.header
        logger.info(
            f"Downloading cartridge {header.cartridge_id} from {address}: "
            f"{header.total_size} bytes, checksum {header.checksum_hex[:16]}..."
        )

        cached = self._cache_get(info)
        if cached is not None:
            logger.info(f"Served cartridge {info.cache_id} from cache")
            self.reporter.report(
                DownloadProgress(PHASE_COMPLETE, header.expected_chunks, header.expected_chunks, len(cached)),
                force=True,
            )
            return DownloadResult(data=cached, info=info, verified=True, from_cache=True)

        if info.content_ref:
            self.reporter.report(DownloadProgress(PHASE_FETCHING, expected_chunks=1), force=True)
            data = await self.driver.fetch_by_id(info.content_ref)
        else:
            data = await self._fetch_chunks(info)

        self._verify(info, data)
        self._cache_put(info, data)
        self.reporter.report(
            DownloadProgress(PHASE_COMPLETE, header.expected_chunks, header.expected_chunks, len(data)),
            force=True,
        )
        return DownloadResult(data=data, info=info, verified=True)

    async def _fetch_chunks(self, info: CartridgeInfo) -> bytes:
        header = info.header
        expected = header.expected_chunks
        fmt = self.driver.record_format
        collector = ChunkCollector(header.cartridge_id, expected)
        cancel = CancellationToken()
        started = time.monotonic()
        pages = 0
        records_seen = 0

        def on_page(records: List[RawRecord]) -> None:
            nonlocal pages, records_seen
            pages += 1
            records_seen += len(records)
            for raw in records:
                if not fmt.is_chunk(raw):
                    continue
                if not sender_matches(self.driver, raw.sender, self.publisher):
                    continue
                chunk = fmt.decode_chunk(raw)
                if chunk is None:
                    continue
                collector.add(chunk)
                if collector.complete:
                    cancel.cancel("all chunks collected")
                    break
            elapsed = time.monotonic() - started
            self.reporter.report(DownloadProgress(
                PHASE_FETCHING,
                chunks_found=collector.count,
                expected_chunks=expected,
                bytes=collector.bytes,
                pages_fetched=pages,
                records_fetched=records_seen,
                rate=collector.count / elapsed if elapsed > 0 else 0.0,
            ))

        if expected > 0:
            await self.driver.stream_by_owner(
                info.address, on_page, page_size=self.page_size, cancel=cancel, max_pages=self.max_pages
            )
        logger.info(
            f"Collected {collector.count}/{expected} chunks from {records_seen} record(s) "
            f"in {pages} page(s) ({time.monotonic() - started:.1f}s)"
        )
        if not collector.complete:
            raise MissingChunksError(expected, collector.count, collector.missing())

        self.reporter.report(
            DownloadProgress(PHASE_RECONSTRUCTING, 0, expected, 0, pages, records_seen), force=True
        )

        def on_batch(done: int, assembled: int) -> None:
            self.reporter.report(
                DownloadProgress(PHASE_RECONSTRUCTING, done, expected, assembled, pages, records_seen),
                force=True,
            )

        return reconstruct(collector.chunks(), header.total_size, on_batch=on_batch, batch_size=PROGRESS_BATCH_SIZE)

    def _verify(self, info: CartridgeInfo, data: bytes) -> None:
        expected = info.header.checksum_hex
        self.reporter.report(
            DownloadProgress(PHASE_VERIFYING, info.header.expected_chunks, info.header.expected_chunks, len(data)),
            force=True,
        )
        actual = compute_checksum(data)
        if not checksums_equal(actual, expected):
            logger.error(f"Checksum mismatch for cartridge at {info.address}: expected {expected}, got {actual}")
            if self.cache is not None:
                try:
                    self.cache.invalidate(info.cache_id, expected)
                except (sqlite3.Error, RuntimeError) as e:
                    logger.warning(f"Cache invalidation failed: {e}")
            raise IntegrityFailureError(expected, actual)
        logger.info(f"Checksum verified for cartridge at {info.address}")

    def _cache_get(self, info: CartridgeInfo) -> Optional[bytes]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(info.cache_id, info.header.checksum_hex)
        except (sqlite3.Error, RuntimeError) as e:
            logger.warning(f"Cache read failed, downloading instead: {e}")
            return None

    def _cache_put(self, info: CartridgeInfo, data: bytes) -> None:
        if self.cache is None:
            return
        try:
            self.cache.put(info.cache_id, info.header.checksum_hex, data)
        except (sqlite3.Error, RuntimeError, IntegrityFailureError) as e:
            logger.warning(f"Cache write failed: {e}")

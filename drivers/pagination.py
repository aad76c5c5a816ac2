"""
Generic newest-first pagination over backend listings.

Each driver supplies a `fetch_page(cursor, page_size)` coroutine returning a
Page; this module owns deduplication, termination and the prefetching push
stream so every backend behaves the same way.
"""

import asyncio
import inspect
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from common.cancellation import CancellationToken
from common.constants import PAGE_FETCH_RETRIES, STALL_PAGE_LIMIT
from common.exceptions import TransientError
from common.logging_config import get_logger
from common.types import Page, RawRecord

logger = get_logger(__name__)

FetchPage = Callable[[Optional[str], int], Awaitable[Page]]
OnPage = Callable[[List[RawRecord]], object]


async def _fetch_with_retry(
    fetch_page: FetchPage,
    cursor: Optional[str],
    page_size: int,
    retries: int,
    retry_delay: float,
) -> Page:
    for attempt in range(retries + 1):
        try:
            return await fetch_page(cursor, page_size)
        except TransientError as e:
            if attempt >= retries:
                raise
            delay = retry_delay * (2 ** attempt)
            logger.warning(
                f"Page fetch failed (attempt {attempt + 1}/{retries + 1}) "
                f"[cursor={cursor}]: {e}, retrying in {delay}s"
            )
            await asyncio.sleep(delay)
    raise TransientError("unreachable")


async def iter_pages(
    fetch_page: FetchPage,
    page_size: int,
    cancel: Optional[CancellationToken] = None,
    max_pages: Optional[int] = None,
    stall_limit: int = STALL_PAGE_LIMIT,
    fetch_retries: int = PAGE_FETCH_RETRIES,
    retry_delay: float = 0.5,
) -> AsyncIterator[List[RawRecord]]:
    """
    Yield pages of records never seen before, newest first.

    Stops on an empty page, a short page, `stall_limit` consecutive pages
    without new records, `max_pages`, backend exhaustion or cancellation.
    When the cursor would not advance, the page's first record id is tried
    instead.

    Args:
        fetch_page: Coroutine fetching one page for a cursor (None = newest)
        page_size: Records requested per page
        cancel: Token checked before each fetch
        max_pages: Page cap (None = unlimited)
        stall_limit: Consecutive no-progress pages tolerated
        fetch_retries: Retries for a page fetch raising TransientError
        retry_delay: Delay before the first page retry in seconds

    Yields:
        Lists of deduplicated records
    """
    seen = set()
    cursor: Optional[str] = None
    pages = 0
    stalled = 0

    while max_pages is None or pages < max_pages:
        if cancel is not None and cancel.cancelled:
            logger.debug(f"Pagination cancelled after {pages} page(s)")
            return

        page = await _fetch_with_retry(fetch_page, cursor, page_size, fetch_retries, retry_delay)
        pages += 1
        records = page.records
        if not records:
            return

        fresh = []
        for record in records:
            if record.record_id not in seen:
                seen.add(record.record_id)
                fresh.append(record)

        if fresh:
            stalled = 0
            yield fresh
        else:
            stalled += 1
            if stalled >= stall_limit:
                logger.warning(f"Pagination stalled: {stalled} pages without new records, stopping")
                return

        if page.exhausted:
            return
        if page.next_cursor is None and len(records) < page_size:
            return

        next_cursor = page.next_cursor if page.next_cursor is not None else records[-1].record_id
        if next_cursor == cursor:
            next_cursor = records[0].record_id
            logger.debug(f"Cursor did not advance, retrying from first record {next_cursor}")
        cursor = next_cursor

    logger.debug(f"Page limit reached ({max_pages})")


async def iter_records(
    fetch_page: FetchPage,
    page_size: int,
    cancel: Optional[CancellationToken] = None,
    max_pages: Optional[int] = None,
    **kwargs,
) -> AsyncIterator[RawRecord]:
    """Flatten `iter_pages` into single records."""
    pages = iter_pages(fetch_page, page_size, cancel=cancel, max_pages=max_pages, **kwargs)
    try:
        async for records in pages:
            for record in records:
                yield record
    finally:
        await pages.aclose()


async def _next_page(pages: AsyncIterator[List[RawRecord]]) -> List[RawRecord]:
    return await pages.__anext__()


async def stream_pages(
    fetch_page: FetchPage,
    page_size: int,
    on_page: OnPage,
    cancel: Optional[CancellationToken] = None,
    max_pages: Optional[int] = None,
    **kwargs,
) -> int:
    """
    Push pages to `on_page` while the following page is already in flight.

    Args:
        fetch_page: Page fetch coroutine
        page_size: Records requested per page
        on_page: Callback (sync or async) receiving each page's new records
        cancel: Token the consumer cancels to stop early
        max_pages: Page cap

    Returns:
        Total number of records delivered
    """
    pages = iter_pages(fetch_page, page_size, cancel=cancel, max_pages=max_pages, **kwargs)
    total = 0
    pending: Optional[asyncio.Task] = asyncio.create_task(_next_page(pages))
    try:
        while pending is not None:
            try:
                records = await pending
            except StopAsyncIteration:
                pending = None
                break
            pending = None
            if cancel is None or not cancel.cancelled:
                pending = asyncio.create_task(_next_page(pages))

            total += len(records)
            result = on_page(records)
            if inspect.isawaitable(result):
                await result

            if cancel is not None and cancel.cancelled:
                break
    finally:
        if pending is not None:
            if not pending.done():
                pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
            except Exception as e:
                logger.debug(f"Discarded prefetched page after stop: {e}")
        await pages.aclose()
    return total

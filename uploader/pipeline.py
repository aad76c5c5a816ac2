"""Chunked, rate-limited and resumable cartridge upload."""

import asyncio
from dataclasses import dataclass
from typing import List, Optional

from common.cancellation import CancellationToken
from common.checksum import compute_digest
from common.config import Config
from common.constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_RATE_LIMIT,
    DEFAULT_SCHEMA,
    MAX_CARTRIDGE_SIZE,
    MAX_CHUNK_DATA,
    MAX_CONCURRENCY,
    MAX_TITLE_BYTES,
    PROGRESS_SAVE_INTERVAL,
)
from common.exceptions import (
    CartStoreError,
    NotAuthorizedError,
    OperationCancelledError,
    UnavailableError,
)
from common.logging_config import get_logger
from common.rate_limiter import AsyncTokenBucket
from common.records import (
    CatalogEntry,
    Chunk,
    Header,
    SemVer,
    encode_catalog_entry,
    encode_chunk,
    encode_header,
    split_chunks,
)
from common.types import UploadResult
from drivers.base import BackendDriver
from uploader.progress import PlannedChunk, ProgressStore, UploadProgress

logger = get_logger(__name__)

FATAL_WRITE_ERRORS = (NotAuthorizedError, UnavailableError)


@dataclass
class UploadRequest:
    """
    Everything needed to publish one cartridge.

    Attributes:
        data: File content
        app_id: Catalog app id
        cartridge_id: Cartridge id (unique per app)
        cartridge_address: Destination for header and chunks
        catalog_address: Destination for the catalog entry
        title: Catalog title (at most 15 UTF-8 bytes)
        semver: Version published in the catalog
        platform: Platform code
        schema: Record schema version
        chunk_size: Bytes per chunk (1..51)
        slug: Catalog key on object ledgers (derived from the title when empty)
    """
    data: bytes
    app_id: int
    cartridge_id: int
    cartridge_address: str
    catalog_address: str
    title: str
    semver: SemVer
    platform: int = 0
    schema: int = DEFAULT_SCHEMA
    chunk_size: int = DEFAULT_CHUNK_SIZE
    slug: str = ""

    def validate(self) -> None:
        """
        Raises:
            ValueError: If the request cannot be encoded
        """
        if not self.data:
            raise ValueError("Cartridge data is empty")
        if len(self.data) > MAX_CARTRIDGE_SIZE:
            raise ValueError(f"Cartridge is {len(self.data)} bytes, limit is {MAX_CARTRIDGE_SIZE}")
        if not 1 <= self.chunk_size <= MAX_CHUNK_DATA:
            raise ValueError(f"chunk_size must be between 1 and {MAX_CHUNK_DATA}")
        if len(self.title.encode("utf-8")) > MAX_TITLE_BYTES:
            raise ValueError(f"Title must be at most {MAX_TITLE_BYTES} bytes: {self.title!r}")
        if any(not 0 <= part <= 0xFF for part in self.semver):
            raise ValueError(f"Version components must be 0..255: {self.semver}")


class UploadPipeline:
    """
    Publishes chunks with a bounded worker pool, then the header, then the
    catalog entry.

    Progress is shared by the workers under one lock and persisted every few
    successful writes, so an interrupted upload resumes where it stopped.
    """

    def __init__(
        self,
        driver: BackendDriver,
        progress_store: ProgressStore,
        rate_limit: float = DEFAULT_RATE_LIMIT,
        concurrency: int = DEFAULT_CONCURRENCY,
        cancel: Optional[CancellationToken] = None,
        save_interval: int = PROGRESS_SAVE_INTERVAL,
    ):
        """
        Initialize upload pipeline.

        Args:
            driver: Backend driver used for writes
            progress_store: Where progress records are kept
            rate_limit: Writes per second across all workers
            concurrency: Worker count, clamped to 1..10 (also the limiter burst)
            cancel: Token the caller cancels to stop early
            save_interval: Successful writes between progress saves
        """
        self.driver = driver
        self.progress_store = progress_store
        self.concurrency = max(1, min(MAX_CONCURRENCY, concurrency))
        self.limiter = AsyncTokenBucket(rate_limit, burst=self.concurrency)
        self.cancel = cancel or CancellationToken()
        self.save_interval = save_interval
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls, driver: BackendDriver, config: Config, cancel: Optional[CancellationToken] = None
    ) -> "UploadPipeline":
        """Build a pipeline with the configured progress directory, rate limit and worker count."""
        upload = config.get_upload_config()
        return cls(
            driver,
            ProgressStore(config.get_progress_dir()),
            rate_limit=upload["rate_limit"],
            concurrency=upload["concurrency"],
            cancel=cancel,
        )

    async def run(self, request: UploadRequest) -> UploadResult:
        """
        Upload a cartridge, resuming any matching saved progress.

        Content-addressed drivers get the whole file as one blob plus a
        cartridge object; ledger drivers get chunk records and a header.

        Returns:
            UploadResult; `complete` is True once header and catalog entry are written

        Raises:
            ValueError: If the request is invalid
            NotAuthorizedError: If the writer is not authorized or locked
            UnavailableError: If the backend refuses writes
        """
        request.validate()
        digest = compute_digest(request.data)
        if self.driver.content_addressed:
            return await self._run_content(request, digest)

        chunks = split_chunks(request.cartridge_id, request.data, request.chunk_size)
        total = len(chunks)

        progress = self.progress_store.load(
            request.app_id, request.cartridge_id, request.cartridge_address, total, checksum_hex=digest.hex()
        )
        if not progress.plan:
            progress.plan = [
                PlannedChunk(index=c.chunk_index, payload_hex=encode_chunk(c).hex()) for c in chunks
            ]
        done = progress.completed_indices()
        pending = [c for c in chunks if c.chunk_index not in done]

        logger.info(
            f"Uploading cartridge {request.cartridge_id} of app {request.app_id}: "
            f"{len(request.data)} bytes, {total} chunks, {len(pending)} to send "
            f"[address={request.cartridge_address}, workers={self.concurrency}]"
        )

        fatal = await self._send_chunks(pending, request, progress)
        path = self.progress_store.save(progress)
        if fatal is not None:
            logger.error(f"Upload stopped: {type(fatal).__name__}: {fatal}")
            raise fatal

        if self.cancel.cancelled:
            logger.warning(f"Upload cancelled with {progress.sent_chunks}/{total} chunks sent")
            return self._result(progress, digest, path, request.cartridge_address)

        if progress.all_chunks_sent:
            await self._publish_header(request, progress, digest)
            path = self.progress_store.save(progress)
            if progress.header_reference:
                await self._publish_catalog_entry(request, progress)
                path = self.progress_store.save(progress)
        else:
            logger.warning(
                f"{len(progress.failed_chunks)} chunk(s) failed, header withheld "
                f"({progress.sent_chunks}/{total} sent); re-run to resume"
            )

        return self._result(progress, digest, path, request.cartridge_address)

    async def _send_chunks(
        self,
        pending: List[Chunk],
        request: UploadRequest,
        progress: UploadProgress,
    ) -> Optional[Exception]:
        """
        Run the worker pool.

        A fatal write error or any unexpected exception stops every worker
        before this returns; the first such error is returned.
        """
        if not pending:
            return None

        queue: asyncio.Queue = asyncio.Queue()
        for chunk in pending:
            queue.put_nowait(chunk)

        stop = CancellationToken()
        errors: List[Exception] = []
        unsaved = 0

        async def worker(worker_id: int) -> None:
            nonlocal unsaved
            while not (self.cancel.cancelled or stop.cancelled):
                try:
                    chunk = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    await self.limiter.acquire(self.cancel)
                except OperationCancelledError:
                    return
                if stop.cancelled:
                    return

                payload = encode_chunk(chunk)
                try:
                    reference = await self.driver.write(request.cartridge_address, payload)
                except Exception as e:
                    async with self._lock:
                        progress.mark_failed(chunk.chunk_index)
                    if isinstance(e, CartStoreError) and not isinstance(e, FATAL_WRITE_ERRORS):
                        logger.warning(f"Chunk {chunk.chunk_index} failed [worker={worker_id}]: {e}")
                        continue
                    raise

                async with self._lock:
                    progress.mark_sent(chunk.chunk_index, payload.hex(), reference)
                    unsaved += 1
                    if unsaved >= self.save_interval:
                        self.progress_store.save(progress)
                        unsaved = 0
                    sent = progress.sent_chunks
                if sent % 100 == 0:
                    logger.info(f"Progress: {sent}/{progress.total_chunks} chunks sent")

        async def guarded(worker_id: int) -> None:
            try:
                await worker(worker_id)
            except Exception as e:
                errors.append(e)
                stop.cancel(f"worker {worker_id}: {type(e).__name__}: {e}")
                raise

        workers = min(self.concurrency, len(pending))
        await asyncio.gather(*(guarded(i) for i in range(workers)), return_exceptions=True)
        return errors[0] if errors else None

    async def _run_content(self, request: UploadRequest, digest: bytes) -> UploadResult:
        """
        Store the file as one blob, create the cartridge object, then add the
        catalog entry referencing it. Each step is recorded so a re-run skips it.
        """
        progress = self.progress_store.load(
            request.app_id, request.cartridge_id, request.cartridge_address, 1, checksum_hex=digest.hex()
        )
        header = Header(
            cartridge_id=request.cartridge_id,
            total_size=len(request.data),
            checksum=digest,
            chunk_size=request.chunk_size,
            platform=request.platform,
            schema=request.schema,
        )
        logger.info(
            f"Uploading cartridge {request.cartridge_id} of app {request.app_id} as one blob: "
            f"{len(request.data)} bytes [catalog={request.catalog_address}]"
        )

        try:
            if not progress.all_chunks_sent:
                await self.limiter.acquire(self.cancel)
                content_ref = await self.driver.store_content(request.data)
                progress.mark_sent(0, "", content_ref)
                self.progress_store.save(progress)
            content_ref = progress.planned(0).write_reference

            if not progress.header_reference:
                await self.limiter.acquire(self.cancel)
                progress.header_reference = await self.driver.publish_cartridge(
                    header, content_ref, request.title, request.semver, request.slug
                )
                self.progress_store.save(progress)

            if not progress.catalog_reference:
                await self.limiter.acquire(self.cancel)
                entry = CatalogEntry(
                    app_id=request.app_id,
                    semver=request.semver,
                    cartridge_ref=self.driver.ref_for_address(progress.header_reference),
                    title=request.title,
                    platform=request.platform,
                    schema=request.schema,
                )
                progress.catalog_reference = await self.driver.publish_catalog_entry(
                    request.catalog_address, entry, request.slug, len(request.data)
                )
        except OperationCancelledError:
            logger.warning(f"Upload cancelled [blob={progress.sent_chunks}/1, object={progress.header_reference}]")
        except FATAL_WRITE_ERRORS:
            raise
        except CartStoreError as e:
            logger.error(f"Upload stopped, re-run to resume: {e}")
        finally:
            path = self.progress_store.save(progress)

        return self._result(progress, digest, path, progress.header_reference or None)

    async def _publish_header(self, request: UploadRequest, progress: UploadProgress, digest: bytes) -> None:
        if progress.header_reference:
            logger.info(f"Header already written [ref={progress.header_reference}]")
            return
        header = Header(
            cartridge_id=request.cartridge_id,
            total_size=len(request.data),
            checksum=digest,
            chunk_size=request.chunk_size,
            platform=request.platform,
            schema=request.schema,
        )
        progress.header_reference = await self._write_record(
            request.cartridge_address, encode_header(header), "header"
        )

    async def _publish_catalog_entry(self, request: UploadRequest, progress: UploadProgress) -> None:
        if progress.catalog_reference:
            logger.info(f"Catalog entry already written [ref={progress.catalog_reference}]")
            return
        entry = CatalogEntry(
            app_id=request.app_id,
            semver=request.semver,
            cartridge_ref=self.driver.ref_for_address(request.cartridge_address),
            title=request.title,
            platform=request.platform,
            schema=request.schema,
        )
        progress.catalog_reference = await self._write_record(
            request.catalog_address, encode_catalog_entry(entry), "catalog entry"
        )

    async def _write_record(self, address: str, payload: bytes, label: str) -> str:
        """Write a single record; non-fatal failures are logged and leave the upload resumable."""
        try:
            await self.limiter.acquire(self.cancel)
            reference = await self.driver.write(address, payload)
        except FATAL_WRITE_ERRORS:
            raise
        except CartStoreError as e:
            logger.error(f"Failed to write {label} to {address}: {e}")
            return ""
        logger.info(f"Wrote {label} to {address} [ref={reference}]")
        return reference

    @staticmethod
    def _result(
        progress: UploadProgress, digest: bytes, path, cartridge_address: Optional[str]
    ) -> UploadResult:
        return UploadResult(
            complete=bool(progress.header_reference and progress.catalog_reference),
            sent_chunks=progress.sent_chunks,
            total_chunks=progress.total_chunks,
            failed_chunks=sorted(progress.failed_chunks),
            checksum_hex=digest.hex(),
            header_reference=progress.header_reference or None,
            catalog_reference=progress.catalog_reference or None,
            progress_path=str(path),
            cartridge_address=cartridge_address,
        )

"""Tests for cartridge download, reassembly and verification."""

import hashlib

import pytest

from common import records
from common.addressing import encode_address
from common.exceptions import HeaderNotFoundError, IntegrityFailureError, MissingChunksError
from common.records import Header, SemVer, encode_chunk, encode_header, split_chunks
from downloader.pipeline import (
    PHASE_COMPLETE,
    PHASE_FETCHING,
    PHASE_RECONSTRUCTING,
    PHASE_VERIFYING,
    DownloadPipeline,
)
from uploader.pipeline import UploadPipeline, UploadRequest

CARTRIDGE_ADDRESS = encode_address(b"\x02" * 20)
CATALOG_ADDRESS = encode_address(b"\x03" * 20)
ROGUE_ADDRESS = encode_address(b"\x04" * 20)

DATA = bytes((i * 13 + 5) % 256 for i in range(255))


def publish(ledger, data=DATA, cartridge_id=1, order=None, checksum=None, address=CARTRIDGE_ADDRESS):
    """Append chunks (in the given index order) and then the header."""
    chunks = split_chunks(cartridge_id, data)
    for index in order if order is not None else range(len(chunks)):
        ledger.append(address, encode_chunk(chunks[index]))
    header = Header(
        cartridge_id=cartridge_id,
        total_size=len(data),
        checksum=checksum or hashlib.sha256(data).digest(),
    )
    ledger.append(address, encode_header(header))


class TestDownload:
    @pytest.mark.asyncio
    async def test_round_trip_with_upload(self, ledger, progress_store, sample_data):
        request = UploadRequest(
            data=sample_data,
            app_id=1,
            cartridge_id=1,
            cartridge_address=CARTRIDGE_ADDRESS,
            catalog_address=CATALOG_ADDRESS,
            title="Tetris",
            semver=SemVer(1, 0, 0),
        )
        await UploadPipeline(ledger, progress_store, rate_limit=0).run(request)

        result = await DownloadPipeline(ledger).download(CARTRIDGE_ADDRESS)

        assert result.data == sample_data
        assert result.verified
        assert not result.from_cache
        assert result.info.header.cartridge_id == 1

    @pytest.mark.asyncio
    async def test_out_of_order_and_duplicate_chunks(self, ledger):
        publish(ledger, order=[3, 0, 4, 1, 1, 2, 0])

        result = await DownloadPipeline(ledger, page_size=3).download(CARTRIDGE_ADDRESS)

        assert result.data == DATA

    @pytest.mark.asyncio
    async def test_other_cartridges_at_same_address_ignored(self, ledger):
        publish(ledger, data=b"x" * 200, cartridge_id=7)
        publish(ledger, cartridge_id=8)

        result = await DownloadPipeline(ledger).download(CARTRIDGE_ADDRESS)

        assert result.info.header.cartridge_id == 8
        assert result.data == DATA

    @pytest.mark.asyncio
    async def test_missing_chunk(self, ledger):
        publish(ledger, order=[0, 1, 3, 4])

        with pytest.raises(MissingChunksError) as exc_info:
            await DownloadPipeline(ledger).download(CARTRIDGE_ADDRESS)

        assert exc_info.value.missing == [2]
        assert exc_info.value.expected == 5
        assert exc_info.value.found == 4

    @pytest.mark.asyncio
    async def test_no_header(self, ledger):
        ledger.append(CARTRIDGE_ADDRESS, encode_chunk(split_chunks(1, DATA)[0]))

        with pytest.raises(HeaderNotFoundError):
            await DownloadPipeline(ledger).download(CARTRIDGE_ADDRESS)

    @pytest.mark.asyncio
    async def test_checksum_mismatch_not_cached(self, ledger, cache):
        publish(ledger, checksum=bytes(32))

        with pytest.raises(IntegrityFailureError) as exc_info:
            await DownloadPipeline(ledger, cache=cache).download(CARTRIDGE_ADDRESS)

        assert exc_info.value.expected == "00" * 32
        assert exc_info.value.actual == hashlib.sha256(DATA).hexdigest()
        assert cache.total_size() == 0

    @pytest.mark.asyncio
    async def test_publisher_filter_rejects_foreign_chunks(self, ledger):
        publish(ledger)
        forged = split_chunks(1, bytes(255))
        for chunk in forged:
            ledger.append(CARTRIDGE_ADDRESS, encode_chunk(chunk), sender=ROGUE_ADDRESS)

        with pytest.raises(IntegrityFailureError):
            await DownloadPipeline(ledger).download(CARTRIDGE_ADDRESS)

        result = await DownloadPipeline(ledger, publisher=ledger.writer).download(CARTRIDGE_ADDRESS)
        assert result.data == DATA

    @pytest.mark.asyncio
    async def test_publisher_filter_rejects_foreign_header(self, ledger):
        header = Header(cartridge_id=1, total_size=3, checksum=hashlib.sha256(b"abc").digest())
        ledger.append(CARTRIDGE_ADDRESS, encode_header(header), sender=ROGUE_ADDRESS)

        with pytest.raises(HeaderNotFoundError):
            await DownloadPipeline(ledger, publisher=ledger.writer).load_info(CARTRIDGE_ADDRESS)


class TestScanEfficiency:
    @pytest.mark.asyncio
    async def test_stops_once_all_chunks_found(self, ledger):
        for i in range(500):
            ledger.append(CARTRIDGE_ADDRESS, b"JUNK" + i.to_bytes(4, "little") + bytes(56))
        publish(ledger)
        calls = []
        original = ledger.fetch_page

        async def counting_fetch(address, cursor, page_size):
            calls.append(cursor)
            return await original(address, cursor, page_size)

        ledger.fetch_page = counting_fetch

        result = await DownloadPipeline(ledger, page_size=10).download(CARTRIDGE_ADDRESS)

        assert result.data == DATA
        assert len(calls) <= 3

    @pytest.mark.asyncio
    async def test_foreign_payloads_never_decoded(self, ledger, monkeypatch):
        publish(ledger)
        for i in range(20):
            ledger.append(CARTRIDGE_ADDRESS, b"JUNK" + bytes(60))
        decoded = []
        original = records.decode_chunk

        def spy(buffer):
            decoded.append(bytes(buffer[:4]))
            return original(buffer)

        monkeypatch.setattr(records, "decode_chunk", spy)

        result = await DownloadPipeline(ledger, page_size=8).download(CARTRIDGE_ADDRESS)

        assert result.data == DATA
        assert decoded
        assert set(decoded) == {b"DATA"}


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_download_served_from_cache(self, ledger, cache):
        publish(ledger)
        pipeline = DownloadPipeline(ledger, cache=cache)

        first = await pipeline.download(CARTRIDGE_ADDRESS)
        second = await pipeline.download(CARTRIDGE_ADDRESS)

        assert not first.from_cache
        assert second.from_cache
        assert second.data == DATA
        assert cache.total_size() == len(DATA)

    @pytest.mark.asyncio
    async def test_closed_cache_falls_back_to_download(self, ledger, tmp_path):
        from downloader.cache import CacheService

        publish(ledger)
        closed = CacheService(tmp_path / "closed.db")

        result = await DownloadPipeline(ledger, cache=closed).download(CARTRIDGE_ADDRESS)

        assert result.data == DATA
        assert not result.from_cache


class TestProgress:
    @pytest.mark.asyncio
    async def test_phases_reported_in_order(self, ledger):
        publish(ledger)
        events = []

        await DownloadPipeline(ledger, progress_callback=events.append).download(CARTRIDGE_ADDRESS)

        phases = [e.phase for e in events]
        assert phases[0] == PHASE_FETCHING
        assert phases[-1] == PHASE_COMPLETE
        order = [PHASE_FETCHING, PHASE_RECONSTRUCTING, PHASE_VERIFYING, PHASE_COMPLETE]
        firsts = [phases.index(p) for p in order]
        assert firsts == sorted(firsts)
        assert events[-1].bytes == len(DATA)
        assert events[-1].chunks_found == 5

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_abort(self, ledger):
        publish(ledger)

        def callback(progress):
            raise RuntimeError("display gone")

        result = await DownloadPipeline(ledger, progress_callback=callback).download(CARTRIDGE_ADDRESS)

        assert result.data == DATA

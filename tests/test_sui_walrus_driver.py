"""Tests for the Sui object driver and the Walrus blob client."""

import hashlib
import json

import httpx
import pytest
from aiohttp import test_utils, web

from common.addressing import b58encode
from common.exceptions import IncompleteUploadError, NotAuthorizedError, RpcError, WriterLockedError
from common.records import SemVer
from catalog.indexer import CatalogIndexer
from downloader.pipeline import DownloadPipeline
from drivers.rpc import JsonRpcClient
from drivers.sui_walrus import (
    SuiWalrusDriver,
    WalrusClient,
    bytes_field,
    numeric_id,
    platform_code,
    semver_to_version,
    slugify,
    version_to_semver,
)
from uploader.catalog_ops import retire_app
from uploader.pipeline import UploadPipeline, UploadRequest

CATALOG_ID = "0x" + "ca" * 32
CARTRIDGE_ID = "0x" + "ab" * 32
BLOB_BYTES = bytes(range(32))
BLOB_ID = b58encode(BLOB_BYTES)
CONTENT = b"walrus cartridge content " * 40


def dynamic_field(object_id, version, value_fields):
    return {
        "data": {
            "objectId": object_id,
            "version": str(version),
            "content": {
                "dataType": "moveObject",
                "fields": {
                    "id": {"id": object_id},
                    "name": object_id,
                    "value": {"type": "catalog::Entry", "fields": value_fields},
                },
            },
        }
    }


def entry_fields(slug, title, version, cartridge_id=CARTRIDGE_ID, retired=False):
    return {
        "cartridge_id": cartridge_id,
        "title": title,
        "platform": "NES",
        "version": version,
        "slug": slug,
        "retired": retired,
    }


class FakeSuiNode:
    """Catalog object with dynamic fields plus one cartridge object."""

    def __init__(self, entries=None, page_limit=50):
        self.entries = entries or []
        self.page_limit = page_limit
        self.objects = {}
        self.calls = []

    def handler(self, request):
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        self.calls.append((method, params))
        result = getattr(self, f"rpc_{method}")(params)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def rpc_sui_getObject(self, params):
        object_id = params[0]
        if object_id in self.objects:
            return {"data": self.objects[object_id]}
        if object_id == CATALOG_ID:
            return {"data": {
                "objectId": CATALOG_ID,
                "version": "3",
                "content": {"dataType": "moveObject", "fields": {"id": {"id": CATALOG_ID}, "count": "2"}},
            }}
        if object_id == CARTRIDGE_ID:
            return {"data": {
                "objectId": CARTRIDGE_ID,
                "version": "8",
                "content": {"dataType": "moveObject", "fields": {
                    "id": {"id": CARTRIDGE_ID},
                    "blob_id": list(BLOB_BYTES),
                    "sha256": list(hashlib.sha256(CONTENT).digest()),
                    "size_bytes": str(len(CONTENT)),
                    "platform": 3,
                }},
            }}
        return {"error": {"code": "notExists"}}

    def rpc_suix_getDynamicFields(self, params):
        _, cursor, limit = params
        start = int(cursor) if cursor else 0
        window = self.entries[start:start + min(limit, self.page_limit)]
        end = start + len(window)
        return {
            "data": [{"objectId": item["data"]["objectId"]} for item in window],
            "nextCursor": str(end) if window else None,
            "hasNextPage": end < len(self.entries),
        }

    def rpc_sui_multiGetObjects(self, params):
        by_id = {item["data"]["objectId"]: item for item in self.entries}
        return [by_id[object_id] for object_id in params[0]]


class FakeWriter:
    address = "0x" + "01" * 32

    def __init__(self, ready=True, node=None):
        self.ready = ready
        self.node = node
        self.registered = []
        self.cartridges = []
        self.catalog_entries = []

    def is_ready(self):
        return self.ready

    async def register_blob(self, address, blob_id, payload):
        self.registered.append((address, blob_id, payload))
        return "digest-1"

    async def create_object(self):
        return "0x" + "0e" * 32

    async def create_cartridge(self, fields):
        object_id = f"0x{len(self.cartridges) + 1:064x}"
        self.cartridges.append(fields)
        if self.node is not None:
            self.node.objects[object_id] = {
                "objectId": object_id,
                "version": "20",
                "content": {"dataType": "moveObject", "fields": dict(fields, id={"id": object_id})},
            }
        return object_id

    async def add_catalog_entry(self, catalog_id, fields):
        self.catalog_entries.append((catalog_id, fields))
        if self.node is not None:
            field_id = f"0x{0xf000 + len(self.node.entries):064x}"
            self.node.entries.append(dynamic_field(field_id, 30 + len(self.node.entries), fields))
        return f"digest-{len(self.catalog_entries)}"


class FakeWalrus(WalrusClient):
    """Blob store kept in memory."""

    def __init__(self):
        super().__init__("http://unused", "http://unused")
        self.blobs = {}

    async def store_blob(self, data):
        blob_id = b58encode(hashlib.sha256(data).digest())
        self.blobs[blob_id] = data
        return blob_id

    async def read_blob(self, blob_id):
        if blob_id not in self.blobs:
            raise IncompleteUploadError(f"Blob {blob_id} not found")
        return self.blobs[blob_id]


def make_driver(node, walrus=None, writer=None):
    transport = httpx.MockTransport(node.handler)
    rpc = JsonRpcClient("http://sui.test", client=httpx.AsyncClient(transport=transport), base_delay=0)
    return SuiWalrusDriver(rpc, walrus or WalrusClient("http://unused", "http://unused"), writer=writer)


async def start_server(app):
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


def base_url(server):
    return str(server.make_url("/"))


class TestHelpers:
    def test_bytes_field(self):
        assert bytes_field([1, 2, 255]) == b"\x01\x02\xff"
        assert bytes_field("0xabcd") == b"\xab\xcd"
        assert bytes_field("AQID") == b"\x01\x02\x03"
        assert bytes_field(None) == b""

    def test_version_to_semver(self):
        assert version_to_semver(123) == SemVer(1, 2, 3)
        assert version_to_semver(100) == SemVer(1, 0, 0)

    def test_platform_code(self):
        assert platform_code("NES") == 3
        assert platform_code("nes") == 3
        assert platform_code("4") == 4
        assert platform_code("Unknown") == 0
        assert platform_code(None) == 0

    def test_numeric_id_is_stable(self):
        assert numeric_id("tetris") == numeric_id("tetris")
        assert numeric_id("tetris") != numeric_id("doom")
        assert 0 <= numeric_id("tetris") <= 0xFFFFFFFF

    def test_semver_to_version(self):
        assert semver_to_version(SemVer(1, 2, 3)) == 123
        assert version_to_semver(semver_to_version(SemVer(2, 0, 9))) == SemVer(2, 0, 9)
        with pytest.raises(ValueError):
            semver_to_version(SemVer(1, 10, 0))

    def test_slugify(self):
        assert slugify("Walrus Quest!") == "walrus-quest"
        assert slugify("  ") == "cartridge"


class TestCatalog:
    @pytest.mark.asyncio
    async def test_list_games_from_dynamic_fields(self):
        node = FakeSuiNode([
            dynamic_field("0xf1", 10, entry_fields("tetris", "Tetris", 100)),
            dynamic_field("0xf2", 11, entry_fields("tetris", "Tetris", 120)),
            dynamic_field("0xf3", 12, entry_fields("doom", "Doom", 100, cartridge_id="0x" + "dd" * 32)),
        ])
        driver = make_driver(node)

        games = await CatalogIndexer(driver, CATALOG_ID).list_games()

        by_title = {g.title: g for g in games}
        tetris = by_title["Tetris"]
        assert tetris.app_id == numeric_id("tetris")
        assert tetris.platform == "NES"
        assert [str(v.semver) for v in tetris.versions] == ["1.2.0", "1.0.0"]
        assert tetris.latest.cartridge_address == CARTRIDGE_ID
        assert by_title["Doom"].latest.cartridge_address == "0x" + "dd" * 32

    @pytest.mark.asyncio
    async def test_retired_flag(self):
        node = FakeSuiNode([
            dynamic_field("0xf1", 10, entry_fields("tetris", "Tetris", 100, retired=True)),
        ])

        indexer = CatalogIndexer(make_driver(node), CATALOG_ID)

        assert await indexer.list_games() == []
        assert (await indexer.list_games(include_retired=True))[0].retired

    @pytest.mark.asyncio
    async def test_follows_dynamic_field_cursor(self):
        entries = [
            dynamic_field(f"0x{i:02x}", i, entry_fields(f"game{i}", f"Game {i}", 100))
            for i in range(1, 8)
        ]
        node = FakeSuiNode(entries, page_limit=3)

        games = await CatalogIndexer(make_driver(node), CATALOG_ID).list_games()

        assert len(games) == 7
        cursors = [params[1] for method, params in node.calls if method == "suix_getDynamicFields"]
        assert cursors == [None, "3", "6"]


class TestCartridge:
    @pytest.mark.asyncio
    async def test_download_blob(self, cache):
        async def serve_blob(request):
            if request.match_info["blob_id"] != BLOB_ID:
                return web.Response(status=404)
            return web.Response(body=CONTENT)

        app = web.Application()
        app.router.add_get("/v1/blobs/{blob_id}", serve_blob)
        server = await start_server(app)
        try:
            walrus = WalrusClient(base_url(server), base_url(server), base_delay=0)
            driver = make_driver(FakeSuiNode(), walrus=walrus)
            pipeline = DownloadPipeline(driver, cache=cache)

            result = await pipeline.download(CARTRIDGE_ID)
            cached = await pipeline.download(CARTRIDGE_ID)
        finally:
            await server.close()

        assert result.data == CONTENT
        assert result.info.content_ref == BLOB_ID
        assert result.info.cache_id == CARTRIDGE_ID
        assert cached.from_cache

    @pytest.mark.asyncio
    async def test_missing_blob(self):
        app = web.Application()
        server = await start_server(app)
        try:
            walrus = WalrusClient(base_url(server), base_url(server), base_delay=0)
            with pytest.raises(IncompleteUploadError):
                await walrus.read_blob("nope")
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_write_stores_blob_with_fallback(self):
        received = []

        async def store(request):
            received.append((request.query.get("epochs"), await request.read()))
            return web.json_response({"newlyCreated": {"blobObject": {"blobId": "blob-123", "size": 3}}})

        app = web.Application()
        app.router.add_put("/v1/blobs", store)
        server = await start_server(app)
        writer = FakeWriter()
        try:
            walrus = WalrusClient(base_url(server), base_url(server), epochs=2, base_delay=0)
            driver = make_driver(FakeSuiNode(), walrus=walrus, writer=writer)

            digest = await driver.write(CARTRIDGE_ID, b"abc")
        finally:
            await server.close()

        assert digest == "digest-1"
        assert received == [("2", b"abc")]
        assert writer.registered == [(CARTRIDGE_ID, "blob-123", b"abc")]

    @pytest.mark.asyncio
    async def test_store_already_certified(self):
        async def store(request):
            return web.json_response({"alreadyCertified": {"blobId": "blob-old", "endEpoch": 9}})

        app = web.Application()
        app.router.add_put("/v1/store", store)
        server = await start_server(app)
        try:
            walrus = WalrusClient(base_url(server), base_url(server), base_delay=0)
            assert await walrus.store_blob(b"abc") == "blob-old"
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_store_unrecognised_response(self):
        async def store(request):
            return web.json_response({"status": "weird"})

        app = web.Application()
        app.router.add_put("/v1/store", store)
        server = await start_server(app)
        try:
            walrus = WalrusClient(base_url(server), base_url(server), base_delay=0)
            with pytest.raises(RpcError):
                await walrus.store_blob(b"abc")
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_write_requires_ready_writer(self):
        with pytest.raises(NotAuthorizedError):
            await make_driver(FakeSuiNode()).write(CARTRIDGE_ID, b"abc")
        with pytest.raises(WriterLockedError):
            await make_driver(FakeSuiNode(), writer=FakeWriter(ready=False)).write(CARTRIDGE_ID, b"abc")

    @pytest.mark.asyncio
    async def test_create_address_uses_writer(self):
        driver = make_driver(FakeSuiNode(), writer=FakeWriter())

        assert await driver.create_address() == "0x" + "0e" * 32


def walrus_request(**overrides):
    fields = dict(
        data=CONTENT,
        app_id=7,
        cartridge_id=1,
        cartridge_address="",
        catalog_address=CATALOG_ID,
        title="Walrus Quest",
        semver=SemVer(1, 2, 0),
        platform=3,
    )
    fields.update(overrides)
    return UploadRequest(**fields)


class TestContentUpload:
    @pytest.mark.asyncio
    async def test_upload_then_download(self, progress_store):
        node = FakeSuiNode()
        walrus = FakeWalrus()
        writer = FakeWriter(node=node)
        driver = make_driver(node, walrus=walrus, writer=writer)

        result = await UploadPipeline(driver, progress_store, rate_limit=0).run(walrus_request())

        assert result.complete
        assert list(walrus.blobs.values()) == [CONTENT]
        assert len(writer.cartridges) == 1
        assert result.cartridge_address == result.header_reference
        cartridge = writer.cartridges[0]
        assert cartridge["slug"] == "walrus-quest"
        assert cartridge["version"] == 120
        assert cartridge["size_bytes"] == len(CONTENT)
        assert cartridge["sha256"] == "0x" + hashlib.sha256(CONTENT).hexdigest()
        assert cartridge["publisher"] == FakeWriter.address
        catalog_id, entry = writer.catalog_entries[0]
        assert catalog_id == CATALOG_ID
        assert entry["cartridge_id"] == result.cartridge_address
        assert entry["slug"] == "walrus-quest"
        assert entry["retired"] is False

        downloaded = await DownloadPipeline(driver).download(result.cartridge_address)
        assert downloaded.data == CONTENT

        games = await CatalogIndexer(driver, CATALOG_ID).list_games()
        assert [g.title for g in games] == ["Walrus Quest"]
        assert games[0].app_id == numeric_id("walrus-quest")
        assert games[0].latest.semver == SemVer(1, 2, 0)
        assert games[0].latest.cartridge_address == result.cartridge_address

    @pytest.mark.asyncio
    async def test_rerun_writes_nothing(self, progress_store):
        node = FakeSuiNode()
        walrus = FakeWalrus()
        writer = FakeWriter(node=node)
        pipeline = UploadPipeline(make_driver(node, walrus=walrus, writer=writer), progress_store, rate_limit=0)

        first = await pipeline.run(walrus_request())
        second = await pipeline.run(walrus_request())

        assert second.complete
        assert second.cartridge_address == first.cartridge_address
        assert len(walrus.blobs) == 1
        assert len(writer.cartridges) == 1
        assert len(writer.catalog_entries) == 1

    @pytest.mark.asyncio
    async def test_explicit_slug(self, progress_store):
        node = FakeSuiNode()
        writer = FakeWriter(node=node)
        driver = make_driver(node, walrus=FakeWalrus(), writer=writer)

        await UploadPipeline(driver, progress_store, rate_limit=0).run(walrus_request(slug="wq"))

        assert writer.cartridges[0]["slug"] == "wq"
        assert writer.catalog_entries[0][1]["slug"] == "wq"

    @pytest.mark.asyncio
    async def test_locked_writer_stores_nothing(self, progress_store):
        node = FakeSuiNode()
        walrus = FakeWalrus()
        driver = make_driver(node, walrus=walrus, writer=FakeWriter(ready=False, node=node))

        with pytest.raises(WriterLockedError):
            await UploadPipeline(driver, progress_store, rate_limit=0).run(walrus_request())

        assert walrus.blobs == {}

    @pytest.mark.asyncio
    async def test_retire_republishes_entry_under_its_slug(self):
        node = FakeSuiNode([dynamic_field("0xf1", 10, entry_fields("tetris", "Tetris", 110))])
        writer = FakeWriter(node=node)
        driver = make_driver(node, writer=writer)
        indexer = CatalogIndexer(driver, CATALOG_ID)
        app_id = numeric_id("tetris")

        digest = await retire_app(driver, indexer, app_id)

        assert digest == "digest-1"
        catalog_id, entry = writer.catalog_entries[0]
        assert catalog_id == CATALOG_ID
        assert entry["slug"] == "tetris"
        assert entry["retired"] is True
        assert entry["version"] == 110
        assert entry["cartridge_id"] == CARTRIDGE_ID
        assert await indexer.is_retired(app_id)

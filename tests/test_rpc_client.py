"""Tests for the JSON-RPC client using httpx.MockTransport."""

import json

import httpx
import pytest

from common.exceptions import RpcError, TransientError
from drivers.rpc import JsonRpcClient


def make_client(handler, **kwargs):
    transport = httpx.MockTransport(handler)
    kwargs.setdefault("base_delay", 0)
    return JsonRpcClient("http://node.test/", client=httpx.AsyncClient(transport=transport), **kwargs)


def ok(request, result):
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


@pytest.mark.asyncio
async def test_call_returns_result():
    """Test request body shape and result extraction."""
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append(body)
        return ok(request, 1234)

    async with make_client(handler) as client:
        assert await client.call("getBlockNumber") == 1234
        assert await client.call("getTransactionByHash", ["abc"]) == 1234

    assert seen[0]["jsonrpc"] == "2.0"
    assert seen[0]["method"] == "getBlockNumber"
    assert seen[0]["params"] == []
    assert seen[1]["params"] == ["abc"]
    assert seen[1]["id"] != seen[0]["id"]


@pytest.mark.asyncio
async def test_error_object_raises_rpc_error():
    def handler(request):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "Method not found"}})

    async with make_client(handler) as client:
        with pytest.raises(RpcError) as exc_info:
            await client.call("nope")

    assert exc_info.value.code == -32601
    assert exc_info.value.method == "nope"
    assert "Method not found" in str(exc_info.value)


@pytest.mark.asyncio
async def test_retries_server_errors_then_succeeds():
    """Test that 5xx and 429 responses are retried."""
    statuses = [500, 429]

    def handler(request):
        if statuses:
            return httpx.Response(statuses.pop(0))
        return ok(request, "done")

    async with make_client(handler, max_retries=3) as client:
        assert await client.call("getBalance") == "done"

    assert statuses == []


@pytest.mark.asyncio
async def test_retries_exhausted_raises_transient():
    attempts = []

    def handler(request):
        attempts.append(1)
        return httpx.Response(503)

    async with make_client(handler, max_retries=2) as client:
        with pytest.raises(TransientError):
            await client.call("getBalance")

    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_network_error_raises_transient():
    attempts = []

    def handler(request):
        attempts.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    async with make_client(handler, max_retries=1) as client:
        with pytest.raises(TransientError):
            await client.call("getBlockNumber")

    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_client_error_not_retried():
    attempts = []

    def handler(request):
        attempts.append(1)
        return httpx.Response(404, text="not found")

    async with make_client(handler) as client:
        with pytest.raises(RpcError):
            await client.call("getBlockNumber")

    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_invalid_json_raises_rpc_error():
    def handler(request):
        return httpx.Response(200, text="<html>")

    async with make_client(handler) as client:
        with pytest.raises(RpcError):
            await client.call("getBlockNumber")

"""
Tests for the Soroban JSON-RPC client, using httpx.MockTransport.
"""

import json

import httpx
import pytest

from indexer.core.errors import RpcError
from indexer.services.rpc import SorobanRpcClient

RPC_URL = "https://rpc.test/soroban"


def _client(handler) -> SorobanRpcClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SorobanRpcClient(RPC_URL, client=http)


def _result(request: httpx.Request, result) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


class TestGetEvents:
    @pytest.mark.asyncio
    async def test_request_shape_with_start_ledger(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return _result(request, {"events": [{"id": "e1", "ledger": 5}], "latestLedger": 9, "cursor": "e1"})

        client = _client(handler)
        page = await client.get_events("CFACTORY", start_ledger=5, limit=50)

        assert seen["method"] == "getEvents"
        assert seen["params"]["startLedger"] == 5
        assert seen["params"]["filters"] == [{"type": "contract", "contractIds": ["CFACTORY"]}]
        assert seen["params"]["pagination"] == {"limit": 50}
        assert seen["params"]["xdrFormat"] == "json"
        assert page.events == [{"id": "e1", "ledger": 5}]
        assert page.latest_ledger == 9
        assert page.cursor == "e1"

    @pytest.mark.asyncio
    async def test_cursor_replaces_start_ledger(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return _result(request, {"events": [], "latestLedger": 9})

        await _client(handler).get_events("CFACTORY", cursor="e1", limit=10)

        assert "startLedger" not in seen["params"]
        assert seen["params"]["pagination"] == {"limit": 10, "cursor": "e1"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event, problem",
        [
            ({"id": "e1"}, "event has no ledger"),
            ({"id": "e1", "ledger": "latest"}, "event ledger is not an integer"),
            ({"ledger": 5}, "event has no id"),
            ("e1", "event is not an object"),
        ],
    )
    async def test_malformed_event_raises_rpc_error(self, event, problem):
        client = _client(lambda request: _result(request, {"events": [event], "latestLedger": 9}))

        with pytest.raises(RpcError) as exc_info:
            await client.get_events("CFACTORY", start_ledger=5)

        assert problem in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_requires_exactly_one_of_start_or_cursor(self):
        client = _client(lambda request: _result(request, {}))

        with pytest.raises(ValueError):
            await client.get_events("CFACTORY")
        with pytest.raises(ValueError):
            await client.get_events("CFACTORY", start_ledger=1, cursor="e1")

    @pytest.mark.asyncio
    async def test_limit_is_capped(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return _result(request, {"events": []})

        page = await _client(handler).get_events("CFACTORY", start_ledger=1, limit=50_000)

        assert seen["params"]["pagination"]["limit"] == 10_000
        assert page.events == []
        assert page.latest_ledger is None


class TestErrors:
    @pytest.mark.asyncio
    async def test_json_rpc_error_object(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32600, "message": "startLedger too old"}})

        with pytest.raises(RpcError) as exc_info:
            await _client(handler).get_events("CFACTORY", start_ledger=1)

        assert exc_info.value.code == -32600
        assert exc_info.value.method == "getEvents"
        assert "startLedger too old" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_http_status_error(self):
        client = _client(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(httpx.HTTPStatusError):
            await client.get_latest_ledger()

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(RpcError, match="not JSON"):
            await client.get_latest_ledger()

    @pytest.mark.asyncio
    async def test_missing_result(self):
        client = _client(lambda request: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1}))

        with pytest.raises(RpcError, match="no result"):
            await client.get_latest_ledger()

    @pytest.mark.asyncio
    async def test_malformed_events(self):
        client = _client(lambda request: _result(request, {"events": "nope"}))

        with pytest.raises(RpcError):
            await client.get_events("CFACTORY", start_ledger=1)

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(httpx.ConnectError):
            await _client(handler).get_latest_ledger()


class TestLatestLedger:
    @pytest.mark.asyncio
    async def test_returns_sequence(self):
        client = _client(lambda request: _result(request, {"id": "abc", "protocolVersion": 21, "sequence": 123456}))

        assert await client.get_latest_ledger() == 123456

    @pytest.mark.asyncio
    async def test_request_ids_increment(self):
        ids = []

        def handler(request):
            ids.append(json.loads(request.content)["id"])
            return _result(request, {"sequence": 1})

        client = _client(handler)
        await client.get_latest_ledger()
        await client.get_latest_ledger()

        assert ids == [1, 2]

    @pytest.mark.asyncio
    async def test_aclose_leaves_injected_client_open(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: _result(request, {"sequence": 1})))
        client = SorobanRpcClient(RPC_URL, client=http)

        await client.aclose()

        assert not http.is_closed
        await http.aclose()

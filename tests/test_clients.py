"""Tests for the HTTP base client, JSON-RPC fallback and the EVM client."""

from __future__ import annotations

import json
from unittest.mock import patch

import httpx
import pytest

from dropkit.chain.events import TransferEvent, transfer_filter
from dropkit.clients.base import APIError, BaseClient, RateLimiter, ResponseCache, RPCError, RPCFallbackClient
from dropkit.clients.evm import (
    BALANCE_OF_SELECTOR,
    DECIMALS_SELECTOR,
    OWNER_SELECTOR,
    SYMBOL_SELECTOR,
    EvmClient,
)
from dropkit.errors import LogQueryError
from tests.mocks.mock_rpc import (
    BALANCE_RESULT,
    BLOCK_HEADER,
    BLOCK_NUMBER,
    CLAIMER,
    DECIMALS_RESULT,
    DROP,
    OWNER,
    OWNER_RESULT,
    RANGE_TOO_WIDE,
    SYMBOL_RESULT,
    TOKEN,
    TRANSFER_LOGS,
)

RPC_URL = "https://rpc.test"


def _transport(handler):
    return httpx.MockTransport(handler)


class Counter:
    """Request handler that replays a list of responses and counts calls."""

    def __init__(self, responses: list):
        self.responses = responses
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        response = self.responses[min(self.calls, len(self.responses) - 1)]
        self.calls += 1
        if isinstance(response, Exception):
            raise response
        return response


# --- Helpers ---


class TestRateLimiter:
    def test_burst_then_wait(self):
        limiter = RateLimiter(max_per_second=2)
        assert limiter.acquire() == 0.0
        assert limiter.acquire() == 0.0
        assert limiter.acquire() > 0


class TestResponseCache:
    def test_set_get(self):
        cache = ResponseCache()
        cache.set("k", {"v": 1}, ttl_seconds=60)
        assert cache.get("k") == {"v": 1}
        assert cache.get("missing") is None

    def test_expired(self):
        cache = ResponseCache()
        cache.set("k", 1, ttl_seconds=-1)
        assert cache.get("k") is None


# --- BaseClient ---


class TestBaseClient:
    @pytest.mark.asyncio
    async def test_json_response(self):
        handler = Counter([httpx.Response(200, json={"ok": True})])
        client = BaseClient(base_url=RPC_URL, transport=_transport(handler))
        assert await client.post("", json_data={"x": 1}) == {"ok": True}
        await client.close()

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        handler = Counter([httpx.Response(502), httpx.Response(200, json={"ok": True})])
        client = BaseClient(base_url=RPC_URL, max_retries=2, backoff_base=0.0, transport=_transport(handler))
        assert await client.post("", json_data={}) == {"ok": True}
        assert handler.calls == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        handler = Counter([httpx.Response(400, text="bad request")])
        client = BaseClient(base_url=RPC_URL, max_retries=3, backoff_base=0.0, provider_name="node", transport=_transport(handler))
        with pytest.raises(APIError) as exc:
            await client.post("", json_data={})
        assert exc.value.status_code == 400
        assert not exc.value.retryable
        assert handler.calls == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_rate_limited_until_exhausted(self):
        handler = Counter([httpx.Response(429)])
        client = BaseClient(base_url=RPC_URL, max_retries=1, backoff_base=0.0, transport=_transport(handler))
        with pytest.raises(APIError) as exc:
            await client.post("", json_data={})
        assert exc.value.status_code == 429
        assert handler.calls == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_errors_retried(self):
        handler = Counter([httpx.ConnectError("refused"), httpx.Response(200, json=[1])])
        client = BaseClient(base_url=RPC_URL, max_retries=1, backoff_base=0.0, transport=_transport(handler))
        assert await client.post("", json_data={}) == [1]
        await client.close()


# --- RPCFallbackClient ---


class TestRPCFallbackClient:
    @pytest.mark.asyncio
    async def test_payload_and_result(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=BLOCK_NUMBER)

        rpc = RPCFallbackClient([{"url": RPC_URL, "provider": "primary"}], transport=_transport(handler))
        assert await rpc.call("eth_blockNumber", []) == "0x12d687"
        assert seen[0]["method"] == "eth_blockNumber"
        assert seen[0]["jsonrpc"] == "2.0"
        await rpc.close()

    @pytest.mark.asyncio
    async def test_falls_back_on_rpc_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "primary.test":
                return httpx.Response(200, json=RANGE_TOO_WIDE)
            return httpx.Response(200, json=BLOCK_NUMBER)

        rpc = RPCFallbackClient(
            [
                {"url": "https://primary.test", "provider": "primary"},
                {"url": "https://backup.test", "provider": "backup"},
            ],
            transport=_transport(handler),
        )
        assert await rpc.call("eth_blockNumber", []) == "0x12d687"
        await rpc.close()

    @pytest.mark.asyncio
    async def test_single_endpoint_raises_rpc_error(self):
        rpc = RPCFallbackClient(
            [{"url": RPC_URL, "provider": "primary"}],
            transport=_transport(lambda request: httpx.Response(200, json=RANGE_TOO_WIDE)),
        )
        with pytest.raises(RPCError) as exc:
            await rpc.call("eth_getLogs", [{}])
        assert exc.value.code == -32005
        assert exc.value.retryable
        await rpc.close()

    @pytest.mark.asyncio
    async def test_all_endpoints_failing(self):
        rpc = RPCFallbackClient(
            [
                {"url": "https://a.test", "provider": "a", "backoff_base": 0.0},
                {"url": "https://b.test", "provider": "b", "backoff_base": 0.0},
            ],
            transport=_transport(lambda request: httpx.Response(503)),
        )
        with pytest.raises(APIError) as exc:
            await rpc.call("eth_blockNumber", [])
        assert exc.value.provider == "rpc_fallback"
        assert "a:" in str(exc.value) and "b:" in str(exc.value)
        await rpc.close()

    def test_requires_endpoint(self):
        with pytest.raises(ValueError):
            RPCFallbackClient([])


# --- EvmClient ---


def _evm_handler(calls: list[dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(body)
        method = body["method"]
        if method == "eth_blockNumber":
            return httpx.Response(200, json=BLOCK_NUMBER)
        if method == "eth_getBlockByNumber":
            return httpx.Response(200, json=BLOCK_HEADER)
        if method == "eth_getLogs":
            return httpx.Response(200, json=TRANSFER_LOGS)
        if method == "eth_call":
            data = body["params"][0]["data"]
            for selector, result in [
                (OWNER_SELECTOR, OWNER_RESULT),
                (DECIMALS_SELECTOR, DECIMALS_RESULT),
                (SYMBOL_SELECTOR, SYMBOL_RESULT),
                (BALANCE_OF_SELECTOR, BALANCE_RESULT),
            ]:
                if data.startswith("0x" + selector.hex()):
                    return httpx.Response(200, json=result)
        return httpx.Response(400, text=f"unexpected {method}")

    return handler


@pytest.fixture
def evm():
    calls: list[dict] = []
    client = EvmClient(rpc_url=RPC_URL, transport=_transport(_evm_handler(calls)))
    return client, calls


class TestEvmClient:
    @pytest.mark.asyncio
    async def test_block_number(self, evm):
        client, _ = evm
        async with client:
            assert await client.get_block_number() == 1234567

    @pytest.mark.asyncio
    async def test_block_timestamp_cached(self, evm):
        client, calls = evm
        async with client:
            assert await client.get_block_timestamp(100) == 1_700_000_000
            assert await client.get_block_timestamp(100) == 1_700_000_000
        assert len(calls) == 1
        assert calls[0]["params"] == ["0x64", False]

    @pytest.mark.asyncio
    async def test_get_logs(self, evm):
        client, calls = evm
        async with client:
            events = await client.get_logs(transfer_filter(TOKEN, from_address=DROP), 100, 200)

        params = calls[0]["params"][0]
        assert params["fromBlock"] == "0x64"
        assert params["toBlock"] == "0xc8"
        assert params["address"] == TOKEN
        assert params["topics"][2] is None

        assert [e.block_number for e in events] == [101, 100]
        transfer = TransferEvent.from_log(events[0])
        assert transfer.from_address == DROP
        assert transfer.to_address == CLAIMER
        assert transfer.value == 5 * 10**18

    @pytest.mark.asyncio
    async def test_get_logs_error_becomes_log_query_error(self):
        client = EvmClient(
            rpc_url=RPC_URL,
            transport=_transport(lambda request: httpx.Response(200, json=RANGE_TOO_WIDE)),
        )
        async with client:
            with pytest.raises(LogQueryError) as exc:
                await client.get_logs(transfer_filter(TOKEN), 0, 1_000_000)
        assert exc.value.to_block == 1_000_000

    @pytest.mark.asyncio
    async def test_contract_reads(self, evm):
        client, _ = evm
        async with client:
            assert await client.get_owner(DROP) == OWNER
            assert await client.get_decimals(TOKEN) == 18
            assert await client.get_symbol(TOKEN) == "1INCH"
            assert await client.get_balance(TOKEN, DROP) == 42 * 10**18

    @pytest.mark.asyncio
    async def test_token_info_cached(self, evm):
        client, calls = evm
        async with client:
            await client.get_decimals(TOKEN)
            await client.get_decimals(TOKEN)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_balance_call_encodes_account(self, evm):
        client, calls = evm
        async with client:
            await client.get_balance(TOKEN, DROP)
        data = calls[0]["params"][0]["data"]
        assert data.endswith(DROP[2:].lower())
        assert len(data) == 2 + 2 * (4 + 32)

    def test_requires_rpc_url(self):
        with patch("dropkit.clients.evm.get_rpc_url", return_value=""):
            with pytest.raises(ValueError):
                EvmClient()

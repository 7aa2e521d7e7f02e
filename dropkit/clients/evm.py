"""EVM JSON-RPC client.

Provides:
- eth_getLogs (the log source behind the scanner)
- block number / block timestamps (cached, blocks are immutable)
- eth_call reads: owner(), decimals(), symbol(), balanceOf()

Exposes the same async read surface as dropkit.chain.ledger.LocalChain.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from dropkit.chain.events import LogEvent, LogFilter
from dropkit.clients.base import APIError, ResponseCache, RPCFallbackClient
from dropkit.config import get_rpc_url
from dropkit.errors import LogQueryError

log = logging.getLogger("clients.evm")

OWNER_SELECTOR = function_signature_to_4byte_selector("owner()")
DECIMALS_SELECTOR = function_signature_to_4byte_selector("decimals()")
SYMBOL_SELECTOR = function_signature_to_4byte_selector("symbol()")
BALANCE_OF_SELECTOR = function_signature_to_4byte_selector("balanceOf(address)")

IMMUTABLE_TTL = 24 * 3600


class EvmClient:
    """Read-only JSON-RPC access to one chain."""

    def __init__(
        self,
        rpc_url: str | None = None,
        fallback_urls: list[str] | None = None,
        rate_limit: float = 10.0,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        primary = rpc_url or get_rpc_url()
        if not primary:
            raise ValueError("No RPC URL configured (set DROPKIT_RPC_URL)")
        endpoints = [{"provider": "primary", "url": primary, "rate_limit": rate_limit, "timeout_seconds": timeout}]
        for i, url in enumerate(fallback_urls or []):
            endpoints.append({"provider": f"fallback{i + 1}", "url": url, "rate_limit": rate_limit, "timeout_seconds": timeout})
        self._rpc = RPCFallbackClient(endpoints, transport=transport)
        self._cache = ResponseCache()

    async def close(self) -> None:
        await self._rpc.close()

    async def __aenter__(self) -> EvmClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def get_logs(self, log_filter: LogFilter, from_block: int, to_block: int) -> list[LogEvent]:
        try:
            raw = await self._rpc.call("eth_getLogs", [log_filter.to_rpc(from_block, to_block)])
        except APIError as e:
            raise LogQueryError(str(e), from_block=from_block, to_block=to_block) from e
        return [LogEvent.from_rpc(entry) for entry in raw or []]

    async def get_block_number(self) -> int:
        return int(await self._rpc.call("eth_blockNumber", []), 16)

    async def get_block_timestamp(self, block: int) -> int:
        key = f"ts:{block}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        header = await self._rpc.call("eth_getBlockByNumber", [hex(block), False])
        if not header:
            raise ValueError(f"Block {block} not found")
        timestamp = int(header["timestamp"], 16)
        self._cache.set(key, timestamp, IMMUTABLE_TTL)
        return timestamp

    async def eth_call(self, to: str, data: bytes) -> bytes:
        result = await self._rpc.call("eth_call", [{"to": to, "data": "0x" + data.hex()}, "latest"])
        return bytes.fromhex((result or "0x")[2:])

    async def _cached_call(self, to: str, selector: bytes) -> bytes:
        key = f"call:{to.lower()}:{selector.hex()}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        data = await self.eth_call(to, selector)
        self._cache.set(key, data, IMMUTABLE_TTL)
        return data

    async def get_owner(self, address: str) -> str:
        data = await self.eth_call(address, OWNER_SELECTOR)
        return to_checksum_address(decode(["address"], data)[0])

    async def get_decimals(self, token: str) -> int:
        return decode(["uint8"], await self._cached_call(token, DECIMALS_SELECTOR))[0]

    async def get_symbol(self, token: str) -> str:
        data = await self._cached_call(token, SYMBOL_SELECTOR)
        try:
            return decode(["string"], data)[0]
        except DecodingError:
            # Pre-ERC-20-final tokens return bytes32
            log.debug("symbol() of %s is not an ABI string, reading as bytes32", token)
            return data[:32].rstrip(b"\x00").decode("utf-8", errors="replace")

    async def get_balance(self, token: str, account: str) -> int:
        data = await self.eth_call(token, BALANCE_OF_SELECTOR + encode(["address"], [account]))
        return decode(["uint256"], data)[0]

"""Minimal JSON-RPC client for the Ethereum-style endpoints we probe."""

from __future__ import annotations

from typing import Any

import httpx


class RPCError(Exception):
    """The endpoint answered, but with a JSON-RPC error object."""


class JsonRpcClient:
    """HTTP JSON-RPC client.

    Pass an existing `httpx.AsyncClient` to share a connection pool (or a
    mock transport in tests); otherwise one is created on first use.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._next_id = 0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def call(self, url: str, method: str, params: list | None = None) -> Any:
        """POST one request and return its `result`.

        Raises:
            httpx.HTTPError: transport failure, timeout or non-2xx status.
            RPCError: the response carries an `error` member or no result.
        """
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params or []}
        client = await self._get_client()
        resp = await client.post(url, json=payload, timeout=self.timeout)
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict):
            raise RPCError(f"{method}: response is not a JSON-RPC object")
        error = body.get("error")
        if error:
            message = error.get("message", error) if isinstance(error, dict) else error
            raise RPCError(f"{method}: {message}")
        if "result" not in body:
            raise RPCError(f"{method}: response has no result")
        return body["result"]

    async def chain_id(self, url: str) -> int:
        return int(await self.call(url, "eth_chainId"), 16)

    async def latest_block(self, url: str) -> dict[str, Any]:
        block = await self.call(url, "eth_getBlockByNumber", ["latest", False])
        if not isinstance(block, dict):
            raise RPCError("eth_getBlockByNumber: no latest block")
        return block

    async def sync_status(self, url: str) -> dict[str, Any]:
        status = await self.call(url, "optimism_syncStatus")
        if not isinstance(status, dict):
            raise RPCError("optimism_syncStatus: result is not an object")
        return status

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> JsonRpcClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

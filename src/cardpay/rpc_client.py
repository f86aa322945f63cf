"""JSON-RPC transport for EVM ledger endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class RPCError(Exception):
    """Error object returned by a JSON-RPC node."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


class MalformedResponseError(RPCError):
    """The node answered, but not with a usable JSON-RPC envelope or result."""


def _to_int(result: Any, method: str) -> int:
    try:
        return int(result, 16)
    except (TypeError, ValueError):
        raise MalformedResponseError(f"{method} returned a non-hex result: {result!r}")


class ChainRPCClient:
    """JSON-RPC client for one chain endpoint.

    Transport failures surface as httpx exceptions so callers can tell a
    refused connection apart from a request that may have reached the node.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._http_client

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Make JSON-RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        client = await self._get_client()
        response = await client.post(
            self._rpc_url,
            json=payload,
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        try:
            result = response.json()
        except ValueError:
            raise MalformedResponseError(
                f"{method} returned a non-JSON body (HTTP {response.status_code})"
            )
        if not isinstance(result, dict):
            raise MalformedResponseError(f"{method} returned a non-object response")

        if "error" in result and result["error"] is not None:
            error = result["error"]
            if isinstance(error, dict):
                raise RPCError(
                    error.get("message", str(error)),
                    code=error.get("code"),
                    data=error.get("data"),
                )
            raise RPCError(str(error))

        return result.get("result")

    async def get_chain_id(self) -> int:
        result = await self._call("eth_chainId")
        return _to_int(result, "eth_chainId")

    async def get_balance(self, address: str) -> int:
        """Get native balance in wei."""
        result = await self._call("eth_getBalance", [address, "latest"])
        return _to_int(result, "eth_getBalance")

    async def get_gas_price(self) -> int:
        """Get current gas price in wei."""
        result = await self._call("eth_gasPrice")
        return _to_int(result, "eth_gasPrice")

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        """Estimate gas for a transaction."""
        result = await self._call("eth_estimateGas", [tx])
        return _to_int(result, "eth_estimateGas")

    async def get_nonce(self, address: str) -> int:
        """Get transaction count (nonce) for address."""
        result = await self._call("eth_getTransactionCount", [address, "pending"])
        return _to_int(result, "eth_getTransactionCount")

    async def send_raw_transaction(self, signed_tx: str) -> str:
        """Broadcast signed transaction."""
        result = await self._call("eth_sendRawTransaction", [signed_tx])
        if result is not None and not isinstance(result, str):
            raise MalformedResponseError(f"eth_sendRawTransaction returned {result!r}")
        return result

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        result = await self._call("eth_getTransactionByHash", [tx_hash])
        if result is not None and not isinstance(result, dict):
            raise MalformedResponseError(f"eth_getTransactionByHash returned {result!r}")
        return result

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Get transaction receipt."""
        result = await self._call("eth_getTransactionReceipt", [tx_hash])
        if result is not None and not isinstance(result, dict):
            raise MalformedResponseError(f"eth_getTransactionReceipt returned {result!r}")
        return result

    async def get_block_number(self) -> int:
        """Get current block number."""
        result = await self._call("eth_blockNumber")
        return _to_int(result, "eth_blockNumber")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

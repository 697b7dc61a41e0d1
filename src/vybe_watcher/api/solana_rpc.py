"""Minimal Solana JSON-RPC client used as a cheap "anything new?" probe."""

import httpx

from .vybe_api import MarketDataUnavailable


class SolanaRpcClient:
    """Client for the Solana JSON-RPC endpoint."""

    def __init__(self, rpc_url: str = "https://api.mainnet-beta.solana.com", timeout: float = 15.0):
        self.rpc_url = rpc_url
        self._client = httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def get_recent_signatures(self, wallet_address: str, limit: int = 1) -> list[str]:
        """
        Fetch the newest transaction signatures for a wallet.

        Returns:
            Signatures ordered newest first
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": "getSignaturesForAddress",
            "params": [wallet_address, {"limit": limit}],
        }

        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MarketDataUnavailable(f"getSignaturesForAddress failed: {e}") from e

        if "error" in data:
            raise MarketDataUnavailable(f"RPC error: {data['error']}")

        return [entry["signature"] for entry in data.get("result", []) if "signature" in entry]

"""Client for the Vybe Network API - token prices, wallet transfers and known accounts."""

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


class MarketDataUnavailable(Exception):
    """Raised when the market-data API cannot provide data this cycle."""


@dataclass
class TokenPrice:
    """Current price of a token, also the shape of the price cache row."""

    mint_address: str
    symbol: str
    name: str
    current_price: float
    last_update_time: int  # Unix seconds


@dataclass
class Transfer:
    """A single token transfer touching a wallet."""

    signature: str
    block_time: int  # Unix seconds
    sender_address: str
    receiver_address: str
    amount: float
    symbol: str
    mint_address: str | None = None
    value_usd: float | None = None


@dataclass
class KnownAccount:
    """A labelled account (e.g. a KOL) with its recent trading volume."""

    owner_address: str
    name: str
    trades_volume_usd: float


def parse_transfer(item: dict) -> Transfer:
    """Normalize a transfer record from the REST API or the live stream."""
    details = item.get("tokenDetails")
    if isinstance(details, dict):
        symbol = details.get("symbol") or ""
    else:
        symbol = details or ""

    mint = item.get("mintAddress")
    if not symbol:
        symbol = mint[:4] + "..." if mint else "SOL"

    amount = item.get("calculatedAmount", item.get("amount", 0))
    value_usd = item.get("valueUsd")

    return Transfer(
        signature=item["signature"],
        block_time=int(item["blockTime"]),
        sender_address=item.get("senderAddress", ""),
        receiver_address=item.get("receiverAddress", ""),
        amount=float(amount or 0),
        symbol=symbol,
        mint_address=mint,
        value_usd=float(value_usd) if value_usd is not None else None,
    )


class VybeApiClient:
    """Client for the Vybe Network REST API."""

    PNL_CONCURRENCY = 4

    def __init__(
        self,
        base_url: str = "https://api.vybenetwork.xyz",
        api_key: str = "",
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"X-API-KEY": api_key, "Accept": "application/json"},
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def _get(self, path: str, params: dict | None = None):
        try:
            response = await self._client.get(f"{self.base_url}{path}", params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MarketDataUnavailable(f"GET {path} failed: {e}") from e

    async def get_token_price(self, mint_address: str) -> TokenPrice:
        """
        Fetch the current price of a token.

        Args:
            mint_address: Token mint address

        Returns:
            TokenPrice record

        Raises:
            MarketDataUnavailable: on any transport or format error
        """
        data = await self._get(f"/token/{mint_address}")

        try:
            price = float(data["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise MarketDataUnavailable(f"No price for {mint_address}: {e}") from e

        update_time = data.get("updateTime")
        return TokenPrice(
            mint_address=data.get("mintAddress", mint_address),
            symbol=data.get("symbol") or mint_address[:4],
            name=data.get("name") or data.get("symbol") or mint_address,
            current_price=price,
            last_update_time=int(update_time) if update_time else int(time.time()),
        )

    async def get_recent_transfers(
        self,
        wallet_address: str,
        limit: int = 20,
    ) -> list[Transfer]:
        """
        Fetch the most recent transfers sent or received by a wallet.

        Returns:
            Transfers ordered newest first
        """
        data = await self._get(
            "/token/transfers",
            params={
                "walletAddress": wallet_address,
                "limit": limit,
                "sortByDesc": "blockTime",
            },
        )

        items = data.get("transfers", []) if isinstance(data, dict) else data
        transfers = []
        for item in items:
            try:
                transfers.append(parse_transfer(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed transfer for {wallet_address[:8]}...: {e}")

        transfers.sort(key=lambda t: t.block_time, reverse=True)
        return transfers

    async def get_ranked_accounts(self, label: str = "KOL") -> list[KnownAccount]:
        """
        Fetch labelled accounts together with their 1-day trading volume.

        Accounts whose PnL lookup fails are left out rather than failing
        the whole ranking.
        """
        data = await self._get("/account/known-accounts", params={"labels": label})
        accounts = data.get("accounts", []) if isinstance(data, dict) else data

        semaphore = asyncio.Semaphore(self.PNL_CONCURRENCY)

        async def with_volume(account: dict) -> KnownAccount | None:
            owner = account.get("ownerAddress")
            if not owner:
                return None
            async with semaphore:
                try:
                    pnl = await self._get(
                        f"/account/pnl/{owner}", params={"resolution": "1d"}
                    )
                except MarketDataUnavailable as e:
                    logger.debug(f"PnL unavailable for {owner[:8]}...: {e}")
                    return None

            summary = pnl.get("summary", {}) if isinstance(pnl, dict) else {}
            return KnownAccount(
                owner_address=owner,
                name=account.get("name") or owner[:8],
                trades_volume_usd=float(summary.get("tradesVolumeUsd") or 0),
            )

        results = await asyncio.gather(*(with_volume(a) for a in accounts))
        return [r for r in results if r is not None]

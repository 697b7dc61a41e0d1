"""WebSocket client for the Vybe live data stream (push-mode transfers)."""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Iterable

import websockets
from websockets.asyncio.client import ClientConnection

from .vybe_api import Transfer, parse_transfer

logger = logging.getLogger(__name__)

TransferCallback = Callable[[Transfer], Awaitable[None]]


def build_transfer_filters(wallet_addresses: Iterable[str]) -> dict:
    """Build the stream filters for every unique tracked wallet."""
    unique = sorted(set(wallet_addresses))
    transfers = []
    for address in unique:
        transfers.append({"senderAddress": address})
        transfers.append({"receiverAddress": address})

    filters = {}
    if transfers:
        filters["transfers"] = transfers
    return filters


class VybeWebSocketClient:
    """Client for the Vybe live WebSocket API."""

    WEBSOCKET_URL = "wss://api.vybenetwork.xyz/live"
    RECONNECT_DELAY = 5  # seconds

    def __init__(
        self,
        api_key: str,
        url: str | None = None,
        on_transfer: TransferCallback | None = None,
        on_connect: Callable[[], Awaitable[None]] | None = None,
        on_disconnect: Callable[[], Awaitable[None]] | None = None,
    ):
        self.api_key = api_key
        self.url = url or self.WEBSOCKET_URL
        self.on_transfer = on_transfer
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.filters: dict = {}
        self._ws: ClientConnection | None = None
        self._running = False

    async def connect(self, filters: dict | None = None):
        """Connect to the live stream and keep listening until disconnect()."""
        if filters is not None:
            self.filters = filters
        self._running = True

        while self._running:
            try:
                logger.info(f"Connecting to {self.url}...")

                async with websockets.connect(
                    self.url,
                    additional_headers={"X-API-Key": self.api_key},
                ) as ws:
                    self._ws = ws
                    logger.info("Connected to Vybe WebSocket")

                    if self.on_connect:
                        await self.on_connect()

                    await self._send_configuration()
                    await self._listen()

            except websockets.ConnectionClosed as e:
                logger.warning(f"WebSocket connection closed: {e}")
            except Exception as e:
                logger.error(f"WebSocket error: {e}")
            finally:
                if self.on_disconnect:
                    await self.on_disconnect()
                self._ws = None

            if self._running:
                logger.info(f"Reconnecting in {self.RECONNECT_DELAY} seconds...")
                await asyncio.sleep(self.RECONNECT_DELAY)

    async def disconnect(self):
        """Disconnect from the WebSocket."""
        self._running = False
        if self._ws:
            await self._ws.close()

    async def update_filters(self, filters: dict):
        """Replace the active filters, re-configuring a live connection."""
        self.filters = filters
        await self._send_configuration()

    async def _send_configuration(self):
        """Send the configure message with the current filters."""
        if not self._ws:
            return

        if not self.filters:
            logger.info("No wallets tracked, stream left unconfigured")
            return

        await self._ws.send(json.dumps({"type": "configure", "filters": self.filters}))
        logger.info(
            f"Configured stream with {len(self.filters.get('transfers', []))} transfer filters"
        )

    async def _listen(self):
        """Listen for incoming messages."""
        if not self._ws:
            return

        async for message in self._ws:
            try:
                await self.handle_message(message)
            except Exception as e:
                logger.error(f"Error handling message: {e}")

    async def handle_message(self, raw_message: str | bytes):
        """Parse an incoming message and forward transfers."""
        try:
            data = json.loads(raw_message)
        except json.JSONDecodeError:
            logger.debug(f"Non-JSON message: {str(raw_message)[:100]}")
            return

        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]

        if not isinstance(data, dict) or "signature" not in data or "blockTime" not in data:
            return

        if not self.on_transfer:
            return

        try:
            transfer = parse_transfer(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Error parsing transfer: {e}, payload: {data}")
            return

        await self.on_transfer(transfer)

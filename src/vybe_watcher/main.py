"""Main entry point for Vybe Watcher."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from telegram.ext import Application, ApplicationBuilder

from .api import SolanaRpcClient, Transfer, VybeApiClient, VybeWebSocketClient, build_transfer_filters
from .bot import CommandService, register_handlers
from .config import Config, load_config
from .db import Repository
from .notifications import (
    AlertCooldown,
    NotificationDispatcher,
    TelegramTransport,
    WalletActivityLogger,
    setup_app_logging,
)
from .reconciliation import (
    KolRankingReconciler,
    PollingLoop,
    PriceAlertReconciler,
    PriceHistory,
    WalletActivityReconciler,
)

logger = logging.getLogger(__name__)


class VybeWatcher:
    """Main application class that orchestrates all components."""

    def __init__(self, config: Config, application: Application | None = None):
        self.config = config
        self._running = False

        # Initialize components
        self.repository = Repository(config.database.path)
        self.vybe_api = VybeApiClient(
            config.vybe.api_base,
            config.vybe.api_key,
            timeout=config.vybe.request_timeout_seconds,
        )
        self.rpc = SolanaRpcClient(config.vybe.rpc_url)
        self.activity_logger = WalletActivityLogger(
            log_file=config.logging.file,
            log_level=config.logging.level,
            max_file_size_mb=config.logging.max_file_size_mb,
            backup_count=config.logging.backup_count,
        )

        # Telegram
        self.application = application or ApplicationBuilder().token(config.telegram.bot_token).build()
        notify = config.notifications
        self.dispatcher = NotificationDispatcher(
            TelegramTransport(self.application.bot),
            batch_size=notify.batch_size,
            tick_seconds=notify.tick_seconds,
            send_delay_seconds=notify.send_delay_seconds,
            max_retries=notify.max_retries,
            retry_base_seconds=notify.retry_base_seconds,
            on_blocked=self._on_recipient_blocked,
        )

        # Reconcilers
        wallets = config.wallet_tracking
        self.wallet_reconciler = WalletActivityReconciler(
            self.repository,
            self.vybe_api,
            self.dispatcher,
            rpc=self.rpc,
            activity_logger=self.activity_logger,
            spam_addresses=wallets.spam_addresses,
            fetch_limit=wallets.transfer_fetch_limit,
            max_transfers_shown=wallets.max_transfers_shown,
            wallet_delay_seconds=wallets.wallet_delay_seconds,
            signature_probe=wallets.signature_probe,
        )

        prices = config.price_alerts
        self.price_history = PriceHistory(max_points=prices.history_points)
        self.price_reconciler = PriceAlertReconciler(
            self.repository,
            self.vybe_api,
            self.dispatcher,
            tracked_tokens=prices.tracked_tokens,
            history=self.price_history,
            cooldown=AlertCooldown(notify.alert_cooldown_seconds),
            general_alert_threshold_percent=prices.general_alert_threshold_percent,
            significant_move_percent=prices.significant_move_percent,
            group_chat_id=config.telegram.group_chat_id,
        )

        kol = config.kol_ranking
        self.kol_reconciler = KolRankingReconciler(
            self.repository,
            self.vybe_api,
            self.dispatcher,
            label=kol.label,
            top_n=kol.top_n,
            entrant_window=kol.entrant_window,
        )

        self.loops: list[PollingLoop] = []
        if wallets.mode in ("poll", "both"):
            self.loops.append(PollingLoop(self.wallet_reconciler, wallets.poll_interval_seconds))
        self.loops.append(
            PollingLoop(
                self.price_reconciler,
                prices.poll_interval_seconds,
                max_consecutive_failures=prices.max_consecutive_failures,
                max_backoff=prices.max_backoff_seconds,
            )
        )
        if kol.enabled:
            self.loops.append(PollingLoop(self.kol_reconciler, kol.check_interval_seconds))

        # Live transfer stream
        self.ws_client: VybeWebSocketClient | None = None
        self._ws_task: asyncio.Task | None = None
        self._wallet_checks: set[asyncio.Task] = set()
        if wallets.mode in ("push", "both"):
            self.ws_client = VybeWebSocketClient(
                api_key=config.vybe.api_key,
                url=config.vybe.websocket_url,
                on_transfer=self._on_transfer,
                on_connect=self._on_connect,
                on_disconnect=self._on_disconnect,
            )

        self.commands = CommandService(
            self.repository,
            self.vybe_api,
            wallet_config=wallets,
            price_config=prices,
            price_history=self.price_history,
            on_wallets_changed=self.refresh_stream_filters,
            on_wallet_tracked=self._check_new_wallet,
            on_user_seen=self.dispatcher.unblock,
        )
        register_handlers(self.application, self.commands)

    async def start(self):
        """Start the watcher."""
        logger.info("Starting Vybe Watcher...")

        await self.repository.initialize()

        await self.application.initialize()
        await self.application.start()
        if self.application.updater:
            await self.application.updater.start_polling()

        await self.dispatcher.start()
        for loop in self.loops:
            loop.start()

        logger.info(
            f"Wallet tracking mode={self.config.wallet_tracking.mode}, "
            f"{len(self.config.price_alerts.tracked_tokens)} tracked tokens, "
            f"KOL ranking {'on' if self.config.kol_ranking.enabled else 'off'}"
        )

        self._running = True
        if self.ws_client:
            filters = build_transfer_filters(await self.wallet_reconciler.tracked_addresses())
            self._ws_task = asyncio.create_task(self.ws_client.connect(filters))

    async def stop(self):
        """Stop the watcher gracefully."""
        logger.info("Stopping Vybe Watcher...")
        self._running = False

        for loop in self.loops:
            await loop.stop()
        for task in list(self._wallet_checks):
            task.cancel()

        if self.ws_client:
            await self.ws_client.disconnect()
        if self._ws_task:
            self._ws_task.cancel()
            try:
                await self._ws_task
            except asyncio.CancelledError:
                pass
            self._ws_task = None

        # Drain what is already due before shutting the bot down
        await self.dispatcher.process_queue()
        await self.dispatcher.stop()

        if self.application.updater and self.application.updater.running:
            await self.application.updater.stop()
        if self.application.running:
            await self.application.stop()
        await self.application.shutdown()

        await self.vybe_api.close()
        await self.rpc.close()
        await self.repository.close()
        self.activity_logger.close()

        # Log final stats
        wallet_stats = self.wallet_reconciler.stats
        dispatch_stats = self.dispatcher.stats
        logger.info(
            f"Final stats: {wallet_stats['wallets_checked']} wallet checks, "
            f"{dispatch_stats['sent']} messages sent, {dispatch_stats['dropped']} dropped, "
            f"{self.price_reconciler.stats['alerts_fired']} price alerts fired"
        )

    async def refresh_stream_filters(self):
        """Re-send live stream filters after the tracked wallet set changed."""
        if not self.ws_client:
            return
        addresses = await self.wallet_reconciler.tracked_addresses()
        await self.ws_client.update_filters(build_transfer_filters(addresses))

    async def _check_new_wallet(self, wallet_address: str):
        """Check a freshly tracked wallet in the background."""
        task = asyncio.create_task(self.wallet_reconciler.check_wallet(wallet_address))
        self._wallet_checks.add(task)
        task.add_done_callback(self._wallet_checks.discard)

    async def _on_recipient_blocked(self, user_id: int):
        """Blocked users stop receiving broadcasts."""
        if await self.repository.add_kol_unsubscription(user_id):
            logger.info(f"User {user_id} unsubscribed from KOL updates after blocking the bot")

    async def _on_connect(self):
        logger.info("Connected to Vybe live transfer stream")

    async def _on_disconnect(self):
        if self._running:
            logger.warning("Disconnected from Vybe live transfer stream")

    async def _on_transfer(self, transfer: Transfer):
        """Process an incoming live transfer."""
        logger.debug(
            f"Transfer: {transfer.amount} {transfer.symbol} "
            f"{transfer.sender_address[:8]}... -> {transfer.receiver_address[:8]}..."
        )
        await self.wallet_reconciler.handle_transfer(transfer)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Vybe Watcher - Telegram alerts for Solana wallet activity and token prices"
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args()


async def main_async(args):
    """Async main function."""
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_path}")
        sys.exit(1)

    config = load_config(config_path)

    if args.debug:
        config.logging.level = "DEBUG"

    setup_app_logging(config.logging.level)

    if not config.telegram.bot_token:
        logger.error("VYBE_TELEGRAM_BOT_TOKEN is not set")
        sys.exit(1)
    if not config.vybe.api_key:
        logger.warning("VYBE_KEY is not set, Vybe API requests will be rejected")

    watcher = VybeWatcher(config)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    await watcher.start()
    await shutdown_event.wait()
    await watcher.stop()


def main():
    """Main entry point."""
    args = parse_args()

    try:
        asyncio.run(main_async(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

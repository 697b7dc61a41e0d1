"""Telegram command surface - parses user commands and replies with text."""

import logging
import re
from html import escape

from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import Application, CommandHandler, ContextTypes

from ..api.vybe_api import MarketDataUnavailable
from ..config import PriceAlertConfig, WalletTrackingConfig
from ..db.repository import Repository
from ..notifications.formatting import (
    estimate_time_to_target,
    format_price,
    format_time_estimate,
    short_address,
)
from ..reconciliation.price_alerts import PriceHistory, validate_price_target

logger = logging.getLogger(__name__)

SOLANA_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

HELP_TEXT = """<b>Vybe Watcher</b>

<b>Wallets</b>
/track_wallet &lt;address&gt; [label] - get notified about new transfers
/track_kol &lt;name&gt; - track a known KOL wallet
/list_wallets - wallets you track
/remove_wallet &lt;address&gt; - stop tracking a wallet

<b>Price alerts</b>
/set_alert &lt;token&gt; &lt;price&gt; - alert when the price crosses a target
/alerts - your active alerts
/remove_alert &lt;id&gt; - delete an alert

<b>KOLs</b>
/kols - current KOL ranking by trading volume
/subscribe_kol - receive KOL ranking updates
/unsubscribe_kol - stop KOL ranking updates"""


class InvalidInputError(ValueError):
    """A command argument could not be parsed or validated."""


def parse_wallet_address(value: str) -> str:
    address = value.strip()
    if not SOLANA_ADDRESS.match(address):
        raise InvalidInputError(
            "Invalid Solana wallet address. Please provide a valid base58 address."
        )
    return address


def parse_price(value: str) -> float:
    try:
        price = float(value.replace(",", "").lstrip("$"))
    except ValueError:
        raise InvalidInputError(f"'{value}' is not a valid price.") from None
    if price <= 0:
        raise InvalidInputError("Price must be greater than zero.")
    return price


class CommandService:
    """
    Implements each bot command against the repository.

    Every command returns the reply text. Validation, limit and not-found
    errors become a rejection reply in `handle`.
    """

    COMMANDS = (
        "start",
        "help",
        "track_wallet",
        "track_kol",
        "list_wallets",
        "remove_wallet",
        "set_alert",
        "alerts",
        "remove_alert",
        "kols",
        "subscribe_kol",
        "unsubscribe_kol",
    )

    def __init__(
        self,
        repository: Repository,
        vybe_api,
        wallet_config: WalletTrackingConfig | None = None,
        price_config: PriceAlertConfig | None = None,
        price_history: PriceHistory | None = None,
        on_wallets_changed=None,
        on_wallet_tracked=None,
        on_user_seen=None,
    ):
        self.repository = repository
        self.vybe_api = vybe_api
        self.wallet_config = wallet_config or WalletTrackingConfig()
        self.price_config = price_config or PriceAlertConfig()
        self.price_history = price_history
        self.on_wallets_changed = on_wallets_changed
        self.on_wallet_tracked = on_wallet_tracked
        self.on_user_seen = on_user_seen

    async def handle(self, command: str, user_id: int, args: list[str], username: str | None = None) -> str:
        """Run a command by name and always produce a reply."""
        if command not in self.COMMANDS:
            return "❌ Unknown command. Use /help to see what I can do."

        if self.on_user_seen:
            self.on_user_seen(user_id)

        try:
            if command == "start":
                return await self.start(user_id, username)
            if command == "help":
                return HELP_TEXT
            return await getattr(self, command)(user_id, args)
        except ValueError as e:
            return f"❌ {escape(str(e))}"
        except MarketDataUnavailable as e:
            logger.warning(f"/{command} for user {user_id}: market data unavailable: {e}")
            return "❌ Market data is temporarily unavailable. Please try again later."

    async def _wallets_changed(self):
        if not self.on_wallets_changed:
            return
        try:
            await self.on_wallets_changed()
        except Exception as e:
            logger.error(f"Error refreshing wallet subscriptions: {e}")

    async def start(self, user_id: int, username: str | None = None) -> str:
        await self.repository.ensure_user(user_id, username)
        return (
            "Bot is connected and ready! 🚀\n\n"
            "Use /track_wallet &lt;address&gt; to track a wallet for transfers, "
            "or /help to see all commands."
        )

    # Wallets

    async def track_wallet(self, user_id: int, args: list[str]) -> str:
        if not args:
            raise InvalidInputError("Please provide a wallet address to track.")

        address = parse_wallet_address(args[0])
        label = " ".join(args[1:]).strip() or None
        return await self._track(user_id, address, label)

    async def track_kol(self, user_id: int, args: list[str]) -> str:
        if not args:
            raise InvalidInputError("Please provide a KOL name. Use /kols to see the list.")

        wanted = args[0].lstrip("@").lower()
        for address, name in self.wallet_config.kol_wallets.items():
            if name.lower() == wanted:
                return await self._track(user_id, address, name)

        raise InvalidInputError(f"Unknown KOL '{args[0]}'. Use /kols to see the list.")

    async def _track(self, user_id: int, address: str, label: str | None) -> str:
        created = await self.repository.add_tracked_wallet(
            user_id,
            address,
            label=label,
            max_wallets=self.wallet_config.max_wallets_per_user,
        )
        if not created:
            return f"ℹ️ You are already tracking <code>{address}</code>."

        await self._wallets_changed()
        if self.on_wallet_tracked:
            try:
                await self.on_wallet_tracked(address)
            except Exception as e:
                logger.error(f"Error checking new wallet {address[:8]}...: {e}")

        name = f" ({escape(label)})" if label else ""
        return (
            f"✅ Now tracking wallet <code>{address}</code>{name} for new transfers. "
            "You'll get alerts here."
        )

    async def list_wallets(self, user_id: int, args: list[str]) -> str:
        wallets = await self.repository.get_user_tracked_wallets(user_id)
        if not wallets:
            return "You are not tracking any wallets. Use /track_wallet &lt;address&gt; to start."

        lines = [f"<b>Tracked wallets ({len(wallets)}/{self.wallet_config.max_wallets_per_user})</b>\n"]
        for wallet in wallets:
            name = f" - {escape(wallet.label)}" if wallet.label else ""
            lines.append(f"• <code>{wallet.wallet_address}</code>{name}")
        return "\n".join(lines)

    async def remove_wallet(self, user_id: int, args: list[str]) -> str:
        if not args:
            raise InvalidInputError("Please provide the wallet address to remove.")

        address = parse_wallet_address(args[0])
        await self.repository.remove_tracked_wallet(user_id, address)
        await self._wallets_changed()
        return f"✅ Stopped tracking <code>{address}</code>."

    # Price alerts

    async def _resolve_token(self, value: str):
        """Find a tracked token by symbol or mint address, returning (mint, cached price row)."""
        cached = await self.repository.get_all_token_prices()
        for token in cached:
            if token.mint_address not in self.price_config.tracked_tokens:
                continue
            if token.symbol and token.symbol.lower() == value.lower():
                return token.mint_address, token

        # Only polled tokens can ever trigger
        if value in self.price_config.tracked_tokens:
            for token in cached:
                if token.mint_address == value:
                    return value, token
            return value, None

        raise InvalidInputError(f"Unknown token '{value}'. Use a tracked token symbol or mint address.")

    async def set_alert(self, user_id: int, args: list[str]) -> str:
        if len(args) < 2:
            raise InvalidInputError("Usage: /set_alert <token> <price>")

        mint, token = await self._resolve_token(args[0])
        target = parse_price(args[1])

        if token is None or token.current_price <= 0:
            token = await self.vybe_api.get_token_price(mint)
            await self.repository.upsert_token_price(token)

        validation = validate_price_target(
            token.current_price,
            target,
            too_close_percent=self.price_config.too_close_threshold_percent,
            too_far_percent=self.price_config.too_far_threshold_percent,
        )
        if not validation.ok:
            raise InvalidInputError(validation.error)

        alert_id = await self.repository.create_price_alert(
            user_id,
            mint,
            target,
            validation.is_above_target,
            max_alerts=self.price_config.max_alerts_per_user,
        )

        direction = "rises above" if validation.is_above_target else "falls below"
        reply = (
            f"✅ Alert #{alert_id} set: I'll notify you when <b>{escape(token.symbol)}</b> "
            f"{direction} <b>{format_price(target)}</b> "
            f"(currently {format_price(token.current_price)})."
        )

        if validation.warning:
            reply += f"\n\n⚠️ {escape(validation.warning)}"

        if self.price_history:
            hourly = self.price_history.change_over_period(mint, token.current_price, hours=1)
            hours = estimate_time_to_target(token.current_price, target, hourly) if hourly else None
            if hours is not None:
                reply += f"\n\n⏱ At the current rate, the target could be reached in {format_time_estimate(hours)}."

        return reply

    async def alerts(self, user_id: int, args: list[str]) -> str:
        alerts = await self.repository.get_user_price_alerts(user_id)
        if not alerts:
            return "You have no active price alerts. Use /set_alert &lt;token&gt; &lt;price&gt; to create one."

        lines = [f"<b>Active price alerts ({len(alerts)}/{self.price_config.max_alerts_per_user})</b>\n"]
        for alert in alerts:
            symbol = escape(alert.symbol) if alert.symbol else short_address(alert.mint_address)
            arrow = "⬆️" if alert.is_above_target else "⬇️"
            current = f" (now {format_price(alert.current_price)})" if alert.current_price else ""
            lines.append(f"#{alert.id} {arrow} <b>{symbol}</b> {format_price(alert.target_price)}{current}")
        return "\n".join(lines)

    async def remove_alert(self, user_id: int, args: list[str]) -> str:
        if not args:
            raise InvalidInputError("Please provide the alert id to remove. Use /alerts to see them.")
        try:
            alert_id = int(args[0].lstrip("#"))
        except ValueError:
            raise InvalidInputError(f"'{args[0]}' is not a valid alert id.") from None

        await self.repository.remove_price_alert(user_id, alert_id)
        return f"✅ Alert #{alert_id} removed."

    # KOLs

    async def kols(self, user_id: int, args: list[str]) -> str:
        ranking = await self.repository.get_previous_top_kols()
        lines = []

        if ranking:
            lines.append("<b>🏆 Top KOLs by trading volume</b>\n")
            for kol in ranking:
                name = escape(kol.name) if kol.name else short_address(kol.owner_address)
                lines.append(f"{kol.rank}. <b>{name}</b> <code>{short_address(kol.owner_address)}</code>")

        if self.wallet_config.kol_wallets:
            if lines:
                lines.append("")
            lines.append("<b>Trackable KOLs</b> (use /track_kol &lt;name&gt;)")
            lines.append(", ".join(escape(name) for name in self.wallet_config.kol_wallets.values()))

        if not lines:
            return "No KOL data yet. Please check back later."
        return "\n".join(lines)

    async def subscribe_kol(self, user_id: int, args: list[str]) -> str:
        await self.repository.ensure_user(user_id)
        if await self.repository.remove_kol_unsubscription(user_id):
            return "✅ You will receive KOL ranking updates again."
        return "ℹ️ You are already subscribed to KOL ranking updates."

    async def unsubscribe_kol(self, user_id: int, args: list[str]) -> str:
        if await self.repository.add_kol_unsubscription(user_id):
            return "✅ You will no longer receive KOL ranking updates. Use /subscribe_kol to opt back in."
        return "ℹ️ You are already unsubscribed from KOL ranking updates."


def register_handlers(application: Application, service: CommandService):
    """Attach one CommandHandler per command to a python-telegram-bot Application."""

    def make_callback(command: str):
        async def callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
            if not update.effective_chat or not update.message:
                return
            user = update.effective_user
            reply = await service.handle(
                command,
                update.effective_chat.id,
                list(context.args or []),
                username=user.username if user else None,
            )
            await update.message.reply_text(
                reply,
                parse_mode=ParseMode.HTML,
                disable_web_page_preview=True,
            )

        return callback

    for command in CommandService.COMMANDS:
        application.add_handler(CommandHandler(command, make_callback(command)))

    logger.info(f"Registered {len(CommandService.COMMANDS)} bot commands")

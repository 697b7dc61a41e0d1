"""Message formatting for Telegram notifications (HTML parse mode)."""

from datetime import datetime, timezone
from html import escape

from ..api.vybe_api import TokenPrice, Transfer
from ..db.repository import PriceAlert

SOLSCAN_TX_URL = "https://solscan.io/tx/{signature}"


def format_price(price: float) -> str:
    """Format a price with precision that depends on its magnitude."""
    if price >= 1000:
        return f"${price:,.2f}"
    if price >= 100:
        return f"${price:.3f}"
    if price >= 1:
        return f"${price:.4f}"
    if price >= 0.01:
        return f"${price:.6f}"
    return f"${price:.8f}"


def format_percent_change(percent: float) -> str:
    """Format a percentage change with a colored indicator."""
    sign = "+" if percent >= 0 else ""
    if percent > 5:
        emoji = "🟢"
    elif percent > 0:
        emoji = "🟩"
    elif percent < -5:
        emoji = "🔴"
    elif percent < 0:
        emoji = "🟥"
    else:
        emoji = "⚪️"
    return f"{sign}{percent:.2f}% {emoji}"


def short_address(address: str) -> str:
    if len(address) <= 12:
        return address
    return f"{address[:4]}...{address[-4:]}"


def format_transfer(transfer: Transfer) -> str:
    """One transfer line for a wallet activity notification."""
    when = datetime.fromtimestamp(transfer.block_time, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    amount = f"{transfer.amount:,.4f}".rstrip("0").rstrip(".")
    value = f" (${transfer.value_usd:,.2f})" if transfer.value_usd else ""
    link = SOLSCAN_TX_URL.format(signature=transfer.signature)
    return (
        f"- {when}: <b>{amount} {escape(transfer.symbol)}</b>{value}\n"
        f"  from <code>{escape(transfer.sender_address)}</code>\n"
        f"  to <code>{escape(transfer.receiver_address)}</code>\n"
        f'  <a href="{link}">View on Solscan</a>'
    )


def format_wallet_activity(
    wallet_address: str,
    transfers: list[Transfer],
    label: str | None = None,
    max_shown: int = 5,
) -> str:
    """Batched notification for new transfers on one wallet, newest first."""
    name = f"{escape(label)} " if label else ""
    message = f"🔔 New transfers detected for wallet {name}<code>{escape(wallet_address)}</code>:\n\n"
    message += "\n\n".join(format_transfer(t) for t in transfers[:max_shown])

    if len(transfers) > max_shown:
        message += f"\n\n...and {len(transfers) - max_shown} more transfers."

    return message


def format_general_alert(token: TokenPrice, percent_change: float, previous_price: float) -> str:
    """Alert for a large move between two consecutive polls."""
    direction = "increased" if percent_change >= 0 else "decreased"

    message = f"🚨 <b>Price Alert: {escape(token.symbol)}</b> 🚨\n\n"
    message += (
        f"The price of <b>{escape(token.name)}</b> has {direction} by "
        f"<b>{format_percent_change(percent_change)}</b> since the last check.\n\n"
    )
    message += f"• Current Price: <b>{format_price(token.current_price)}</b>\n"
    message += f"• Previous Price: {format_price(previous_price)}\n\n"

    if percent_change >= 0:
        message += "📈 <i>Consider setting a price target alert if you want to take profit.</i>"
    else:
        message += "📉 <i>Consider setting a price target alert if you want to buy the dip.</i>"

    return message


def format_target_alert(token: TokenPrice, alert: PriceAlert) -> str:
    """Alert for a user's price target being crossed."""
    crossed = "risen above" if alert.is_above_target else "fallen below"

    message = f"🎯 <b>Price Target Reached: {escape(token.symbol)}</b> 🎯\n\n"
    message += (
        f"The price of <b>{escape(token.name)}</b> has {crossed} your target of "
        f"<b>{format_price(alert.target_price)}</b>.\n\n"
    )
    message += f"• Current Price: <b>{format_price(token.current_price)}</b>\n"
    message += f"• Target Price: {format_price(alert.target_price)}\n\n"

    if alert.is_above_target:
        message += "💰 <i>Your price target has been reached! This might be a good time to evaluate your position.</i>"
    else:
        message += "💸 <i>Your price target has been reached! This might be a good entry point if you're still interested.</i>"

    return message


def format_group_move(token: TokenPrice, percent_change: float) -> str:
    """Short line for significant moves posted to the group chat."""
    if percent_change > 10:
        emoji = "🚀"
    elif percent_change > 0:
        emoji = "🟢"
    elif percent_change < -10:
        emoji = "💥"
    else:
        emoji = "🔴"

    sign = "+" if percent_change >= 0 else ""
    return (
        "<b>🚨 Significant Price Movement</b>\n\n"
        f"{emoji} <b>{escape(token.symbol)}</b>: {format_price(token.current_price)} "
        f"({sign}{percent_change:.2f}%)"
    )


def format_kol_change(new_number_one=None, new_entrants=None) -> str:
    """Broadcast text for a KOL ranking change."""
    message = "🏆 <b>KOL Ranking Update</b>\n\n"

    if new_number_one:
        message += (
            f"👑 New #1 by trading volume: <b>{escape(new_number_one.name)}</b>\n"
            f"<code>{escape(new_number_one.owner_address)}</code>\n\n"
        )

    if new_entrants:
        message += "🆕 New in the Top 5:\n"
        for account in new_entrants:
            message += f"• <b>{escape(account.name)}</b> <code>{short_address(account.owner_address)}</code>\n"
        message += "\n"

    message += "<i>Use /track_kol &lt;name&gt; to follow a KOL, /unsubscribe_kol to stop these updates.</i>"
    return message


def estimate_time_to_target(
    current_price: float,
    target_price: float,
    hourly_change_percent: float,
) -> int | None:
    """Hours until the target at the recent hourly rate, None if moving away or flat."""
    if hourly_change_percent == 0 or current_price <= 0:
        return None

    price_direction = 1 if target_price > current_price else -1
    change_direction = 1 if hourly_change_percent > 0 else -1
    if price_direction != change_direction:
        return None

    percent_diff = abs((target_price - current_price) / current_price * 100)
    hours = percent_diff / abs(hourly_change_percent)
    return int(hours) if hours == int(hours) else int(hours) + 1


def format_time_estimate(hours: int) -> str:
    if hours < 1:
        return "less than an hour"
    if hours < 24:
        return f"about {hours} hour{'s' if hours > 1 else ''}"
    days = hours // 24
    return f"about {days} day{'s' if days > 1 else ''}"

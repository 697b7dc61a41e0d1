"""Outbound notifications: transport, dispatch queue, formatting and activity log."""

from .dispatcher import AlertCooldown, Notification, NotificationDispatcher
from .logger import WalletActivityLogger, setup_app_logging
from .transport import (
    DeliveryError,
    NotificationTransport,
    RecipientBlocked,
    TelegramTransport,
)

__all__ = [
    "AlertCooldown",
    "Notification",
    "NotificationDispatcher",
    "WalletActivityLogger",
    "setup_app_logging",
    "DeliveryError",
    "NotificationTransport",
    "RecipientBlocked",
    "TelegramTransport",
]

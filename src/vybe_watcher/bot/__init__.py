"""Telegram bot command handlers."""

from .commands import CommandService, InvalidInputError, register_handlers

__all__ = ["CommandService", "InvalidInputError", "register_handlers"]

"""Vybe Watcher - Telegram alerts for Solana wallet activity, token prices and KOL rankings."""

__version__ = "0.1.0"

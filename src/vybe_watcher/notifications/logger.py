"""Activity logging - records delivered notifications to console and file."""

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

from ..api.vybe_api import Transfer


class WalletActivityFormatter(logging.Formatter):
    """Custom formatter for wallet activity records."""

    ACTIVITY_FORMAT = """
================================================================================
{timestamp} | {event} | user {user_id}
--------------------------------------------------------------------------------
  Wallet:      {wallet}
  Label:       {label}
  Transfers:   {count}
  Newest:      {newest}
  Block Time:  {block_time}
================================================================================
"""

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "activity"):
            return self._format_activity(record.activity)
        return super().format(record)

    def _format_activity(self, activity: dict) -> str:
        block_time = activity.get("block_time")
        return self.ACTIVITY_FORMAT.format(
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            event=activity["event"],
            user_id=activity["user_id"],
            wallet=activity["wallet_address"],
            label=activity.get("label") or "-",
            count=activity.get("count", 0),
            newest=activity.get("signature") or "Unknown",
            block_time=(
                datetime.fromtimestamp(block_time, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
                if block_time
                else "Unknown"
            ),
        )


class WalletActivityLogger:
    """Writes an audit trail of wallet notifications to console and a rotating file."""

    def __init__(
        self,
        log_file: str | Path,
        log_level: str = "INFO",
        max_file_size_mb: int = 10,
        backup_count: int = 5,
        console: bool = True,
    ):
        self.log_file = Path(log_file)
        self.log_level = getattr(logging, log_level.upper(), logging.INFO)
        self.max_file_size = max_file_size_mb * 1024 * 1024
        self.backup_count = backup_count

        self._logger = logging.getLogger("vybe_watcher.activity")
        self._logger.propagate = False
        self._setup_logging(console)

    def _setup_logging(self, console: bool):
        self._logger.setLevel(self.log_level)
        for handler in list(self._logger.handlers):
            handler.close()
        self._logger.handlers.clear()

        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(WalletActivityFormatter())
            self._logger.addHandler(console_handler)

        file_handler = RotatingFileHandler(
            self.log_file,
            maxBytes=self.max_file_size,
            backupCount=self.backup_count,
        )
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(WalletActivityFormatter())
        self._logger.addHandler(file_handler)

    def _emit(self, level: int, message: str, activity: dict):
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="",
            lno=0,
            msg=message,
            args=(),
            exc_info=None,
        )
        record.activity = activity
        self._logger.handle(record)

    def log_notification(
        self,
        user_id: int,
        wallet_address: str,
        transfers: list[Transfer],
        label: str | None = None,
    ):
        """Log a delivered batch of transfers. `transfers` is newest first."""
        newest = transfers[0] if transfers else None
        self._emit(
            logging.INFO,
            "Wallet notification delivered",
            {
                "event": "NOTIFIED",
                "user_id": user_id,
                "wallet_address": wallet_address,
                "label": label,
                "count": len(transfers),
                "signature": newest.signature if newest else None,
                "block_time": newest.block_time if newest else None,
            },
        )

    def log_skipped(self, user_id: int, wallet_address: str, transfer: Transfer, reason: str):
        """Log a transfer that was not notified, at debug level."""
        self._logger.debug(
            f"Skipped {transfer.signature[:12]}... for user {user_id} on "
            f"{wallet_address[:8]}... (block {transfer.block_time}): {reason}"
        )

    def log_failed(self, user_id: int, wallet_address: str, transfers: list[Transfer]):
        """Log a batch whose delivery failed; its watermark was left in place."""
        newest = transfers[0] if transfers else None
        self._emit(
            logging.WARNING,
            "Wallet notification failed",
            {
                "event": "DELIVERY FAILED",
                "user_id": user_id,
                "wallet_address": wallet_address,
                "count": len(transfers),
                "signature": newest.signature if newest else None,
                "block_time": newest.block_time if newest else None,
            },
        )

    def close(self):
        for handler in list(self._logger.handlers):
            handler.close()
            self._logger.removeHandler(handler)


def setup_app_logging(level: str = "INFO"):
    """Set up application-wide logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from libraries
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

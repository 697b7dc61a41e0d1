"""Database repository for tracked wallets, price alerts, price cache and KOL rankings."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

import aiosqlite

from ..api.vybe_api import KnownAccount, TokenPrice
from .models import SCHEMA

logger = logging.getLogger(__name__)


class LimitExceededError(ValueError):
    """A per-user limit (wallets, alerts) would be exceeded."""


class NotFoundError(ValueError):
    """The requested row does not exist or belongs to another user."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        # CURRENT_TIMESTAMP is UTC without an offset
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TrackedWallet:
    """A (user, wallet) tracking row with its notification watermark."""

    user_id: int
    wallet_address: str
    label: str | None
    last_notified_signature: str | None
    last_processed_block_time: int | None
    tracking_started_at: int | None
    created_at: datetime | None

    @property
    def tracking_start_time(self) -> int | None:
        """When tracking began, falling back to the row creation time."""
        if self.tracking_started_at:
            return self.tracking_started_at
        if self.created_at:
            return int(self.created_at.timestamp())
        return None


@dataclass
class PriceAlert:
    """A user's one-shot price-target alert."""

    id: int
    user_id: int
    mint_address: str
    target_price: float
    is_above_target: bool
    is_triggered: bool
    created_at: datetime | None
    # Joined from the price cache when listing
    symbol: str | None = None
    name: str | None = None
    current_price: float | None = None


@dataclass
class RankedKol:
    """One row of the stored KOL ranking snapshot."""

    rank: int
    owner_address: str
    name: str | None


class Repository:
    """Database repository for all persistence operations."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None
        # One shared connection: writes and transactions must not interleave
        self._write_lock = asyncio.Lock()

    async def initialize(self):
        """Initialize the database and create tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._connection.executescript(SCHEMA)
        await self._connection.commit()

        logger.info(f"Database initialized at {self.db_path}")

    async def close(self):
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get the database connection."""
        if not self._connection:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._connection

    @asynccontextmanager
    async def transaction(self):
        """Run a block of statements atomically: commit on success, rollback on error."""
        async with self._write_lock:
            await self.conn.execute("BEGIN")
            try:
                yield self.conn
            except Exception:
                await self.conn.rollback()
                raise
            else:
                await self.conn.commit()

    async def _write(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        async with self._write_lock:
            cursor = await self.conn.execute(sql, params)
            await self.conn.commit()
            return cursor

    async def _count(self, sql: str, params: tuple) -> int:
        async with self.conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    # User Operations

    async def ensure_user(self, user_id: int, username: str | None = None):
        """Create the user row if it does not exist yet."""
        await self._write(
            "INSERT OR IGNORE INTO users (user_id, username) VALUES (?, ?)",
            (user_id, username),
        )

    async def get_all_user_ids(self) -> list[int]:
        """Get every known user id."""
        async with self.conn.execute("SELECT DISTINCT user_id FROM users") as cursor:
            rows = await cursor.fetchall()
            return [row["user_id"] for row in rows]

    # Tracked Wallet Operations

    @staticmethod
    def _row_to_wallet(row: aiosqlite.Row) -> TrackedWallet:
        return TrackedWallet(
            user_id=row["user_id"],
            wallet_address=row["wallet_address"],
            label=row["label"],
            last_notified_signature=row["last_notified_tx_signature"],
            last_processed_block_time=row["last_processed_block_time"],
            tracking_started_at=row["tracking_started_at"],
            created_at=_parse_timestamp(row["created_at"]),
        )

    async def count_tracked_wallets(self, user_id: int) -> int:
        """Count wallets tracked by a user."""
        return await self._count(
            "SELECT COUNT(*) FROM tracked_wallets WHERE user_id = ?", (user_id,)
        )

    async def add_tracked_wallet(
        self,
        user_id: int,
        wallet_address: str,
        label: str | None = None,
        max_wallets: int = 5,
        now: int | None = None,
    ) -> bool:
        """
        Start tracking a wallet for a user.

        Transfers at or before `now` are never notified.

        Returns:
            True if tracking was created, False if the user already tracks it

        Raises:
            LimitExceededError: if the user already tracks `max_wallets` wallets
        """
        await self.ensure_user(user_id)
        now = int(time.time()) if now is None else now
        created = _now_iso()

        async with self._write_lock:
            async with self.conn.execute(
                "SELECT 1 FROM tracked_wallets WHERE user_id = ? AND wallet_address = ?",
                (user_id, wallet_address),
            ) as cursor:
                if await cursor.fetchone():
                    return False

            count = await self._count(
                "SELECT COUNT(*) FROM tracked_wallets WHERE user_id = ?", (user_id,)
            )
            if count >= max_wallets:
                raise LimitExceededError(
                    f"You've reached the maximum limit of {max_wallets} tracked wallets. "
                    "Please remove some before adding more."
                )

            await self.conn.execute(
                """
                INSERT INTO tracked_wallets (
                    user_id, wallet_address, label, last_notified_tx_signature,
                    last_processed_block_time, tracking_started_at, created_at, updated_at
                ) VALUES (?, ?, ?, NULL, ?, ?, ?, ?)
                ON CONFLICT(user_id, wallet_address) DO NOTHING
                """,
                (user_id, wallet_address, label, now, now, created, created),
            )
            await self.conn.commit()

        logger.info(f"User {user_id} started tracking {wallet_address[:8]}... at {now}")
        return True

    async def get_all_tracked_wallets(self) -> list[TrackedWallet]:
        """Get every tracking row with its watermark."""
        async with self.conn.execute(
            "SELECT * FROM tracked_wallets ORDER BY wallet_address, user_id"
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_wallet(row) for row in rows]

    async def get_wallet_trackers(self, wallet_address: str) -> list[TrackedWallet]:
        """Get every user tracking one wallet."""
        async with self.conn.execute(
            "SELECT * FROM tracked_wallets WHERE wallet_address = ? ORDER BY user_id",
            (wallet_address,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_wallet(row) for row in rows]

    async def get_user_tracked_wallets(self, user_id: int) -> list[TrackedWallet]:
        """Get the wallets a user tracks, newest first."""
        async with self.conn.execute(
            "SELECT * FROM tracked_wallets WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_wallet(row) for row in rows]

    async def update_wallet_watermark(
        self,
        user_id: int,
        wallet_address: str,
        signature: str,
        block_time: int,
    ):
        """Advance the last notified signature and processed block time."""
        await self._write(
            """
            UPDATE tracked_wallets
            SET last_notified_tx_signature = ?,
                last_processed_block_time = ?,
                updated_at = ?
            WHERE user_id = ? AND wallet_address = ?
            """,
            (signature, block_time, _now_iso(), user_id, wallet_address),
        )

    async def remove_tracked_wallet(self, user_id: int, wallet_address: str):
        """Stop tracking a wallet."""
        cursor = await self._write(
            "DELETE FROM tracked_wallets WHERE user_id = ? AND wallet_address = ?",
            (user_id, wallet_address),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"You are not tracking wallet {wallet_address}.")

        logger.info(f"User {user_id} stopped tracking {wallet_address[:8]}...")

    # Token Price Cache Operations

    @staticmethod
    def _row_to_token(row: aiosqlite.Row) -> TokenPrice:
        return TokenPrice(
            mint_address=row["mint_address"],
            symbol=row["symbol"],
            name=row["name"],
            current_price=row["current_price"] or 0.0,
            last_update_time=row["last_update_time"] or 0,
        )

    async def upsert_token_price(self, token: TokenPrice):
        """Insert or overwrite the cached price of a token."""
        await self._write(
            """
            INSERT INTO token_prices (mint_address, symbol, name, current_price, last_update_time)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(mint_address) DO UPDATE SET
                symbol = excluded.symbol,
                name = excluded.name,
                current_price = excluded.current_price,
                last_update_time = excluded.last_update_time
            """,
            (
                token.mint_address,
                token.symbol,
                token.name,
                token.current_price,
                token.last_update_time,
            ),
        )

    async def get_token_price(self, mint_address: str) -> TokenPrice | None:
        """Get a cached token price."""
        async with self.conn.execute(
            "SELECT * FROM token_prices WHERE mint_address = ?", (mint_address,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_token(row) if row else None

    async def get_all_token_prices(self) -> list[TokenPrice]:
        """Get every cached token price."""
        async with self.conn.execute("SELECT * FROM token_prices ORDER BY symbol") as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_token(row) for row in rows]

    # Price Alert Operations

    @staticmethod
    def _row_to_alert(row: aiosqlite.Row) -> PriceAlert:
        keys = row.keys()
        return PriceAlert(
            id=row["id"],
            user_id=row["user_id"],
            mint_address=row["mint_address"],
            target_price=row["target_price"],
            is_above_target=bool(row["is_above_target"]),
            is_triggered=bool(row["is_triggered"]),
            created_at=_parse_timestamp(row["created_at"]),
            symbol=row["symbol"] if "symbol" in keys else None,
            name=row["name"] if "name" in keys else None,
            current_price=row["current_price"] if "current_price" in keys else None,
        )

    async def count_active_alerts(self, user_id: int) -> int:
        """Count a user's non-triggered alerts."""
        return await self._count(
            "SELECT COUNT(*) FROM user_price_alerts WHERE user_id = ? AND is_triggered = 0",
            (user_id,),
        )

    async def create_price_alert(
        self,
        user_id: int,
        mint_address: str,
        target_price: float,
        is_above_target: bool,
        max_alerts: int = 5,
    ) -> int:
        """
        Create a price-target alert.

        Returns:
            The new alert id

        Raises:
            LimitExceededError: if the user already has `max_alerts` active alerts
        """
        await self.ensure_user(user_id)

        async with self._write_lock:
            count = await self._count(
                "SELECT COUNT(*) FROM user_price_alerts WHERE user_id = ? AND is_triggered = 0",
                (user_id,),
            )
            if count >= max_alerts:
                raise LimitExceededError(
                    f"You've reached the maximum limit of {max_alerts} active price alerts. "
                    "Please remove some before adding more."
                )

            async with self.conn.execute(
                """
                INSERT INTO user_price_alerts (
                    user_id, mint_address, target_price, is_above_target, is_triggered, created_at
                ) VALUES (?, ?, ?, ?, 0, ?)
                """,
                (user_id, mint_address, target_price, int(is_above_target), _now_iso()),
            ) as cursor:
                alert_id = cursor.lastrowid
            await self.conn.commit()

        return alert_id or 0

    async def get_user_price_alerts(self, user_id: int) -> list[PriceAlert]:
        """Get a user's active alerts with cached token info."""
        async with self.conn.execute(
            """
            SELECT upa.*, tp.symbol, tp.name, tp.current_price
            FROM user_price_alerts upa
            LEFT JOIN token_prices tp ON upa.mint_address = tp.mint_address
            WHERE upa.user_id = ? AND upa.is_triggered = 0
            ORDER BY upa.created_at DESC, upa.id DESC
            """,
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_alert(row) for row in rows]

    async def get_price_alert(self, alert_id: int) -> PriceAlert | None:
        """Get one alert by id, in any state."""
        async with self.conn.execute(
            """
            SELECT upa.*, tp.symbol, tp.name, tp.current_price
            FROM user_price_alerts upa
            LEFT JOIN token_prices tp ON upa.mint_address = tp.mint_address
            WHERE upa.id = ?
            """,
            (alert_id,),
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_alert(row) if row else None

    async def get_active_alerts_for_token(self, mint_address: str) -> list[PriceAlert]:
        """Get all non-triggered alerts on a token."""
        async with self.conn.execute(
            """
            SELECT * FROM user_price_alerts
            WHERE mint_address = ? AND is_triggered = 0
            ORDER BY id
            """,
            (mint_address,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_alert(row) for row in rows]

    async def remove_price_alert(self, user_id: int, alert_id: int):
        """Delete one of the user's alerts."""
        cursor = await self._write(
            "DELETE FROM user_price_alerts WHERE id = ? AND user_id = ?",
            (alert_id, user_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError("Alert not found or you don't have permission to delete it.")

    async def mark_alert_triggered(self, alert_id: int) -> bool:
        """
        Flip an alert to triggered.

        Returns:
            True only for the call that performed the transition
        """
        cursor = await self._write(
            "UPDATE user_price_alerts SET is_triggered = 1 WHERE id = ? AND is_triggered = 0",
            (alert_id,),
        )
        return cursor.rowcount > 0

    # KOL Broadcast Subscription Operations

    async def add_kol_unsubscription(self, user_id: int) -> bool:
        """Opt a user out of KOL updates. Returns True if newly unsubscribed."""
        await self.ensure_user(user_id)
        cursor = await self._write(
            "INSERT OR IGNORE INTO kol_update_unsubscriptions (user_id) VALUES (?)",
            (user_id,),
        )
        return cursor.rowcount > 0

    async def remove_kol_unsubscription(self, user_id: int) -> bool:
        """Opt a user back in. Returns True if they were unsubscribed."""
        cursor = await self._write(
            "DELETE FROM kol_update_unsubscriptions WHERE user_id = ?", (user_id,)
        )
        return cursor.rowcount > 0

    async def get_kol_unsubscribed_user_ids(self) -> list[int]:
        """Get the ids of users who opted out of KOL updates."""
        async with self.conn.execute(
            "SELECT user_id FROM kol_update_unsubscriptions"
        ) as cursor:
            rows = await cursor.fetchall()
            return [row["user_id"] for row in rows]

    # KOL Ranking Snapshot Operations

    async def get_previous_top_kols(self) -> list[RankedKol]:
        """Get the stored ranking, rank 1 first."""
        async with self.conn.execute(
            "SELECT rank, owner_address, name FROM previous_top_kols ORDER BY rank ASC"
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                RankedKol(rank=row["rank"], owner_address=row["owner_address"], name=row["name"])
                for row in rows
            ]

    async def replace_top_kols(self, accounts: Iterable[KnownAccount]):
        """Atomically replace the stored ranking; index 0 becomes rank 1."""
        rows = [
            (rank, account.owner_address, account.name)
            for rank, account in enumerate(accounts, start=1)
        ]
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM previous_top_kols")
            await conn.executemany(
                """
                INSERT INTO previous_top_kols (rank, owner_address, name, last_checked_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                """,
                rows,
            )

        logger.debug(f"Stored KOL ranking with {len(rows)} entries")

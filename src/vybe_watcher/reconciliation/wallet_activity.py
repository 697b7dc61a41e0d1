"""Wallet activity reconciler - turns recent transfers into per-user notifications."""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Iterable

from ..api.vybe_api import MarketDataUnavailable, Transfer
from ..db.repository import TrackedWallet
from ..notifications.dispatcher import Notification
from ..notifications.formatting import format_wallet_activity
from .base import Reconciler

logger = logging.getLogger(__name__)

SKIP_NO_START = "Cannot determine when tracking started"
SKIP_SPAM = "Sender or receiver is on the spam list"
SKIP_BEFORE_TRACKING = "Transfer predates tracking"
SKIP_ALREADY_PROCESSED = "Already processed"
SKIP_LAST_NOTIFIED = "Already notified"
SKIP_DUPLICATE = "Duplicate signature"


@dataclass
class TransferSelection:
    """Transfers one tracker has not seen yet, plus why the rest were skipped."""

    new: list[Transfer] = field(default_factory=list)  # newest first
    skipped: list[tuple[Transfer, str]] = field(default_factory=list)

    @property
    def newest(self) -> Transfer | None:
        return self.new[0] if self.new else None


def select_new_transfers(
    transfers: list[Transfer],
    tracker: TrackedWallet,
    spam_addresses: Iterable[str] = (),
) -> TransferSelection:
    """
    Pick the transfers a tracker must be notified about.

    `transfers` must be ordered newest first. The walk stops at the
    tracker's last notified signature since everything older was seen.
    """
    spam = spam_addresses if isinstance(spam_addresses, (set, frozenset)) else set(spam_addresses)
    selection = TransferSelection()

    tracking_start = tracker.tracking_start_time
    if tracking_start is None:
        selection.skipped = [(t, SKIP_NO_START) for t in transfers]
        return selection

    seen: set[str] = set()
    for transfer in transfers:
        if transfer.sender_address in spam or transfer.receiver_address in spam:
            selection.skipped.append((transfer, SKIP_SPAM))
            continue

        if transfer.block_time <= tracking_start:
            selection.skipped.append((transfer, SKIP_BEFORE_TRACKING))
            continue

        if (
            tracker.last_processed_block_time is not None
            and transfer.block_time <= tracker.last_processed_block_time
        ):
            selection.skipped.append((transfer, SKIP_ALREADY_PROCESSED))
            continue

        if transfer.signature == tracker.last_notified_signature:
            selection.skipped.append((transfer, SKIP_LAST_NOTIFIED))
            break

        if transfer.signature in seen:
            selection.skipped.append((transfer, SKIP_DUPLICATE))
            continue

        seen.add(transfer.signature)
        selection.new.append(transfer)

    return selection


class WalletActivityReconciler(Reconciler):
    """
    Notifies users about new transfers on the wallets they track.

    Poll mode walks every tracked wallet once per cycle. Push mode feeds
    single live transfers through `handle_transfer` with the same rules.
    A tracker's watermark only moves after its notification was delivered.
    """

    NAME = "wallet_activity"

    def __init__(
        self,
        repository,
        vybe_api,
        dispatcher,
        rpc=None,
        activity_logger=None,
        spam_addresses: Iterable[str] = (),
        fetch_limit: int = 20,
        max_transfers_shown: int = 5,
        wallet_delay_seconds: float = 1.0,
        signature_probe: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__()
        self.repository = repository
        self.vybe_api = vybe_api
        self.dispatcher = dispatcher
        self.rpc = rpc
        self.activity_logger = activity_logger
        self.spam_addresses = frozenset(spam_addresses)
        self.fetch_limit = fetch_limit
        self.max_transfers_shown = max_transfers_shown
        self.wallet_delay_seconds = wallet_delay_seconds
        self.signature_probe = signature_probe
        self._sleep = sleep

        # (user_id, wallet_address) -> newest block time delivered by this process
        self._last_block_times: dict[tuple[int, str], int] = {}
        self._in_flight: set[tuple[int, str]] = set()

        self._notifications_sent = 0
        self._wallets_checked = 0

    @property
    def stats(self) -> dict:
        return {
            "wallets_checked": self._wallets_checked,
            "notifications_sent": self._notifications_sent,
        }

    async def tracked_addresses(self) -> list[str]:
        """Unique addresses tracked by anyone, for the live stream filters."""
        wallets = await self.repository.get_all_tracked_wallets()
        return sorted({w.wallet_address for w in wallets})

    async def _reconcile(self) -> bool:
        wallets = await self.repository.get_all_tracked_wallets()
        if not wallets:
            return True

        by_address: dict[str, list[TrackedWallet]] = defaultdict(list)
        for wallet in wallets:
            by_address[wallet.wallet_address].append(wallet)

        failures = 0
        for index, (address, trackers) in enumerate(by_address.items()):
            if self.stopping:
                logger.info("Stop requested, ending wallet cycle early")
                break

            if index and self.wallet_delay_seconds:
                await self._sleep(self.wallet_delay_seconds)

            try:
                await self._check_trackers(address, trackers)
            except MarketDataUnavailable as e:
                failures += 1
                logger.warning(f"No transfer data for {address[:8]}... this cycle: {e}")
            except Exception as e:
                failures += 1
                logger.error(f"Error checking wallet {address[:8]}...: {e}", exc_info=True)

        # Only a cycle where every wallet failed counts as a failure
        return failures < len(by_address)

    async def check_wallet(self, wallet_address: str) -> int:
        """
        Check one wallet for all of its trackers right away.

        Returns:
            Number of users notified
        """
        trackers = await self.repository.get_wallet_trackers(wallet_address)
        if not trackers:
            return 0
        try:
            return await self._check_trackers(wallet_address, trackers)
        except MarketDataUnavailable as e:
            logger.warning(f"No transfer data for {wallet_address[:8]}...: {e}")
            return 0
        except Exception as e:
            logger.error(f"Error checking wallet {wallet_address[:8]}...: {e}", exc_info=True)
            return 0

    async def _probe_unchanged(self, wallet_address: str, trackers: list[TrackedWallet]) -> bool:
        """True when the newest on-chain signature is what every tracker already saw."""
        if not (self.rpc and self.signature_probe):
            return False
        if not all(t.last_notified_signature for t in trackers):
            return False

        try:
            signatures = await self.rpc.get_recent_signatures(wallet_address, limit=1)
        except MarketDataUnavailable as e:
            logger.debug(f"Signature probe failed for {wallet_address[:8]}...: {e}")
            return False

        if not signatures:
            return False
        return all(t.last_notified_signature == signatures[0] for t in trackers)

    async def _check_trackers(self, wallet_address: str, trackers: list[TrackedWallet]) -> int:
        self._wallets_checked += 1

        if await self._probe_unchanged(wallet_address, trackers):
            logger.debug(f"No new signatures for {wallet_address[:8]}..., skipping fetch")
            return 0

        transfers = await self.vybe_api.get_recent_transfers(wallet_address, limit=self.fetch_limit)
        if self.stopping:
            return 0
        if not transfers:
            return 0

        # Watermarks may have moved during the fetch or the wait before it
        notified = 0
        for tracker in await self.repository.get_wallet_trackers(wallet_address):
            if await self._evaluate(tracker, transfers):
                notified += 1
        return notified

    async def handle_transfer(self, transfer: Transfer) -> int:
        """
        Evaluate one live transfer for every tracker of its sender or receiver.

        Returns:
            Number of users notified
        """
        notified = 0
        for address in dict.fromkeys((transfer.sender_address, transfer.receiver_address)):
            if not address:
                continue

            for tracker in await self.repository.get_wallet_trackers(address):
                if await self._evaluate(tracker, [transfer]):
                    notified += 1

        return notified

    def _with_cached_watermark(self, tracker: TrackedWallet) -> TrackedWallet:
        """Apply the newest block time this process already delivered for the pair."""
        key = (tracker.user_id, tracker.wallet_address)
        stored = tracker.last_processed_block_time
        cached = self._last_block_times.get(key)

        if cached is None or (stored is not None and stored >= cached):
            if stored is not None:
                self._last_block_times[key] = stored
            return tracker
        return replace(tracker, last_processed_block_time=cached)

    async def _evaluate(self, tracker: TrackedWallet, transfers: list[Transfer]) -> bool:
        """Select and deliver new transfers for one tracker, one delivery per pair at a time."""
        key = (tracker.user_id, tracker.wallet_address)

        if self.dispatcher.is_blocked(tracker.user_id):
            logger.debug(f"User {tracker.user_id} blocked the bot, skipping {tracker.wallet_address[:8]}...")
            return False

        # Poll, push or an on-demand check is already delivering for this pair
        if key in self._in_flight:
            return False

        tracker = self._with_cached_watermark(tracker)
        selection = select_new_transfers(transfers, tracker, self.spam_addresses)
        self._log_skipped(tracker, selection)
        if not selection.new:
            return False

        self._in_flight.add(key)
        try:
            return await self._notify(tracker, selection.new)
        finally:
            self._in_flight.discard(key)

    async def _notify(self, tracker: TrackedWallet, new_transfers: list[Transfer]) -> bool:
        """Deliver one batched message, then advance the watermark."""
        text = format_wallet_activity(
            tracker.wallet_address,
            new_transfers,
            label=tracker.label,
            max_shown=self.max_transfers_shown,
        )
        notification = Notification(
            recipient=tracker.user_id,
            text=text,
            category="wallet_activity",
        )

        if not await self.dispatcher.deliver(notification):
            if self.activity_logger:
                self.activity_logger.log_failed(tracker.user_id, tracker.wallet_address, new_transfers)
            return False

        self._notifications_sent += 1
        newest = new_transfers[0]

        if self.stopping:
            logger.info(
                f"Stop requested, not advancing watermark for user {tracker.user_id} "
                f"on {tracker.wallet_address[:8]}..."
            )
            return True

        try:
            await self.repository.update_wallet_watermark(
                tracker.user_id,
                tracker.wallet_address,
                newest.signature,
                newest.block_time,
            )
        except Exception as e:
            logger.error(
                f"Failed to advance watermark for user {tracker.user_id} "
                f"on {tracker.wallet_address[:8]}...: {e}"
            )
            return True

        key = (tracker.user_id, tracker.wallet_address)
        self._last_block_times[key] = max(self._last_block_times.get(key, 0), newest.block_time)

        if self.activity_logger:
            self.activity_logger.log_notification(
                tracker.user_id,
                tracker.wallet_address,
                new_transfers,
                label=tracker.label,
            )
        return True

    def _log_skipped(self, tracker: TrackedWallet, selection: TransferSelection):
        if not self.activity_logger:
            return
        for transfer, reason in selection.skipped:
            self.activity_logger.log_skipped(tracker.user_id, tracker.wallet_address, transfer, reason)

"""Notification dispatcher - rate-limited queue with bounded retry and backoff."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

from .transport import NotificationTransport, RecipientBlocked

logger = logging.getLogger(__name__)

BlockedCallback = Callable[[int], Awaitable[None]]


@dataclass
class Notification:
    """One outbound message and its retry state."""

    recipient: int
    text: str
    parse_mode: str | None = "HTML"
    category: str | None = None
    retry_count: int = 0
    not_before: float = 0.0  # clock() value before which it must not be sent


class AlertCooldown:
    """
    Throttles repeated general alerts per (token, user, direction).

    Target alerts are one-shot and never go through here.
    """

    def __init__(self, cooldown_seconds: float = 1800, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_sent: dict[tuple[str, int, str], float] = {}

    def should_throttle(self, mint_address: str, user_id: int, direction: str) -> bool:
        """Return True if suppressed; otherwise record the send and return False."""
        now = self._clock()
        key = (mint_address, user_id, direction)
        last = self._last_sent.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            return True

        self._last_sent[key] = now
        return False


class NotificationDispatcher:
    """
    Queues outbound messages and delivers them respecting transport rate limits.

    A timer drains up to `batch_size` due items per tick with a small delay
    between sends. Retryable failures are requeued with exponential backoff
    up to `max_retries`, then dropped. Recipients that blocked the bot are
    never retried; they are remembered and `on_blocked` is called instead.
    """

    def __init__(
        self,
        transport: NotificationTransport,
        batch_size: int = 10,
        tick_seconds: float = 1.0,
        send_delay_seconds: float = 0.05,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        on_blocked: BlockedCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.batch_size = batch_size
        self.tick_seconds = tick_seconds
        self.send_delay_seconds = send_delay_seconds
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.on_blocked = on_blocked
        self._clock = clock
        self._sleep = sleep

        self._queue: deque[Notification] = deque()
        self._processing = False
        self._task: asyncio.Task | None = None
        self._sent = 0
        self._dropped = 0
        self._blocked: set[int] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    def is_blocked(self, recipient: int) -> bool:
        """True once the transport reported the recipient blocked the bot."""
        return recipient in self._blocked

    def unblock(self, recipient: int):
        """Forget a blocked mark, e.g. after the user talked to the bot again."""
        self._blocked.discard(recipient)

    @property
    def stats(self) -> dict:
        """Get dispatcher statistics."""
        return {
            "pending": len(self._queue),
            "sent": self._sent,
            "dropped": self._dropped,
        }

    def enqueue(
        self,
        recipient: int,
        text: str,
        parse_mode: str | None = "HTML",
        category: str | None = None,
    ) -> Notification:
        """Queue a message for delivery on a later tick."""
        notification = Notification(
            recipient=recipient,
            text=text,
            parse_mode=parse_mode,
            category=category,
        )
        self._queue.append(notification)
        return notification

    def _backoff(self, retry_count: int, error: Exception) -> float:
        delay = self.retry_base_seconds * (2**retry_count)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, retry_after)
        return delay

    async def _send(self, notification: Notification):
        await self.transport.send_message(
            notification.recipient,
            notification.text,
            parse_mode=notification.parse_mode,
        )
        self._sent += 1
        self._blocked.discard(notification.recipient)

    async def _handle_blocked(self, notification: Notification, error: RecipientBlocked):
        logger.warning(f"User {notification.recipient} blocked the bot: {error}")
        self._blocked.add(notification.recipient)
        if not self.on_blocked:
            return
        try:
            await self.on_blocked(notification.recipient)
        except Exception as e:
            logger.error(f"Error unsubscribing blocked user {notification.recipient}: {e}")

    async def process_queue(self) -> int:
        """
        Send up to `batch_size` due notifications.

        Returns:
            Number of notifications delivered in this pass
        """
        if self._processing or not self._queue:
            return 0

        self._processing = True
        delivered = 0
        held_back: list[Notification] = []

        try:
            now = self._clock()
            attempts = 0

            while self._queue and attempts < self.batch_size:
                notification = self._queue.popleft()
                if notification.not_before > now:
                    held_back.append(notification)
                    continue

                attempts += 1
                try:
                    await self._send(notification)
                    delivered += 1
                except RecipientBlocked as e:
                    await self._handle_blocked(notification, e)
                except Exception as e:
                    logger.error(f"Error sending notification to user {notification.recipient}: {e}")
                    if notification.retry_count < self.max_retries:
                        notification.retry_count += 1
                        notification.not_before = now + self._backoff(notification.retry_count, e)
                        held_back.append(notification)
                    else:
                        self._dropped += 1
                        logger.error(
                            f"Failed to send notification to user {notification.recipient} "
                            f"after {self.max_retries} retries, dropping it"
                        )

                if self.send_delay_seconds:
                    await self._sleep(self.send_delay_seconds)
        finally:
            self._queue.extend(held_back)
            self._processing = False

        return delivered

    async def deliver(self, notification: Notification) -> bool:
        """
        Send immediately with the same bounded retry, waiting for the outcome.

        Returns:
            True once the transport accepted the message, False if it was dropped
        """
        while True:
            try:
                await self._send(notification)
                if self.send_delay_seconds:
                    await self._sleep(self.send_delay_seconds)
                return True
            except RecipientBlocked as e:
                await self._handle_blocked(notification, e)
                return False
            except Exception as e:
                if notification.retry_count >= self.max_retries:
                    self._dropped += 1
                    logger.error(
                        f"Failed to deliver to user {notification.recipient} "
                        f"after {self.max_retries} retries: {e}"
                    )
                    return False

                notification.retry_count += 1
                delay = self._backoff(notification.retry_count, e)
                logger.warning(
                    f"Delivery to user {notification.recipient} failed ({e}), "
                    f"retry {notification.retry_count}/{self.max_retries} in {delay:.1f}s"
                )
                await self._sleep(delay)

    async def start(self):
        """Start the periodic queue processor."""
        if self._task:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Notification queue processor started")

    async def stop(self):
        """Stop the periodic queue processor."""
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Notification queue processor stopped")

    async def _run(self):
        while True:
            try:
                await self.process_queue()
            except Exception as e:
                logger.error(f"Error processing notification queue: {e}", exc_info=True)
            await asyncio.sleep(self.tick_seconds)

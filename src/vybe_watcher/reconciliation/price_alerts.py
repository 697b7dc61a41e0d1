"""Price alert reconciler - price history, target crossings and movement alerts."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from ..api.vybe_api import MarketDataUnavailable, TokenPrice
from ..db.repository import PriceAlert
from ..notifications.dispatcher import AlertCooldown
from ..notifications.formatting import (
    format_general_alert,
    format_group_move,
    format_target_alert,
)
from .base import Reconciler

logger = logging.getLogger(__name__)

REVERSAL_MIN_PERCENT = 2.0
ACCELERATION_FACTOR = 1.5


def percent_change(current: float, previous: float) -> float:
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100


@dataclass
class PricePoint:
    price: float
    timestamp: int  # Unix seconds


class PriceHistory:
    """Bounded per-token price history kept in memory only."""

    def __init__(self, max_points: int = 60):
        self.max_points = max_points
        self._points: dict[str, deque[PricePoint]] = {}

    def add(self, mint_address: str, price: float, timestamp: int):
        points = self._points.get(mint_address)
        if points is None:
            points = self._points[mint_address] = deque(maxlen=self.max_points)
        points.append(PricePoint(price=price, timestamp=timestamp))

    def recent(self, mint_address: str, limit: int | None = None) -> list[PricePoint]:
        """Points for a token, newest first."""
        points = list(reversed(self._points.get(mint_address, ())))
        return points[:limit] if limit is not None else points

    def change_over_period(
        self,
        mint_address: str,
        current_price: float,
        hours: float,
        now: int | None = None,
    ) -> float | None:
        """
        Percent change against the stored point closest to `hours` ago.

        Returns None when there is no usable reference point.
        """
        points = self._points.get(mint_address)
        if not points:
            return None

        now = int(time.time()) if now is None else now
        target_time = now - hours * 3600
        reference = min(points, key=lambda p: abs(p.timestamp - target_time))
        if reference.price <= 0:
            return None
        return percent_change(current_price, reference.price)

    def detect_rapid_movement(self, mint_address: str) -> str | None:
        """
        Look at the last three points for a sharp reversal or acceleration.

        Returns:
            "reversal", "acceleration" or None
        """
        points = self.recent(mint_address, 3)
        if len(points) < 3 or points[1].price <= 0 or points[2].price <= 0:
            return None

        recent_change = percent_change(points[0].price, points[1].price)
        previous_change = percent_change(points[1].price, points[2].price)

        if (
            recent_change * previous_change < 0
            and abs(recent_change) > REVERSAL_MIN_PERCENT
            and abs(previous_change) > REVERSAL_MIN_PERCENT
        ):
            return "reversal"

        if recent_change * previous_change > 0 and abs(recent_change) > abs(previous_change) * ACCELERATION_FACTOR:
            return "acceleration"

        return None

    def point_counts(self) -> dict[str, int]:
        return {mint: len(points) for mint, points in self._points.items()}


@dataclass
class TargetValidation:
    """Outcome of checking a proposed alert target against the current price."""

    is_above_target: bool
    error: str | None = None
    warning: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def validate_price_target(
    current_price: float | None,
    target_price: float,
    too_close_percent: float = 0.2,
    too_far_percent: float = 10.0,
) -> TargetValidation:
    """Reject targets too close to the current price; only warn about far ones."""
    if not current_price or current_price <= 0:
        return TargetValidation(
            is_above_target=False,
            error="Current price is not available for this token. Please try again later.",
        )

    if target_price <= 0:
        return TargetValidation(is_above_target=False, error="Target price must be greater than zero.")

    is_above = target_price > current_price
    distance = abs(target_price - current_price) / current_price * 100

    if distance < too_close_percent:
        return TargetValidation(
            is_above_target=is_above,
            error=(
                f"Target price is too close to the current price ({distance:.2f}% away). "
                f"Please choose a target at least {too_close_percent}% away."
            ),
        )

    warning = None
    if distance > too_far_percent:
        warning = (
            f"Target price is {distance:.1f}% away from the current price. "
            "It may take a long time to reach."
        )

    return TargetValidation(is_above_target=is_above, warning=warning)


def crosses_target(alert: PriceAlert, previous_price: float, current_price: float) -> bool:
    """True when the move from previous to current passes the target in the alert's direction."""
    if alert.is_above_target:
        return previous_price < alert.target_price <= current_price
    return previous_price > alert.target_price >= current_price


class PriceAlertReconciler(Reconciler):
    """
    Polls tracked token prices and fires alerts.

    Target alerts fire once, on the poll where the price crosses the
    target in its fixed direction. General alerts go to users with any
    active alert on a token that moved sharply, throttled per direction.
    """

    NAME = "price_alerts"

    def __init__(
        self,
        repository,
        vybe_api,
        dispatcher,
        tracked_tokens: list[str],
        history: PriceHistory | None = None,
        cooldown: AlertCooldown | None = None,
        general_alert_threshold_percent: float = 2.5,
        significant_move_percent: float = 10.0,
        group_chat_id: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__()
        self.repository = repository
        self.vybe_api = vybe_api
        self.dispatcher = dispatcher
        self.tracked_tokens = list(tracked_tokens)
        self.history = history or PriceHistory()
        self.cooldown = cooldown or AlertCooldown()
        self.general_alert_threshold_percent = general_alert_threshold_percent
        self.significant_move_percent = significant_move_percent
        self.group_chat_id = group_chat_id
        self._clock = clock

        self._alerts_fired = 0
        self._last_poll_time: float | None = None

    @property
    def stats(self) -> dict:
        return {
            "tracked_tokens": len(self.tracked_tokens),
            "alerts_fired": self._alerts_fired,
            "last_poll_time": self._last_poll_time,
            "history_points": self.history.point_counts(),
        }

    async def _fetch_prices(self) -> list[TokenPrice]:
        async def fetch(mint: str) -> TokenPrice | None:
            try:
                return await self.vybe_api.get_token_price(mint)
            except MarketDataUnavailable as e:
                logger.warning(f"No price for {mint[:8]}... this cycle: {e}")
                return None

        results = await asyncio.gather(*(fetch(mint) for mint in self.tracked_tokens))
        return [token for token in results if token is not None]

    async def _reconcile(self) -> bool:
        if not self.tracked_tokens:
            return True

        tokens = await self._fetch_prices()
        if not tokens:
            logger.warning("Could not fetch any token prices")
            return False

        if self.stopping:
            return True

        self._last_poll_time = self._clock()
        for token in tokens:
            try:
                await self.process_token(token)
            except Exception as e:
                logger.error(f"Error processing price for {token.symbol}: {e}", exc_info=True)

        return True

    async def process_token(self, token: TokenPrice):
        """Update cache and history for one token, then evaluate its alerts."""
        cached = await self.repository.get_token_price(token.mint_address)
        previous_price = cached.current_price if cached else 0.0

        now = int(self._clock())
        self.history.add(token.mint_address, token.current_price, now)

        try:
            await self.repository.upsert_token_price(token)
        except Exception as e:
            logger.error(f"Failed to cache price for {token.symbol}: {e}")

        if previous_price <= 0 or token.current_price <= 0:
            return

        change = percent_change(token.current_price, previous_price)
        logger.debug(
            f"{token.symbol}: {previous_price} -> {token.current_price} ({change:+.2f}%)"
        )

        alerts = await self.repository.get_active_alerts_for_token(token.mint_address)

        if abs(change) >= self.general_alert_threshold_percent:
            self._send_general_alerts(token, change, previous_price, alerts)

        if token.current_price != previous_price:
            await self._check_targets(token, previous_price, alerts)

        movement = self.history.detect_rapid_movement(token.mint_address)
        if movement:
            logger.info(f"Rapid price movement on {token.symbol}: {movement}")

    def _send_general_alerts(
        self,
        token: TokenPrice,
        change: float,
        previous_price: float,
        alerts: list[PriceAlert],
    ):
        direction = "up" if change >= 0 else "down"
        text = format_general_alert(token, change, previous_price)

        for user_id in dict.fromkeys(alert.user_id for alert in alerts):
            if self.cooldown.should_throttle(token.mint_address, user_id, direction):
                continue
            self.dispatcher.enqueue(user_id, text, category="price_movement")

        if self.group_chat_id and abs(change) >= self.significant_move_percent:
            self.dispatcher.enqueue(
                self.group_chat_id,
                format_group_move(token, change),
                category="price_movement",
            )

    async def _check_targets(self, token: TokenPrice, previous_price: float, alerts: list[PriceAlert]):
        for alert in alerts:
            if not crosses_target(alert, previous_price, token.current_price):
                continue

            if self.stopping:
                return

            self.dispatcher.enqueue(
                alert.user_id,
                format_target_alert(token, alert),
                category="price_target",
            )
            if await self.repository.mark_alert_triggered(alert.id):
                self._alerts_fired += 1
                logger.info(
                    f"Alert {alert.id} fired for user {alert.user_id}: {token.symbol} "
                    f"crossed {alert.target_price} ({previous_price} -> {token.current_price})"
                )

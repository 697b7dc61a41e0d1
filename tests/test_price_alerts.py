"""Price alert reconciliation: crossings, one-shot triggering, history and validation."""

from dataclasses import dataclass

import pytest
from conftest import FakeClock, make_token

from vybe_watcher.db import PriceAlert
from vybe_watcher.notifications import AlertCooldown
from vybe_watcher.reconciliation import (
    PriceAlertReconciler,
    PriceHistory,
    crosses_target,
    validate_price_target,
)

JUP = "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN"
BONK = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
USER = 111
OTHER_USER = 222
GROUP = -100123


def make_reconciler(repository, vybe_api, dispatcher, clock, **kwargs) -> PriceAlertReconciler:
    kwargs.setdefault("tracked_tokens", [JUP])
    kwargs.setdefault("cooldown", AlertCooldown(1800, clock=clock))
    return PriceAlertReconciler(repository, vybe_api, dispatcher, clock=clock, **kwargs)


async def poll(reconciler, vybe_api, price: float, mint: str = JUP, symbol: str = "JUP") -> bool | None:
    vybe_api.prices[mint] = make_token(mint, price, symbol)
    return await reconciler.run_cycle()


async def sent_texts(dispatcher, transport, chat_id: int) -> list[str]:
    while dispatcher.pending:
        await dispatcher.process_queue()
    return transport.texts_for(chat_id)


# Crossing rule


@dataclass
class CrossingCase:
    is_above: bool
    target: float
    previous: float
    current: float
    fires: bool


CROSSING_CASES = [
    CrossingCase(True, 1.03, 1.00, 1.05, True),
    CrossingCase(True, 1.03, 1.00, 1.03, True),
    CrossingCase(True, 1.03, 1.03, 1.10, False),
    CrossingCase(True, 1.03, 1.05, 1.07, False),
    CrossingCase(True, 1.03, 1.00, 1.02, False),
    CrossingCase(True, 1.03, 1.05, 1.00, False),
    CrossingCase(False, 1.90, 2.00, 1.85, True),
    CrossingCase(False, 1.90, 2.00, 1.90, True),
    CrossingCase(False, 1.90, 1.90, 1.80, False),
    CrossingCase(False, 1.90, 2.00, 1.95, False),
    CrossingCase(False, 1.90, 1.80, 2.00, False),
]


@pytest.mark.parametrize("case", CROSSING_CASES)
def test_crossing_requires_passing_target_in_alert_direction(case):
    alert = PriceAlert(
        id=1,
        user_id=USER,
        mint_address=JUP,
        target_price=case.target,
        is_above_target=case.is_above,
        is_triggered=False,
        created_at=None,
    )
    assert crosses_target(alert, case.previous, case.current) is case.fires


# Reconciler


async def test_price_crossing_fires_once(repository, vybe_api, dispatcher, transport, clock):
    await repository.upsert_token_price(make_token(JUP, 1.00))
    alert_id = await repository.create_price_alert(USER, JUP, 1.03, is_above_target=True)
    reconciler = make_reconciler(
        repository, vybe_api, dispatcher, clock, general_alert_threshold_percent=50
    )

    clock.advance(60)
    assert await poll(reconciler, vybe_api, 1.05) is True

    messages = await sent_texts(dispatcher, transport, USER)
    assert len(messages) == 1
    assert "Price Target Reached" in messages[0]
    assert (await repository.get_price_alert(alert_id)).is_triggered

    clock.advance(60)
    await poll(reconciler, vybe_api, 1.07)

    assert len(await sent_texts(dispatcher, transport, USER)) == 1
    assert await repository.count_active_alerts(USER) == 0


async def test_downward_crossing(repository, vybe_api, dispatcher, transport, clock):
    await repository.upsert_token_price(make_token(JUP, 2.00))
    below = await repository.create_price_alert(USER, JUP, 1.90, is_above_target=False)
    above = await repository.create_price_alert(USER, JUP, 2.20, is_above_target=True)
    reconciler = make_reconciler(
        repository, vybe_api, dispatcher, clock, general_alert_threshold_percent=50
    )

    await poll(reconciler, vybe_api, 1.95)
    assert not (await repository.get_price_alert(below)).is_triggered

    await poll(reconciler, vybe_api, 1.85)

    assert (await repository.get_price_alert(below)).is_triggered
    assert not (await repository.get_price_alert(above)).is_triggered
    messages = await sent_texts(dispatcher, transport, USER)
    assert len(messages) == 1
    assert "fallen below" in messages[0]


async def test_first_poll_only_caches_price(repository, vybe_api, dispatcher, transport, clock):
    alert_id = await repository.create_price_alert(USER, JUP, 1.03, is_above_target=True)
    reconciler = make_reconciler(repository, vybe_api, dispatcher, clock)

    await poll(reconciler, vybe_api, 1.05)

    assert dispatcher.pending == 0
    assert not (await repository.get_price_alert(alert_id)).is_triggered
    cached = await repository.get_token_price(JUP)
    assert cached.current_price == 1.05
    assert reconciler.history.recent(JUP)[0].price == 1.05


async def test_price_cache_is_overwritten_every_poll(repository, vybe_api, dispatcher, clock):
    reconciler = make_reconciler(repository, vybe_api, dispatcher, clock)

    for price in (1.0, 1.01, 1.02):
        await poll(reconciler, vybe_api, price)

    assert (await repository.get_token_price(JUP)).current_price == 1.02
    assert [p.price for p in reconciler.history.recent(JUP)] == [1.02, 1.01, 1.0]


async def test_failing_token_does_not_block_others(repository, vybe_api, dispatcher, clock):
    reconciler = make_reconciler(repository, vybe_api, dispatcher, clock, tracked_tokens=[JUP, BONK])
    vybe_api.prices[BONK] = make_token(BONK, 0.00002, "BONK")

    assert await reconciler.run_cycle() is True

    assert await repository.get_token_price(JUP) is None
    assert (await repository.get_token_price(BONK)).current_price == 0.00002


async def test_cycle_fails_when_no_price_is_available(repository, vybe_api, dispatcher, clock):
    reconciler = make_reconciler(repository, vybe_api, dispatcher, clock, tracked_tokens=[JUP, BONK])

    assert await reconciler.run_cycle() is False


async def test_general_alert_respects_cooldown(repository, vybe_api, dispatcher, transport, clock):
    await repository.upsert_token_price(make_token(JUP, 1.00))
    await repository.create_price_alert(USER, JUP, 5.00, is_above_target=True)
    await repository.create_price_alert(USER, JUP, 6.00, is_above_target=True)
    await repository.create_price_alert(OTHER_USER, JUP, 0.10, is_above_target=False)
    reconciler = make_reconciler(repository, vybe_api, dispatcher, clock)

    await poll(reconciler, vybe_api, 1.05)

    # One general alert per user even with several alerts on the token
    assert len(await sent_texts(dispatcher, transport, USER)) == 1
    assert len(await sent_texts(dispatcher, transport, OTHER_USER)) == 1

    clock.advance(60)
    await poll(reconciler, vybe_api, 1.10)
    assert len(await sent_texts(dispatcher, transport, USER)) == 1

    clock.advance(60)
    await poll(reconciler, vybe_api, 1.00)
    assert len(await sent_texts(dispatcher, transport, USER)) == 2

    clock.advance(1800)
    await poll(reconciler, vybe_api, 1.05)
    assert len(await sent_texts(dispatcher, transport, USER)) == 3


async def test_small_moves_send_no_general_alert(repository, vybe_api, dispatcher, clock):
    await repository.upsert_token_price(make_token(JUP, 1.00))
    await repository.create_price_alert(USER, JUP, 5.00, is_above_target=True)
    reconciler = make_reconciler(repository, vybe_api, dispatcher, clock)

    await poll(reconciler, vybe_api, 1.01)

    assert dispatcher.pending == 0


async def test_significant_move_goes_to_group_chat(repository, vybe_api, dispatcher, transport, clock):
    await repository.upsert_token_price(make_token(JUP, 1.00))
    reconciler = make_reconciler(repository, vybe_api, dispatcher, clock, group_chat_id=GROUP)

    await poll(reconciler, vybe_api, 1.04)
    assert await sent_texts(dispatcher, transport, GROUP) == []

    await poll(reconciler, vybe_api, 1.20)
    [message] = await sent_texts(dispatcher, transport, GROUP)
    assert "Significant Price Movement" in message


async def test_overlapping_cycle_is_skipped(repository, vybe_api, dispatcher, clock):
    reconciler = make_reconciler(repository, vybe_api, dispatcher, clock)
    reconciler._in_progress = True

    assert await reconciler.run_cycle() is None
    assert vybe_api.price_calls == []


# History ring


def test_history_keeps_newest_points_only():
    history = PriceHistory(max_points=3)
    for i in range(5):
        history.add(JUP, 1.0 + i, 1000 + i)

    assert [p.price for p in history.recent(JUP)] == [5.0, 4.0, 3.0]
    assert history.point_counts() == {JUP: 3}
    assert history.recent(BONK) == []


def test_change_over_period_uses_closest_point():
    history = PriceHistory()
    history.add(JUP, 1.00, 0)
    history.add(JUP, 2.00, 3600)
    history.add(JUP, 4.00, 7200)

    assert history.change_over_period(JUP, 4.00, hours=1, now=7200) == pytest.approx(100.0)
    assert history.change_over_period(JUP, 4.00, hours=2, now=7200) == pytest.approx(300.0)
    assert history.change_over_period(BONK, 1.0, hours=1, now=7200) is None


@pytest.mark.parametrize(
    "prices, expected",
    [
        ([1.00, 1.05, 1.00], "reversal"),
        ([1.00, 0.95, 1.00], "reversal"),
        ([1.00, 1.01, 1.05], "acceleration"),
        ([1.00, 1.02, 1.04], None),
        ([1.00, 1.01, 1.00], None),
        ([1.00, 1.05], None),
    ],
)
def test_rapid_movement_detection(prices, expected):
    history = PriceHistory()
    for i, price in enumerate(prices):
        history.add(JUP, price, 1000 + i * 60)

    assert history.detect_rapid_movement(JUP) == expected


# Target validation


def test_target_too_close_is_rejected():
    result = validate_price_target(100.0, 100.1, too_close_percent=0.2)

    assert not result.ok
    assert "too close" in result.error


def test_target_outside_too_close_threshold_is_accepted():
    result = validate_price_target(100.0, 100.5, too_close_percent=0.2)

    assert result.ok
    assert result.is_above_target is True
    assert result.warning is None


def test_far_target_only_warns():
    result = validate_price_target(100.0, 50.0, too_far_percent=10)

    assert result.ok
    assert result.is_above_target is False
    assert "50.0%" in result.warning


def test_target_needs_a_current_price():
    assert not validate_price_target(None, 1.0).ok
    assert not validate_price_target(0.0, 1.0).ok
    assert not validate_price_target(1.0, 0.0).ok


def test_fake_clock_drives_cooldown():
    clock = FakeClock(0)
    cooldown = AlertCooldown(1800, clock=clock)

    assert cooldown.should_throttle(JUP, USER, "up") is False
    assert cooldown.should_throttle(JUP, USER, "up") is True
    assert cooldown.should_throttle(JUP, USER, "down") is False
    assert cooldown.should_throttle(JUP, OTHER_USER, "up") is False

    clock.advance(1800)
    assert cooldown.should_throttle(JUP, USER, "up") is False

"""Notification message formatting."""

import pytest
from conftest import WALLET, make_token, make_transfer

from vybe_watcher.api.vybe_api import KnownAccount
from vybe_watcher.db.repository import PriceAlert
from vybe_watcher.notifications.formatting import (
    estimate_time_to_target,
    format_group_move,
    format_kol_change,
    format_price,
    format_target_alert,
    format_time_estimate,
    format_wallet_activity,
)


@pytest.mark.parametrize(
    "price, expected",
    [(1234.5, "$1,234.50"), (150, "$150.000"), (1.5, "$1.5000"), (0.5, "$0.500000"), (0.00002, "$0.00002000")],
)
def test_format_price(price, expected):
    assert format_price(price) == expected


def test_wallet_activity_caps_listed_transfers():
    transfers = [make_transfer(f"sig{i}", 1700000000 + i) for i in range(7)]

    text = format_wallet_activity(WALLET, transfers, label="Main", max_shown=5)

    assert "Main" in text
    assert text.count("View on Solscan") == 5
    assert "https://solscan.io/tx/sig0" in text
    assert "sig6" not in text
    assert text.endswith("...and 2 more transfers.")


def test_transfer_line_contents():
    transfer = make_transfer("sig", 1700000000, amount=2.5)
    transfer.value_usd = 12.0

    text = format_wallet_activity(WALLET, [transfer])

    assert "2023-11-14 22:13:20 UTC" in text
    assert "<b>2.5 SOL</b> ($12.00)" in text
    assert "more transfers" not in text


def test_labels_are_escaped():
    text = format_wallet_activity(WALLET, [make_transfer("sig", 1700000000)], label="<b>me</b>")

    assert "&lt;b&gt;me&lt;/b&gt;" in text


def test_target_alert_direction():
    token = make_token("mint", 1.06)
    above = PriceAlert(id=1, user_id=1, mint_address="mint", target_price=1.05, is_above_target=True, is_triggered=False, created_at=None)
    below = PriceAlert(id=2, user_id=1, mint_address="mint", target_price=1.10, is_above_target=False, is_triggered=False, created_at=None)

    assert "risen above" in format_target_alert(token, above)
    assert "fallen below" in format_target_alert(token, below)


def test_group_move():
    text = format_group_move(make_token("mint", 2.0), 12.345)

    assert "Significant Price Movement" in text
    assert "🚀" in text
    assert "+12.35%" in text


def test_kol_change_lists_leader_and_entrants():
    leader = KnownAccount("Leader1111111111111111111111111111", "Leader", 10.0)
    entrant = KnownAccount("Entrant111111111111111111111111111", "Entrant", 5.0)

    text = format_kol_change(new_number_one=leader, new_entrants=[entrant])

    assert "New #1" in text and "Leader" in text
    assert "New in the Top 5" in text and "Entrant" in text
    assert "New #1" not in format_kol_change(new_entrants=[entrant])


@pytest.mark.parametrize(
    "current, target, hourly, expected",
    [
        (1.0, 1.5, 10.0, 5),
        (1.0, 1.5, 20.0, 3),
        (1.0, 0.5, -25.0, 2),
        (1.0, 1.05, -1.0, None),
        (1.0, 1.05, 0.0, None),
    ],
)
def test_estimate_time_to_target(current, target, hourly, expected):
    assert estimate_time_to_target(current, target, hourly) == expected


def test_format_time_estimate():
    assert format_time_estimate(0) == "less than an hour"
    assert format_time_estimate(1) == "about 1 hour"
    assert format_time_estimate(30) == "about 1 day"
    assert format_time_estimate(72) == "about 3 days"

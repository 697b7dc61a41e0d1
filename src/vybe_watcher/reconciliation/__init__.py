"""Reconcilers that turn external state into notifications."""

from .base import PollingLoop, Reconciler
from .kol_ranking import KolChange, KolRankingReconciler, compare_rankings, rank_accounts
from .price_alerts import (
    PriceAlertReconciler,
    PriceHistory,
    PricePoint,
    TargetValidation,
    crosses_target,
    validate_price_target,
)
from .wallet_activity import (
    TransferSelection,
    WalletActivityReconciler,
    select_new_transfers,
)

__all__ = [
    "PollingLoop",
    "Reconciler",
    "KolChange",
    "KolRankingReconciler",
    "compare_rankings",
    "rank_accounts",
    "PriceAlertReconciler",
    "PriceHistory",
    "PricePoint",
    "TargetValidation",
    "crosses_target",
    "validate_price_target",
    "TransferSelection",
    "WalletActivityReconciler",
    "select_new_transfers",
]

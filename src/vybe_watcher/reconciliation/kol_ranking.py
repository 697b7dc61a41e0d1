"""KOL ranking reconciler - watches the top accounts by trading volume."""

import logging
from dataclasses import dataclass, field

from ..api.vybe_api import KnownAccount, MarketDataUnavailable
from ..db.repository import RankedKol
from ..notifications.formatting import format_kol_change
from .base import Reconciler

logger = logging.getLogger(__name__)

KOL_UPDATES = "kol_updates"


@dataclass
class KolChange:
    """What moved between two rankings."""

    new_number_one: KnownAccount | None = None
    new_entrants: list[KnownAccount] = field(default_factory=list)


def rank_accounts(accounts: list[KnownAccount], top_n: int = 10) -> list[KnownAccount]:
    """Sort by trading volume, highest first, and keep the top `top_n`."""
    return sorted(accounts, key=lambda a: a.trades_volume_usd, reverse=True)[:top_n]


def compare_rankings(
    previous: list[RankedKol],
    current: list[KnownAccount],
    entrant_window: int = 5,
) -> KolChange | None:
    """
    Diff a stored ranking against a fresh one.

    Reports a new #1 owner and addresses that entered the top window.
    Returns None when neither changed.
    """
    if not previous or not current:
        return None

    change = KolChange()

    if current[0].owner_address != previous[0].owner_address:
        change.new_number_one = current[0]

    previous_top = {kol.owner_address for kol in previous[:entrant_window]}
    change.new_entrants = [
        account for account in current[:entrant_window] if account.owner_address not in previous_top
    ]

    if change.new_number_one is None and not change.new_entrants:
        return None
    return change


class KolRankingReconciler(Reconciler):
    """Stores the ranking every cycle and broadcasts when the top changes."""

    NAME = "kol_ranking"

    def __init__(
        self,
        repository,
        vybe_api,
        dispatcher,
        label: str = "KOL",
        top_n: int = 10,
        entrant_window: int = 5,
    ):
        super().__init__()
        self.repository = repository
        self.vybe_api = vybe_api
        self.dispatcher = dispatcher
        self.label = label
        self.top_n = top_n
        self.entrant_window = entrant_window

        self.last_change: KolChange | None = None

    async def _reconcile(self) -> bool:
        try:
            accounts = await self.vybe_api.get_ranked_accounts(self.label)
        except MarketDataUnavailable as e:
            logger.warning(f"Could not fetch {self.label} rankings: {e}")
            return False

        ranking = rank_accounts(accounts, self.top_n)
        if not ranking:
            logger.info(f"No ranked {self.label} accounts returned")
            return True

        if self.stopping:
            return True

        previous = await self.repository.get_previous_top_kols()
        if not previous:
            await self.repository.replace_top_kols(ranking)
            logger.info(f"Stored initial {self.label} ranking with {len(ranking)} accounts")
            return True

        change = compare_rankings(previous, ranking, self.entrant_window)

        await self.repository.replace_top_kols(ranking)

        if change:
            self.last_change = change
            await self._broadcast(change)

        return True

    async def _broadcast(self, change: KolChange) -> int:
        """Queue the change for every user who has not opted out."""
        text = format_kol_change(change.new_number_one, change.new_entrants)

        user_ids = await self.repository.get_all_user_ids()
        unsubscribed = set(await self.repository.get_kol_unsubscribed_user_ids())
        recipients = [user_id for user_id in user_ids if user_id not in unsubscribed]

        for user_id in recipients:
            self.dispatcher.enqueue(user_id, text, category=KOL_UPDATES)

        logger.info(
            f"{self.label} ranking changed "
            f"(new #1: {change.new_number_one.name if change.new_number_one else '-'}, "
            f"{len(change.new_entrants)} new in top {self.entrant_window}); "
            f"queued for {len(recipients)} users"
        )
        return len(recipients)

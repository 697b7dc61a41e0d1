"""Shared fixtures: a real temporary SQLite repository and in-memory fakes."""

from dataclasses import dataclass, field

import pytest

from vybe_watcher.api.vybe_api import KnownAccount, MarketDataUnavailable, TokenPrice, Transfer
from vybe_watcher.db import Repository
from vybe_watcher.notifications import NotificationDispatcher, RecipientBlocked

WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
OTHER_WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
SPAMMER = "FLiPggWYQyKVTULFWMQjAk26JfK5XRCajfyTmD5weaZ7"
COUNTERPARTY = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"


def make_transfer(
    signature: str,
    block_time: int,
    sender: str = COUNTERPARTY,
    receiver: str = WALLET,
    amount: float = 1.5,
    symbol: str = "SOL",
) -> Transfer:
    return Transfer(
        signature=signature,
        block_time=block_time,
        sender_address=sender,
        receiver_address=receiver,
        amount=amount,
        symbol=symbol,
    )


def make_token(mint: str, price: float, symbol: str = "JUP", updated: int = 0) -> TokenPrice:
    return TokenPrice(
        mint_address=mint,
        symbol=symbol,
        name=f"{symbol} Token",
        current_price=price,
        last_update_time=updated,
    )


class FakeVybeApi:
    """Serves canned transfers, prices and rankings; raises for listed failures."""

    def __init__(self):
        self.transfers: dict[str, list[Transfer]] = {}
        self.prices: dict[str, TokenPrice] = {}
        self.accounts: list[KnownAccount] = []
        self.failing: set[str] = set()
        self.transfer_calls: list[str] = []
        self.price_calls: list[str] = []

    async def get_recent_transfers(self, wallet_address: str, limit: int = 20) -> list[Transfer]:
        self.transfer_calls.append(wallet_address)
        if wallet_address in self.failing:
            raise MarketDataUnavailable(f"timeout for {wallet_address}")
        items = sorted(self.transfers.get(wallet_address, []), key=lambda t: t.block_time, reverse=True)
        return items[:limit]

    async def get_token_price(self, mint_address: str) -> TokenPrice:
        self.price_calls.append(mint_address)
        if mint_address in self.failing or mint_address not in self.prices:
            raise MarketDataUnavailable(f"no price for {mint_address}")
        return self.prices[mint_address]

    async def get_ranked_accounts(self, label: str = "KOL") -> list[KnownAccount]:
        if "ranking" in self.failing:
            raise MarketDataUnavailable("ranking unavailable")
        return list(self.accounts)


class FakeRpc:
    def __init__(self):
        self.signatures: dict[str, list[str]] = {}
        self.calls: list[str] = []

    async def get_recent_signatures(self, wallet_address: str, limit: int = 1) -> list[str]:
        self.calls.append(wallet_address)
        return self.signatures.get(wallet_address, [])[:limit]


@dataclass
class SentMessage:
    chat_id: int
    text: str
    parse_mode: str | None


@dataclass
class FakeTransport:
    """Records sends; `failures` maps chat id to errors raised on successive attempts."""

    sent: list[SentMessage] = field(default_factory=list)
    attempts: list[int] = field(default_factory=list)
    failures: dict[int, list[Exception]] = field(default_factory=dict)
    blocked: set[int] = field(default_factory=set)

    async def send_message(self, chat_id: int, text: str, parse_mode: str | None = None):
        self.attempts.append(chat_id)
        if chat_id in self.blocked:
            raise RecipientBlocked(f"Chat {chat_id} blocked the bot")
        pending = self.failures.get(chat_id)
        if pending:
            raise pending.pop(0)
        self.sent.append(SentMessage(chat_id, text, parse_mode))

    async def send_photo(self, chat_id: int, photo: bytes, caption: str | None = None):
        await self.send_message(chat_id, caption or "")

    def texts_for(self, chat_id: int) -> list[str]:
        return [m.text for m in self.sent if m.chat_id == chat_id]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Sleep replacement that records delays and advances a FakeClock."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        if self.clock:
            self.clock.advance(seconds)


@pytest.fixture
async def repository(tmp_path):
    repo = Repository(tmp_path / "vybe_test.db")
    await repo.initialize()
    yield repo
    await repo.close()


@pytest.fixture
def vybe_api():
    return FakeVybeApi()


@pytest.fixture
def rpc():
    return FakeRpc()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def dispatcher(transport, clock, sleep):
    return NotificationDispatcher(
        transport,
        send_delay_seconds=0,
        retry_base_seconds=1.0,
        clock=clock,
        sleep=sleep,
    )

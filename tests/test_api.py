"""Market data clients: record parsing, error mapping and stream filters."""

import json

import httpx
import pytest

from vybe_watcher.api import (
    MarketDataUnavailable,
    SolanaRpcClient,
    VybeApiClient,
    VybeWebSocketClient,
    build_transfer_filters,
    parse_transfer,
)

WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
JUP = "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN"

TRANSFER = {
    "signature": "5h6xBEauJ3PK6SWCZ1PGjBvj8vDdWG3KpwATGy1ARAXFSDwt8GFXM7W5Ncn16wmqokgpiKRLuS83KUxyZyv2sUYv",
    "blockTime": 1700000100,
    "senderAddress": "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1",
    "receiverAddress": WALLET,
    "calculatedAmount": "12.5",
    "mintAddress": JUP,
    "tokenDetails": {"symbol": "JUP"},
    "valueUsd": "10.25",
}


def client_with(handler) -> VybeApiClient:
    client = VybeApiClient("https://api.test", api_key="key")
    client._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        headers=client._client.headers,
    )
    return client


def test_parse_transfer():
    transfer = parse_transfer(TRANSFER)

    assert transfer.block_time == 1700000100
    assert transfer.amount == 12.5
    assert transfer.symbol == "JUP"
    assert transfer.value_usd == 10.25
    assert transfer.receiver_address == WALLET


def test_parse_transfer_without_token_details():
    item = {k: v for k, v in TRANSFER.items() if k not in ("tokenDetails", "valueUsd", "calculatedAmount")}
    item["amount"] = 3

    transfer = parse_transfer(item)

    assert transfer.symbol == "JUPy..."
    assert transfer.amount == 3.0
    assert transfer.value_usd is None


def test_transfer_filters_cover_both_directions():
    filters = build_transfer_filters([WALLET, WALLET, JUP])

    assert filters == {
        "transfers": [
            {"senderAddress": WALLET},
            {"receiverAddress": WALLET},
            {"senderAddress": JUP},
            {"receiverAddress": JUP},
        ]
    }
    assert build_transfer_filters([]) == {}


async def test_get_recent_transfers_orders_newest_first():
    older = dict(TRANSFER, signature="older", blockTime=1700000000)

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/token/transfers"
        assert request.url.params["walletAddress"] == WALLET
        assert request.headers["X-API-KEY"] == "key"
        return httpx.Response(200, json={"transfers": [older, TRANSFER, {"broken": True}]})

    client = client_with(handler)
    transfers = await client.get_recent_transfers(WALLET, limit=5)
    await client.close()

    assert [t.signature for t in transfers] == [TRANSFER["signature"], "older"]


async def test_get_token_price():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == f"/token/{JUP}"
        return httpx.Response(200, json={"mintAddress": JUP, "symbol": "JUP", "name": "Jupiter", "price": 0.91, "updateTime": 1700000000})

    client = client_with(handler)
    token = await client.get_token_price(JUP)
    await client.close()

    assert (token.symbol, token.name, token.current_price, token.last_update_time) == ("JUP", "Jupiter", 0.91, 1700000000)


@pytest.mark.parametrize(
    "response",
    [httpx.Response(500, text="oops"), httpx.Response(200, json={"symbol": "JUP"}), httpx.Response(200, text="not json")],
)
async def test_failures_become_market_data_unavailable(response):
    client = client_with(lambda request: response)

    with pytest.raises(MarketDataUnavailable):
        await client.get_token_price(JUP)
    await client.close()


async def test_ranked_accounts_drop_failed_pnl_lookups():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/account/known-accounts":
            return httpx.Response(
                200,
                json={"accounts": [{"ownerAddress": "good", "name": "Good"}, {"ownerAddress": "bad", "name": "Bad"}]},
            )
        if request.url.path == "/account/pnl/good":
            return httpx.Response(200, json={"summary": {"tradesVolumeUsd": 1234.5}})
        return httpx.Response(503)

    client = client_with(handler)
    accounts = await client.get_ranked_accounts("KOL")
    await client.close()

    assert [(a.owner_address, a.trades_volume_usd) for a in accounts] == [("good", 1234.5)]


async def test_rpc_signatures():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["method"] == "getSignaturesForAddress"
        assert body["params"] == [WALLET, {"limit": 2}]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": [{"signature": "a"}, {"signature": "b"}]})

    rpc = SolanaRpcClient("https://rpc.test")
    rpc._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    assert await rpc.get_recent_signatures(WALLET, limit=2) == ["a", "b"]
    await rpc.close()


async def test_rpc_error_is_unavailable():
    rpc = SolanaRpcClient("https://rpc.test")
    rpc._client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"error": {"code": -32005}}))
    )

    with pytest.raises(MarketDataUnavailable):
        await rpc.get_recent_signatures(WALLET)
    await rpc.close()


async def test_stream_messages_become_transfers():
    received = []

    async def on_transfer(transfer):
        received.append(transfer)

    client = VybeWebSocketClient(api_key="key", on_transfer=on_transfer)

    await client.handle_message(json.dumps(TRANSFER))
    await client.handle_message(json.dumps({"data": dict(TRANSFER, signature="wrapped")}))
    await client.handle_message("not json")
    await client.handle_message(json.dumps({"type": "ack"}))

    assert [t.signature for t in received] == [TRANSFER["signature"], "wrapped"]

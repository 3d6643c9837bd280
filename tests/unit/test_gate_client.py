"""
Tests for the CCXT Gate.io gateway (exchange mocked, no network).
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import ccxt
import pytest

from tierkeeper.config.config import AccountConfig, Config
from tierkeeper.data.gate_client import CcxtGatewayFactory, GateFuturesClient, map_ccxt_error
from tierkeeper.domain.models import (
    ConditionalOrderSpec,
    GroupKey,
    MarketOrderSpec,
    OrderKind,
    Settle,
)
from tierkeeper.exceptions import (
    APIError,
    AuthenticationError,
    RateLimitError,
    RemoteTimeoutError,
)


@pytest.fixture
def exchange():
    ex = MagicMock()
    ex.fetch_positions = AsyncMock(return_value=[])
    ex.fetch_open_orders = AsyncMock(return_value=[])
    ex.create_order = AsyncMock(return_value={"id": 123})
    ex.cancel_order = AsyncMock(return_value={})
    ex.load_markets = AsyncMock(return_value={})
    ex.close = AsyncMock()
    ex.price_to_precision = MagicMock(return_value="50025.1")
    return ex


@pytest.fixture
def client(exchange):
    return GateFuturesClient(AccountConfig(), Settle.USDT, timeout_seconds=5, exchange=exchange)


class TestErrorMapping:

    @pytest.mark.parametrize("exc, expected", [
        (ccxt.RequestTimeout("slow"), RemoteTimeoutError),
        (asyncio.TimeoutError(), RemoteTimeoutError),
        (ccxt.RateLimitExceeded("429"), RateLimitError),
        (ccxt.AuthenticationError("bad key"), AuthenticationError),
        (ccxt.NetworkError("reset"), APIError),
        (ccxt.InvalidOrder("bad size"), APIError),
    ])
    def test_maps_ccxt_errors(self, exc, expected):
        assert isinstance(map_ccxt_error(exc, "op"), expected)

    def test_unknown_errors_pass_through(self):
        exc = ValueError("bug")
        assert map_ccxt_error(exc, "op") is exc


class TestReads:

    @pytest.mark.asyncio
    async def test_list_positions_drops_flat(self, client, exchange):
        exchange.fetch_positions.return_value = [
            {"symbol": "BTC/USDT:USDT", "contracts": 10},
            {"symbol": "ETH/USDT:USDT", "contracts": 0},
            {"symbol": "SOL/USDT:USDT", "contracts": None, "info": {"size": "-4"}},
        ]

        positions = await client.list_positions()

        assert [(p.symbol, p.size) for p in positions] == [
            ("BTC/USDT:USDT", Decimal("10")),
            ("SOL/USDT:USDT", Decimal("4")),
        ]
        params = exchange.fetch_positions.call_args.args[1]
        assert params["settle"] == "usdt"

    @pytest.mark.asyncio
    async def test_list_conditional_orders_reads_trigger(self, client, exchange):
        exchange.fetch_open_orders.return_value = [
            {"id": 1, "symbol": "BTC/USDT:USDT", "triggerPrice": 48500},
            {"id": "2", "symbol": "BTC/USDT:USDT", "triggerPrice": None, "info": {"trigger": {"price": "50750"}}},
        ]

        orders = await client.list_conditional_orders()

        assert [(o.id, o.trigger_price) for o in orders] == [("1", Decimal("48500")), ("2", Decimal("50750"))]
        assert exchange.fetch_open_orders.call_args.args[3]["trigger"] is True

    @pytest.mark.asyncio
    async def test_reads_retry_transient_errors(self, client, exchange):
        exchange.fetch_positions.side_effect = [ccxt.NetworkError("reset"), [{"symbol": "X", "contracts": 1}]]

        with patch("tierkeeper.utils.retry.asyncio.sleep", new=AsyncMock()):
            positions = await client.list_positions()

        assert len(positions) == 1
        assert exchange.fetch_positions.call_count == 2

    @pytest.mark.asyncio
    async def test_auth_errors_not_retried(self, client, exchange):
        exchange.fetch_open_orders.side_effect = ccxt.AuthenticationError("bad key")

        with patch("tierkeeper.utils.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(AuthenticationError):
                await client.list_conditional_orders()

        assert exchange.fetch_open_orders.call_count == 1

    @pytest.mark.asyncio
    async def test_timeout_is_bounded(self, exchange):
        client = GateFuturesClient(AccountConfig(), Settle.USDT, timeout_seconds=0.01, exchange=exchange)

        async def never_returns(*args, **kwargs):
            await asyncio.Event().wait()

        exchange.fetch_positions = MagicMock(side_effect=never_returns)

        with patch("tierkeeper.utils.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(RemoteTimeoutError):
                await client.list_positions()

        # One initial attempt plus three retries
        assert exchange.fetch_positions.call_count == 4


class TestOrders:

    @pytest.mark.asyncio
    async def test_stop_loss_trigger_order(self, client, exchange):
        spec = ConditionalOrderSpec(
            symbol="BTC/USDT:USDT",
            kind=OrderKind.STOP_LOSS,
            close_side="sell",
            size=Decimal("5"),
            trigger_price=Decimal("50025"),
        )

        order_id = await client.place_conditional_order(spec)

        assert order_id == "123"
        symbol, order_type, side, amount, price, params = exchange.create_order.call_args.args
        assert (symbol, order_type, side, amount, price) == ("BTC/USDT:USDT", "market", "sell", 5.0, None)
        assert params["stopLossPrice"] == 50025.0
        assert params["reduceOnly"] is True
        assert params["settle"] == "usdt"
        assert "takeProfitPrice" not in params

    @pytest.mark.asyncio
    async def test_take_profit_uses_take_profit_price(self, client, exchange):
        spec = ConditionalOrderSpec(
            symbol="BTC/USDT:USDT",
            kind=OrderKind.TAKE_PROFIT,
            close_side="sell",
            size=Decimal("5"),
            trigger_price=Decimal("50750"),
        )
        await client.place_conditional_order(spec)
        assert exchange.create_order.call_args.args[5]["takeProfitPrice"] == 50750.0

    @pytest.mark.asyncio
    async def test_placement_not_retried(self, client, exchange):
        exchange.create_order.side_effect = ccxt.NetworkError("reset")
        spec = ConditionalOrderSpec(
            symbol="BTC/USDT:USDT",
            kind=OrderKind.STOP_LOSS,
            close_side="sell",
            size=Decimal("5"),
            trigger_price=Decimal("50025"),
        )

        with pytest.raises(APIError):
            await client.place_conditional_order(spec)
        assert exchange.create_order.call_count == 1

    @pytest.mark.asyncio
    async def test_reduce_only_market_order(self, client, exchange):
        await client.place_market_order(MarketOrderSpec(
            symbol="BTC/USDT:USDT", side="sell", size=Decimal("2"), reduce_only=True,
        ))
        assert exchange.create_order.call_args.args[5] == {"reduceOnly": True}

    @pytest.mark.asyncio
    async def test_cancel_targets_trigger_orders(self, client, exchange):
        await client.cancel_conditional_order("77", "BTC/USDT:USDT")
        order_id, symbol, params = exchange.cancel_order.call_args.args
        assert (order_id, symbol, params["trigger"]) == ("77", "BTC/USDT:USDT", True)

    @pytest.mark.asyncio
    async def test_round_price_loads_markets_once(self, client, exchange):
        assert await client.round_price("BTC/USDT:USDT", Decimal("50025.123")) == Decimal("50025.1")
        await client.round_price("BTC/USDT:USDT", Decimal("50025.123"))
        assert exchange.load_markets.call_count == 1


class TestFactory:

    def test_one_client_per_group(self):
        config = Config(accounts={"main": AccountConfig(api_key="k", api_secret="s")})
        factory = CcxtGatewayFactory(config)

        with patch("tierkeeper.data.gate_client.ccxt_async.gate") as gate_cls:
            a = factory.for_group(GroupKey("main", Settle.USDT))
            b = factory.for_group(GroupKey("main", Settle.USDT))
            c = factory.for_group(GroupKey("main", Settle.BTC))

        assert a is b
        assert a is not c
        assert gate_cls.call_count == 2
        options = gate_cls.call_args.args[0]
        assert options["timeout"] == 10000
        assert options["options"]["defaultType"] == "swap"

    def test_unknown_account(self):
        factory = CcxtGatewayFactory(Config())
        with pytest.raises(KeyError):
            factory.for_group(GroupKey("ghost", Settle.USDT))

    @pytest.mark.asyncio
    async def test_close_all(self):
        config = Config(accounts={"main": AccountConfig()})
        factory = CcxtGatewayFactory(config)
        with patch("tierkeeper.data.gate_client.ccxt_async.gate") as gate_cls:
            gate_cls.return_value.close = AsyncMock()
            factory.for_group(GroupKey("main", Settle.USDT))
            await factory.close_all()
        gate_cls.return_value.close.assert_awaited_once()

"""
Pytest configuration and shared fixtures.

Every test gets its own in-memory SQLite database and a stateful fake
exchange, so lifecycle flows run end to end without network access.
"""
import itertools
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import pytest

from tierkeeper.config.config import AccountConfig, Config, ExpiryConfig, MonitoringConfig
from tierkeeper.domain.models import (
    ConditionalOrderSpec,
    Direction,
    GroupKey,
    MarketOrderSpec,
    OpenPositionRequest,
    RemoteOrder,
    RemotePosition,
    Settle,
)
from tierkeeper.exceptions import APIError
from tierkeeper.live.engine import PositionEngine
from tierkeeper.storage.db import Database
from tierkeeper.storage.repository import PositionStore


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


class FakeGateway:
    """
    In-memory exchange for one account + settle market.

    Trigger orders live in `orders` until cancelled or `trigger()`ed; market
    orders move `positions`. Failures are injected per call type.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.positions: Dict[str, Decimal] = {}
        self.orders: Dict[str, RemoteOrder] = {}
        self.specs: Dict[str, ConditionalOrderSpec] = {}
        self.market_orders: List[MarketOrderSpec] = []
        self.cancelled: List[str] = []
        self.calls: List[tuple] = []

        self.fail_conditional: Optional[Callable[[ConditionalOrderSpec], bool]] = None
        self.fail_market: Optional[Exception] = None
        self.fail_cancel: Optional[Exception] = None
        self.fail_list: Optional[Exception] = None
        self.closed = False

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    async def list_positions(self) -> List[RemotePosition]:
        self.calls.append(("list_positions",))
        if self.fail_list:
            raise self.fail_list
        return [RemotePosition(symbol=s, size=size) for s, size in self.positions.items() if size != 0]

    async def list_conditional_orders(self) -> List[RemoteOrder]:
        self.calls.append(("list_conditional_orders",))
        if self.fail_list:
            raise self.fail_list
        return list(self.orders.values())

    async def place_conditional_order(self, spec: ConditionalOrderSpec) -> str:
        self.calls.append(("place_conditional_order", spec.kind.value, spec.trigger_price))
        if self.fail_conditional and self.fail_conditional(spec):
            raise APIError(f"rejected {spec.kind.value} @ {spec.trigger_price}")
        order_id = self._next_id("trg")
        self.orders[order_id] = RemoteOrder(id=order_id, symbol=spec.symbol, trigger_price=spec.trigger_price)
        self.specs[order_id] = spec
        return order_id

    async def cancel_conditional_order(self, order_id: str, symbol: str) -> None:
        self.calls.append(("cancel_conditional_order", order_id))
        if self.fail_cancel:
            raise self.fail_cancel
        self.orders.pop(order_id, None)
        self.cancelled.append(order_id)

    async def place_market_order(self, spec: MarketOrderSpec) -> str:
        self.calls.append(("place_market_order", spec.side, spec.size, spec.reduce_only))
        if self.fail_market:
            raise self.fail_market
        self.market_orders.append(spec)
        if spec.reduce_only:
            self.positions[spec.symbol] = max(Decimal("0"), self.positions.get(spec.symbol, Decimal("0")) - spec.size)
        else:
            self.positions[spec.symbol] = self.positions.get(spec.symbol, Decimal("0")) + spec.size
        return self._next_id("mkt")

    async def round_price(self, symbol: str, price: Decimal) -> Decimal:
        return price

    async def close(self) -> None:
        self.closed = True

    # ---- test helpers ----

    def trigger(self, order_id: str) -> None:
        """Simulate a trigger order executing: it leaves the open set and reduces the position."""
        order = self.orders.pop(order_id)
        spec = self.specs[order_id]
        remaining = self.positions.get(order.symbol, Decimal("0")) - spec.size
        self.positions[order.symbol] = max(Decimal("0"), remaining)

    def order_ids(self) -> set:
        return set(self.orders)


class FakeGatewayFactory:
    """Serves one FakeGateway per group, created on first use."""

    def __init__(self):
        self.gateways: Dict[GroupKey, FakeGateway] = {}
        self.close_all_calls = 0

    def for_group(self, group: GroupKey) -> FakeGateway:
        if group.account == "unknown":
            raise KeyError(f"Unknown account '{group.account}'")
        return self.gateways.setdefault(group, FakeGateway())

    async def close_all(self) -> None:
        self.close_all_calls += 1


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def store(db):
    return PositionStore(db)


@pytest.fixture
def config():
    return Config(
        accounts={"main": AccountConfig(api_key="k", api_secret="s")},
        monitoring=MonitoringConfig(break_even_buffer=0.0005, trailing_distance=0.01),
        expiry=ExpiryConfig(max_age_hours=4, warning_minutes=30, force_close_minutes=5),
    )


@pytest.fixture
def gateways():
    return FakeGatewayFactory()


@pytest.fixture
def gateway(gateways):
    """Gateway of the default main/usdt group."""
    return gateways.for_group(GroupKey("main", Settle.USDT))


@pytest.fixture
def engine(config, store, gateways):
    return PositionEngine(config, store, gateways)


@pytest.fixture
def long_request():
    """10 lots long @ 50000: tp1 5 @ 50750, tp2 3 @ 51250, runner 2, stop 48500."""
    def _make(**overrides) -> OpenPositionRequest:
        fields = dict(
            account="main",
            settle=Settle.USDT,
            symbol="BTC/USDT:USDT",
            direction=Direction.LONG,
            size=Decimal("10"),
            entry_price=Decimal("50000"),
            stop_price=Decimal("48500"),
            tp1_size=Decimal("5"),
            tp1_price=Decimal("50750"),
            tp2_size=Decimal("3"),
            tp2_price=Decimal("51250"),
            runner_size=Decimal("2"),
        )
        fields.update(overrides)
        return OpenPositionRequest(**fields)
    return _make


@pytest.fixture
def open_long(engine, long_request):
    """Async helper: open a protected long through the engine and return the stored Position."""
    async def _open(**overrides):
        position_id = await engine.open_position(long_request(**overrides))
        return engine.store.require(position_id)
    return _open

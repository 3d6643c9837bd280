"""
Domain protocols (interfaces) for dependency inversion.

The engine depends on these abstractions rather than on a concrete exchange
client, so tests can plug in an in-memory gateway.
"""
from decimal import Decimal
from typing import List, Protocol, runtime_checkable

from tierkeeper.domain.models import (
    ConditionalOrderSpec,
    GroupKey,
    MarketOrderSpec,
    RemoteOrder,
    RemotePosition,
)


@runtime_checkable
class ExchangeGateway(Protocol):
    """
    Remote order/position operations scoped to one credential + settlement market.

    All calls are request/response; there are no push notifications.
    Implementations raise OperationalError subclasses for transient failures.
    """

    async def list_positions(self) -> List[RemotePosition]: ...

    async def list_conditional_orders(self) -> List[RemoteOrder]:
        """Open conditional orders only."""
        ...

    async def place_conditional_order(self, spec: ConditionalOrderSpec) -> str:
        """Place a trigger order, returning the exchange order id."""
        ...

    async def cancel_conditional_order(self, order_id: str, symbol: str) -> None: ...

    async def place_market_order(self, spec: MarketOrderSpec) -> str: ...

    async def round_price(self, symbol: str, price: Decimal) -> Decimal:
        """Round a price to the instrument's tick size."""
        ...

    async def close(self) -> None: ...


@runtime_checkable
class GatewayFactory(Protocol):
    """Resolves the gateway serving a credential + market group."""

    def for_group(self, group: GroupKey) -> ExchangeGateway: ...

    async def close_all(self) -> None: ...

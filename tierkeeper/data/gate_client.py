"""
Gate.io perpetual futures gateway built on CCXT.

Implements the ExchangeGateway protocol for one account + settlement market:
- open positions and open trigger (conditional) orders
- reduce-only take-profit / stop-loss trigger orders
- market orders for entry and flatten
- tick-size price rounding

CCXT exceptions are mapped onto the tierkeeper exception hierarchy here so the
engine never has to know about CCXT types.
"""
import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional

import ccxt
import ccxt.async_support as ccxt_async

from tierkeeper.config.config import AccountConfig, Config
from tierkeeper.domain.models import (
    ConditionalOrderSpec,
    GroupKey,
    MarketOrderSpec,
    OrderKind,
    RemoteOrder,
    RemotePosition,
    Settle,
)
from tierkeeper.exceptions import (
    APIError,
    AuthenticationError,
    RateLimitError,
    RemoteTimeoutError,
)
from tierkeeper.monitoring.logger import get_logger
from tierkeeper.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)


def map_ccxt_error(exc: Exception, operation: str) -> Exception:
    """Translate a CCXT/asyncio exception into the engine hierarchy."""
    message = f"{operation} failed: {exc}"
    if isinstance(exc, (asyncio.TimeoutError, ccxt.RequestTimeout)):
        return RemoteTimeoutError(message)
    if isinstance(exc, ccxt.RateLimitExceeded):
        return RateLimitError(message)
    if isinstance(exc, ccxt.AuthenticationError):
        return AuthenticationError(message)
    if isinstance(exc, (ccxt.NetworkError, ccxt.ExchangeError)):
        return APIError(message)
    return exc


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


class GateFuturesClient:
    """CCXT-backed ExchangeGateway for one Gate.io account and settle market."""

    def __init__(
        self,
        account: AccountConfig,
        settle: Settle,
        *,
        timeout_seconds: float = 10.0,
        exchange: Optional[Any] = None,
    ):
        self.settle = Settle(settle)
        self.timeout_seconds = timeout_seconds

        if exchange is not None:
            self.exchange = exchange
        else:
            self.exchange = ccxt_async.gate({
                "apiKey": account.api_key,
                "secret": account.api_secret,
                "enableRateLimit": True,
                "timeout": int(timeout_seconds * 1000),
                "options": {"defaultType": "swap"},
            })
            if account.use_testnet:
                self.exchange.set_sandbox_mode(True)

        self._markets_loaded = False

    def _params(self, **extra) -> Dict[str, Any]:
        params = {"settle": self.settle.value, "type": "swap"}
        params.update(extra)
        return params

    async def _call(self, operation: str, coro):
        """Await one exchange call under the bounded timeout, mapping errors."""
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except Exception as e:
            mapped = map_ccxt_error(e, operation)
            if mapped is e:
                raise
            raise mapped from e

    async def _ensure_markets(self) -> None:
        if not self._markets_loaded:
            await self._call("load_markets", self.exchange.load_markets())
            self._markets_loaded = True

    @retry_on_transient_errors(max_retries=3, base_delay=1.0)
    async def list_positions(self) -> List[RemotePosition]:
        """Open positions with non-zero size."""
        raw = await self._call("fetch_positions", self.exchange.fetch_positions(None, self._params()))
        positions = []
        for p in raw or []:
            size = _to_decimal(p.get("contracts"))
            if size is None:
                size = _to_decimal((p.get("info") or {}).get("size")) or Decimal("0")
            if size == 0:
                continue
            positions.append(RemotePosition(symbol=p["symbol"], size=abs(size)))
        logger.debug("Fetched positions", settle=self.settle.value, count=len(positions))
        return positions

    @retry_on_transient_errors(max_retries=3, base_delay=1.0)
    async def list_conditional_orders(self) -> List[RemoteOrder]:
        """Open trigger orders for this settle market."""
        raw = await self._call(
            "fetch_open_orders",
            self.exchange.fetch_open_orders(None, None, None, self._params(trigger=True)),
        )
        orders = []
        for o in raw or []:
            trigger = o.get("triggerPrice") or o.get("stopPrice")
            if trigger is None:
                trigger = ((o.get("info") or {}).get("trigger") or {}).get("price")
            orders.append(RemoteOrder(id=str(o["id"]), symbol=o.get("symbol"), trigger_price=_to_decimal(trigger)))
        logger.debug("Fetched open trigger orders", settle=self.settle.value, count=len(orders))
        return orders

    async def place_conditional_order(self, spec: ConditionalOrderSpec) -> str:
        """Place a reduce-only trigger order. Not retried: a lost ACK must not duplicate orders."""
        trigger_key = "stopLossPrice" if spec.kind == OrderKind.STOP_LOSS else "takeProfitPrice"
        params = self._params(reduceOnly=spec.reduce_only)
        params[trigger_key] = float(spec.trigger_price)
        params.pop("type")

        result = await self._call(
            "create_trigger_order",
            self.exchange.create_order(spec.symbol, "market", spec.close_side, float(spec.size), None, params),
        )
        order_id = str(result["id"])
        logger.info(
            "Trigger order placed",
            symbol=spec.symbol,
            kind=spec.kind.value,
            side=spec.close_side,
            size=str(spec.size),
            trigger_price=str(spec.trigger_price),
            order_id=order_id,
        )
        return order_id

    async def cancel_conditional_order(self, order_id: str, symbol: str) -> None:
        await self._call(
            "cancel_trigger_order",
            self.exchange.cancel_order(order_id, symbol, self._params(trigger=True)),
        )
        logger.info("Trigger order cancelled", order_id=order_id, symbol=symbol)

    async def place_market_order(self, spec: MarketOrderSpec) -> str:
        params = {"reduceOnly": True} if spec.reduce_only else {}
        result = await self._call(
            "create_market_order",
            self.exchange.create_order(spec.symbol, "market", spec.side, float(spec.size), None, params),
        )
        order_id = str(result["id"])
        logger.info(
            "Market order placed",
            symbol=spec.symbol,
            side=spec.side,
            size=str(spec.size),
            reduce_only=spec.reduce_only,
            order_id=order_id,
        )
        return order_id

    async def round_price(self, symbol: str, price: Decimal) -> Decimal:
        await self._ensure_markets()
        return Decimal(self.exchange.price_to_precision(symbol, float(price)))

    async def close(self) -> None:
        await self.exchange.close()


class CcxtGatewayFactory:
    """One cached GateFuturesClient per credential + settle group."""

    def __init__(self, config: Config):
        self.config = config
        self._clients: Dict[GroupKey, GateFuturesClient] = {}

    def for_group(self, group: GroupKey) -> GateFuturesClient:
        client = self._clients.get(group)
        if client is None:
            client = GateFuturesClient(
                self.config.account(group.account),
                group.settle,
                timeout_seconds=self.config.monitoring.remote_timeout_seconds,
            )
            self._clients[group] = client
            logger.info("Gateway created", group=str(group))
        return client

    async def close_all(self) -> None:
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            try:
                await client.close()
            except Exception as e:
                logger.warning("Gateway close failed", error=str(e))

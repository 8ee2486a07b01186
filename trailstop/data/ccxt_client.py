"""
ccxt broker adapter.

Implements PriceFeed (fetch_ticker last price) and OrderExecutor
(market sell via create_order) on top of ccxt's async exchange classes,
mapping ccxt exceptions onto the engine's error taxonomy.
"""
from decimal import Decimal
from typing import Optional

import ccxt
import ccxt.async_support as ccxt_async

from trailstop.domain.models import OrderAccepted, to_decimal
from trailstop.exceptions import (
    InvalidPrice,
    OperationTimeout,
    OrderRejected,
    OrderSubmissionFailed,
    PriceUnavailable,
    SymbolUnknownError,
)
from trailstop.monitoring.logger import get_logger

logger = get_logger(__name__)


class CcxtBroker:
    """
    Exchange-backed price feed and order executor.

    Symbols are passed through unchanged unless quote_currency is set, in
    which case bare tickers like "BTC" become "BTC/USD".
    """

    def __init__(
        self,
        exchange_id: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        use_testnet: bool = False,
        quote_currency: Optional[str] = None,
    ):
        exchange_class = getattr(ccxt_async, exchange_id, None)
        if exchange_class is None:
            raise ValueError(f"Unknown ccxt exchange: {exchange_id}")

        params = {"enableRateLimit": True}
        if api_key and api_secret:
            params["apiKey"] = api_key
            params["secret"] = api_secret
        self.exchange = exchange_class(params)
        if use_testnet:
            self.exchange.set_sandbox_mode(True)

        self.exchange_id = exchange_id
        self.quote_currency = quote_currency
        logger.info("ccxt broker initialized", exchange=exchange_id, testnet=use_testnet)

    def _market_symbol(self, symbol: str) -> str:
        if self.quote_currency and "/" not in symbol:
            return f"{symbol}/{self.quote_currency}"
        return symbol

    async def last_price(self, symbol: str) -> Decimal:
        market_symbol = self._market_symbol(symbol)
        try:
            ticker = await self.exchange.fetch_ticker(market_symbol)
        except ccxt.BadSymbol as e:
            raise SymbolUnknownError(f"{self.exchange_id} does not list {market_symbol}: {e}") from e
        except ccxt.RequestTimeout as e:
            raise OperationTimeout(f"Ticker request for {market_symbol} timed out: {e}") from e
        except (ccxt.NetworkError, ccxt.ExchangeError) as e:
            raise PriceUnavailable(f"Ticker for {market_symbol} unavailable: {e}") from e
        except ccxt.BaseError as e:
            raise PriceUnavailable(f"Ticker for {market_symbol} failed ({type(e).__name__}): {e}") from e

        last = ticker.get("last") or ticker.get("close")
        if last is None:
            raise PriceUnavailable(f"Ticker for {market_symbol} has no last price")
        try:
            return to_decimal(last, f"{market_symbol} last")
        except InvalidPrice as e:
            raise PriceUnavailable(str(e)) from e

    async def submit_market_sell(self, symbol: str, quantity: int) -> OrderAccepted:
        market_symbol = self._market_symbol(symbol)
        try:
            order = await self.exchange.create_order(
                symbol=market_symbol,
                type="market",
                side="sell",
                amount=quantity,
            )
        except (ccxt.InvalidOrder, ccxt.InsufficientFunds, ccxt.BadSymbol, ccxt.PermissionDenied) as e:
            logger.error("ORDER_REJECTED_BY_VENUE", symbol=market_symbol, quantity=quantity, error=str(e))
            raise OrderRejected(f"{market_symbol}: {e}") from e
        except ccxt.RequestTimeout as e:
            raise OperationTimeout(f"Sell order for {market_symbol} timed out: {e}") from e
        except (ccxt.NetworkError, ccxt.ExchangeError) as e:
            raise OrderSubmissionFailed(f"{market_symbol}: {e}") from e
        except ccxt.BaseError as e:
            raise OrderSubmissionFailed(f"{market_symbol}: {type(e).__name__}: {e}") from e

        order_id = str(order.get("id") or order.get("clientOrderId") or "")
        if not order_id:
            raise OrderSubmissionFailed(f"{market_symbol}: exchange returned no order id")
        return OrderAccepted(order_id=order_id, symbol=symbol, quantity=quantity)

    async def close(self) -> None:
        try:
            await self.exchange.close()
        except (ccxt.BaseError, OSError) as e:
            logger.warning("Error closing ccxt exchange", exchange=self.exchange_id, error=str(e))

"""
Paper broker.

Implements both PriceFeed and OrderExecutor with virtual execution:
prices are set by the host (or read through from a live feed in dry-run
mode) and market sells fill instantly at the last known price.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import uuid

from trailstop.domain.models import OrderAccepted, to_decimal
from trailstop.domain.protocols import PriceFeed
from trailstop.exceptions import InvalidPrice, OrderRejected, PriceUnavailable, SymbolUnknownError
from trailstop.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class PaperFill:
    order_id: str
    symbol: str
    quantity: int
    price: Optional[Decimal]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PaperBroker:
    """
    Virtual broker.

    Args:
        prices: Initial quotes, symbol -> price
        price_source: Optional live PriceFeed; when set, last_price() reads
            through it and caches the result for fills
    """

    def __init__(self, prices: Optional[Dict[str, Any]] = None, price_source: Optional[PriceFeed] = None):
        self._prices: Dict[str, Decimal] = {}
        for symbol, price in (prices or {}).items():
            self.set_price(symbol, price)
        self.price_source = price_source
        self.fills: List[PaperFill] = []
        self.reject_reason: Optional[str] = None
        self.unavailable_symbols: set[str] = set()

    def set_price(self, symbol: str, price: Any) -> None:
        value = to_decimal(price, f"{symbol} price")
        if value <= 0:
            raise InvalidPrice(f"{symbol} price must be positive, got {value}")
        self._prices[symbol] = value

    def reject_orders(self, reason: Optional[str] = "Paper broker rejecting orders") -> None:
        """Make every subsequent sell fail with OrderRejected (None to accept again)."""
        self.reject_reason = reason

    async def last_price(self, symbol: str) -> Decimal:
        if symbol in self.unavailable_symbols:
            raise PriceUnavailable(f"Quote for {symbol} temporarily unavailable")
        if self.price_source is not None:
            price = await self.price_source.last_price(symbol)
            self._prices[symbol] = to_decimal(price, f"{symbol} price")
            return self._prices[symbol]
        if symbol not in self._prices:
            raise SymbolUnknownError(f"No paper quote for {symbol}")
        return self._prices[symbol]

    async def submit_market_sell(self, symbol: str, quantity: int) -> OrderAccepted:
        if self.reject_reason is not None:
            raise OrderRejected(f"{symbol}: {self.reject_reason}")
        if quantity <= 0:
            raise OrderRejected(f"{symbol}: quantity must be positive, got {quantity}")

        order_id = f"paper-{uuid.uuid4().hex[:12]}"
        fill = PaperFill(order_id=order_id, symbol=symbol, quantity=quantity, price=self._prices.get(symbol))
        self.fills.append(fill)
        logger.info(
            "Paper market sell filled",
            order_id=order_id,
            symbol=symbol,
            quantity=quantity,
            price=str(fill.price) if fill.price is not None else None,
        )
        return OrderAccepted(order_id=order_id, symbol=symbol, quantity=quantity)

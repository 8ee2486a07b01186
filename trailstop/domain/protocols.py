"""
Domain protocols (interfaces) for dependency inversion.

These protocols define the contracts that broker and storage adapters must
implement, allowing the engine to depend on abstractions rather than on a
specific exchange client or database.
"""
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from trailstop.domain.models import OrderAccepted

if TYPE_CHECKING:
    from trailstop.storage.snapshot import RegistrySnapshot


@runtime_checkable
class PriceFeed(Protocol):
    """
    Supplies the last traded price for a symbol.

    Implemented by trailstop.data.ccxt_client.CcxtBroker in production and
    trailstop.paper.paper_broker.PaperBroker for dry runs and tests.

    Raises:
        SymbolUnknownError, OperationTimeout, PriceUnavailable
    """

    async def last_price(self, symbol: str) -> Decimal: ...


@runtime_checkable
class OrderExecutor(Protocol):
    """
    Submits a market sell for a whole position.

    Raises:
        OrderRejected, OperationTimeout, OrderSubmissionFailed
    """

    async def submit_market_sell(self, symbol: str, quantity: int) -> OrderAccepted: ...


@runtime_checkable
class ConfigStore(Protocol):
    """
    Durable storage for registry snapshots.

    load() raises StoreNotFound or StoreCorrupt; save() raises StoreWriteError.
    """

    def load(self) -> "RegistrySnapshot": ...

    def save(self, snapshot: "RegistrySnapshot") -> None: ...

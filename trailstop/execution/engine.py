"""
Trailing Stop Engine - the polling control loop.

Per tick, after merging registry changes written by other processes, for
every tracked symbol (snapshot taken at tick start):
1. Fetch last price (bounded by price_timeout_seconds)
2. Feed it through the trail gauge under the registry lock
3. On trigger, submit a market sell (bounded by order_timeout_seconds);
   accepted -> retire position, failed -> stays armed, retried next tick
4. Persist gauge changes once per tick

Errors from one symbol (feed, broker, or an unexpected adapter failure) are
logged and skip that symbol; only an InvariantError stops the loop.
stop() is cooperative: it is checked between symbols and during the sleep
between ticks, and never cancels an order already in flight.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import asyncio
import threading

from trailstop.config.config import EngineConfig
from trailstop.domain.models import (
    StopLossPosition,
    StopMode,
    TradeRecord,
    TradeStatus,
    TriggerDecision,
    to_decimal,
)
from trailstop.domain.protocols import OrderExecutor, PriceFeed
from trailstop.exceptions import (
    EngineStateError,
    InvalidParameter,
    InvalidPrice,
    InvariantError,
    OperationTimeout,
    OrderRejected,
    OrderSubmissionFailed,
    PriceUnavailable,
)
from trailstop.execution.position_registry import PositionRegistry
from trailstop.execution.trade_recorder import TradeRecorder
from trailstop.monitoring.logger import get_logger

logger = get_logger(__name__)


class EngineState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class PendingExit:
    """A triggered position whose exit order has not been accepted yet."""
    position_id: str
    stop_price: Decimal
    triggered_at: datetime
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "position_id": self.position_id,
            "stop_price": str(self.stop_price),
            "triggered_at": self.triggered_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }


@dataclass
class TickReport:
    """What one pass over the registry did."""
    tick_number: int
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    evaluated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    ratcheted: List[str] = field(default_factory=list)
    triggered: List[str] = field(default_factory=list)
    exited: List[str] = field(default_factory=list)
    failed_exits: List[str] = field(default_factory=list)
    abandoned: List[str] = field(default_factory=list)
    interrupted: bool = False
    persisted: bool = True
    refreshed: bool = False  # picked up registry changes written by another process

    def summary(self) -> Dict[str, Any]:
        return {
            "tick": self.tick_number,
            "evaluated": len(self.evaluated),
            "skipped": len(self.skipped),
            "ratcheted": len(self.ratcheted),
            "triggered": len(self.triggered),
            "exited": len(self.exited),
            "failed_exits": len(self.failed_exits),
            "interrupted": self.interrupted,
            "persisted": self.persisted,
            "refreshed": self.refreshed,
        }


class TrailingStopEngine:
    """
    Drives every registered position through the trail gauge.

    The engine owns scheduling only; prices, orders and persistence come
    from the injected PriceFeed, OrderExecutor and the registry's store.
    """

    def __init__(
        self,
        registry: PositionRegistry,
        price_feed: PriceFeed,
        executor: OrderExecutor,
        config: Optional[EngineConfig] = None,
        trade_recorder: Optional[TradeRecorder] = None,
    ):
        self.registry = registry
        self.price_feed = price_feed
        self.executor = executor
        self.config = config or EngineConfig()
        self.trade_recorder = trade_recorder or TradeRecorder()

        self._state = EngineState.STOPPED
        self._stop_requested = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

        self._pending_exits: Dict[str, PendingExit] = {}
        self._tick_count = 0
        self._last_tick_at: Optional[datetime] = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def pending_exits(self) -> Dict[str, PendingExit]:
        return dict(self._pending_exits)

    # ========== REGISTRATION ==========

    async def register(
        self,
        symbol: str,
        quantity: int,
        mode: StopMode | str,
        parameter: Any,
        entry_price: Any = None,
    ) -> StopLossPosition:
        """
        Register a position, fetching the entry price from the feed if omitted.

        Raises:
            PriceUnavailable: entry price omitted and the feed cannot supply one
            InvalidParameter / InvalidPrice: bad registration values
        """
        if entry_price is None:
            try:
                entry_price = await self._fetch_price(symbol)
            except (OperationTimeout, InvalidPrice) as e:
                raise PriceUnavailable(f"Cannot resolve entry price for {symbol}: {e}") from e
            logger.info("Entry price resolved from feed", symbol=symbol, entry_price=str(entry_price))

        position = self.registry.register(symbol, quantity, entry_price, mode, parameter)
        self._pending_exits.pop(position.symbol, None)
        return position

    def unregister(self, symbol: str) -> bool:
        removed = self.registry.unregister(symbol)
        if removed:
            self._pending_exits.pop(symbol, None)
        return removed

    # ========== LIFECYCLE ==========

    def _begin(self, poll_interval: Optional[float]) -> float:
        if self._state == EngineState.RUNNING:
            raise EngineStateError("Engine is already running")
        interval = self.config.poll_interval_seconds if poll_interval is None else float(poll_interval)
        if interval < 0:
            raise InvalidParameter(f"poll_interval must be >= 0, got {interval}")

        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._stop_requested.clear()
        self._state = EngineState.RUNNING
        logger.info(
            "Trailing stop engine started",
            poll_interval=interval,
            positions=len(self.registry),
        )
        return interval

    def start(self, poll_interval: Optional[float] = None) -> asyncio.Task:
        """
        STOPPED -> RUNNING. Schedules the loop on the running event loop.

        Must be called from inside the event loop; returns the loop task.
        """
        interval = self._begin(poll_interval)
        self._task = self._loop.create_task(self._run_loop(interval, None))
        return self._task

    async def run(self, poll_interval: Optional[float] = None, max_ticks: Optional[int] = None) -> None:
        """Run the loop in the current task until stop() or max_ticks."""
        interval = self._begin(poll_interval)
        await self._run_loop(interval, max_ticks)

    def stop(self) -> None:
        """
        Request RUNNING -> STOPPED. Safe to call from any thread.

        The in-flight symbol (including an order submission) finishes first.
        """
        self._stop_requested.set()
        loop, wake = self._loop, self._wake
        if loop is None or wake is None or loop.is_closed():
            return
        logger.info("Stop requested")
        loop.call_soon_threadsafe(wake.set)

    async def wait_stopped(self) -> None:
        """Wait for a loop started with start() to exit."""
        if self._task is not None:
            await self._task

    async def _run_loop(self, interval: float, max_ticks: Optional[int]) -> None:
        ticks = 0
        try:
            while not self._stop_requested.is_set():
                try:
                    await self.tick()
                except InvariantError:
                    logger.critical("Trailing invariant violated - halting engine")
                    raise
                except Exception as e:
                    logger.error("Error in trailing stop tick", error=str(e), exc_info=True)

                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    logger.info("Max ticks reached", max_ticks=max_ticks)
                    break
                await self._sleep(interval)
        finally:
            self._state = EngineState.STOPPED
            self._wake = None
            self._loop = None
            logger.info("Trailing stop engine stopped", ticks=ticks)

    async def _sleep(self, interval: float) -> None:
        if self._stop_requested.is_set() or self._wake is None:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    # ========== TICK ==========

    async def tick(self) -> TickReport:
        """Evaluate every registered position once."""
        async with self._tick_lock:
            report = TickReport(tick_number=self._tick_count + 1)
            report.refreshed = self.registry.refresh()
            snapshot = self.registry.all()

            prefetched: Optional[Dict[str, Union[Decimal, BaseException]]] = None
            if self.config.fetch_prices_concurrently and snapshot:
                prefetched = await self._prefetch_prices([symbol for symbol, _ in snapshot])

            for index, (symbol, position) in enumerate(snapshot):
                if self._stop_requested.is_set():
                    report.interrupted = True
                    logger.info(
                        "Tick interrupted by stop request",
                        remaining=[s for s, _ in snapshot[index:]],
                    )
                    break
                await self._evaluate(symbol, position, report, prefetched)

            self._prune_pending_exits()
            report.persisted = self.registry.flush()

            self._tick_count += 1
            self._last_tick_at = datetime.now(timezone.utc)
            logger.debug("Tick complete", **report.summary())
            return report

    async def _fetch_price(self, symbol: str) -> Decimal:
        try:
            raw = await asyncio.wait_for(
                self.price_feed.last_price(symbol),
                timeout=self.config.price_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise OperationTimeout(
                f"Price for {symbol} not received within {self.config.price_timeout_seconds}s"
            ) from None
        return to_decimal(raw, f"{symbol} price")

    async def _prefetch_prices(self, symbols: List[str]) -> Dict[str, Union[Decimal, BaseException]]:
        results = await asyncio.gather(
            *(self._fetch_price(symbol) for symbol in symbols),
            return_exceptions=True,
        )
        return dict(zip(symbols, results))

    async def _evaluate(
        self,
        symbol: str,
        position: StopLossPosition,
        report: TickReport,
        prefetched: Optional[Dict[str, Union[Decimal, BaseException]]],
    ) -> None:
        try:
            if prefetched is not None and symbol in prefetched:
                result = prefetched[symbol]
                if isinstance(result, BaseException):
                    raise result
                price = result
            else:
                price = await self._fetch_price(symbol)
            decision = self.registry.observe(symbol, position.position_id, price)
        except (PriceUnavailable, OperationTimeout, InvalidPrice) as e:
            logger.warning(
                "PRICE_UNAVAILABLE",
                symbol=symbol,
                error=str(e),
                error_type=type(e).__name__,
                note="Skipping symbol this tick",
            )
            report.skipped.append(symbol)
            return
        except InvariantError:
            raise
        except Exception as e:
            # Adapter bug or unmapped library error: isolate it to this symbol
            logger.error(
                "SYMBOL_EVALUATION_FAILED",
                symbol=symbol,
                error=str(e),
                error_type=type(e).__name__,
                note="Skipping symbol this tick",
                exc_info=True,
            )
            report.skipped.append(symbol)
            return

        if decision is None:
            logger.debug("Position replaced or removed mid-tick, skipping", symbol=symbol)
            return

        report.evaluated.append(symbol)
        if decision.ratcheted:
            report.ratcheted.append(symbol)
            logger.info(
                "TRAILING_STOP_RATCHET",
                symbol=symbol,
                price=str(price),
                stop_price=str(decision.stop_price),
            )
        if decision.triggered:
            report.triggered.append(symbol)
            await self._execute_exit(symbol, position, decision, price, report)

    # ========== EXIT ==========

    async def _execute_exit(
        self,
        symbol: str,
        position: StopLossPosition,
        decision: TriggerDecision,
        observed_price: Decimal,
        report: TickReport,
    ) -> None:
        pending = self._pending_exits.get(symbol)
        if pending is None or pending.position_id != position.position_id:
            pending = PendingExit(
                position_id=position.position_id,
                stop_price=decision.stop_price,
                triggered_at=datetime.now(timezone.utc),
            )
            self._pending_exits[symbol] = pending

        logger.warning(
            "TRAILING_STOP_TRIGGERED",
            symbol=symbol,
            observed_price=str(observed_price),
            stop_price=str(decision.stop_price),
            high_water_mark=str(position.high_water_mark),
            quantity=position.quantity,
            attempt=pending.attempts + 1,
        )

        error: Optional[Exception] = None
        try:
            accepted = await asyncio.wait_for(
                self.executor.submit_market_sell(symbol, position.quantity),
                timeout=self.config.order_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = OperationTimeout(
                f"Exit order for {symbol} not acknowledged within {self.config.order_timeout_seconds}s"
            )
        except (OrderSubmissionFailed, OperationTimeout) as e:
            error = e
        except Exception as e:
            logger.error("Unexpected error from order executor", symbol=symbol, error=str(e), exc_info=True)
            error = OrderSubmissionFailed(f"{symbol}: {type(e).__name__}: {e}")

        pending.attempts += 1
        pending.last_attempt_at = datetime.now(timezone.utc)

        if error is None:
            self._pending_exits.pop(symbol, None)
            self.registry.retire(symbol, position.position_id)
            report.exited.append(symbol)
            logger.info(
                "TRAILING_STOP_EXIT",
                symbol=symbol,
                order_id=accepted.order_id,
                quantity=position.quantity,
                stop_price=str(decision.stop_price),
                observed_price=str(observed_price),
                entry_price=str(position.entry_price),
                attempts=pending.attempts,
            )
            self.trade_recorder.record(self._trade_record(
                position, decision, observed_price, TradeStatus.CLOSED, order_id=accepted.order_id,
            ))
            return

        pending.last_error = str(error)
        report.failed_exits.append(symbol)
        logger.error(
            "EXIT_ORDER_FAILED",
            symbol=symbol,
            stop_price=str(decision.stop_price),
            quantity=position.quantity,
            attempts=pending.attempts,
            rejected=isinstance(error, OrderRejected),
            error=str(error),
            error_type=type(error).__name__,
            note="Position stays armed; exit retried next tick",
        )

        max_attempts = self.config.max_exit_attempts
        if max_attempts and pending.attempts >= max_attempts:
            self._pending_exits.pop(symbol, None)
            self.registry.retire(symbol, position.position_id)
            report.abandoned.append(symbol)
            logger.critical(
                "EXIT_ABANDONED",
                symbol=symbol,
                attempts=pending.attempts,
                last_error=pending.last_error,
                note="Position no longer tracked; holding must be closed manually",
            )
            self.trade_recorder.record(self._trade_record(
                position, decision, observed_price, TradeStatus.ABANDONED, error=pending.last_error,
            ))

    @staticmethod
    def _trade_record(
        position: StopLossPosition,
        decision: TriggerDecision,
        observed_price: Decimal,
        status: TradeStatus,
        order_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> TradeRecord:
        return TradeRecord(
            symbol=position.symbol,
            quantity=position.quantity,
            entry_price=position.entry_price,
            stop_price=decision.stop_price,
            high_water_mark=position.high_water_mark,
            exit_trigger_price=observed_price,
            status=status,
            opened_at=position.created_at,
            order_id=order_id,
            error=error,
        )

    def _prune_pending_exits(self) -> None:
        """Drop pending exits whose position was unregistered or re-armed."""
        for symbol, pending in list(self._pending_exits.items()):
            current = self.registry.get(symbol)
            if current is None or current.position_id != pending.position_id:
                del self._pending_exits[symbol]

    # ========== OBSERVABILITY ==========

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "ticks": self._tick_count,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "positions": len(self.registry),
            "registry_dirty": self.registry.dirty,
            "pending_exits": {s: p.to_dict() for s, p in self._pending_exits.items()},
        }

"""
Trail gauge: the trailing stop computation.

Pure functions over StopLossPosition. The only side effect is mutating the
position handed to update(); callers own locking and persistence.

Rules:
1. Stop is derived from the high-water mark (percentage or fixed offset)
2. Price at or below the stop triggers (equality exits)
3. High-water mark and stop only move up
"""
from decimal import Decimal
from typing import Any

from trailstop.domain.models import StopLossPosition, StopMode, TriggerDecision, to_decimal
from trailstop.exceptions import InvalidParameter, InvalidPrice, InvariantError
from trailstop.monitoring.logger import get_logger

logger = get_logger(__name__)

_HUNDRED = Decimal(100)
_ONE = Decimal(1)


def check_invariant(condition: bool, message: str) -> None:
    """Assert a trailing invariant. Raises InvariantError if false."""
    if not condition:
        logger.critical(f"INVARIANT VIOLATION: {message}")
        raise InvariantError(message)


def initial_stop(entry_price: Any, mode: StopMode | str, parameter: Any) -> Decimal:
    """
    Compute the stop level for a reference price.

    Percentage: entry_price * (1 - parameter / 100)
    Fixed:      entry_price - parameter

    Raises:
        InvalidParameter: parameter <= 0 or unknown mode
        InvalidPrice: entry_price <= 0
    """
    mode = StopMode.parse(mode)
    entry = to_decimal(entry_price, "entry_price")
    param = to_decimal(parameter, "stop_parameter")
    if param <= 0:
        raise InvalidParameter(f"stop_parameter must be positive, got {param}")
    if entry <= 0:
        raise InvalidPrice(f"entry_price must be positive, got {entry}")

    if mode == StopMode.PERCENTAGE:
        return entry * (_ONE - param / _HUNDRED)
    return entry - param


def open_position(
    symbol: str,
    quantity: int,
    entry_price: Any,
    mode: StopMode | str,
    parameter: Any,
) -> StopLossPosition:
    """Build a freshly armed position: high-water mark at entry, stop from initial_stop()."""
    if not symbol or not str(symbol).strip():
        raise InvalidParameter("symbol must be a non-empty string")
    entry = to_decimal(entry_price, "entry_price")
    param = to_decimal(parameter, "stop_parameter")
    stop = initial_stop(entry, mode, param)
    return StopLossPosition(
        symbol=str(symbol).strip(),
        quantity=quantity,
        entry_price=entry,
        stop_mode=StopMode.parse(mode),
        stop_parameter=param,
        high_water_mark=entry,
        stop_price=stop,
    )


def update(position: StopLossPosition, observed_price: Any) -> TriggerDecision:
    """
    Feed one price observation through the gauge.

    1. price <= stop            -> triggered, position untouched
    2. price > high-water mark  -> ratchet high-water mark and stop up
    3. otherwise                -> no change
    """
    price = to_decimal(observed_price, "observed_price")
    if price <= 0:
        raise InvalidPrice(f"observed_price must be positive, got {price}")

    if price <= position.stop_price:
        return TriggerDecision.trigger(position.stop_price)

    if price > position.high_water_mark:
        recomputed = initial_stop(price, position.stop_mode, position.stop_parameter)
        old_stop = position.stop_price
        position.high_water_mark = price
        position.stop_price = max(position.stop_price, recomputed)
        position.touch()

        check_invariant(
            position.stop_price <= position.high_water_mark,
            f"{position.symbol}: stop {position.stop_price} above high-water mark {position.high_water_mark}",
        )
        check_invariant(
            position.stop_price >= old_stop,
            f"{position.symbol}: stop loosened from {old_stop} to {position.stop_price}",
        )
        logger.debug(
            "TRAILING_STOP_RATCHET",
            symbol=position.symbol,
            high_water_mark=str(position.high_water_mark),
            old_stop=str(old_stop),
            new_stop=str(position.stop_price),
        )
        return TriggerDecision.hold(position.stop_price, ratcheted=True)

    return TriggerDecision.hold(position.stop_price)

"""
Domain models for the trailing stop engine.

These are the core business objects used throughout the application.
All prices are Decimal; all timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from trailstop.exceptions import InvalidParameter, InvalidPrice


class StopMode(str, Enum):
    """How the trailing distance is expressed."""
    PERCENTAGE = "percentage"  # stop_parameter is percentage points below the high
    FIXED = "fixed"            # stop_parameter is an absolute currency offset

    @classmethod
    def parse(cls, value: "StopMode | str") -> "StopMode":
        """Accept enum members, their values, and the dashboard's 'difference' label."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "difference":
            return cls.FIXED
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidParameter(f"Unknown stop mode: {value!r}") from None


class TradeStatus(str, Enum):
    """Outcome of a retired position."""
    CLOSED = "closed"        # exit order accepted
    ABANDONED = "abandoned"  # exit retries exhausted, tracking dropped


def to_decimal(value: Any, name: str = "price") -> Decimal:
    """
    Convert a user/broker supplied number to Decimal without binary float drift.

    Floats go through str() so 107.8 becomes Decimal("107.8"), not
    Decimal(107.8000000000000113686837721616029739379882812500).
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise InvalidPrice(f"{name} must be numeric, got {value!r}")
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise InvalidPrice(f"{name} must be numeric, got {value!r}") from None
    if not result.is_finite():
        raise InvalidPrice(f"{name} must be finite, got {value!r}")
    return result


def stored_quantity(value: Any) -> int:
    """
    Read a persisted quantity. Integral strings and floats ("3", 3.0) are
    accepted; anything with a fractional part is rejected, never truncated.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, (str, float)):
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation:
            number = None
        if number is not None and number.is_finite() and number == number.to_integral_value():
            return int(number)
    raise InvalidParameter(f"quantity must be a whole number, got {value!r}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StopLossPosition:
    """
    Trailing-stop state for one tracked holding.

    high_water_mark and stop_price only ever move up; TrailGauge is the
    only writer once the position is registered.
    """
    symbol: str
    quantity: int
    entry_price: Decimal
    stop_mode: StopMode
    stop_parameter: Decimal
    high_water_mark: Decimal
    stop_price: Decimal
    position_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        """Validate position."""
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity <= 0:
            raise InvalidParameter(f"quantity must be a positive integer, got {self.quantity!r}")
        if self.entry_price <= 0:
            raise InvalidPrice(f"entry_price must be positive, got {self.entry_price}")
        if self.stop_parameter <= 0:
            raise InvalidParameter(f"stop_parameter must be positive, got {self.stop_parameter}")
        if self.created_at.tzinfo is None or self.updated_at.tzinfo is None:
            raise ValueError("Position timestamps must be timezone-aware (UTC)")

    def touch(self) -> None:
        self.updated_at = _utcnow()

    # ========== SERIALIZATION (for persistence) ==========

    def to_dict(self) -> Dict:
        """Serialize position for persistence."""
        return {
            "symbol": self.symbol,
            "quantity": self.quantity,
            "entry_price": str(self.entry_price),
            "stop_mode": self.stop_mode.value,
            "stop_parameter": str(self.stop_parameter),
            "high_water_mark": str(self.high_water_mark),
            "stop_price": str(self.stop_price),
            "position_id": self.position_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "StopLossPosition":
        """Deserialize position from persistence. Unknown keys are ignored."""
        kwargs = dict(
            symbol=str(data["symbol"]),
            quantity=stored_quantity(data["quantity"]),
            entry_price=Decimal(str(data["entry_price"])),
            stop_mode=StopMode.parse(data["stop_mode"]),
            stop_parameter=Decimal(str(data["stop_parameter"])),
            high_water_mark=Decimal(str(data["high_water_mark"])),
            stop_price=Decimal(str(data["stop_price"])),
        )
        if data.get("position_id"):
            kwargs["position_id"] = str(data["position_id"])
        if data.get("created_at"):
            kwargs["created_at"] = datetime.fromisoformat(data["created_at"])
        if data.get("updated_at"):
            kwargs["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return cls(**kwargs)


@dataclass(frozen=True)
class TriggerDecision:
    """
    Result of feeding one price observation through the gauge.

    ratcheted is True when the observation raised the high-water mark,
    i.e. the position changed and needs persisting.
    """
    triggered: bool
    stop_price: Decimal
    ratcheted: bool = False

    @classmethod
    def trigger(cls, stop_price: Decimal) -> "TriggerDecision":
        return cls(triggered=True, stop_price=stop_price)

    @classmethod
    def hold(cls, stop_price: Decimal, ratcheted: bool = False) -> "TriggerDecision":
        return cls(triggered=False, stop_price=stop_price, ratcheted=ratcheted)


@dataclass(frozen=True)
class OrderAccepted:
    """Broker acknowledgement of a market sell."""
    order_id: str
    symbol: str
    quantity: int
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class TradeRecord:
    """
    Closed (or abandoned) trade produced when a position is retired by the engine.
    """
    symbol: str
    quantity: int
    entry_price: Decimal
    stop_price: Decimal
    high_water_mark: Decimal
    exit_trigger_price: Decimal  # observed price that breached the stop
    status: TradeStatus
    opened_at: datetime
    closed_at: datetime = field(default_factory=_utcnow)
    order_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "quantity": self.quantity,
            "entry_price": str(self.entry_price),
            "stop_price": str(self.stop_price),
            "high_water_mark": str(self.high_water_mark),
            "exit_trigger_price": str(self.exit_trigger_price),
            "status": self.status.value,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat(),
            "order_id": self.order_id,
            "error": self.error,
        }

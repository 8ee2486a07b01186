"""
Custom exception hierarchy for the trailing stop engine.

Provides clear, specific exceptions for the failure modes of the
price -> gauge -> exit pipeline so callers know what to retry and
what to reject.

Hierarchy:

    TrailingStopError (base)
    ├── OperationalError          — transient/retryable (feed, broker, store)
    │   ├── PriceUnavailable
    │   │   └── SymbolUnknownError
    │   ├── OperationTimeout
    │   ├── OrderSubmissionFailed
    │   │   └── OrderRejected
    │   └── StoreError
    │       ├── StoreNotFound
    │       ├── StoreCorrupt
    │       └── StoreWriteError
    ├── DataError                 — bad input, reject the call
    │   └── ValidationError
    │       ├── InvalidParameter
    │       └── InvalidPrice
    ├── EngineStateError          — illegal start/stop transition
    └── InvariantError            — trailing invariant violated

Rules:
    - OperationalError: catch, log, skip this symbol, retry next tick
    - DataError: reject the specific registration call
    - InvariantError: never swallow; the gauge produced an impossible state
    - Everything else: let crash.
"""


class TrailingStopError(Exception):
    """Base exception for all trailing stop engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TrailingStopError):
    """Transient/retryable error: price feed, broker, persistence.

    Treatment: catch, log, continue to next symbol / next tick.
    """
    pass


class PriceUnavailable(OperationalError):
    """The price feed could not supply a last-traded price."""
    pass


class SymbolUnknownError(PriceUnavailable):
    """The price feed does not know the requested symbol."""
    pass


class OperationTimeout(OperationalError):
    """A bounded call (price fetch, order submission) did not finish in time."""
    pass


class OrderSubmissionFailed(OperationalError):
    """The market sell could not be submitted (broker unavailable, transport error).

    Treatment: position stays registered and triggered; retried next tick.
    """
    pass


class OrderRejected(OrderSubmissionFailed):
    """The broker received the market sell and refused it."""
    pass


class StoreError(OperationalError):
    """Base class for ConfigStore failures."""
    pass


class StoreNotFound(StoreError):
    """No snapshot has been saved yet."""
    pass


class StoreCorrupt(StoreError):
    """A snapshot exists but cannot be decoded."""
    pass


class StoreWriteError(StoreError):
    """The snapshot could not be written.

    Treatment: keep in-memory state, mark dirty, retry on next tick.
    """
    pass


# ============ DATA (bad input, reject call) ============

class DataError(TrailingStopError):
    """Bad input data supplied by a caller.

    Treatment: reject the specific call; the engine keeps running.
    """
    pass


class ValidationError(DataError):
    """Raised when validation checks fail (bad input data)."""
    pass


class InvalidParameter(ValidationError):
    """Stop parameter or quantity is out of range."""
    pass


class InvalidPrice(ValidationError):
    """Price is missing, non-numeric or not strictly positive."""
    pass


# ============ STATE / INVARIANT ============

class EngineStateError(TrailingStopError):
    """Engine asked to start while running, or similar illegal transition."""
    pass


class InvariantError(TrailingStopError):
    """Trailing invariant violation (stop above high-water mark, stop loosened).

    This should never be caught and silently continued.
    """
    pass

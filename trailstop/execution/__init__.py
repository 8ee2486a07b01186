"""
Execution module.

Contains the trail gauge, the position registry and the polling engine.

ARCHITECTURE:
    TrailingStopEngine (polling loop, exit orders)
        │
        ├── PositionRegistry (single source of truth, one lock)
        │       │
        │       ├── StopLossPosition (per-symbol trailing state)
        │       └── ConfigStore (snapshot persistence)
        │
        ├── trail_gauge (initial_stop / update)
        │
        └── TradeRecorder (closed-trade journal)
"""

from trailstop.execution.trail_gauge import initial_stop, open_position, update
from trailstop.execution.position_registry import PositionRegistry
from trailstop.execution.trade_recorder import TradeRecorder
from trailstop.execution.engine import EngineState, PendingExit, TickReport, TrailingStopEngine

__all__ = [
    "initial_stop",
    "open_position",
    "update",
    "PositionRegistry",
    "TradeRecorder",
    "EngineState",
    "PendingExit",
    "TickReport",
    "TrailingStopEngine",
]

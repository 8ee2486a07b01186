"""
Trade journal for positions retired by the engine.

Keeps the most recent records in memory and, when a path is configured,
appends each record as one JSON line so the history survives restarts.
"""
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional
import json
import threading

from trailstop.domain.models import TradeRecord
from trailstop.monitoring.logger import get_logger

logger = get_logger(__name__)


class TradeRecorder:
    """Append-only journal of closed and abandoned trades."""

    def __init__(self, journal_path: Optional[str | Path] = None, max_in_memory: int = 500):
        self.journal_path = Path(journal_path) if journal_path else None
        self._records: Deque[TradeRecord] = deque(maxlen=max_in_memory)
        self._lock = threading.Lock()

    def record(self, trade: TradeRecord) -> None:
        with self._lock:
            self._records.append(trade)
            if self.journal_path is None:
                return
            try:
                self.journal_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.journal_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(trade.to_dict()) + "\n")
            except OSError as e:
                # Journal is informational; the exit itself already happened
                logger.error(
                    "Failed to append trade journal",
                    symbol=trade.symbol,
                    path=str(self.journal_path),
                    error=str(e),
                )

    def recent(self, limit: int = 20) -> List[TradeRecord]:
        """Latest records, newest last."""
        with self._lock:
            if limit <= 0:
                return []
            return list(self._records)[-limit:]

    def read_journal(self, limit: int = 20) -> List[dict]:
        """Latest journal lines as dicts (for hosts that did not record them in this process)."""
        if self.journal_path is None or not self.journal_path.exists() or limit <= 0:
            return []
        with open(self.journal_path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.readlines()

        rows = []
        for line_number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except ValueError as e:
                row, error = None, str(e)
            else:
                error = None if isinstance(row, dict) else f"expected an object, got {type(row).__name__}"
            if error is not None:
                # Torn write from a crash mid-append, or a hand edit
                logger.warning(
                    "Skipping unreadable trade journal line",
                    path=str(self.journal_path),
                    line=line_number,
                    error=error,
                )
                continue
            rows.append(row)
        return rows[-limit:]

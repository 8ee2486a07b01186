"""
Position Registry.

Single source of truth for tracked trailing stops.

ENFORCES:
1. One position per symbol (re-registering re-arms from new parameters)
2. Every read-modify-write under one lock, so host threads and the engine
   loop never interleave
3. Snapshot persistence through a ConfigStore, with unsaved changes kept
   dirty until a save succeeds
4. Changes written to the store by another process (the CLI) are merged
   in, never overwritten
"""
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple
import threading
import uuid

from trailstop.domain.models import StopLossPosition, StopMode, TriggerDecision
from trailstop.domain.protocols import ConfigStore
from trailstop.exceptions import StoreCorrupt, StoreNotFound, StoreWriteError
from trailstop.execution import trail_gauge
from trailstop.monitoring.logger import get_logger
from trailstop.storage.snapshot import RegistrySnapshot

logger = get_logger(__name__)


class PositionRegistry:
    """
    Map of symbol -> StopLossPosition backed by a ConfigStore.

    Readers get detached copies; only observe()/register()/retire() touch
    the live objects, and only while holding the lock.
    """

    def __init__(self, store: ConfigStore):
        self._store = store
        self._positions: Dict[str, StopLossPosition] = {}
        self._credential_token: Optional[str] = None
        self._lock = threading.RLock()
        self._dirty = False
        # Store state as of the last load, save or refresh
        self._revision: Optional[str] = None
        self._synced_ids: Set[str] = set()
        self._synced_token: Optional[str] = None

    # ========== POSITION ACCESS ==========

    def get(self, symbol: str) -> Optional[StopLossPosition]:
        """Copy of the position for symbol, or None."""
        with self._lock:
            pos = self._positions.get(symbol)
            return replace(pos) if pos is not None else None

    def all(self) -> List[Tuple[str, StopLossPosition]]:
        """Snapshot of (symbol, position copy) pairs, safe to iterate while the engine runs."""
        with self._lock:
            return [(symbol, replace(pos)) for symbol, pos in self._positions.items()]

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._positions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._positions)

    def __contains__(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._positions

    @property
    def dirty(self) -> bool:
        """True when in-memory state has changes the store has not accepted yet."""
        return self._dirty

    @property
    def credential_token(self) -> Optional[str]:
        return self._credential_token

    def set_credential_token(self, token: Optional[str]) -> bool:
        """Store the broker access token alongside the positions and persist."""
        with self._lock:
            self._credential_token = token
            self._dirty = True
            return self.persist()

    # ========== POSITION REGISTRATION ==========

    def register(
        self,
        symbol: str,
        quantity: int,
        entry_price: Any,
        mode: StopMode | str,
        parameter: Any,
    ) -> StopLossPosition:
        """
        Start tracking symbol, replacing any existing position for it.

        Raises:
            InvalidParameter / InvalidPrice: rejected before the registry changes
        """
        position = trail_gauge.open_position(symbol, quantity, entry_price, mode, parameter)
        with self._lock:
            replaced = self._positions.get(position.symbol)
            self._positions[position.symbol] = position
            self._dirty = True
            logger.info(
                "Position registered",
                symbol=position.symbol,
                quantity=position.quantity,
                entry_price=str(position.entry_price),
                stop_mode=position.stop_mode.value,
                stop_parameter=str(position.stop_parameter),
                stop_price=str(position.stop_price),
                replaced=replaced is not None,
            )
            self.persist()
            return replace(position)

    def unregister(self, symbol: str) -> bool:
        """Stop tracking symbol. Returns False (and leaves the store alone) if absent."""
        with self._lock:
            if self._positions.pop(symbol, None) is None:
                return False
            self._dirty = True
            logger.info("Position unregistered", symbol=symbol)
            self.persist()
            return True

    def retire(self, symbol: str, position_id: str) -> bool:
        """
        Remove symbol only if it still holds the given position.

        Used after an exit order: if the symbol was re-registered while the
        order was in flight, the new position stays armed.
        """
        with self._lock:
            current = self._positions.get(symbol)
            if current is None or current.position_id != position_id:
                logger.info(
                    "Retire skipped - position replaced or removed",
                    symbol=symbol,
                    position_id=position_id,
                )
                return False
            del self._positions[symbol]
            self._dirty = True
            self.persist()
            return True

    # ========== GAUGE UPDATE ==========

    def observe(self, symbol: str, position_id: str, price: Decimal) -> Optional[TriggerDecision]:
        """
        Run the gauge for one observation under the registry lock.

        Returns None when the symbol no longer holds position_id (removed or
        re-registered since the caller took its snapshot).
        """
        with self._lock:
            current = self._positions.get(symbol)
            if current is None or current.position_id != position_id:
                return None
            decision = trail_gauge.update(current, price)
            if decision.ratcheted:
                self._dirty = True
            return decision

    # ========== PERSISTENCE ==========

    def snapshot(self) -> RegistrySnapshot:
        with self._lock:
            return RegistrySnapshot(
                credential_token=self._credential_token,
                positions=[replace(p) for p in self._positions.values()],
            )

    def save(self) -> None:
        """
        Write the current state to the store.

        Changes another process wrote since the last load or save are merged
        in first, so a CLI registration is not overwritten by the engine.

        Raises:
            StoreWriteError: state stays dirty
        """
        with self._lock:
            self.refresh()
            snapshot = self.snapshot()
            snapshot.revision = uuid.uuid4().hex
            self._store.save(snapshot)
            self._mark_synced(snapshot)
            self._dirty = False

    def persist(self) -> bool:
        """Save, logging instead of raising on write failure. Returns True on success."""
        try:
            self.save()
            return True
        except StoreWriteError as e:
            logger.warning(
                "REGISTRY_SAVE_FAILED",
                error=str(e),
                positions=len(self._positions),
                note="In-memory state kept; save retried on next tick",
            )
            return False

    def flush(self) -> bool:
        """Persist only if there are unsaved changes."""
        with self._lock:
            if not self._dirty:
                return True
            return self.persist()

    def load(self) -> int:
        """
        Replace in-memory state with the stored snapshot.

        A missing or corrupt store yields an empty registry rather than
        failing startup. Returns the number of positions loaded.
        """
        try:
            snapshot = self._store.load()
        except StoreNotFound as e:
            logger.info("No saved registry, starting empty", detail=str(e))
            snapshot = RegistrySnapshot()
        except StoreCorrupt as e:
            logger.warning("REGISTRY_LOAD_FALLBACK", error=str(e), note="Starting with an empty registry")
            snapshot = RegistrySnapshot()

        with self._lock:
            self._credential_token = snapshot.credential_token
            self._positions = {p.symbol: p for p in snapshot.positions}
            self._mark_synced(snapshot)
            self._dirty = False
            logger.info(
                "Registry loaded",
                positions=len(self._positions),
                symbols=sorted(self._positions),
            )
            return len(self._positions)

    def refresh(self) -> bool:
        """
        Merge changes written to the store by another process.

        Compares the store against what this registry last loaded or saved:
        positions that appeared there are adopted, positions that vanished
        are dropped, and everything else keeps its in-memory state (so a
        ratchet that has not been flushed yet is not rolled back, and a
        position retired here is not resurrected). Positions registered here
        but not yet saved win over a conflicting external registration.

        Returns True when the in-memory state changed.
        """
        with self._lock:
            try:
                stored = self._store.load()
            except StoreNotFound:
                return False
            except StoreCorrupt as e:
                logger.warning("REGISTRY_REFRESH_SKIPPED", error=str(e))
                return False

            if stored.revision is not None and stored.revision == self._revision:
                return False

            stored_ids = {p.position_id for p in stored.positions}
            adopted, dropped = [], []

            for position in stored.positions:
                if position.position_id in self._synced_ids:
                    continue
                local = self._positions.get(position.symbol)
                if local is not None and local.position_id == position.position_id:
                    continue
                if local is not None and local.position_id not in self._synced_ids:
                    continue
                self._positions[position.symbol] = position
                adopted.append(position.symbol)

            for symbol, local in list(self._positions.items()):
                if local.position_id in self._synced_ids and local.position_id not in stored_ids:
                    del self._positions[symbol]
                    dropped.append(symbol)

            token_changed = stored.credential_token != self._synced_token
            if token_changed:
                self._credential_token = stored.credential_token

            self._mark_synced(stored)

            changed = bool(adopted or dropped or token_changed)
            if changed:
                logger.info(
                    "Registry refreshed from store",
                    adopted=adopted,
                    dropped=dropped,
                    credential_token_changed=token_changed,
                )
            return changed

    def _mark_synced(self, snapshot: RegistrySnapshot) -> None:
        self._revision = snapshot.revision
        self._synced_ids = {p.position_id for p in snapshot.positions}
        self._synced_token = snapshot.credential_token

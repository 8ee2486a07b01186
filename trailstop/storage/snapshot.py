"""
Registry snapshot: the unit of persistence handed to a ConfigStore.

Shape:
    {
        "version": 1,
        "revision": str | null,
        "credential_token": str | null,
        "positions": [{symbol, quantity, entry_price, stop_mode,
                       stop_parameter, high_water_mark, stop_price, ...}],
        "saved_at": iso8601
    }

revision is a fresh id per write, so a reader can tell whether the store
changed since it last looked. Decimals are strings. Unknown keys are
ignored on load so older engines can read snapshots written by newer ones.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Dict, List, Optional
import json

from trailstop.domain.models import StopLossPosition
from trailstop.exceptions import StoreCorrupt, ValidationError

SNAPSHOT_VERSION = 1


@dataclass
class RegistrySnapshot:
    """Credential token plus every tracked position."""
    credential_token: Optional[str] = None
    positions: List[StopLossPosition] = field(default_factory=list)
    revision: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "version": SNAPSHOT_VERSION,
            "revision": self.revision,
            "credential_token": self.credential_token,
            "positions": [p.to_dict() for p in self.positions],
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RegistrySnapshot":
        """
        Decode a snapshot.

        Raises:
            StoreCorrupt: payload is not a snapshot or a position fails validation
        """
        if not isinstance(data, dict):
            raise StoreCorrupt(f"Snapshot must be an object, got {type(data).__name__}")

        token = data.get("credential_token")
        if token is not None and not isinstance(token, str):
            raise StoreCorrupt("credential_token must be a string or null")

        revision = data.get("revision")
        if revision is not None and not isinstance(revision, str):
            raise StoreCorrupt("revision must be a string or null")

        raw_positions = data.get("positions", [])
        if not isinstance(raw_positions, list):
            raise StoreCorrupt("positions must be a list")

        positions = []
        for index, raw in enumerate(raw_positions):
            try:
                position = StopLossPosition.from_dict(raw)
            except (KeyError, TypeError, ValueError, InvalidOperation, ValidationError) as e:
                raise StoreCorrupt(f"Invalid position at index {index}: {e}") from e
            if position.stop_price > position.high_water_mark:
                raise StoreCorrupt(
                    f"Invalid position {position.symbol}: stop {position.stop_price} "
                    f"above high-water mark {position.high_water_mark}"
                )
            positions.append(position)

        return cls(credential_token=token, positions=positions, revision=revision)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, payload: str) -> "RegistrySnapshot":
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise StoreCorrupt(f"Snapshot is not valid JSON: {e}") from e
        return cls.from_dict(data)

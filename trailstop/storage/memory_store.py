"""
In-memory ConfigStore for embedding hosts and tests.

Holds the serialized JSON rather than the snapshot object so a load always
returns fresh, detached positions, the same as a real store would.
"""
from typing import Optional

from trailstop.exceptions import StoreNotFound, StoreWriteError
from trailstop.storage.snapshot import RegistrySnapshot


class InMemoryConfigStore:
    """Process-local snapshot storage."""

    def __init__(self, payload: Optional[str] = None):
        self.payload = payload
        self.fail_writes = False
        self.save_count = 0

    def load(self) -> RegistrySnapshot:
        if self.payload is None:
            raise StoreNotFound("No snapshot saved")
        return RegistrySnapshot.from_json(self.payload)

    def save(self, snapshot: RegistrySnapshot) -> None:
        if self.fail_writes:
            raise StoreWriteError("Simulated write failure")
        self.payload = snapshot.to_json()
        self.save_count += 1

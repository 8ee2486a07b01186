"""
JSON file ConfigStore.

Writes go to a temp file in the same directory and are swapped in with
os.replace so a crash mid-write never leaves a half-written snapshot.
"""
import os
import tempfile
from pathlib import Path

from trailstop.exceptions import StoreCorrupt, StoreNotFound, StoreWriteError
from trailstop.monitoring.logger import get_logger
from trailstop.storage.snapshot import RegistrySnapshot

logger = get_logger(__name__)


class JsonFileConfigStore:
    """Snapshot persisted as a single JSON document on disk."""

    def __init__(self, path: str | Path = "data/trailing_stops.json"):
        self.path = Path(path)

    def load(self) -> RegistrySnapshot:
        try:
            payload = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StoreNotFound(f"No snapshot at {self.path}") from None
        except (OSError, UnicodeDecodeError) as e:
            raise StoreCorrupt(f"Unreadable snapshot at {self.path}: {e}") from e
        return RegistrySnapshot.from_json(payload)

    def save(self, snapshot: RegistrySnapshot) -> None:
        payload = snapshot.to_json()
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise StoreWriteError(f"Failed to write snapshot to {self.path}: {e}") from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        logger.debug("Snapshot written", path=str(self.path), positions=len(snapshot.positions))

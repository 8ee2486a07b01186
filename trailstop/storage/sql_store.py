"""
SQLAlchemy ConfigStore.

One row per snapshot key in `registry_snapshots`; the payload column holds
the snapshot JSON. Any SQLAlchemy URL works (SQLite for a single host,
PostgreSQL when several hosts share state).
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, make_url, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from trailstop.exceptions import StoreCorrupt, StoreNotFound, StoreWriteError
from trailstop.monitoring.logger import get_logger
from trailstop.storage.snapshot import RegistrySnapshot

logger = get_logger(__name__)

Base = declarative_base()


class SnapshotRecord(Base):
    """Persisted registry snapshot."""
    __tablename__ = "registry_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_key = Column(String(128), unique=True, nullable=False, index=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class SqlConfigStore:
    """Snapshot persisted in a relational database."""

    def __init__(self, database_url: str = "sqlite:///data/trailing_stops.db", snapshot_key: str = "default"):
        """
        Args:
            database_url: SQLAlchemy connection string
            snapshot_key: Row key, lets several registries share one table
        """
        self.database_url = database_url
        self.snapshot_key = snapshot_key
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(database_url, echo=False, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def load(self) -> RegistrySnapshot:
        try:
            with self.get_session() as session:
                record = session.execute(
                    select(SnapshotRecord).where(SnapshotRecord.snapshot_key == self.snapshot_key)
                ).scalar_one_or_none()
                payload = record.payload if record is not None else None
        except SQLAlchemyError as e:
            raise StoreCorrupt(f"Failed to read snapshot {self.snapshot_key!r}: {e}") from e

        if payload is None:
            raise StoreNotFound(f"No snapshot stored under {self.snapshot_key!r}")
        return RegistrySnapshot.from_json(payload)

    def save(self, snapshot: RegistrySnapshot) -> None:
        payload = snapshot.to_json()
        now = datetime.now(timezone.utc)
        try:
            with self.get_session() as session:
                record = session.execute(
                    select(SnapshotRecord).where(SnapshotRecord.snapshot_key == self.snapshot_key)
                ).scalar_one_or_none()
                if record is None:
                    session.add(SnapshotRecord(snapshot_key=self.snapshot_key, payload=payload, updated_at=now))
                else:
                    record.payload = payload
                    record.updated_at = now
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to write snapshot {self.snapshot_key!r}: {e}") from e

        logger.debug("Snapshot written", snapshot_key=self.snapshot_key, positions=len(snapshot.positions))

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

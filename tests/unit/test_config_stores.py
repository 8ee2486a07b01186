"""
Tests for snapshot encoding and the ConfigStore backends (JSON file, SQL, in-memory).
"""
from decimal import Decimal
import json

import pytest

from trailstop.domain.models import StopMode
from trailstop.exceptions import StoreCorrupt, StoreNotFound, StoreWriteError
from trailstop.execution.trail_gauge import open_position
from trailstop.storage.json_store import JsonFileConfigStore
from trailstop.storage.memory_store import InMemoryConfigStore
from trailstop.storage.snapshot import RegistrySnapshot
from trailstop.storage.sql_store import SqlConfigStore


def _snapshot(token="tok"):
    return RegistrySnapshot(
        credential_token=token,
        positions=[
            open_position("A", 10, Decimal("100"), StopMode.PERCENTAGE, Decimal("2")),
            open_position("B", 3, Decimal("12.5"), StopMode.FIXED, Decimal("0.5")),
        ],
    )


def _position_dict(**overrides):
    data = {
        "symbol": "SYM",
        "quantity": 1,
        "entry_price": "100",
        "stop_mode": "percentage",
        "stop_parameter": "2",
        "high_water_mark": "100",
        "stop_price": "98",
    }
    data.update(overrides)
    return data


class TestRegistrySnapshot:

    def test_json_round_trip(self):
        original = _snapshot()
        decoded = RegistrySnapshot.from_json(original.to_json())
        assert decoded.credential_token == "tok"
        assert [p.to_dict() for p in decoded.positions] == [p.to_dict() for p in original.positions]

    def test_decimals_serialized_as_strings(self):
        data = json.loads(_snapshot().to_json())
        assert data["version"] == 1
        assert data["positions"][1]["stop_price"] == "12.0"
        assert "saved_at" in data

    def test_empty_payload_object(self):
        snapshot = RegistrySnapshot.from_dict({})
        assert snapshot.credential_token is None
        assert snapshot.positions == []

    def test_integral_quantity_strings_accepted(self):
        snapshot = RegistrySnapshot.from_dict({"positions": [
            _position_dict(symbol="A", quantity="3"),
            _position_dict(symbol="B", quantity=4.0),
        ]})
        assert [p.quantity for p in snapshot.positions] == [3, 4]

    def test_revision_round_trip(self):
        original = _snapshot()
        original.revision = "r-1"
        assert RegistrySnapshot.from_json(original.to_json()).revision == "r-1"
        assert RegistrySnapshot.from_dict({}).revision is None

    def test_positions_without_timestamps_get_defaults(self):
        snapshot = RegistrySnapshot.from_dict({"positions": [_position_dict()]})
        pos = snapshot.positions[0]
        assert pos.created_at.tzinfo is not None
        assert pos.position_id

    @pytest.mark.parametrize("payload", [
        "[1, 2]",
        '{"positions": {}}',
        '{"credential_token": 5}',
        '{"revision": 7}',
        '{"positions": ["SYM"]}',
        '{"positions": [{"symbol": "SYM"}]}',
    ])
    def test_malformed_payload_is_corrupt(self, payload):
        with pytest.raises(StoreCorrupt):
            RegistrySnapshot.from_json(payload)

    @pytest.mark.parametrize("overrides", [
        {"quantity": 0},
        {"quantity": 10.5},
        {"quantity": "10.5"},
        {"quantity": True},
        {"quantity": "ten"},
        {"entry_price": "abc"},
        {"stop_mode": "atr"},
        {"stop_parameter": "-1"},
        {"stop_price": "101"},
        {"created_at": "yesterday"},
    ])
    def test_invalid_position_is_corrupt(self, overrides):
        with pytest.raises(StoreCorrupt):
            RegistrySnapshot.from_dict({"positions": [_position_dict(**overrides)]})

    def test_not_json_is_corrupt(self):
        with pytest.raises(StoreCorrupt):
            RegistrySnapshot.from_json("definitely not json")


class TestJsonFileConfigStore:

    def test_save_and_load(self, tmp_path):
        store = JsonFileConfigStore(tmp_path / "state" / "stops.json")
        store.save(_snapshot())

        loaded = store.load()
        assert loaded.credential_token == "tok"
        assert [p.symbol for p in loaded.positions] == ["A", "B"]

    def test_no_temp_files_left(self, tmp_path):
        store = JsonFileConfigStore(tmp_path / "stops.json")
        store.save(_snapshot())
        store.save(_snapshot(token=None))
        assert sorted(p.name for p in tmp_path.iterdir()) == ["stops.json"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(StoreNotFound):
            JsonFileConfigStore(tmp_path / "absent.json").load()

    def test_garbage_file(self, tmp_path):
        path = tmp_path / "stops.json"
        path.write_text("{{{{", encoding="utf-8")
        with pytest.raises(StoreCorrupt):
            JsonFileConfigStore(path).load()

    def test_write_failure(self, tmp_path):
        target = tmp_path / "occupied"
        target.mkdir()
        store = JsonFileConfigStore(target)
        with pytest.raises(StoreWriteError):
            store.save(_snapshot())
        assert list(tmp_path.iterdir()) == [target]


class TestSqlConfigStore:

    def test_save_load_and_overwrite(self, tmp_path):
        store = SqlConfigStore(f"sqlite:///{tmp_path / 'db' / 'stops.db'}")
        try:
            store.save(_snapshot())
            store.save(_snapshot(token="rotated"))

            loaded = store.load()
            assert loaded.credential_token == "rotated"
            assert len(loaded.positions) == 2
        finally:
            store.dispose()

    def test_missing_row(self, tmp_path):
        store = SqlConfigStore(f"sqlite:///{tmp_path / 'stops.db'}")
        try:
            with pytest.raises(StoreNotFound):
                store.load()
        finally:
            store.dispose()

    def test_keys_are_isolated(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'stops.db'}"
        first = SqlConfigStore(url, snapshot_key="desk-a")
        second = SqlConfigStore(url, snapshot_key="desk-b")
        try:
            first.save(_snapshot(token="a"))
            with pytest.raises(StoreNotFound):
                second.load()
            second.save(RegistrySnapshot(credential_token="b"))
            assert first.load().credential_token == "a"
            assert second.load().positions == []
        finally:
            first.dispose()
            second.dispose()


class TestInMemoryConfigStore:

    def test_load_returns_detached_positions(self):
        store = InMemoryConfigStore()
        store.save(_snapshot())
        first, second = store.load(), store.load()
        first.positions[0].stop_price = Decimal("1")
        assert second.positions[0].stop_price == Decimal("98")

    def test_simulated_write_failure(self):
        store = InMemoryConfigStore()
        store.fail_writes = True
        with pytest.raises(StoreWriteError):
            store.save(_snapshot())
        assert store.save_count == 0

"""Tests for the configuration stores."""

import sqlite3
from datetime import UTC, datetime

import pytest

from cadence.core.errors import StoreError
from cadence.core.scheduling.models import ScheduleConfiguration
from cadence.core.scheduling.store import (
    ConfigurationStore,
    InMemoryConfigurationStore,
    SQLiteConfigurationStore,
)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryConfigurationStore()
    return SQLiteConfigurationStore(tmp_path / "store.db")


def make(name, enabled=False, **fields):
    return ScheduleConfiguration(
        name=name,
        definition=["second=0", "minute=0", "hour=1"],
        handler_name="noop",
        enabled=enabled,
        **fields,
    )


class TestConfigurationStores:
    def test_implements_protocol(self, any_store):
        assert isinstance(any_store, ConfigurationStore)

    def test_save_assigns_identity(self, any_store):
        configuration = make("alpha")
        saved = any_store.save(configuration)

        assert saved.id
        assert configuration.id == saved.id
        assert saved.created_at
        assert saved.updated_at

    def test_load_roundtrip(self, any_store):
        saved = any_store.save(make("alpha", params={"rows": 3}))
        loaded = any_store.load(saved.id)

        assert loaded.name == "alpha"
        assert loaded.definition == ["second=0", "minute=0", "hour=1"]
        assert loaded.params == {"rows": 3}

    def test_load_missing(self, any_store):
        assert any_store.load("does-not-exist") is None

    def test_load_returns_independent_copy(self, any_store):
        saved = any_store.save(make("alpha"))
        loaded = any_store.load(saved.id)
        loaded.params["mutated"] = True
        loaded.definition.append("hour=2")

        again = any_store.load(saved.id)
        assert "mutated" not in again.params
        assert again.definition == ["second=0", "minute=0", "hour=1"]

    def test_update_keeps_created_at(self, any_store):
        saved = any_store.save(make("alpha"))
        saved.status_message = "started"
        updated = any_store.save(saved)

        assert updated.id == saved.id
        assert updated.created_at == saved.created_at
        assert any_store.load(saved.id).status_message == "started"

    def test_find_by_name(self, any_store):
        any_store.save(make("alpha"))
        assert any_store.find_by_name("alpha").name == "alpha"
        assert any_store.find_by_name("beta") is None

    def test_find_predicate_and_paging(self, any_store):
        for name in ["e", "d", "c", "b", "a"]:
            any_store.save(make(name, enabled=name != "c"))

        enabled = any_store.find(lambda c: c.enabled)
        assert [c.name for c in enabled] == ["a", "b", "d", "e"]

        page = any_store.find(lambda c: c.enabled, limit=2, offset=2)
        assert [c.name for c in page] == ["d", "e"]

        assert len(any_store.find()) == 5

    def test_derived_fields_roundtrip(self, any_store):
        fire_at = datetime(2024, 1, 1, 6, 0, tzinfo=UTC)
        saved = any_store.save(make("alpha", next_fire_time=fire_at, time_remaining_ms=1000))
        loaded = any_store.load(saved.id)
        assert loaded.next_fire_time == fire_at
        assert loaded.time_remaining_ms == 1000


class TestSQLiteConfigurationStore:
    def test_survives_reopen(self, tmp_path):
        """Configurations outlive the process that saved them."""
        path = tmp_path / "nested" / "store.db"
        first = SQLiteConfigurationStore(path)
        saved = first.save(make("alpha", enabled=True))
        first.close()

        second = SQLiteConfigurationStore(path)
        loaded = second.load(saved.id)
        assert loaded.enabled is True
        assert loaded.name == "alpha"

    def test_duplicate_name_is_store_error(self):
        store = SQLiteConfigurationStore()
        store.save(make("alpha"))
        with pytest.raises(StoreError):
            store.save(make("alpha"))

    def test_corrupt_document_is_store_error(self):
        store = SQLiteConfigurationStore()
        saved = store.save(make("alpha"))
        store.conn.execute(
            f"UPDATE {store.TABLE} SET document = 'not json' WHERE id = ?", (saved.id,)
        )
        with pytest.raises(StoreError, match="Corrupt"):
            store.load(saved.id)

    def test_accepts_existing_connection(self):
        conn = sqlite3.connect(":memory:")
        store = SQLiteConfigurationStore(conn)
        store.save(make("alpha"))
        count = conn.execute(f"SELECT COUNT(*) FROM {store.TABLE}").fetchone()[0]
        assert count == 1

    def test_enabled_column_tracks_document(self):
        store = SQLiteConfigurationStore()
        saved = store.save(make("alpha", enabled=True))
        row = store.conn.execute(
            f"SELECT enabled FROM {store.TABLE} WHERE id = ?", (saved.id,)
        ).fetchone()
        assert row[0] == 1


class TestInMemoryConfigurationStore:
    def test_delete(self):
        store = InMemoryConfigurationStore()
        saved = store.save(make("alpha"))
        assert store.delete(saved.id) is True
        assert store.load(saved.id) is None
        assert len(store) == 0

"""
Tests for partition stores and the store manager.
"""

import pytest

from cadence.core.errors import PartitionNotFound, StoreFailure, ValidationError
from cadence.core.store import StoreManager
from cadence.scheduling.repository import ScheduleRepository


def _payload(name: str = "nightly") -> dict:
    return {
        "name": name,
        "actionConfig": {"actionId": "heartbeat"},
        "cronExpression": "@daily",
        "timezone": "UTC",
    }


class TestStoreManager:
    """Tests for the partition registry."""

    def test_register_and_get_partition(self, stores):
        """A registered partition is listed with its name and path."""
        info = stores.get_partition("prj_test")
        assert info.name == "Test Project"
        assert info.path == "/srv/projects/test"
        assert [p.id for p in stores.list_partitions()] == ["prj_test"]

    def test_register_is_an_upsert(self, stores):
        """Registering an existing id updates it instead of duplicating it."""
        stores.register_partition("prj_test", path="/elsewhere")
        assert len(stores.list_partitions()) == 1
        assert stores.get_partition("prj_test").path == "/elsewhere"
        assert stores.get("prj_test").path == "/elsewhere"

    def test_unknown_partition(self, stores):
        """Lookups of unregistered partitions raise PartitionNotFound."""
        with pytest.raises(PartitionNotFound):
            stores.get_partition("missing")
        with pytest.raises(PartitionNotFound):
            stores.get("missing")

    @pytest.mark.parametrize("bad_id", ["", "has space", "../escape", "__root__"])
    def test_invalid_partition_id(self, stores, bad_id):
        """Ids that are not file-name safe are rejected."""
        with pytest.raises(ValidationError):
            stores.register_partition(bad_id)

    def test_get_returns_cached_handle(self, stores):
        assert stores.get("prj_test") is stores.get("prj_test")

    def test_requires_data_dir_unless_in_memory(self):
        with pytest.raises(ValidationError):
            StoreManager()


class TestPartitionIsolation:
    """Each partition has its own database."""

    def test_schedules_do_not_leak_across_partitions(self, stores):
        stores.register_partition("prj_other")
        ScheduleRepository(stores.get("prj_test")).create(_payload())

        assert ScheduleRepository(stores.get("prj_test")).count() == 1
        assert ScheduleRepository(stores.get("prj_other")).count() == 0


class TestFileBackedStores:
    """Stores rooted in a data directory."""

    def test_files_created_per_partition(self, tmp_path):
        manager = StoreManager(tmp_path)
        manager.register_partition("prj_a")
        manager.get("prj_a")
        manager.close()

        assert (tmp_path / "root.db").exists()
        assert (tmp_path / "partitions" / "prj_a.db").exists()

    def test_data_survives_reopen(self, tmp_path):
        manager = StoreManager(tmp_path)
        manager.register_partition("prj_a", path="/a")
        created = ScheduleRepository(manager.get("prj_a")).create(_payload())
        manager.close()

        reopened = StoreManager(tmp_path)
        try:
            assert reopened.get_partition("prj_a").path == "/a"
            loaded = ScheduleRepository(reopened.get("prj_a")).get(created.id)
            assert loaded is not None
            assert loaded.next_run_at == created.next_run_at
        finally:
            reopened.close()


class TestTransactions:
    """Tests for PartitionStore.transaction()."""

    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.execute(
                    "INSERT INTO sessions (id, slug, title, status, agent, message_count, created_at, updated_at) "
                    "VALUES ('ses_1', 's', 't', 'active', 'default', 0, 'x', 'x')"
                )
                raise RuntimeError("abort")

        assert store.query("SELECT * FROM sessions") == []

    def test_nested_transaction_joins_outer(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                with store.transaction():
                    store.execute(
                        "INSERT INTO sessions (id, slug, title, status, agent, message_count, created_at, updated_at) "
                        "VALUES ('ses_1', 's', 't', 'active', 'default', 0, 'x', 'x')"
                    )
                raise RuntimeError("abort outer")

        assert store.query_one("SELECT * FROM sessions WHERE id = 'ses_1'") is None

    def test_commit(self, store):
        with store.transaction():
            store.execute(
                "INSERT INTO sessions (id, slug, title, status, agent, message_count, created_at, updated_at) "
                "VALUES ('ses_1', 's', 't', 'active', 'default', 0, 'x', 'x')"
            )
        assert store.query_one("SELECT id FROM sessions") == {"id": "ses_1"}


class TestStoreFailure:
    """sqlite errors surface as StoreFailure."""

    def test_bad_sql(self, store):
        with pytest.raises(StoreFailure) as exc_info:
            store.query("SELECT * FROM no_such_table")
        assert exc_info.value.category.value == "STORAGE"

    def test_closed_store(self, stores):
        store = stores.get("prj_test")
        store.close()
        with pytest.raises(StoreFailure):
            store.query("SELECT 1")

import pytest

from spice.checkpoint.manager import (
    CheckpointCorruptedError,
    CheckpointExistsError,
    CheckpointManager,
    CheckpointNotFoundError,
    InvalidCheckpointIdError,
    RestoreNotPreparedError,
)
from spice.domain.enums import ClassificationStatus
from spice.domain.models import Classification
from spice.repositories.base import StoreClosedError


@pytest.fixture
def manager(storage) -> CheckpointManager:
    return CheckpointManager(storage, max_auto_checkpoints=2)


@pytest.mark.integration
class TestCheckpointCreate:

    def test_create_records_counts(self, storage, manager, make_txn):
        storage.transactions.save_many([make_txn(amount="1"), make_txn(amount="2")])

        info = manager.create("before-import", "first import")

        assert info.transaction_count == 2
        assert info.category_count == storage.categories.count()
        assert info.file_size > 0
        assert not info.is_auto
        assert manager.get_checkpoint_info("before-import").description == "first import"

    def test_counts_describe_the_snapshot(self, storage, manager, make_txn, mocker):
        # Arrange
        storage.transactions.save(make_txn(amount="1"))
        real_backup = storage.db.backup

        def backup_then_write(target):
            real_backup(target)
            storage.transactions.save(make_txn(amount="2"))

        mocker.patch.object(storage.db, "backup", side_effect=backup_then_write)

        # Act
        info = manager.create("racing")

        # Assert
        assert storage.transactions.count() == 2
        assert info.transaction_count == 1
        with manager.restoring():
            manager.restore("racing")
        assert storage.transactions.count() == info.transaction_count

    def test_default_tag(self, manager):
        info = manager.create()

        assert info.id.startswith("checkpoint-")

    def test_duplicate_tag_rejected(self, manager):
        manager.create("once")

        with pytest.raises(CheckpointExistsError):
            manager.create("once")

    @pytest.mark.parametrize("tag", ["../escape", "a/b", "a\\b", "   "])
    def test_invalid_tag_rejected(self, manager, tag):
        with pytest.raises(InvalidCheckpointIdError):
            manager.create(tag)

    def test_list_newest_first(self, manager):
        manager.create("one")
        manager.create("two")

        assert [c.id for c in manager.list()] == ["two", "one"]


@pytest.mark.integration
class TestCheckpointRestore:

    def test_restore_round_trip(self, storage, manager, make_txn):
        # Arrange
        storage.transactions.save(make_txn(amount="1"))
        manager.create("safe")
        storage.transactions.save(make_txn(amount="2"))
        assert storage.transactions.count() == 2

        # Act
        with manager.restoring():
            manager.restore("safe")

        # Assert
        assert storage.transactions.count() == 1

    def test_restore_of_untouched_store_is_identical(self, storage, manager, make_txn):
        # Arrange
        txns = [make_txn(amount="1"), make_txn(amount="2")]
        storage.transactions.save_many(txns)
        storage.classifications.save(
            Classification(txns[0].id, "Dining", ClassificationStatus.CLASSIFIED_BY_AI, 0.8)
        )
        before = [(c.transaction_id, c.category, c.status) for c in storage.classifications.get_all()]
        categories = storage.categories.count()

        # Act
        manager.create("snapshot")
        with manager.restoring():
            manager.restore("snapshot")

        # Assert
        assert storage.transactions.count() == 2
        assert storage.categories.count() == categories
        after = [(c.transaction_id, c.category, c.status) for c in storage.classifications.get_all()]
        assert after == before

    def test_restore_requires_prepare(self, manager):
        manager.create("safe")

        with pytest.raises(RestoreNotPreparedError):
            manager.restore("safe")

    def test_store_refuses_access_while_prepared(self, storage, manager):
        manager.prepare_for_restore()
        try:
            with pytest.raises(StoreClosedError):
                storage.transactions.count()
        finally:
            manager.reopen()

        assert storage.transactions.count() == 0

    def test_restore_missing_checkpoint(self, manager):
        with manager.restoring():
            with pytest.raises(CheckpointNotFoundError):
                manager.restore("nope")

    def test_corrupted_checkpoint_leaves_live_db(self, storage, manager, make_txn):
        # Arrange
        storage.transactions.save(make_txn())
        manager.create("broken")
        (manager.checkpoints_dir / "broken.db").write_bytes(b"not a database at all" * 100)

        # Act
        with manager.restoring():
            with pytest.raises(CheckpointCorruptedError):
                manager.restore("broken")

        # Assert
        assert storage.transactions.count() == 1


@pytest.mark.integration
class TestCheckpointHousekeeping:

    def test_delete(self, manager):
        manager.create("old")

        manager.delete("old")

        assert manager.list() == []
        with pytest.raises(CheckpointNotFoundError):
            manager.delete("old")

    def test_auto_checkpoints_are_pruned(self, manager):
        manager.create("manual")

        created = [manager.auto_checkpoint("import") for _ in range(4)]

        assert all(info is not None and info.is_auto for info in created)
        remaining = manager.list()
        autos = [c.id for c in remaining if c.is_auto]
        assert autos == [created[3].id, created[2].id]
        assert "manual" in [c.id for c in remaining]

    def test_damaged_metadata_does_not_block_auto_checkpoint(self, manager):
        # Arrange
        manager.create("manual-one", "kept by hand")
        (manager.checkpoints_dir / "manual-one.meta.json").write_text("{not json")

        # Act
        info = manager.auto_checkpoint("import")

        # Assert
        assert info is not None and info.is_auto
        damaged = manager.get_checkpoint_info("manual-one")
        assert not damaged.is_auto
        assert damaged.file_size > 0
        assert {c.id for c in manager.list()} == {"manual-one", info.id}

    def test_listing_survives_restore_of_older_checkpoint(self, manager):
        manager.create("one")
        manager.create("two")

        with manager.restoring():
            manager.restore("one")

        assert [c.id for c in manager.list()] == ["two", "one"]

    def test_auto_checkpoint_failure_returns_none(self, manager, mocker):
        mocker.patch.object(manager.storage.db, "backup", side_effect=OSError("disk full"))

        assert manager.auto_checkpoint("import") is None

import json
import os
import shutil
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Generator, List, Optional

from spice.logger import get_logger
from spice.repositories.base import StorageError
from spice.repositories.storage import Storage

logger = get_logger(__name__)

DEFAULT_MAX_AUTO_CHECKPOINTS = 5
AUTO_PREFIX = "auto-"

_COUNTED_TABLES = {
    "transactions": "transactions",
    "categories": "categories",
    "vendors": "vendor_rules",
    "classifications": "classifications",
}


class CheckpointError(Exception):
    """Base class for checkpoint failures."""
    pass


class CheckpointNotFoundError(CheckpointError):
    pass


class CheckpointExistsError(CheckpointError):
    pass


class InvalidCheckpointIdError(CheckpointError):
    pass


class CheckpointCorruptedError(CheckpointError):
    """Raised when a checkpoint file fails SQLite's integrity check."""
    pass


class RestoreNotPreparedError(CheckpointError):
    """Raised when restore() is called before prepare_for_restore()."""
    pass


class CheckpointRestoreError(CheckpointError):
    """Restore failed; the live database was left exactly as it was."""

    def __init__(self, checkpoint_id: str, cause: Exception):
        super().__init__(
            f"Restore of checkpoint '{checkpoint_id}' failed: {cause}. No data was modified."
        )
        self.checkpoint_id = checkpoint_id
        self.cause = cause


@dataclass
class CheckpointInfo:
    id: str
    description: str
    created_at: datetime
    file_size: int
    transaction_count: int
    category_count: int
    vendor_count: int = 0
    classification_count: int = 0
    is_auto: bool = False

    def to_json(self) -> Dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_json(cls, data: Dict) -> "CheckpointInfo":
        data = dict(data)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)


def validate_checkpoint_id(checkpoint_id: str) -> None:
    if not checkpoint_id or not checkpoint_id.strip():
        raise InvalidCheckpointIdError("checkpoint id cannot be empty")
    if "/" in checkpoint_id or "\\" in checkpoint_id or ".." in checkpoint_id:
        raise InvalidCheckpointIdError(
            f"invalid checkpoint id '{checkpoint_id}': must not contain path separators or '..'"
        )


class CheckpointManager:
    """
    Snapshots and restores the whole database file.

    Checkpoints live next to the database in a `checkpoints/` directory as
    `<id>.db` plus a `<id>.meta.json` sidecar.

    Restoring is a two-phase protocol because the live file can't be
    replaced under an open connection:

        manager.prepare_for_restore()   # closes and locks the store
        manager.restore("before-import")
        manager.reopen()

    or, equivalently:

        with manager.restoring():
            manager.restore("before-import")
    """

    def __init__(
        self,
        storage: Storage,
        checkpoints_dir: Optional[Path] = None,
        max_auto_checkpoints: int = DEFAULT_MAX_AUTO_CHECKPOINTS,
    ):
        self.storage = storage
        self.db_path = Path(storage.db_path)
        self.checkpoints_dir = checkpoints_dir or self.db_path.parent / "checkpoints"
        self.checkpoints_dir.mkdir(parents=True, exist_ok=True)
        self.max_auto_checkpoints = max_auto_checkpoints
        self._prepared = False

    def _db_file(self, checkpoint_id: str) -> Path:
        return self.checkpoints_dir / f"{checkpoint_id}.db"

    def _meta_file(self, checkpoint_id: str) -> Path:
        return self.checkpoints_dir / f"{checkpoint_id}.meta.json"

    def create(
        self,
        tag: Optional[str] = None,
        description: str = "",
        is_auto: bool = False,
    ) -> CheckpointInfo:
        """
        Snapshot the live database.

        Args:
            tag: Checkpoint id, defaults to checkpoint-YYYY-MM-DD-HHMM
            description: Free text shown in listings
            is_auto: Marks checkpoints taken by risky commands

        Raises:
            InvalidCheckpointIdError: If tag contains path separators
            CheckpointExistsError: If a checkpoint with that id exists
            CheckpointError: If the database can't be copied consistently
        """
        if not tag:
            tag = f"checkpoint-{datetime.now():%Y-%m-%d-%H%M}"
        validate_checkpoint_id(tag)

        target = self._db_file(tag)
        if target.exists():
            raise CheckpointExistsError(f"checkpoint '{tag}' already exists")

        tmp = target.with_suffix(".db.tmp")
        try:
            self.storage.db.backup(tmp)
            counts = self._row_counts(tmp)
            os.replace(tmp, target)
        except (StorageError, sqlite3.Error, OSError) as e:
            tmp.unlink(missing_ok=True)
            raise CheckpointError(f"failed to create checkpoint '{tag}': {e}") from e

        info = CheckpointInfo(
            id=tag,
            description=description,
            created_at=datetime.now(),
            file_size=target.stat().st_size,
            transaction_count=counts["transactions"],
            category_count=counts["categories"],
            vendor_count=counts["vendors"],
            classification_count=counts["classifications"],
            is_auto=is_auto,
        )

        try:
            self._write_metadata(info)
        except OSError as e:
            target.unlink(missing_ok=True)
            raise CheckpointError(f"failed to write metadata for '{tag}': {e}") from e

        logger.info("Created checkpoint %s (%d bytes)", tag, info.file_size)
        return info

    def list(self) -> List[CheckpointInfo]:
        """All checkpoints, newest first"""
        infos = []
        for db_file in self.checkpoints_dir.glob("*.db"):
            checkpoint_id = db_file.name[: -len(".db")]
            infos.append(self._load_info(checkpoint_id))
        return sorted(infos, key=lambda i: (i.created_at, i.id), reverse=True)

    def get_checkpoint_info(self, checkpoint_id: str) -> CheckpointInfo:
        """
        Raises:
            CheckpointNotFoundError: If no checkpoint has that id
        """
        validate_checkpoint_id(checkpoint_id)
        if not self._db_file(checkpoint_id).exists():
            raise CheckpointNotFoundError(f"checkpoint '{checkpoint_id}' not found")
        return self._load_info(checkpoint_id)

    def prepare_for_restore(self) -> None:
        """Close the store and lock it against use until reopen()."""
        self.storage.db.lock_for_restore()
        self._prepared = True

    def restore(self, checkpoint_id: str) -> None:
        """
        Replace the live database with a checkpoint.

        The checkpoint is verified and copied beside the live file first;
        the swap is a single rename, so a failure leaves the live database
        untouched.

        Raises:
            RestoreNotPreparedError: If prepare_for_restore() wasn't called
            CheckpointNotFoundError: If no checkpoint has that id
            CheckpointCorruptedError: If the checkpoint fails its integrity check
            CheckpointRestoreError: If copying or swapping the file failed
        """
        if not self._prepared or not self.storage.db.is_locked:
            raise RestoreNotPreparedError(
                "call prepare_for_restore() before restore() so the store is closed"
            )

        source = self._db_file(checkpoint_id)
        validate_checkpoint_id(checkpoint_id)
        if not source.exists():
            raise CheckpointNotFoundError(f"checkpoint '{checkpoint_id}' not found")

        self._verify_integrity(source)

        backup = self.db_path.with_name(self.db_path.name + ".restore-backup")
        tmp = self.db_path.with_name(self.db_path.name + ".restore-tmp")
        try:
            if self.db_path.exists():
                shutil.copy2(self.db_path, backup)
            shutil.copy2(source, tmp)
            os.replace(tmp, self.db_path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            if backup.exists() and not self.db_path.exists():
                os.replace(backup, self.db_path)
            raise CheckpointRestoreError(checkpoint_id, e) from e

        backup.unlink(missing_ok=True)
        logger.info("Restored checkpoint %s", checkpoint_id)

    def reopen(self) -> None:
        """Unlock the store after a restore."""
        self.storage.db.reopen()
        self._prepared = False

    @contextmanager
    def restoring(self) -> Generator["CheckpointManager", None, None]:
        self.prepare_for_restore()
        try:
            yield self
        finally:
            self.reopen()

    def delete(self, checkpoint_id: str) -> None:
        """
        Permanently remove a checkpoint.

        Raises:
            CheckpointNotFoundError: If no checkpoint has that id
        """
        validate_checkpoint_id(checkpoint_id)
        db_file = self._db_file(checkpoint_id)
        if not db_file.exists():
            raise CheckpointNotFoundError(f"checkpoint '{checkpoint_id}' not found")

        db_file.unlink()
        self._meta_file(checkpoint_id).unlink(missing_ok=True)

        logger.info("Deleted checkpoint %s", checkpoint_id)

    def auto_checkpoint(self, label: str) -> Optional[CheckpointInfo]:
        """
        Best-effort checkpoint before a risky command.

        Never raises: a failure is logged and None returned so the caller
        can carry on. Only the newest auto checkpoints are kept.
        """
        now = datetime.now()
        tag = f"{AUTO_PREFIX}{label}-{now:%Y%m%d-%H%M%S}-{now.microsecond:06d}"
        try:
            info = self.create(tag, f"Automatic checkpoint before {label}", is_auto=True)
        except (CheckpointError, StorageError, OSError) as e:
            logger.warning("Auto checkpoint before %s failed: %s", label, e)
            return None

        try:
            self._prune_auto_checkpoints()
        except (CheckpointError, OSError, ValueError) as e:
            logger.warning("Could not prune old auto checkpoints: %s", e)

        return info

    def _prune_auto_checkpoints(self) -> None:
        autos = [info for info in self.list() if info.is_auto]
        for info in autos[self.max_auto_checkpoints:]:
            self.delete(info.id)

    @staticmethod
    def _row_counts(path: Path) -> Dict[str, int]:
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        try:
            return {
                key: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for key, table in _COUNTED_TABLES.items()
            }
        finally:
            conn.close()

    def _write_metadata(self, info: CheckpointInfo) -> None:
        path = self._meta_file(info.id)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(info.to_json(), f, indent=2)
        os.replace(tmp, path)

    def _load_info(self, checkpoint_id: str) -> CheckpointInfo:
        meta = self._meta_file(checkpoint_id)
        if meta.exists():
            try:
                with open(meta) as f:
                    return CheckpointInfo.from_json(json.load(f))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Unreadable metadata for checkpoint %s: %s", checkpoint_id, e)

        # Sidecar lost or damaged: fall back to what the file itself tells us
        db_file = self._db_file(checkpoint_id)
        stat = db_file.stat()
        return CheckpointInfo(
            id=checkpoint_id,
            description="",
            created_at=datetime.fromtimestamp(stat.st_mtime),
            file_size=stat.st_size,
            transaction_count=0,
            category_count=0,
            is_auto=checkpoint_id.startswith(AUTO_PREFIX),
        )

    @staticmethod
    def _verify_integrity(path: Path) -> None:
        try:
            conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
            try:
                row = conn.execute("PRAGMA integrity_check").fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CheckpointCorruptedError(f"checkpoint {path.name} is unreadable: {e}") from e

        if row is None or row[0] != "ok":
            raise CheckpointCorruptedError(
                f"checkpoint {path.name} failed integrity check: {row[0] if row else 'no result'}"
            )

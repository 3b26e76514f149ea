from pathlib import Path

from spice.database.connection import DatabaseConfig, DatabaseManager
from spice.repositories.sqlite_classification_repository import (
    SQLiteCategoryRepository,
    SQLiteClassificationRepository,
)
from spice.repositories.sqlite_rule_repositories import (
    SQLiteCheckPatternRepository,
    SQLitePatternRuleRepository,
    SQLiteVendorRuleRepository,
)
from spice.repositories.sqlite_transaction_repository import SQLiteTransactionRepository


class Storage:
    """
    Single entry point to every repository over one database.

    Usage:
        storage = Storage.open("data/spice.db")
        storage.transactions.get_unclassified()
    """

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.transactions = SQLiteTransactionRepository(db)
        self.classifications = SQLiteClassificationRepository(db)
        self.categories = SQLiteCategoryRepository(db)
        self.vendor_rules = SQLiteVendorRuleRepository(db)
        self.check_patterns = SQLiteCheckPatternRepository(db)
        self.pattern_rules = SQLitePatternRuleRepository(db)

    @classmethod
    def open(cls, db_path: Path | str, initialize: bool = True) -> "Storage":
        db = DatabaseManager(DatabaseConfig(db_path))
        if initialize:
            db.initialize_schema()
        return cls(db)

    @property
    def db_path(self) -> Path:
        return self.db.db_path

    def close(self) -> None:
        self.db.close()

    def reopen(self) -> None:
        self.db.reopen()

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

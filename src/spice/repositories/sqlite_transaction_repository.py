import sqlite3
from datetime import date
from decimal import Decimal
from typing import List, Optional

from spice.database.connection import DatabaseManager
from spice.domain.enums import Direction
from spice.domain.models import Transaction
from spice.repositories.base import DuplicateTransactionError, TransactionRepository

INSERT_TRANSACTION = """
    INSERT INTO transactions (
        id, date, name, merchant_name, amount, direction,
        account_id, check_number, provider_category, hash
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class SQLiteTransactionRepository(TransactionRepository):
    """
    SQLite implementation of the TransactionRepository.

    Handles all database operations for transactions using raw SQL.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def save(self, transaction: Transaction) -> Transaction:
        """Save a single transaction."""
        if self.exists(transaction) or self.get_by_id(transaction.id) is not None:
            raise DuplicateTransactionError(
                f"Transaction already exists: {transaction.name} ({transaction.amount}) "
                f"on {transaction.date}"
            )

        with self.db.transaction() as conn:
            conn.execute(INSERT_TRANSACTION, self._to_params(transaction))

        return transaction

    def save_many(self, transactions: List[Transaction]) -> List[Transaction]:
        """Save multiple transactions efficiently"""
        saved = []
        seen = set()

        with self.db.transaction() as conn:
            for txn in transactions:
                txn_hash = txn.generate_hash()
                if txn_hash in seen or self.exists(txn):
                    continue
                if self.get_by_id(txn.id) is not None:
                    continue

                conn.execute(INSERT_TRANSACTION, self._to_params(txn))
                seen.add(txn_hash)
                saved.append(txn)

        return saved

    def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        """Retrieve a transaction by ID, or None if it doesn't exist"""
        row = self.db.fetch_one(
            "SELECT * FROM transactions WHERE id = ?",
            (transaction_id,),
        )
        if row is None:
            return None

        return self._row_to_transaction(row)

    def get_all(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        category: Optional[str] = None,
    ) -> List[Transaction]:
        """Retrieve transactions with optional filtering."""
        query = "SELECT t.* FROM transactions t"
        params = []

        if category:
            query += " JOIN classifications c ON c.transaction_id = t.id AND c.category = ?"
            params.append(category)

        query += " WHERE 1=1"

        if start_date:
            query += " AND t.date >= ?"
            params.append(start_date.isoformat())

        if end_date:
            query += " AND t.date <= ?"
            params.append(end_date.isoformat())

        query += " ORDER BY t.date ASC, t.id ASC"

        return [self._row_to_transaction(row) for row in self.db.fetch_all(query, params)]

    def get_unclassified(self, from_date: Optional[date] = None) -> List[Transaction]:
        query = """
            SELECT t.* FROM transactions t
            LEFT JOIN classifications c ON c.transaction_id = t.id
            WHERE c.transaction_id IS NULL
        """
        params = []

        if from_date:
            query += " AND t.date >= ?"
            params.append(from_date.isoformat())

        query += " ORDER BY t.date ASC, t.id ASC"

        return [self._row_to_transaction(row) for row in self.db.fetch_all(query, params)]

    def exists(self, transaction: Transaction) -> bool:
        """Check if a transaction exists for deduplication"""
        row = self.db.fetch_one(
            "SELECT 1 FROM transactions WHERE hash = ?",
            (transaction.generate_hash(),),
        )
        return row is not None

    def count(self) -> int:
        row = self.db.fetch_one("SELECT COUNT(*) AS n FROM transactions")
        return row["n"]

    @staticmethod
    def _to_params(txn: Transaction) -> tuple:
        return (
            txn.id,
            txn.date.isoformat(),
            txn.name,
            txn.merchant_name,
            str(txn.amount),  # Store as string for precision
            txn.direction.value if txn.direction else None,
            txn.account_id,
            txn.check_number,
            txn.provider_category,
            txn.generate_hash(),
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        """Convert database row to Transaction object."""
        return Transaction(
            id=row["id"],
            date=date.fromisoformat(row["date"]),
            name=row["name"],
            merchant_name=row["merchant_name"],
            amount=Decimal(row["amount"]),
            direction=Direction(row["direction"]) if row["direction"] else None,
            account_id=row["account_id"],
            check_number=row["check_number"],
            provider_category=row["provider_category"],
        )

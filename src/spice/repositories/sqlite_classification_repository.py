import sqlite3
from datetime import date, datetime
from typing import List, Optional, Tuple

from spice.database.connection import DatabaseManager
from spice.domain.enums import CategoryType, ClassificationStatus
from spice.domain.models import Category, Classification, Transaction
from spice.repositories.base import CategoryRepository, ClassificationRepository
from spice.repositories.sqlite_transaction_repository import SQLiteTransactionRepository


class SQLiteClassificationRepository(ClassificationRepository):
    """SQLite implementation of the ClassificationRepository."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def save(self, classification: Classification) -> Classification:
        """Upsert by transaction id and record the change in the history table."""
        classified_at = classification.classified_at.isoformat()

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO classifications (
                    transaction_id, category, status, confidence, classified_at, notes
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(transaction_id) DO UPDATE SET
                    category = excluded.category,
                    status = excluded.status,
                    confidence = excluded.confidence,
                    classified_at = excluded.classified_at,
                    notes = excluded.notes
                """,
                (
                    classification.transaction_id,
                    classification.category,
                    classification.status.value,
                    classification.confidence,
                    classified_at,
                    classification.notes,
                ),
            )
            conn.execute(
                """
                INSERT INTO classification_history (
                    transaction_id, category, status, confidence, classified_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    classification.transaction_id,
                    classification.category,
                    classification.status.value,
                    classification.confidence,
                    classified_at,
                ),
            )

        return classification

    def get(self, transaction_id: str) -> Optional[Classification]:
        row = self.db.fetch_one(
            "SELECT * FROM classifications WHERE transaction_id = ?",
            (transaction_id,),
        )
        if row is None:
            return None
        return self._row_to_classification(row)

    def get_all(self) -> List[Classification]:
        rows = self.db.fetch_all(
            "SELECT * FROM classifications ORDER BY transaction_id"
        )
        return [self._row_to_classification(row) for row in rows]

    def get_by_category(self, category: str) -> List[Classification]:
        rows = self.db.fetch_all(
            "SELECT * FROM classifications WHERE category = ? ORDER BY transaction_id",
            (category,),
        )
        return [self._row_to_classification(row) for row in rows]

    def get_classified(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[Tuple[Transaction, Classification]]:
        query = """
            SELECT t.*, c.transaction_id, c.category, c.status, c.confidence,
                   c.classified_at, c.notes
            FROM transactions t
            JOIN classifications c ON c.transaction_id = t.id
            WHERE 1=1
        """
        params = []

        if start_date:
            query += " AND t.date >= ?"
            params.append(start_date.isoformat())

        if end_date:
            query += " AND t.date <= ?"
            params.append(end_date.isoformat())

        query += " ORDER BY t.date ASC, t.id ASC"

        return [
            (
                SQLiteTransactionRepository._row_to_transaction(row),
                self._row_to_classification(row),
            )
            for row in self.db.fetch_all(query, params)
        ]

    def get_history(self, transaction_id: str) -> List[Classification]:
        rows = self.db.fetch_all(
            """
            SELECT * FROM classification_history
            WHERE transaction_id = ?
            ORDER BY id ASC
            """,
            (transaction_id,),
        )
        return [self._row_to_classification(row) for row in rows]

    def count(self) -> int:
        row = self.db.fetch_one("SELECT COUNT(*) AS n FROM classifications")
        return row["n"]

    @staticmethod
    def _row_to_classification(row: sqlite3.Row) -> Classification:
        notes = row["notes"] if "notes" in row.keys() else ""
        return Classification(
            transaction_id=row["transaction_id"],
            category=row["category"],
            status=ClassificationStatus(row["status"]),
            confidence=row["confidence"],
            classified_at=datetime.fromisoformat(row["classified_at"]),
            notes=notes or "",
        )


class SQLiteCategoryRepository(CategoryRepository):
    """SQLite implementation of the CategoryRepository."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def get_all(self, active_only: bool = True) -> List[Category]:
        query = "SELECT * FROM categories"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY name"
        return [self._row_to_category(row) for row in self.db.fetch_all(query)]

    def get_by_name(self, name: str) -> Optional[Category]:
        row = self.db.fetch_one("SELECT * FROM categories WHERE name = ?", (name,))
        if row is None:
            return None
        return self._row_to_category(row)

    def add(self, category: Category) -> Category:
        if not category.name or not category.name.strip():
            raise ValueError("category name is required")
        if self.get_by_name(category.name) is not None:
            raise ValueError(f"Category '{category.name}' already exists")

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO categories (name, description, type, is_active)
                VALUES (?, ?, ?, ?)
                """,
                (
                    category.name,
                    category.description,
                    category.type.value,
                    int(category.is_active),
                ),
            )
            category.id = cursor.lastrowid

        return category

    def count(self) -> int:
        row = self.db.fetch_one("SELECT COUNT(*) AS n FROM categories")
        return row["n"]

    @staticmethod
    def _row_to_category(row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            type=CategoryType(row["type"]),
            is_active=bool(row["is_active"]),
        )

from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Tuple

from spice.database.connection import StorageError, StoreClosedError
from spice.domain.enums import RuleState
from spice.domain.models import (
    Category,
    CheckPattern,
    Classification,
    PatternRule,
    Transaction,
    VendorRule,
)

__all__ = [
    "StorageError",
    "StoreClosedError",
    "NotFoundError",
    "TransactionNotFoundError",
    "CategoryNotFoundError",
    "RuleNotFoundError",
    "DuplicateTransactionError",
    "TransactionRepository",
    "ClassificationRepository",
    "CategoryRepository",
    "VendorRuleRepository",
    "CheckPatternRepository",
    "PatternRuleRepository",
]


class NotFoundError(StorageError):
    """Raised when a requested record does not exist."""
    pass


class TransactionNotFoundError(NotFoundError):
    """Raised when a transaction cannot be found."""
    pass


class CategoryNotFoundError(NotFoundError):
    """Raised when a category cannot be found."""
    pass


class RuleNotFoundError(NotFoundError):
    """Raised when a vendor rule, check pattern or pattern rule cannot be found."""
    pass


class DuplicateTransactionError(StorageError):
    """Raised when attempting to save a duplicate transaction."""
    pass


class TransactionRepository(ABC):
    """
    Abstract repository for transaction persistence.

    Transactions are immutable once stored; there is no update.
    """

    @abstractmethod
    def save(self, transaction: Transaction) -> Transaction:
        """
        Save a transaction to the repository.

        Raises:
            DuplicateTransactionError: If transaction already exists
        """
        pass

    @abstractmethod
    def save_many(self, transactions: List[Transaction]) -> List[Transaction]:
        """
        Save multiple transactions in a single operation, skipping duplicates.

        Returns:
            The transactions that were actually stored
        """
        pass

    @abstractmethod
    def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    def get_all(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        category: Optional[str] = None,
    ) -> List[Transaction]:
        """
        Retrieve transactions in date order with optional filtering.

        Args:
            start_date: Filter transactions on or after this date
            end_date: Filter transactions on or before this date
            category: Only transactions currently classified into this category
        """
        pass

    @abstractmethod
    def get_unclassified(self, from_date: Optional[date] = None) -> List[Transaction]:
        """Transactions without a classification, oldest first."""
        pass

    @abstractmethod
    def exists(self, transaction: Transaction) -> bool:
        """Check if a transaction with the same content hash is stored."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass


class ClassificationRepository(ABC):
    """One classification per transaction, upserted by transaction id."""

    @abstractmethod
    def save(self, classification: Classification) -> Classification:
        """
        Insert or overwrite the classification for its transaction and
        append an audit row to the history.
        """
        pass

    @abstractmethod
    def get(self, transaction_id: str) -> Optional[Classification]:
        pass

    @abstractmethod
    def get_all(self) -> List[Classification]:
        pass

    @abstractmethod
    def get_by_category(self, category: str) -> List[Classification]:
        pass

    @abstractmethod
    def get_classified(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[Tuple[Transaction, Classification]]:
        """Classified transactions joined with their classification, in date order."""
        pass

    @abstractmethod
    def get_history(self, transaction_id: str) -> List[Classification]:
        pass

    @abstractmethod
    def count(self) -> int:
        pass


class CategoryRepository(ABC):

    @abstractmethod
    def get_all(self, active_only: bool = True) -> List[Category]:
        pass

    @abstractmethod
    def get_by_name(self, name: str) -> Optional[Category]:
        pass

    @abstractmethod
    def add(self, category: Category) -> Category:
        """
        Raises:
            ValueError: If a category with that name exists
        """
        pass

    @abstractmethod
    def count(self) -> int:
        pass


class VendorRuleRepository(ABC):
    """Vendor rules keyed by merchant name (case-insensitive)."""

    @abstractmethod
    def get_all(self) -> List[VendorRule]:
        """All rules in stored order."""
        pass

    @abstractmethod
    def get_by_name(self, name: str) -> Optional[VendorRule]:
        pass

    @abstractmethod
    def save(self, rule: VendorRule) -> VendorRule:
        """Insert or overwrite the rule for rule.name."""
        pass

    @abstractmethod
    def increment_use(self, name: str) -> None:
        pass

    @abstractmethod
    def delete(self, name: str) -> bool:
        pass


class CheckPatternRepository(ABC):

    @abstractmethod
    def add(self, pattern: CheckPattern) -> CheckPattern:
        """
        Raises:
            ValueError: If the pattern fails validation
        """
        pass

    @abstractmethod
    def get(self, pattern_id: int) -> Optional[CheckPattern]:
        pass

    @abstractmethod
    def get_all(self, active_only: bool = True) -> List[CheckPattern]:
        pass

    @abstractmethod
    def update(self, pattern: CheckPattern) -> CheckPattern:
        pass

    @abstractmethod
    def set_state(self, pattern_id: int, state: RuleState) -> None:
        """
        Raises:
            RuleNotFoundError: If no pattern has that id
        """
        pass

    @abstractmethod
    def increment_use(self, pattern_id: int) -> None:
        pass


class PatternRuleRepository(ABC):

    @abstractmethod
    def add(self, rule: PatternRule) -> PatternRule:
        pass

    @abstractmethod
    def get(self, rule_id: int) -> Optional[PatternRule]:
        pass

    @abstractmethod
    def get_all(self, active_only: bool = True) -> List[PatternRule]:
        pass

    @abstractmethod
    def update(self, rule: PatternRule) -> PatternRule:
        pass

    @abstractmethod
    def set_state(self, rule_id: int, state: RuleState) -> None:
        pass

    @abstractmethod
    def increment_use(self, rule_id: int) -> None:
        pass

from dataclasses import replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from spice.domain.enums import Direction
from spice.domain.models import Transaction
from spice.logger import get_logger
from spice.parsers.base import StatementParser

logger = get_logger(__name__)


class CSVStatementParser(StatementParser):
    """
    Parser for generic CSV statement exports.

    Column names are matched case-insensitively against a set of common
    aliases. Required: a date, a description and an amount column.

    Amounts are stored as non-negative magnitudes. When the file has no
    direction column, the sign decides: negative is an expense, positive
    is income. Rows without an id get one derived from their content hash.
    """

    DATE_COL = "date"
    NAME_COL = "name"
    AMOUNT_COL = "amount"

    ALIASES: Dict[str, tuple] = {
        "id": ("id", "transaction_id", "transaction id"),
        "date": ("date", "transaction date", "posted date", "posting date"),
        "name": ("name", "description", "details", "memo"),
        "merchant_name": ("merchant_name", "merchant", "payee"),
        "amount": ("amount", "value"),
        "direction": ("direction", "type"),
        "account_id": ("account_id", "account"),
        "check_number": ("check_number", "check number", "check no", "check"),
        "provider_category": ("category", "provider_category"),
    }

    DIRECTIONS = {
        "income": Direction.INCOME,
        "credit": Direction.INCOME,
        "expense": Direction.EXPENSE,
        "debit": Direction.EXPENSE,
        "transfer": Direction.TRANSFER,
    }

    def validate_file(self, filepath):
        """
        Check the file exists, is a .csv and carries the required columns.
        """
        path = Path(filepath)

        if not path.exists():
            raise FileNotFoundError(f"File does not exist on path {path}")

        if path.suffix.lower() != ".csv":
            raise ValueError(f"File must be .csv, got {path.suffix}")

        try:
            header = pd.read_csv(path, nrows=0)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise ValueError(f"Could not read CSV header: {e}") from e

        columns = self._map_columns(header.columns)
        missing = [c for c in (self.DATE_COL, self.NAME_COL, self.AMOUNT_COL) if c not in columns]
        if missing:
            raise ValueError(
                f"Missing required columns: {missing}. "
                f"Available columns: {list(header.columns)}"
            )

    def parse(self, filepath) -> List[Transaction]:
        """
        Parse a CSV statement.

        Rows with a missing date or amount, or values that can't be read,
        are skipped with a warning.
        """
        self.validate_file(filepath)

        try:
            df = pd.read_csv(filepath, dtype=str, keep_default_na=False)
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise ValueError(f"Failed to read CSV file: {e}") from e

        columns = self._map_columns(df.columns)
        df = df.rename(columns={original: field for field, original in columns.items()})

        transactions = []
        for index, row in df.iterrows():
            try:
                transaction = self._parse_row(row)
            except (ValueError, InvalidOperation) as e:
                logger.warning("Skipping row %d of %s: %s", index + 2, filepath, e)
                continue
            if transaction is not None:
                transactions.append(transaction)

        logger.info("Parsed %d transactions from %s", len(transactions), filepath)
        return transactions

    def _map_columns(self, columns) -> Dict[str, str]:
        """Field name -> column name as it appears in the file"""
        by_lower = {str(c).strip().lower(): c for c in columns}
        mapped = {}
        for field_name, aliases in self.ALIASES.items():
            for alias in aliases:
                if alias in by_lower:
                    mapped[field_name] = by_lower[alias]
                    break
        return mapped

    @staticmethod
    def _text(row: pd.Series, field_name: str) -> Optional[str]:
        value = row.get(field_name)
        if value is None or pd.isna(value):
            return None
        value = str(value).strip()
        return value or None

    def _parse_row(self, row: pd.Series) -> Optional[Transaction]:
        raw_date = self._text(row, self.DATE_COL)
        raw_amount = self._text(row, self.AMOUNT_COL)
        name = self._text(row, self.NAME_COL)
        if raw_date is None or raw_amount is None or name is None:
            return None

        txn_date = pd.to_datetime(raw_date).date()
        amount = self._amount(raw_amount)

        direction = self._direction(self._text(row, "direction"))
        if direction is None:
            direction = Direction.EXPENSE if amount < 0 else Direction.INCOME

        transaction = Transaction(
            id=self._text(row, "id") or "",
            date=txn_date,
            name=name,
            amount=abs(amount),
            account_id=self._text(row, "account_id") or self.default_account,
            merchant_name=self._text(row, "merchant_name"),
            direction=direction,
            check_number=self._text(row, "check_number"),
            provider_category=self._text(row, "provider_category"),
        )

        if not transaction.id:
            transaction = replace(
                transaction, id=f"{transaction.account_id}-{transaction.generate_hash()[:16]}"
            )
        return transaction

    @staticmethod
    def _amount(raw: str) -> Decimal:
        cleaned = raw.replace("$", "").replace(",", "").strip()
        # Accounting style negatives: (12.34)
        if cleaned.startswith("(") and cleaned.endswith(")"):
            cleaned = "-" + cleaned[1:-1]
        try:
            return Decimal(cleaned)
        except InvalidOperation as e:
            raise ValueError(f"invalid amount {raw!r}") from e

    def _direction(self, raw: Optional[str]) -> Optional[Direction]:
        if raw is None:
            return None
        direction = self.DIRECTIONS.get(raw.lower())
        if direction is None:
            raise ValueError(f"unknown direction {raw!r}")
        return direction

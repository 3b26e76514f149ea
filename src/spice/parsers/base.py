from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

from spice.domain.models import Transaction


class StatementParser(ABC):
    """
    Abstract base class for all statement parsers.

    Each statement format gets its own concrete parser; the registry in
    ParserFactory maps an identifier (e.g. 'csv') to the parser class.
    Parsers only read files. Deduplication and persistence happen in the
    service layer.
    """

    #: Account id given to transactions when the statement has none
    default_account: str = "default"

    @abstractmethod
    def parse(self, filepath: str | Path) -> List[Transaction]:
        """
        Parse a statement file and return its transactions in file order.

        Args:
            filepath: Path to the statement file

        Returns:
            List of Transaction objects

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file format is invalid
        """
        pass

    @abstractmethod
    def validate_file(self, filepath: str | Path) -> None:
        """
        Validate that the file matches the expected format.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file format is invalid
        """
        pass

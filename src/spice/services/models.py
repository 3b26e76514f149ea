"""
Service layer models - DTOs for service operations.

These models represent the results of service operations, not domain entities.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from spice.checkpoint.manager import CheckpointInfo
from spice.classification.batch import BatchSummary
from spice.domain.models import Transaction


@dataclass
class ImportResult:
    """
    Result of importing a statement file.

    Reports how many transactions were parsed, which were new and which
    were skipped as duplicates of already stored ones.
    """
    total_parsed: int
    new_transactions: int
    duplicates_skipped: int

    imported: List[Transaction] = field(default_factory=list)
    skipped: List[Transaction] = field(default_factory=list)

    filepath: str = ""
    financial_institution: str = ""
    dry_run: bool = False
    checkpoint: Optional[CheckpointInfo] = None

    @property
    def success(self) -> bool:
        """Import is successful if at least one transaction is imported"""
        return self.new_transactions > 0

    def __str__(self) -> str:
        "Human-readable summary"
        lines = [
            f"Import summary for {self.financial_institution}:",
            f"  File: {self.filepath}",
            f"  New transactions: {self.new_transactions}",
            f"  Duplicates skipped: {self.duplicates_skipped}",
        ]
        if self.checkpoint is not None:
            lines.append(f"  Checkpoint: {self.checkpoint.id}")
        return "\n".join(lines)

    def __post_init__(self):
        """Validate counts match lists"""
        if self.new_transactions != len(self.imported):
            raise ValueError(
                f"Count mismatch: new_transactions={self.new_transactions} "
                f"but len(imported)={len(self.imported)}"
            )
        if self.duplicates_skipped != len(self.skipped):
            raise ValueError(
                f"Count mismatch: duplicates_skipped={self.duplicates_skipped} "
                f"but len(skipped)={len(self.skipped)}"
            )


@dataclass
class RecategorizeResult:
    """Outcome of re-classifying a selected set of transactions"""
    selected: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category: Optional[str] = None
    summary: Optional[BatchSummary] = None
    checkpoint: Optional[CheckpointInfo] = None

    @property
    def nothing_to_do(self) -> bool:
        return self.selected == 0

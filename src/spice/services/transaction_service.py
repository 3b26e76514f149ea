from datetime import date
from pathlib import Path
from typing import List, Optional

from spice.checkpoint.manager import CheckpointManager
from spice.classification.batch import BatchOptions
from spice.classification.engine import ClassificationEngine
from spice.common.context import CancelContext
from spice.domain.models import Transaction
from spice.logger import get_logger
from spice.parsers.factory import ParserFactory
from spice.repositories.storage import Storage
from spice.services.models import ImportResult, RecategorizeResult

logger = get_logger(__name__)


class TransactionService:
    """
    Orchestrates the bulk-mutating commands.

    Every operation that writes many rows takes an automatic checkpoint
    first. A failed checkpoint is logged and never blocks the operation.
    """

    def __init__(
        self,
        storage: Storage,
        checkpoints: CheckpointManager,
        engine: Optional[ClassificationEngine] = None,
    ):
        self.storage = storage
        self.checkpoints = checkpoints
        self.engine = engine

    def import_statement(
        self,
        filepath: Path,
        financial_institution: str = "csv",
        dry_run: bool = False,
    ) -> ImportResult:
        """
        Import transactions from a statement file.

        Args:
            filepath: The path to the statement file
            financial_institution: Registered parser identifier
            dry_run: Preview without saving

        Returns:
            An ImportResult. Transactions whose content hash is already
            stored are reported as skipped.
        """
        parser = ParserFactory.create_parser(financial_institution)
        transactions = parser.parse(filepath)

        checkpoint = None
        if dry_run:
            new_transactions = []
            seen = set()
            for txn in transactions:
                txn_hash = txn.generate_hash()
                if txn_hash in seen or self.storage.transactions.exists(txn):
                    continue
                seen.add(txn_hash)
                new_transactions.append(txn)
        else:
            if transactions:
                checkpoint = self.checkpoints.auto_checkpoint("import")
            new_transactions = self.storage.transactions.save_many(transactions)

        new_ids = {id(t) for t in new_transactions}
        skipped = [t for t in transactions if id(t) not in new_ids]

        logger.info(
            "Import of %s: %d parsed, %d new, %d skipped",
            filepath,
            len(transactions),
            len(new_transactions),
            len(skipped),
        )

        return ImportResult(
            total_parsed=len(transactions),
            new_transactions=len(new_transactions),
            duplicates_skipped=len(skipped),
            imported=new_transactions,
            skipped=skipped,
            filepath=str(filepath),
            financial_institution=financial_institution,
            dry_run=dry_run,
            checkpoint=checkpoint,
        )

    def get_transactions(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        category: Optional[str] = None,
    ) -> List[Transaction]:
        """
        Query transactions with optional filters.

        Example:
            ### Everything filed under Dining in January 2025
            transactions = service.get_transactions(
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 31),
                category="Dining",
            )
        """
        return self.storage.transactions.get_all(
            start_date=start_date,
            end_date=end_date,
            category=category,
        )

    def recategorize(
        self,
        ctx: CancelContext,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        category: Optional[str] = None,
        options: Optional[BatchOptions] = None,
    ) -> RecategorizeResult:
        """
        Re-classify the selected transactions through the batch pipeline.

        Existing classifications in the selection are overwritten, so an
        automatic checkpoint is taken before anything changes.

        Raises:
            RuntimeError: If the service was built without an engine
        """
        if self.engine is None:
            raise RuntimeError("recategorize needs a classification engine")

        transactions = self.get_transactions(start_date, end_date, category)
        result = RecategorizeResult(
            selected=len(transactions),
            start_date=start_date,
            end_date=end_date,
            category=category,
        )
        if not transactions:
            return result

        result.checkpoint = self.checkpoints.auto_checkpoint("recategorize")
        result.summary = self.engine.classify_specific_transactions(ctx, transactions, options)
        return result

from datetime import date
from typing import List, Optional

from spice.classification.batch import BatchOptions, BatchProcessor, BatchSummary
from spice.classification.errors import ClassificationCancelled, ClassificationRunError
from spice.classification.interfaces import Classifier, ClassifierError, Prompter
from spice.classification.matcher import RuleMatcher
from spice.classification.models import PendingClassification, RunSummary, Suggestion
from spice.classification.recorder import ClassificationRecorder
from spice.common.context import CancelContext, Cancelled
from spice.common.retry import MaxRetriesExceeded, RetryOptions, with_retry
from spice.domain.enums import PromptAction
from spice.domain.models import Category, Transaction
from spice.logger import get_logger
from spice.repositories.base import StorageError
from spice.repositories.storage import Storage

logger = get_logger(__name__)


class ClassificationEngine:
    """
    Orchestrates rule matching, the AI classifier and the prompter.

    Sequential mode walks unclassified transactions in date order and asks
    the user about every AI suggestion. Batch mode hands the set to a
    BatchProcessor, which replaces the prompt with a confidence threshold.

    Usage:
        ```
        engine = ClassificationEngine(storage, classifier, prompter)
        summary = engine.classify_transactions(CancelContext())
        ```
    """

    def __init__(
        self,
        storage: Storage,
        classifier: Classifier,
        prompter: Prompter,
        matcher: Optional[RuleMatcher] = None,
        retry_options: Optional[RetryOptions] = None,
    ):
        self.storage = storage
        self.classifier = classifier
        self.prompter = prompter
        self.matcher = matcher or RuleMatcher.from_storage(storage)
        self.retry_options = retry_options or RetryOptions()
        self.recorder = ClassificationRecorder(storage, self.matcher, classifier)

    def classify_transactions(
        self,
        ctx: CancelContext,
        from_date: Optional[date] = None,
    ) -> RunSummary:
        """
        Classify every unclassified transaction on or after from_date.

        Args:
            ctx: Checked between transactions
            from_date: Resume cursor; None processes everything unclassified

        Raises:
            ClassificationCancelled: With the partial summary, when ctx is cancelled
            ClassificationRunError: If storage fails; carries the in-flight transaction
        """
        transactions = self.storage.transactions.get_unclassified(from_date)
        categories = self.storage.categories.get_all()
        summary = RunSummary()

        logger.info("Classifying %d transactions sequentially", len(transactions))

        for txn in transactions:
            if ctx.cancelled:
                summary.cancelled = True
                logger.info("Classification cancelled after %d transactions", summary.processed)
                raise ClassificationCancelled(summary)

            try:
                categories = self._classify_one(ctx, txn, categories, summary)
            except Cancelled:
                summary.cancelled = True
                raise ClassificationCancelled(summary)
            except StorageError as e:
                logger.error("Storage failure while classifying %s: %s", txn.id, e)
                raise ClassificationRunError(txn.id, summary.last_date, e) from e

            summary.processed += 1
            summary.last_date = txn.date

        logger.info(
            "Sequential run finished: %d processed, %d by rule, %d accepted, %d edited, %d rejected",
            summary.processed,
            summary.rule_matched,
            summary.accepted,
            summary.edited,
            summary.rejected,
        )
        return summary

    def _classify_one(
        self,
        ctx: CancelContext,
        txn: Transaction,
        categories: List[Category],
        summary: RunSummary,
    ) -> List[Category]:
        candidate = self.matcher.best(txn)
        if candidate is not None:
            self.recorder.apply_candidate(txn, candidate)
            self.prompter.record_auto_classified()
            summary.rule_matched += 1
            return categories

        suggestion = self._suggest(ctx, txn, categories)
        if suggestion is None:
            summary.skipped += 1
            return categories

        if suggestion.category not in {c.name for c in categories}:
            suggestion.is_new = True

        result = self.prompter.confirm_classification(
            PendingClassification([txn], suggestion)
        )
        self.recorder.apply_decision([txn], suggestion, result)

        if result.action == PromptAction.ACCEPT:
            summary.accepted += 1
        elif result.action == PromptAction.EDIT:
            summary.edited += 1
        else:
            summary.rejected += 1
            return categories

        # A new category may have been created
        return self.storage.categories.get_all()

    def _suggest(
        self,
        ctx: CancelContext,
        txn: Transaction,
        categories: List[Category],
    ) -> Optional[Suggestion]:
        """Ask the classifier, letting the user retry after exhausted attempts."""
        while True:
            try:
                return with_retry(
                    ctx,
                    lambda: self.classifier.classify(txn, categories),
                    self.retry_options,
                )
            except (MaxRetriesExceeded, ClassifierError) as e:
                logger.warning("Classifier failed for %s: %s", txn.id, e)
                if not self.prompter.confirm_retry(txn, e):
                    return None

    def classify_transactions_batch(
        self,
        ctx: CancelContext,
        from_date: Optional[date] = None,
        options: Optional[BatchOptions] = None,
    ) -> BatchSummary:
        """
        Classify every unclassified transaction on or after from_date in parallel.

        from_date only pre-filters the set; batch mode has no resume cursor.
        """
        transactions = self.storage.transactions.get_unclassified(from_date)
        return self.classify_specific_transactions(ctx, transactions, options)

    def classify_specific_transactions(
        self,
        ctx: CancelContext,
        transactions: List[Transaction],
        options: Optional[BatchOptions] = None,
    ) -> BatchSummary:
        """
        Classify exactly the given transactions in parallel.

        Already classified transactions are re-evaluated and overwritten.
        """
        processor = BatchProcessor(
            self.recorder,
            self.matcher,
            self.classifier,
            self.prompter,
            self.retry_options,
        )
        return processor.process(ctx, transactions, options or BatchOptions())

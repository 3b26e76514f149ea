import json
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

from spice.classification.errors import ClassificationRunError
from spice.classification.interfaces import Classifier, ClassifierError, Prompter
from spice.classification.matcher import RuleMatcher
from spice.classification.models import (
    MerchantGroup,
    PendingClassification,
    Suggestion,
    merchant_signature,
)
from spice.classification.recorder import ClassificationRecorder
from spice.common.context import CancelContext, Cancelled
from spice.common.retry import MaxRetriesExceeded, RetryOptions, with_retry
from spice.domain.enums import PromptAction
from spice.domain.models import Category, Transaction
from spice.logger import get_logger
from spice.repositories.base import StorageError

logger = get_logger(__name__)


@dataclass
class BatchOptions:
    auto_accept_threshold: float = 0.95
    batch_size: int = 5
    workers: int = 5
    skip_manual_review: bool = False

    def validate(self) -> None:
        if not 0.0 <= self.auto_accept_threshold <= 1.0:
            raise ValueError("auto-accept threshold must be between 0 and 1")
        if self.batch_size < 1:
            raise ValueError("batch size must be at least 1")
        if self.workers < 1:
            raise ValueError("worker count must be at least 1")


@dataclass
class BatchSummary:
    """
    Aggregate outcome of a batch run.

    Every transaction lands in exactly one of rule_matched, auto_accepted,
    needs_review or failed. `reviewed` counts the needs_review ones the
    user then accepted or edited.
    """
    total_transactions: int = 0
    total_merchants: int = 0
    rule_matched: int = 0
    auto_accepted: int = 0
    needs_review: int = 0
    reviewed: int = 0
    failed: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)
    elapsed: timedelta = timedelta(0)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.rule_matched + self.auto_accepted + self.needs_review + self.failed

    def to_display(self) -> str:
        """JSON rendering for the terminal and logs"""
        return json.dumps(
            {
                "total_transactions": self.total_transactions,
                "total_merchants": self.total_merchants,
                "rule_matched": self.rule_matched,
                "auto_accepted": self.auto_accepted,
                "needs_review": self.needs_review,
                "reviewed": self.reviewed,
                "failed": self.failed,
                "failures": [
                    {"transaction_id": txn_id, "reason": reason}
                    for txn_id, reason in self.failures
                ],
                "elapsed_seconds": round(self.elapsed.total_seconds(), 3),
                "cancelled": self.cancelled,
            },
            indent=2,
        )


class _Outcome(Enum):
    RULE = "rule"
    AUTO = "auto"
    REVIEW = "review"
    FAILED = "failed"
    FATAL = "fatal"
    DONE = "done"


@dataclass
class _Result:
    outcome: _Outcome
    transactions: List[Transaction] = field(default_factory=list)
    suggestion: Optional[Suggestion] = None
    error: Optional[Exception] = None


def group_by_merchant(transactions: List[Transaction]) -> List[MerchantGroup]:
    """Group by merchant signature, largest group first, ties by signature"""
    groups: Dict[str, MerchantGroup] = {}
    for txn in transactions:
        signature = merchant_signature(txn)
        groups.setdefault(signature, MerchantGroup(signature)).transactions.append(txn)
    return sorted(groups.values(), key=lambda g: (-len(g), g.signature))


class BatchProcessor:
    """
    Parallel, confidence-gated classification.

    Merchant groups are queued up front and N worker threads pull up to
    batch_size groups at a time. A worker rule-matches each transaction,
    sends the misses to the classifier in one call and auto-accepts
    suggestions at or above the threshold. Results flow back over a queue
    to a single collector running in the calling thread, which owns the
    summary. Each group is owned by exactly one worker.
    """

    def __init__(
        self,
        recorder: ClassificationRecorder,
        matcher: RuleMatcher,
        classifier: Classifier,
        prompter: Optional[Prompter],
        retry_options: Optional[RetryOptions] = None,
    ):
        self.recorder = recorder
        self.matcher = matcher
        self.classifier = classifier
        self.prompter = prompter
        self.retry_options = retry_options or RetryOptions()

    def process(
        self,
        ctx: CancelContext,
        transactions: List[Transaction],
        options: BatchOptions,
    ) -> BatchSummary:
        """
        Classify the given transactions.

        Returns:
            The run summary; `cancelled` is set when ctx was cancelled

        Raises:
            ClassificationRunError: If a storage write failed
        """
        options.validate()
        started = time.monotonic()

        groups = group_by_merchant(transactions)
        summary = BatchSummary(
            total_transactions=len(transactions),
            total_merchants=len(groups),
        )
        if not groups:
            return summary

        categories = self.recorder.storage.categories.get_all()
        known = {c.name for c in categories}

        work: "queue.Queue[MerchantGroup]" = queue.Queue()
        for group in groups:
            work.put(group)
        results: "queue.Queue[_Result]" = queue.Queue()
        abort = threading.Event()

        worker_count = min(options.workers, len(groups))
        logger.info(
            "Batch classifying %d transactions from %d merchants with %d workers",
            len(transactions),
            len(groups),
            worker_count,
        )

        threads = [
            threading.Thread(
                target=self._worker,
                args=(ctx, abort, work, results, options, categories, known),
                name=f"classify-worker-{i}",
                daemon=True,
            )
            for i in range(worker_count)
        ]
        for thread in threads:
            thread.start()

        review, fatal = self._collect(results, worker_count, summary, abort)

        for thread in threads:
            thread.join()

        if fatal is not None:
            summary.elapsed = timedelta(seconds=time.monotonic() - started)
            txn_id = fatal.transactions[0].id if fatal.transactions else ""
            logger.error("Batch run stopped by storage failure: %s", fatal.error)
            raise ClassificationRunError(txn_id, None, fatal.error) from fatal.error

        summary.cancelled = ctx.cancelled

        if review and not options.skip_manual_review and not summary.cancelled:
            self._review(ctx, review, summary)

        summary.elapsed = timedelta(seconds=time.monotonic() - started)
        logger.info("Batch run finished: %s", summary.to_display())
        return summary

    def _worker(
        self,
        ctx: CancelContext,
        abort: threading.Event,
        work: "queue.Queue[MerchantGroup]",
        results: "queue.Queue[_Result]",
        options: BatchOptions,
        categories: List[Category],
        known: set,
    ) -> None:
        try:
            while not ctx.cancelled and not abort.is_set():
                batch: List[MerchantGroup] = []
                while len(batch) < options.batch_size:
                    try:
                        batch.append(work.get_nowait())
                    except queue.Empty:
                        break
                if not batch:
                    break

                self._process_batch(ctx, batch, results, options, categories, known)
        except StorageError as e:
            results.put(_Result(_Outcome.FATAL, error=e))
        except Exception as e:
            logger.exception("Batch worker crashed")
            results.put(_Result(_Outcome.FATAL, error=e))
        finally:
            results.put(_Result(_Outcome.DONE))

    def _process_batch(
        self,
        ctx: CancelContext,
        batch: List[MerchantGroup],
        results: "queue.Queue[_Result]",
        options: BatchOptions,
        categories: List[Category],
        known: set,
    ) -> None:
        misses: List[MerchantGroup] = []
        for group in batch:
            remaining = []
            for txn in group.transactions:
                candidate = self.matcher.best(txn)
                if candidate is None:
                    remaining.append(txn)
                    continue
                try:
                    self.recorder.apply_candidate(txn, candidate)
                except StorageError as e:
                    results.put(_Result(_Outcome.FATAL, [txn], error=e))
                    raise
                results.put(_Result(_Outcome.RULE, [txn]))
            if remaining:
                misses.append(MerchantGroup(group.signature, remaining))

        if not misses:
            return

        try:
            suggestions = with_retry(
                ctx,
                lambda: self.classifier.classify_batch(misses, categories),
                self.retry_options,
            )
        except Cancelled:
            return
        except (MaxRetriesExceeded, ClassifierError) as e:
            logger.warning("Classifier failed for %d merchants: %s", len(misses), e)
            for group in misses:
                results.put(_Result(_Outcome.FAILED, group.transactions, error=e))
            return

        for group in misses:
            suggestion = suggestions.get(group.signature)
            if suggestion is None:
                results.put(
                    _Result(
                        _Outcome.FAILED,
                        group.transactions,
                        error=ClassifierError("no suggestion returned for merchant"),
                    )
                )
                continue

            if suggestion.category not in known:
                suggestion.is_new = True

            if suggestion.confidence >= options.auto_accept_threshold and not suggestion.is_new:
                try:
                    self.recorder.accept(group.transactions, suggestion)
                except StorageError as e:
                    results.put(_Result(_Outcome.FATAL, group.transactions, error=e))
                    raise
                results.put(_Result(_Outcome.AUTO, group.transactions, suggestion))
            else:
                results.put(_Result(_Outcome.REVIEW, group.transactions, suggestion))

    def _collect(
        self,
        results: "queue.Queue[_Result]",
        worker_count: int,
        summary: BatchSummary,
        abort: threading.Event,
    ) -> Tuple[List[_Result], Optional[_Result]]:
        review: List[_Result] = []
        fatal: Optional[_Result] = None
        done = 0

        while done < worker_count:
            result = results.get()
            count = len(result.transactions)

            if result.outcome == _Outcome.DONE:
                done += 1
            elif result.outcome == _Outcome.RULE:
                summary.rule_matched += count
            elif result.outcome == _Outcome.AUTO:
                summary.auto_accepted += count
            elif result.outcome == _Outcome.REVIEW:
                summary.needs_review += count
                review.append(result)
            elif result.outcome == _Outcome.FAILED:
                summary.failed += count
                summary.failures.extend((t.id, str(result.error)) for t in result.transactions)
            elif result.outcome == _Outcome.FATAL:
                if fatal is None or (not fatal.transactions and result.transactions):
                    fatal = result
                abort.set()

            if self.prompter is not None and result.outcome in (_Outcome.RULE, _Outcome.AUTO):
                self.prompter.record_auto_classified(count)

        return review, fatal

    def _review(self, ctx: CancelContext, review: List[_Result], summary: BatchSummary) -> None:
        """Ask about low-confidence groups, least confident first."""
        if self.prompter is None:
            return

        review.sort(key=lambda r: (r.suggestion.confidence, merchant_signature(r.transactions[0])))
        for item in review:
            if ctx.cancelled:
                summary.cancelled = True
                return

            result = self.prompter.confirm_classification(
                PendingClassification(item.transactions, item.suggestion)
            )
            if result.action == PromptAction.REJECT:
                continue

            try:
                self.recorder.apply_decision(item.transactions, item.suggestion, result)
            except StorageError as e:
                logger.error("Storage failure during review: %s", e)
                raise ClassificationRunError(item.transactions[0].id, None, e) from e
            summary.reviewed += len(item.transactions)

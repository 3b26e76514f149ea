import pytest
from datetime import date, timedelta

from spice.classification import BatchOptions, ClassificationEngine, ClassificationRunError
from spice.classification.models import PromptResult, Suggestion
from spice.common.context import CancelContext
from spice.domain.enums import ClassificationStatus, PromptAction
from spice.domain.models import VendorRule
from spice.repositories.base import StorageError


@pytest.fixture
def build_engine(storage, fast_retry):
    def _build(classifier, prompter=None):
        return ClassificationEngine(storage, classifier, prompter, retry_options=fast_retry)

    return _build


def spread(make_txn, merchants, per_merchant=1):
    """One transaction per (merchant, n), on distinct days"""
    transactions = []
    start = date(2025, 1, 1)
    for i, merchant in enumerate(merchants):
        for n in range(per_merchant):
            transactions.append(
                make_txn(name=merchant, day=start + timedelta(days=i * per_merchant + n))
            )
    return transactions


@pytest.mark.integration
class TestBatchProcessing:

    def test_confidence_equal_to_threshold_is_auto_accepted(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        # Arrange
        txns = spread(make_txn, ["Sure Thing", "Maybe Mart"])
        storage.transactions.save_many(txns)
        classifier = make_classifier({
            "Sure Thing": Suggestion("Dining", 0.95),
            "Maybe Mart": Suggestion("Groceries", 0.94),
        })
        prompter = make_prompter(default=PromptResult(PromptAction.REJECT))

        # Act
        summary = build_engine(classifier, prompter).classify_transactions_batch(
            CancelContext(), options=BatchOptions(auto_accept_threshold=0.95)
        )

        # Assert
        assert summary.auto_accepted == 1
        assert summary.needs_review == 1
        assert [p.merchant for p in prompter.asked] == ["Maybe Mart"]
        assert storage.classifications.get(txns[0].id).status == ClassificationStatus.CLASSIFIED_BY_AI
        assert storage.classifications.get(txns[1].id) is None

    def test_many_workers_write_each_transaction_once(
        self, storage, build_engine, make_txn, make_classifier
    ):
        # Arrange
        merchants = [f"Store {i:02d}" for i in range(25)]
        txns = spread(make_txn, merchants, per_merchant=2)
        storage.transactions.save_many(txns)
        storage.vendor_rules.save(VendorRule(name="Store 00", category="Shopping"))
        classifier = make_classifier(default=Suggestion("Shopping", 0.99))

        # Act
        summary = build_engine(classifier).classify_transactions_batch(
            CancelContext(), options=BatchOptions(workers=10, batch_size=3)
        )

        # Assert
        assert storage.classifications.count() == len(txns)
        assert summary.total_transactions == 50
        assert summary.total_merchants == 25
        assert summary.rule_matched == 2
        assert summary.auto_accepted == 48
        assert summary.processed == 50
        assert len(storage.classifications.get_history(txns[10].id)) == 1

    def test_skip_manual_review(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        storage.transactions.save_many(spread(make_txn, ["Unsure"]))
        prompter = make_prompter()

        summary = build_engine(
            make_classifier(default=Suggestion("Dining", 0.3)), prompter
        ).classify_transactions_batch(
            CancelContext(), options=BatchOptions(skip_manual_review=True)
        )

        assert summary.needs_review == 1
        assert summary.reviewed == 0
        assert prompter.asked == []
        assert storage.classifications.count() == 0

    def test_classifier_failures_are_counted(
        self, storage, build_engine, make_txn, make_classifier
    ):
        txns = spread(make_txn, ["A", "B", "C"])
        storage.transactions.save_many(txns)
        classifier = make_classifier(fail_times=1, retryable=False)

        summary = build_engine(classifier).classify_transactions_batch(
            CancelContext(),
            options=BatchOptions(workers=1, batch_size=3, skip_manual_review=True),
        )

        assert summary.failed == 3
        assert {txn_id for txn_id, _ in summary.failures} == {t.id for t in txns}
        assert summary.processed == 3

    def test_new_category_is_never_auto_accepted(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        storage.transactions.save_many(spread(make_txn, ["Pet Palace"]))
        prompter = make_prompter()

        summary = build_engine(
            make_classifier(default=Suggestion("Pets", 0.99)), prompter
        ).classify_transactions_batch(CancelContext())

        assert summary.auto_accepted == 0
        assert summary.needs_review == 1
        assert summary.reviewed == 1
        assert prompter.asked[0].suggestion.is_new
        assert storage.categories.get_by_name("Pets") is not None

    def test_review_lowest_confidence_first(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        storage.transactions.save_many(spread(make_txn, ["Mid", "Low", "High"]))
        classifier = make_classifier({
            "Mid": Suggestion("Dining", 0.5),
            "Low": Suggestion("Dining", 0.2),
            "High": Suggestion("Dining", 0.8),
        })
        prompter = make_prompter()

        build_engine(classifier, prompter).classify_transactions_batch(CancelContext())

        assert [p.merchant for p in prompter.asked] == ["Low", "Mid", "High"]

    def test_groups_share_one_decision(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        txns = spread(make_txn, ["Deli"], per_merchant=3)
        storage.transactions.save_many(txns)
        prompter = make_prompter([PromptResult(PromptAction.EDIT, category="Groceries")])

        summary = build_engine(
            make_classifier(default=Suggestion("Dining", 0.6)), prompter
        ).classify_transactions_batch(CancelContext())

        assert len(prompter.asked) == 1
        assert summary.reviewed == 3
        assert {storage.classifications.get(t.id).category for t in txns} == {"Groceries"}

    def test_cancelled_before_start(self, storage, build_engine, make_txn, make_classifier):
        storage.transactions.save_many(spread(make_txn, ["A", "B"]))
        ctx = CancelContext()
        ctx.cancel()

        summary = build_engine(make_classifier()).classify_transactions_batch(ctx)

        assert summary.cancelled
        assert storage.classifications.count() == 0

    def test_recategorize_overwrites_existing(
        self, storage, build_engine, make_txn, make_classifier
    ):
        txn = make_txn(name="Gas Co")
        storage.transactions.save(txn)
        engine = build_engine(make_classifier(default=Suggestion("Utilities", 0.99)))
        engine.classify_transactions_batch(CancelContext())
        storage.vendor_rules.delete("Gas Co")
        engine.matcher.refresh(storage)
        engine.classifier.default = Suggestion("Transportation", 0.99)

        engine.classify_specific_transactions(CancelContext(), [txn])

        assert storage.classifications.get(txn.id).category == "Transportation"
        assert len(storage.classifications.get_history(txn.id)) == 2

    def test_cancel_mid_run_keeps_finished_groups(
        self, storage, build_engine, make_txn, make_classifier, mocker
    ):
        # Arrange
        txns = spread(make_txn, ["Alpha", "Bravo", "Charlie"])
        storage.transactions.save_many(txns)
        classifier = make_classifier(default=Suggestion("Shopping", 0.99))
        ctx = CancelContext()
        real_classify = classifier.classify_batch

        def classify_then_cancel(groups, categories):
            ctx.cancel()
            return real_classify(groups, categories)

        mocker.patch.object(classifier, "classify_batch", side_effect=classify_then_cancel)

        # Act
        summary = build_engine(classifier).classify_transactions_batch(
            ctx, options=BatchOptions(workers=1, batch_size=1)
        )

        # Assert
        assert summary.cancelled
        assert summary.auto_accepted == 1
        assert summary.processed == 1
        assert classifier.classify_batch.call_count == 1
        assert storage.classifications.count() == 1
        assert storage.classifications.get(txns[0].id).category == "Shopping"

    def test_storage_failure_in_worker_stops_the_run(
        self, storage, build_engine, make_txn, make_classifier, mocker
    ):
        # Arrange
        txns = spread(make_txn, ["Alpha", "Bravo", "Charlie", "Delta"])
        storage.transactions.save_many(txns)
        mocker.patch.object(
            storage.classifications, "save", side_effect=StorageError("disk full")
        )

        # Act
        with pytest.raises(ClassificationRunError) as exc_info:
            build_engine(
                make_classifier(default=Suggestion("Shopping", 0.99))
            ).classify_transactions_batch(
                CancelContext(), options=BatchOptions(workers=2, batch_size=1)
            )

        # Assert
        assert exc_info.value.transaction_id in {t.id for t in txns}
        assert isinstance(exc_info.value.cause, StorageError)
        assert storage.classifications.count() == 0

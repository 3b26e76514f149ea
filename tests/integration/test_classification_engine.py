import pytest
from datetime import date
from decimal import Decimal

from spice.classification import ClassificationCancelled, ClassificationEngine, ClassificationRunError
from spice.classification.models import PromptResult, Suggestion
from spice.common.context import CancelContext
from spice.domain.enums import ClassificationStatus, PromptAction, VendorSource
from spice.domain.models import CheckPattern
from spice.repositories.base import StorageError


@pytest.fixture
def build_engine(storage, fast_retry):
    def _build(classifier, prompter):
        return ClassificationEngine(storage, classifier, prompter, retry_options=fast_retry)

    return _build


@pytest.mark.integration
class TestSequentialClassification:

    def test_rent_check_on_third_uses_pattern_and_twentieth_goes_to_ai(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        # Arrange
        storage.check_patterns.add(
            CheckPattern(name="rent", category="Rent", amount_min=Decimal("1400"),
                         amount_max=Decimal("1600"), day_min=1, day_max=5, confidence_boost=0.9)
        )
        on_time = make_txn(name="CHECK 1001", amount="1500.00", day=date(2025, 3, 3),
                           check_number="1001")
        late = make_txn(name="CHECK 1002", amount="1500.00", day=date(2025, 3, 20),
                        check_number="1002")
        storage.transactions.save_many([on_time, late])
        classifier = make_classifier(default=Suggestion("Shopping", 0.4, "unclear"))
        prompter = make_prompter()

        # Act
        summary = build_engine(classifier, prompter).classify_transactions(CancelContext())

        # Assert
        by_rule = storage.classifications.get(on_time.id)
        assert by_rule.category == "Rent"
        assert by_rule.status == ClassificationStatus.CLASSIFIED_BY_RULE
        assert by_rule.confidence == 0.9
        assert storage.classifications.get(late.id).status == ClassificationStatus.CLASSIFIED_BY_AI
        assert classifier.calls == ["CHECK 1002"]
        assert summary.rule_matched == 1
        assert summary.accepted == 1
        assert storage.check_patterns.get_all()[0].use_count == 1

    def test_accept_edit_reject(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        # Arrange
        accepted = make_txn(name="Joe's Diner", day=date(2025, 1, 1))
        edited = make_txn(name="Corner Store", day=date(2025, 1, 2))
        rejected = make_txn(name="Mystery Co", day=date(2025, 1, 3))
        storage.transactions.save_many([accepted, edited, rejected])
        classifier = make_classifier(default=Suggestion("Dining", 0.7))
        prompter = make_prompter([
            PromptResult(PromptAction.ACCEPT),
            PromptResult(PromptAction.EDIT, category="Groceries"),
            PromptResult(PromptAction.REJECT),
        ])

        # Act
        summary = build_engine(classifier, prompter).classify_transactions(CancelContext())

        # Assert
        assert (summary.accepted, summary.edited, summary.rejected) == (1, 1, 1)
        assert storage.classifications.get(accepted.id).confidence == 0.7
        edit = storage.classifications.get(edited.id)
        assert edit.category == "Groceries"
        assert edit.status == ClassificationStatus.USER_MODIFIED
        assert edit.confidence == 1.0
        assert storage.classifications.get(rejected.id) is None
        assert storage.vendor_rules.get_by_name("Corner Store").source == VendorSource.AUTO_CONFIRMED
        assert storage.vendor_rules.get_by_name("Mystery Co") is None
        assert [p.merchant for p in prompter.asked] == ["Joe's Diner", "Corner Store", "Mystery Co"]

    def test_new_category_created_with_generated_description(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        txn = make_txn(name="Happy Paws Vet")
        storage.transactions.save(txn)
        classifier = make_classifier({"Happy Paws Vet": Suggestion("Pets", 0.8, "vet visit")})
        prompter = make_prompter()

        build_engine(classifier, prompter).classify_transactions(CancelContext())

        assert prompter.asked[0].suggestion.is_new
        assert storage.categories.get_by_name("Pets").description == "Spending on pets"
        assert storage.classifications.get(txn.id).category == "Pets"

    def test_accepted_vendor_is_learned_for_the_next_transaction(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        # Arrange
        first = make_txn(name="Blue Bottle", day=date(2025, 1, 5))
        second = make_txn(name="BLUE BOTTLE", day=date(2025, 1, 9))
        storage.transactions.save_many([first, second])
        classifier = make_classifier({"blue bottle": Suggestion("Dining", 0.9)})
        prompter = make_prompter()

        # Act
        summary = build_engine(classifier, prompter).classify_transactions(CancelContext())

        # Assert
        assert classifier.calls == ["Blue Bottle"]
        assert summary.accepted == 1
        assert summary.rule_matched == 1
        rule = storage.vendor_rules.get_by_name("Blue Bottle")
        assert rule.source == VendorSource.AUTO
        assert rule.use_count == 1
        assert storage.classifications.get(second.id).status == ClassificationStatus.CLASSIFIED_BY_RULE
        assert prompter.completion_stats().auto_classified == 1

    def test_from_date_skips_earlier_transactions(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        early = make_txn(name="Early", day=date(2025, 1, 5))
        late = make_txn(name="Late", day=date(2025, 1, 20))
        storage.transactions.save_many([early, late])

        summary = build_engine(make_classifier(), make_prompter()).classify_transactions(
            CancelContext(), from_date=date(2025, 1, 10)
        )

        assert summary.processed == 1
        assert storage.classifications.get(early.id) is None
        assert storage.classifications.get(late.id) is not None


@pytest.mark.integration
class TestSequentialInterruptions:

    def test_cancel_keeps_finished_work(
        self, storage, build_engine, make_txn, make_classifier, make_prompter, mocker
    ):
        # Arrange
        first = make_txn(name="First", day=date(2025, 1, 1))
        second = make_txn(name="Second", day=date(2025, 1, 2))
        storage.transactions.save_many([first, second])
        ctx = CancelContext()
        prompter = make_prompter()

        def accept_then_cancel(pending):
            ctx.cancel()
            return PromptResult(PromptAction.ACCEPT)

        mocker.patch.object(prompter, "_ask", side_effect=accept_then_cancel)

        # Act
        with pytest.raises(ClassificationCancelled) as exc_info:
            build_engine(make_classifier(), prompter).classify_transactions(ctx)

        # Assert
        summary = exc_info.value.summary
        assert summary.cancelled
        assert summary.processed == 1
        assert summary.last_date == date(2025, 1, 1)
        assert storage.classifications.get(first.id) is not None
        assert storage.classifications.get(second.id) is None

    def test_exhausted_retries_declined_skips_transaction(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        storage.transactions.save(make_txn())
        classifier = make_classifier(fail_times=10)
        prompter = make_prompter(retry=False)

        summary = build_engine(classifier, prompter).classify_transactions(CancelContext())

        assert summary.skipped == 1
        assert len(classifier.calls) == 3
        assert prompter.retry_asked == 1
        assert storage.classifications.count() == 0

    def test_retry_after_failure_succeeds(
        self, storage, build_engine, make_txn, make_classifier, make_prompter
    ):
        storage.transactions.save(make_txn())
        classifier = make_classifier(fail_times=3)
        prompter = make_prompter(retry=True)

        summary = build_engine(classifier, prompter).classify_transactions(CancelContext())

        assert summary.accepted == 1
        assert prompter.retry_asked == 1

    def test_storage_failure_reports_resume_cursor(
        self, storage, build_engine, make_txn, make_classifier, make_prompter, mocker
    ):
        # Arrange
        first = make_txn(name="First", day=date(2025, 1, 1))
        second = make_txn(name="Second", day=date(2025, 1, 2))
        storage.transactions.save_many([first, second])
        real_save = storage.classifications.save
        saved = []

        def fail_after_first(classification):
            if saved:
                raise StorageError("disk full")
            saved.append(classification)
            return real_save(classification)

        mocker.patch.object(storage.classifications, "save", side_effect=fail_after_first)

        # Act
        with pytest.raises(ClassificationRunError) as exc_info:
            build_engine(make_classifier(), make_prompter()).classify_transactions(CancelContext())

        # Assert
        assert exc_info.value.transaction_id == second.id
        assert exc_info.value.resume_from == date(2025, 1, 1)

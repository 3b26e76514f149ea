import pytest
from datetime import date
from decimal import Decimal

from spice.domain.enums import ClassificationStatus, RuleState, VendorSource
from spice.domain.models import Category, CheckPattern, Classification, PatternRule, VendorRule
from spice.repositories.base import DuplicateTransactionError, RuleNotFoundError, StorageError
from spice.repositories.storage import Storage


@pytest.mark.integration
class TestTransactionRepository:
    """Uses a real temp db."""

    def test_save_and_load_round_trip(self, storage: Storage, make_txn):
        txn = make_txn(name="CHECK #12", amount="1234567.89", check_number="12", merchant="Landlord")

        storage.transactions.save(txn)

        assert storage.transactions.get_by_id(txn.id) == txn

    def test_duplicate_content_rejected(self, storage: Storage, make_txn):
        storage.transactions.save(make_txn(txn_id="a"))

        with pytest.raises(DuplicateTransactionError):
            storage.transactions.save(make_txn(txn_id="b"))

    def test_save_many_skips_duplicates(self, storage: Storage, make_txn):
        first = make_txn(amount="1.00")
        storage.transactions.save(first)
        batch = [
            make_txn(amount="1.00"),        # same content as first
            make_txn(amount="2.00"),
            make_txn(amount="2.00"),        # duplicate inside the batch
            make_txn(amount="3.00", txn_id=first.id),  # id clash
        ]

        saved = storage.transactions.save_many(batch)

        assert [t.amount for t in saved] == [Decimal("2.00")]
        assert storage.transactions.count() == 2

    def test_get_all_filters_by_date_and_category(self, storage: Storage, make_txn):
        jan = make_txn(day=date(2025, 1, 10), amount="1")
        feb = make_txn(day=date(2025, 2, 10), amount="2")
        mar = make_txn(day=date(2025, 3, 10), amount="3")
        storage.transactions.save_many([mar, jan, feb])
        storage.classifications.save(
            Classification(feb.id, "Dining", ClassificationStatus.CLASSIFIED_BY_AI, 0.9)
        )

        assert storage.transactions.get_all() == [jan, feb, mar]
        assert storage.transactions.get_all(start_date=date(2025, 2, 1)) == [feb, mar]
        assert storage.transactions.get_all(end_date=date(2025, 2, 10)) == [jan, feb]
        assert storage.transactions.get_all(category="Dining") == [feb]

    def test_unclassified_in_date_order(self, storage: Storage, make_txn):
        late = make_txn(day=date(2025, 1, 20), amount="1")
        early = make_txn(day=date(2025, 1, 5), amount="2")
        done = make_txn(day=date(2025, 1, 10), amount="3")
        storage.transactions.save_many([late, early, done])
        storage.classifications.save(
            Classification(done.id, "Dining", ClassificationStatus.CLASSIFIED_BY_RULE, 1.0)
        )

        assert storage.transactions.get_unclassified() == [early, late]
        assert storage.transactions.get_unclassified(date(2025, 1, 6)) == [late]


@pytest.mark.integration
class TestClassificationRepository:

    def test_upsert_keeps_history(self, storage: Storage, make_txn):
        txn = make_txn()
        storage.transactions.save(txn)

        storage.classifications.save(
            Classification(txn.id, "Dining", ClassificationStatus.CLASSIFIED_BY_AI, 0.7)
        )
        storage.classifications.save(
            Classification(txn.id, "Groceries", ClassificationStatus.USER_MODIFIED)
        )

        current = storage.classifications.get(txn.id)
        assert current.category == "Groceries"
        assert current.confidence == 1.0
        assert storage.classifications.count() == 1
        assert [c.category for c in storage.classifications.get_history(txn.id)] == [
            "Dining", "Groceries",
        ]

    def test_unknown_category_rejected(self, storage: Storage, make_txn):
        txn = make_txn()
        storage.transactions.save(txn)

        with pytest.raises(StorageError):
            storage.classifications.save(
                Classification(txn.id, "Nope", ClassificationStatus.CLASSIFIED_BY_AI, 0.5)
            )

    def test_get_classified_pairs(self, storage: Storage, make_txn):
        txn = make_txn()
        storage.transactions.save(txn)
        storage.classifications.save(
            Classification(txn.id, "Dining", ClassificationStatus.CLASSIFIED_BY_AI, 0.8)
        )

        [(loaded, classification)] = storage.classifications.get_classified()

        assert loaded == txn
        assert classification.category == "Dining"


@pytest.mark.integration
class TestCategoryRepository:

    def test_default_categories_seeded(self, storage: Storage):
        names = {c.name for c in storage.categories.get_all()}

        assert {"Groceries", "Dining", "Rent", "Salary"} <= names

    def test_add_and_reject_duplicate(self, storage: Storage):
        storage.categories.add(Category("Pets", "Food and vet"))

        assert storage.categories.get_by_name("Pets").description == "Food and vet"
        with pytest.raises(ValueError, match="already exists"):
            storage.categories.add(Category("Pets"))


@pytest.mark.integration
class TestRuleRepositories:

    def test_vendor_rule_upsert_is_case_insensitive(self, storage: Storage):
        storage.vendor_rules.save(VendorRule(name="Starbucks", category="Dining"))

        rule = storage.vendor_rules.get_by_name("STARBUCKS")
        rule.category = "Groceries"
        rule.promote()
        storage.vendor_rules.save(rule)

        [stored] = storage.vendor_rules.get_all()
        assert stored.category == "Groceries"
        assert stored.source == VendorSource.AUTO_CONFIRMED

    def test_vendor_increment_and_delete(self, storage: Storage):
        storage.vendor_rules.save(VendorRule(name="Shell", category="Transportation"))

        storage.vendor_rules.increment_use("shell")

        assert storage.vendor_rules.get_by_name("Shell").use_count == 1
        assert storage.vendor_rules.delete("Shell") is True
        assert storage.vendor_rules.delete("Shell") is False
        with pytest.raises(RuleNotFoundError):
            storage.vendor_rules.increment_use("Shell")

    def test_check_pattern_round_trip(self, storage: Storage):
        pattern = storage.check_patterns.add(
            CheckPattern(
                name="tutor", category="Other Income",
                amounts=[Decimal("80.00"), Decimal("120.00")], day_min=1, day_max=10,
            )
        )

        loaded = storage.check_patterns.get(pattern.id)

        assert loaded.amounts == [Decimal("80.00"), Decimal("120.00")]
        assert loaded.day_max == 10

    def test_invalid_check_pattern_not_stored(self, storage: Storage):
        with pytest.raises(ValueError):
            storage.check_patterns.add(
                CheckPattern(name="x", category="Rent", amount_min=Decimal("5"),
                             amount_max=Decimal("1"))
            )

        assert storage.check_patterns.get_all(active_only=False) == []

    def test_deactivation_is_a_state_change(self, storage: Storage):
        pattern = storage.check_patterns.add(
            CheckPattern(name="rent", category="Rent", amount=Decimal("1500"))
        )

        storage.check_patterns.set_state(pattern.id, RuleState.INACTIVE)

        assert storage.check_patterns.get_all() == []
        assert storage.check_patterns.get(pattern.id).state == RuleState.INACTIVE

    def test_pattern_rules_ordered_by_priority(self, storage: Storage):
        storage.pattern_rules.add(PatternRule(name="low", category="Shopping", priority=1))
        storage.pattern_rules.add(PatternRule(name="high", category="Shopping", priority=9))

        assert [r.name for r in storage.pattern_rules.get_all()] == ["high", "low"]

    def test_set_state_unknown_rule(self, storage: Storage):
        with pytest.raises(RuleNotFoundError):
            storage.pattern_rules.set_state(999, RuleState.INACTIVE)

import pytest
from datetime import date
from decimal import Decimal

from spice.classification.matcher import RuleMatcher
from spice.classification.rules import PatternRuleMatcher, amount_condition_holds
from spice.domain.enums import AmountCondition, Direction, RuleKind, RuleState
from spice.domain.models import CheckPattern, PatternRule, VendorRule


@pytest.fixture
def rent_pattern() -> CheckPattern:
    return CheckPattern(
        id=1,
        name="rent",
        category="Rent",
        amount_min=Decimal("1400"),
        amount_max=Decimal("1600"),
        day_min=1,
        day_max=5,
        confidence_boost=0.85,
    )


@pytest.mark.unit
class TestVendorRules:

    def test_exact_match_is_case_insensitive(self, make_txn):
        matcher = RuleMatcher(vendor_rules=[VendorRule(id=1, name="Starbucks", category="Dining")])

        best = matcher.best(make_txn(name="STARBUCKS"))

        assert best.category == "Dining"
        assert best.kind == RuleKind.VENDOR
        assert best.confidence == 1.0

    def test_regex_rule(self, make_txn):
        matcher = RuleMatcher(
            vendor_rules=[VendorRule(id=1, name=r"^amzn\b", category="Shopping", is_regex=True)]
        )

        assert matcher.best(make_txn(name="AMZN Mktp US*2K3")).category == "Shopping"
        assert matcher.best(make_txn(name="Whole Foods")) is None

    def test_exact_beats_regex(self, make_txn):
        matcher = RuleMatcher(
            vendor_rules=[
                VendorRule(id=1, name="amazon", category="Shopping", is_regex=True),
                VendorRule(id=2, name="Amazon Prime", category="Entertainment"),
            ]
        )

        candidates = matcher.match(make_txn(name="Amazon Prime"))

        assert [c.category for c in candidates] == ["Entertainment"]


@pytest.mark.unit
class TestCheckPatterns:

    def test_rent_check_early_in_month_matches(self, make_txn, rent_pattern):
        matcher = RuleMatcher(check_patterns=[rent_pattern])
        txn = make_txn(name="CHECK #1042", amount="1500.00", day=date(2025, 3, 3))

        best = matcher.best(txn)

        assert best.category == "Rent"
        assert best.confidence == 0.85
        assert best.kind == RuleKind.CHECK_PATTERN

    def test_rent_check_late_in_month_falls_through(self, make_txn, rent_pattern):
        matcher = RuleMatcher(check_patterns=[rent_pattern])
        txn = make_txn(name="CHECK #1043", amount="1500.00", day=date(2025, 3, 20))

        assert matcher.best(txn) is None

    def test_patterns_ignore_non_checks(self, make_txn, rent_pattern):
        matcher = RuleMatcher(check_patterns=[rent_pattern])
        txn = make_txn(name="Landlord transfer", amount="1500.00", day=date(2025, 3, 3))

        assert matcher.best(txn) is None

    @pytest.mark.parametrize(
        "amount, expected",
        [("100.00", True), ("200.00", True), ("150.00", True), ("99.99", False), ("200.01", False)],
    )
    def test_range_is_boundary_inclusive(self, make_txn, amount, expected):
        pattern = CheckPattern(
            id=1, name="r", category="Utilities",
            amount_min=Decimal("100.00"), amount_max=Decimal("200.00"),
        )
        matcher = RuleMatcher(check_patterns=[pattern])

        result = matcher.best(make_txn(name="CHK 55", amount=amount))

        assert (result is not None) is expected

    def test_amount_list(self, make_txn):
        pattern = CheckPattern(
            id=1, name="tutor", category="Education",
            amounts=[Decimal("80.00"), Decimal("120.00")],
        )
        matcher = RuleMatcher(check_patterns=[pattern])

        assert matcher.best(make_txn(name="CHK 1", amount="120.00")) is not None
        assert matcher.best(make_txn(name="CHK 2", amount="100.00")) is None

    def test_ambiguous_checks_return_every_match(self, make_txn, rent_pattern):
        other = CheckPattern(
            id=2, name="storage", category="Housing",
            amount_min=Decimal("1000"), amount_max=Decimal("2000"), confidence_boost=0.6,
        )
        matcher = RuleMatcher(check_patterns=[other, rent_pattern])
        txn = make_txn(name="CHECK #7", amount="1500.00", day=date(2025, 3, 2))

        candidates = matcher.match(txn)

        assert [c.category for c in candidates] == ["Rent", "Housing"]

    def test_inactive_patterns_are_skipped(self, make_txn, rent_pattern):
        rent_pattern.state = RuleState.INACTIVE
        matcher = RuleMatcher(check_patterns=[rent_pattern])

        assert matcher.best(make_txn(name="CHK 9", amount="1500", day=date(2025, 3, 2))) is None


@pytest.mark.unit
class TestPatternRules:

    def test_higher_priority_wins(self, make_txn):
        low = PatternRule(id=1, name="low", category="Shopping", merchant_pattern="amazon",
                          is_regex=True, priority=5, confidence=0.9)
        high = PatternRule(id=2, name="high", category="Groceries", merchant_pattern="amazon",
                           is_regex=True, priority=10, confidence=0.7)
        matcher = RuleMatcher(pattern_rules=[low, high])

        best = matcher.best(make_txn(name="Amazon Fresh"))

        assert best.category == "Groceries"
        assert best.priority == 10

    def test_equal_priority_prefers_confidence_then_id(self, make_txn):
        a = PatternRule(id=7, name="a", category="A", priority=1, confidence=0.8)
        b = PatternRule(id=3, name="b", category="B", priority=1, confidence=0.8)
        c = PatternRule(id=9, name="c", category="C", priority=1, confidence=0.9)
        matcher = RuleMatcher(pattern_rules=[a, b, c])

        assert [x.category for x in matcher.match(make_txn())] == ["C", "B", "A"]

    def test_matching_is_deterministic(self, make_txn):
        rules = [
            PatternRule(id=i, name=f"r{i}", category=f"C{i % 3}", priority=i % 2, confidence=0.5)
            for i in range(1, 8)
        ]
        matcher = RuleMatcher(pattern_rules=rules)
        txn = make_txn()

        first = matcher.match(txn)

        assert all(matcher.match(txn) == first for _ in range(20))

    def test_exact_merchant_is_case_insensitive(self, make_txn):
        rule = PatternRule(id=1, name="r", category="Dining", merchant_pattern="blue bottle")
        matcher = PatternRuleMatcher([rule])

        assert matcher.match(make_txn(name="BLUE BOTTLE"))
        assert not matcher.match(make_txn(name="Blue Bottle Coffee"))

    def test_direction_filter(self, make_txn):
        rule = PatternRule(id=1, name="pay", category="Salary", direction=Direction.INCOME)
        matcher = PatternRuleMatcher([rule])

        assert matcher.match(make_txn(direction=Direction.INCOME))
        assert not matcher.match(make_txn(direction=Direction.EXPENSE))
        assert not matcher.match(make_txn(direction=None))


@pytest.mark.unit
class TestRuleKindOrdering:

    def test_vendor_beats_check_beats_pattern(self, make_txn, rent_pattern):
        matcher = RuleMatcher(
            vendor_rules=[VendorRule(id=1, name="CHECK #1042", category="Transfer")],
            check_patterns=[rent_pattern],
            pattern_rules=[PatternRule(id=1, name="any", category="Other", priority=100,
                                       confidence=1.0)],
        )
        txn = make_txn(name="CHECK #1042", amount="1500.00", day=date(2025, 3, 3))

        kinds = [c.kind for c in matcher.match(txn)]

        assert kinds == [RuleKind.VENDOR, RuleKind.CHECK_PATTERN, RuleKind.PATTERN_RULE]


@pytest.mark.unit
class TestAmountConditions:

    @pytest.mark.parametrize(
        "condition, value, amount, expected",
        [
            (AmountCondition.LT, "100", "99.99", True),
            (AmountCondition.LT, "100", "100", False),
            (AmountCondition.LE, "100", "100", True),
            (AmountCondition.EQ, "100", "100.00", True),
            (AmountCondition.EQ, "100", "100.01", False),
            (AmountCondition.GE, "100", "100", True),
            (AmountCondition.GT, "100", "100", False),
            (AmountCondition.GT, "100", "100.01", True),
            (AmountCondition.ANY, None, "0", True),
        ],
    )
    def test_single_threshold(self, condition, value, amount, expected):
        rule = PatternRule(
            name="r", category="X", amount_condition=condition,
            amount_value=Decimal(value) if value else None,
        )

        assert amount_condition_holds(rule, Decimal(amount)) is expected

    @pytest.mark.parametrize(
        "low, high, amount, expected",
        [
            ("10", None, "1000000", True),
            ("10", None, "9.99", False),
            (None, "50", "0", True),
            (None, "50", "50.01", False),
        ],
    )
    def test_open_ended_range(self, low, high, amount, expected):
        rule = PatternRule(
            name="r", category="X", amount_condition=AmountCondition.RANGE,
            amount_min=Decimal(low) if low else None,
            amount_max=Decimal(high) if high else None,
        )

        assert amount_condition_holds(rule, Decimal(amount)) is expected

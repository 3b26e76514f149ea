import re
from decimal import Decimal
from typing import Dict, List, Optional

from spice.classification.base import RuleSetMatcher
from spice.classification.models import Candidate
from spice.domain.enums import AmountCondition, RuleKind
from spice.domain.models import CheckPattern, PatternRule, Transaction, VendorRule

VENDOR_RULE_CONFIDENCE = 1.0


class VendorRuleMatcher(RuleSetMatcher[VendorRule]):
    """
    Learned merchant -> category rules.

    Exact names are looked up case-insensitively first; regex rules are
    then tried in stored order. At most one rule matches.

    Example:
        ```
        matcher = VendorRuleMatcher([
            VendorRule(name="Starbucks", category="Dining"),
            VendorRule(name=r"^AMZN", category="Shopping", is_regex=True),
        ])
        ```
    """

    kind = RuleKind.VENDOR

    def __init__(self, rules: List[VendorRule]):
        super().__init__(rules)

        self._exact: Dict[str, VendorRule] = {}
        self._regex: List[tuple[re.Pattern, VendorRule]] = []
        for rule in self.rules:
            if rule.is_regex:
                self._regex.append((re.compile(rule.name, re.IGNORECASE), rule))
            else:
                self._exact.setdefault(rule.name.strip().lower(), rule)

    def _find(self, transaction: Transaction) -> Optional[VendorRule]:
        merchant = transaction.merchant
        rule = self._exact.get(merchant.lower())
        if rule is not None:
            return rule

        for pattern, rule in self._regex:
            if pattern.search(merchant):
                return rule

        return None

    def match(self, transaction: Transaction) -> List[Candidate]:
        rule = self._find(transaction)
        if rule is None:
            return []
        return [self._to_candidate(rule)]

    def _matches(self, rule: VendorRule, transaction: Transaction) -> bool:
        return self._find(transaction) is rule

    def _to_candidate(self, rule: VendorRule) -> Candidate:
        return Candidate(
            category=rule.category,
            confidence=VENDOR_RULE_CONFIDENCE,
            kind=self.kind,
            rule_id=rule.id,
            rule_name=rule.name,
            use_count=rule.use_count,
        )

    def __repr__(self):
        return f"VendorRuleMatcher({len(self._exact)} exact, {len(self._regex)} regex)"


class CheckPatternMatcher(RuleSetMatcher[CheckPattern]):
    """
    Amount and day-of-month rules, consulted for paper checks only.

    Several patterns may match the same check; all of them are returned.
    """

    kind = RuleKind.CHECK_PATTERN

    def applies_to(self, transaction: Transaction) -> bool:
        return transaction.is_check

    def _matches(self, pattern: CheckPattern, transaction: Transaction) -> bool:
        if not pattern.is_active:
            return False
        return self._amount_matches(pattern, transaction.amount) and self._day_matches(
            pattern, transaction.date.day
        )

    @staticmethod
    def _amount_matches(pattern: CheckPattern, amount: Decimal) -> bool:
        if pattern.amount is not None:
            return amount == pattern.amount

        if pattern.amounts:
            return amount in pattern.amounts

        if pattern.amount_min is not None and amount < pattern.amount_min:
            return False
        if pattern.amount_max is not None and amount > pattern.amount_max:
            return False
        return True

    @staticmethod
    def _day_matches(pattern: CheckPattern, day: int) -> bool:
        if pattern.day_min is not None and day < pattern.day_min:
            return False
        if pattern.day_max is not None and day > pattern.day_max:
            return False
        return True

    def _to_candidate(self, pattern: CheckPattern) -> Candidate:
        return Candidate(
            category=pattern.category,
            confidence=pattern.confidence_boost,
            kind=self.kind,
            rule_id=pattern.id,
            rule_name=pattern.name,
            use_count=pattern.use_count,
        )


class PatternRuleMatcher(RuleSetMatcher[PatternRule]):
    """
    General conditional rules over merchant, amount and direction.

    Merchant patterns are compiled once here, not per transaction.
    """

    kind = RuleKind.PATTERN_RULE

    def __init__(self, rules: List[PatternRule]):
        super().__init__(rules)

        self._compiled: Dict[int, re.Pattern] = {}
        for index, rule in enumerate(self.rules):
            if rule.is_regex and rule.merchant_pattern:
                self._compiled[index] = re.compile(rule.merchant_pattern, re.IGNORECASE)

    def match(self, transaction: Transaction) -> List[Candidate]:
        return [
            self._to_candidate(rule)
            for index, rule in enumerate(self.rules)
            if self._matches_at(index, rule, transaction)
        ]

    def _matches(self, rule: PatternRule, transaction: Transaction) -> bool:
        return self._matches_at(self.rules.index(rule), rule, transaction)

    def _matches_at(self, index: int, rule: PatternRule, transaction: Transaction) -> bool:
        if not rule.is_active:
            return False

        if rule.merchant_pattern:
            merchant = transaction.merchant
            if rule.is_regex:
                if not self._compiled[index].search(merchant):
                    return False
            elif merchant.lower() != rule.merchant_pattern.strip().lower():
                return False

        if not amount_condition_holds(rule, transaction.amount):
            return False

        if rule.direction is not None and transaction.direction != rule.direction:
            return False

        return True

    def _to_candidate(self, rule: PatternRule) -> Candidate:
        return Candidate(
            category=rule.category,
            confidence=rule.confidence,
            kind=self.kind,
            rule_id=rule.id,
            rule_name=rule.name,
            priority=rule.priority,
            use_count=rule.use_count,
        )


def amount_condition_holds(rule: PatternRule, amount: Decimal) -> bool:
    """
    Evaluate a pattern rule's amount comparator.

    For `range` an absent bound is unbounded on that side.
    """
    condition = rule.amount_condition
    value = rule.amount_value

    if condition == AmountCondition.ANY:
        return True
    if condition == AmountCondition.LT:
        return amount < value
    if condition == AmountCondition.LE:
        return amount <= value
    if condition == AmountCondition.EQ:
        return amount == value
    if condition == AmountCondition.GE:
        return amount >= value
    if condition == AmountCondition.GT:
        return amount > value
    if condition == AmountCondition.RANGE:
        if rule.amount_min is not None and amount < rule.amount_min:
            return False
        if rule.amount_max is not None and amount > rule.amount_max:
            return False
        return True

    raise ValueError(f"Unknown amount condition: {condition}")

import threading
from typing import List, Optional

from spice.classification.models import Candidate
from spice.classification.rules import (
    CheckPatternMatcher,
    PatternRuleMatcher,
    VendorRuleMatcher,
)
from spice.domain.enums import RuleKind
from spice.domain.models import CheckPattern, PatternRule, Transaction, VendorRule
from spice.logger import get_logger
from spice.repositories.storage import Storage

logger = get_logger(__name__)


class RuleMatcher:
    """
    Combines vendor rules, check patterns and pattern rules.

    Candidates are ordered by rule kind (vendor, check pattern, pattern
    rule), then priority, confidence and use count, all descending. The
    first candidate is the rule-based classification.

    A matcher is a snapshot of the rule stores; call refresh() after rules
    change. Refresh swaps the whole snapshot at once so concurrent
    match() calls always see a consistent rule set.
    """

    def __init__(
        self,
        vendor_rules: Optional[List[VendorRule]] = None,
        check_patterns: Optional[List[CheckPattern]] = None,
        pattern_rules: Optional[List[PatternRule]] = None,
    ):
        self._lock = threading.Lock()
        self._matchers = self._build(vendor_rules or [], check_patterns or [], pattern_rules or [])

    @classmethod
    def from_storage(cls, storage: Storage) -> "RuleMatcher":
        matcher = cls()
        matcher.refresh(storage)
        return matcher

    @staticmethod
    def _build(vendor_rules, check_patterns, pattern_rules):
        return (
            VendorRuleMatcher(vendor_rules),
            CheckPatternMatcher([p for p in check_patterns if p.is_active]),
            PatternRuleMatcher([r for r in pattern_rules if r.is_active]),
        )

    def refresh(self, storage: Storage) -> None:
        """Reload every rule from storage and recompile regexes."""
        matchers = self._build(
            storage.vendor_rules.get_all(),
            storage.check_patterns.get_all(active_only=True),
            storage.pattern_rules.get_all(active_only=True),
        )
        with self._lock:
            self._matchers = matchers
        logger.debug("Rule matcher refreshed: %s", ", ".join(repr(m) for m in matchers))

    def match(self, transaction: Transaction) -> List[Candidate]:
        """
        All rule candidates for the transaction, best first.

        Repeated calls with the same rules and transaction return equal lists.
        """
        with self._lock:
            matchers = self._matchers

        candidates: List[Candidate] = []
        for matcher in matchers:
            candidates.extend(matcher.match(transaction))

        check_hits = [c for c in candidates if c.kind == RuleKind.CHECK_PATTERN]
        if len(check_hits) > 1:
            logger.debug(
                "Ambiguous check %s matches %d patterns: %s",
                transaction.id,
                len(check_hits),
                ", ".join(c.rule_name for c in check_hits),
            )

        return sorted(candidates, key=lambda c: c.sort_key)

    def best(self, transaction: Transaction) -> Optional[Candidate]:
        """Highest-ranked candidate, or None when no rule applies"""
        candidates = self.match(transaction)
        return candidates[0] if candidates else None

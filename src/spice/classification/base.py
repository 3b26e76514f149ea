from abc import ABC, abstractmethod
from typing import Generic, List, TypeVar

from spice.classification.models import Candidate
from spice.domain.enums import RuleKind
from spice.domain.models import Transaction

R = TypeVar("R")


class RuleSetMatcher(ABC, Generic[R]):
    """
    Abstract base class for the matchers of one rule kind.

    Each matcher holds an immutable snapshot of its rules and evaluates
    them against one transaction at a time:
    - _matches decides whether a single rule applies
    - _to_candidate turns a matching rule into a Candidate

    Usage:
        ```
        matcher = PatternRuleMatcher(storage.pattern_rules.get_all())
        candidates = matcher.match(transaction)
        ```
    """

    kind: RuleKind

    def __init__(self, rules: List[R]):
        self.rules = list(rules)

    @abstractmethod
    def _matches(self, rule: R, transaction: Transaction) -> bool:
        """
        Check if this rule applies to the transaction.

        Args:
            rule: One rule of this matcher's kind
            transaction: Transaction to check

        Returns:
            True if the rule's conditions all hold
        """
        pass

    @abstractmethod
    def _to_candidate(self, rule: R) -> Candidate:
        """
        Build the candidate for a rule that matched.

        Called only if _matches() returns True.
        """
        pass

    def applies_to(self, transaction: Transaction) -> bool:
        """Whether this matcher should look at the transaction at all"""
        return True

    def match(self, transaction: Transaction) -> List[Candidate]:
        """
        Evaluate every rule against the transaction.

        Returns:
            Candidates for all matching rules, in rule order
        """
        if not self.applies_to(transaction):
            return []

        return [
            self._to_candidate(rule)
            for rule in self.rules
            if self._matches(rule, transaction)
        ]

    def __repr__(self):
        return f"{self.__class__.__name__}({len(self.rules)} rules)"

"""
Classification DTOs.

These are request-scoped values passed between the matcher, the engines,
the classifier and the prompter. They are never persisted directly.
"""
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from spice.domain.enums import PromptAction, RuleKind
from spice.domain.models import Transaction

_WHITESPACE = re.compile(r"\s+")


def merchant_signature(transaction: Transaction) -> str:
    """Grouping key: merchant (else raw name), trimmed, case-folded, single-spaced"""
    return _WHITESPACE.sub(" ", transaction.merchant).strip().casefold()


@dataclass(frozen=True)
class Candidate:
    """A rule-based classification proposal for one transaction"""
    category: str
    confidence: float
    kind: RuleKind
    rule_id: Optional[int]
    rule_name: str
    priority: int = 0
    use_count: int = 0

    @property
    def sort_key(self) -> Tuple[int, int, float, int, int]:
        # Rule kind, then priority, confidence, use count; rule id keeps ties stable
        return (
            self.kind.rank,
            -self.priority,
            -self.confidence,
            -self.use_count,
            self.rule_id if self.rule_id is not None else 0,
        )


@dataclass
class Suggestion:
    """What the classifier proposes for a transaction or merchant group"""
    category: str
    confidence: float
    reasoning: str = ""
    is_new: bool = False
    description: str = ""


@dataclass
class MerchantGroup:
    """All transactions sharing one merchant signature"""
    signature: str
    transactions: List[Transaction] = field(default_factory=list)

    @property
    def merchant(self) -> str:
        return self.transactions[0].merchant if self.transactions else self.signature

    @property
    def sample(self) -> Transaction:
        return self.transactions[0]

    @property
    def total_amount(self) -> Decimal:
        return sum((t.amount for t in self.transactions), Decimal("0"))

    def __len__(self) -> int:
        return len(self.transactions)


@dataclass
class PendingClassification:
    """A suggestion waiting for a human decision"""
    transactions: List[Transaction]
    suggestion: Suggestion

    @property
    def merchant(self) -> str:
        return self.transactions[0].merchant

    @property
    def total_amount(self) -> Decimal:
        return sum((t.amount for t in self.transactions), Decimal("0"))


@dataclass
class PromptResult:
    action: PromptAction
    category: Optional[str] = None
    description: str = ""


@dataclass
class CompletionStats:
    total_processed: int = 0
    auto_classified: int = 0
    user_classified: int = 0
    duration: timedelta = timedelta(0)


@dataclass
class RunSummary:
    """Outcome of a sequential classification run"""
    processed: int = 0
    rule_matched: int = 0
    accepted: int = 0
    edited: int = 0
    rejected: int = 0
    skipped: int = 0
    last_date: Optional[date] = None
    cancelled: bool = False

import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from spice.domain.enums import (
    AmountCondition,
    CategoryType,
    ClassificationStatus,
    Direction,
    RuleState,
    VendorSource,
)

# "CHECK #1234", "CHK 1234", "Check 1234 paid"
CHECK_NAME_PATTERN = re.compile(r"\b(?:check|chk)\b\s*#?\s*\d+", re.IGNORECASE)


@dataclass(frozen=True)
class Transaction:
    """A single bank movement. Never mutated once imported."""
    id: str
    date: date
    name: str
    amount: Decimal
    account_id: str
    merchant_name: Optional[str] = None
    direction: Optional[Direction] = None
    check_number: Optional[str] = None
    provider_category: Optional[str] = None

    @property
    def merchant(self) -> str:
        """Cleaned merchant name, falling back to the raw name"""
        return (self.merchant_name or self.name).strip()

    @property
    def is_check(self) -> bool:
        """True for paper checks"""
        if self.check_number:
            return True
        return bool(CHECK_NAME_PATTERN.search(self.name))

    def generate_hash(self) -> str:
        """Content hash used for duplicate detection on import"""
        data = f"{self.date.isoformat()}:{self.amount:.2f}:{self.merchant}:{self.account_id}"
        return hashlib.sha256(data.encode()).hexdigest()

    def __repr__(self):
        return f"Transaction({self.id}, {self.date}, {self.name[:30]}, ${self.amount})"


@dataclass
class Classification:
    """
    Categorization outcome for one transaction.

    Rule and AI classifications always carry a confidence; user modified
    ones are pinned to 1.0.
    """
    transaction_id: str
    category: str
    status: ClassificationStatus
    confidence: float = 0.0
    classified_at: datetime = field(default_factory=datetime.now)
    notes: str = ""

    def __post_init__(self):
        if self.status == ClassificationStatus.USER_MODIFIED:
            self.confidence = 1.0
        if self.confidence is None or not 0.0 <= self.confidence <= 1.0:
            raise ValueError(
                f"Confidence must be between 0 and 1, got {self.confidence}"
            )


@dataclass
class VendorRule:
    """Learned merchant -> category mapping"""
    name: str
    category: str
    source: VendorSource = VendorSource.AUTO
    use_count: int = 0
    is_regex: bool = False
    last_updated: datetime = field(default_factory=datetime.now)
    id: Optional[int] = None

    def promote(self) -> None:
        """An edited AUTO rule becomes AUTO_CONFIRMED. MANUAL stays MANUAL."""
        if self.source == VendorSource.AUTO:
            self.source = VendorSource.AUTO_CONFIRMED


@dataclass
class CheckPattern:
    """
    Classification rule for paper checks.

    Amount is given as exactly one of: a single amount, a closed range
    (either bound may be open) or an explicit list of allowed amounts.
    """
    name: str
    category: str
    amount: Optional[Decimal] = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    amounts: List[Decimal] = field(default_factory=list)
    day_min: Optional[int] = None
    day_max: Optional[int] = None
    confidence_boost: float = 0.3
    use_count: int = 0
    state: RuleState = RuleState.ACTIVE
    notes: str = ""
    id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        return self.state == RuleState.ACTIVE

    def validate(self) -> None:
        """
        Raise ValueError when the pattern can't be stored.
        """
        if not self.name:
            raise ValueError("pattern name is required")
        if not self.category:
            raise ValueError("category is required")

        has_range = self.amount_min is not None or self.amount_max is not None
        forms = sum([self.amount is not None, has_range, bool(self.amounts)])
        if forms > 1:
            raise ValueError(
                "specify only one of: a single amount, an amount range or a list of amounts"
            )

        for i, amount in enumerate(self.amounts):
            if amount <= 0:
                raise ValueError(f"amount at index {i} must be positive")

        if (
            self.amount_min is not None
            and self.amount_max is not None
            and self.amount_min > self.amount_max
        ):
            raise ValueError("amount min must be less than or equal to amount max")

        for label, day in (("min", self.day_min), ("max", self.day_max)):
            if day is not None and not 1 <= day <= 31:
                raise ValueError(f"day of month {label} must be between 1 and 31")

        if (
            self.day_min is not None
            and self.day_max is not None
            and self.day_min > self.day_max
        ):
            raise ValueError("day of month min must be less than or equal to day of month max")

        if not 0.0 <= self.confidence_boost <= 1.0:
            raise ValueError("confidence boost must be between 0 and 1")


@dataclass
class PatternRule:
    """General conditional rule over merchant, amount and direction"""
    name: str
    category: str
    merchant_pattern: str = ""
    is_regex: bool = False
    amount_condition: AmountCondition = AmountCondition.ANY
    amount_value: Optional[Decimal] = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    direction: Optional[Direction] = None
    confidence: float = 0.8
    priority: int = 0
    state: RuleState = RuleState.ACTIVE
    use_count: int = 0
    description: str = ""
    id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        return self.state == RuleState.ACTIVE

    def validate(self) -> None:
        if not self.name:
            raise ValueError("pattern name is required")
        if not self.category:
            raise ValueError("category is required")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be between 0 and 1")
        if self.priority < 0:
            raise ValueError("priority must be non-negative")

        single = (
            AmountCondition.LT,
            AmountCondition.LE,
            AmountCondition.EQ,
            AmountCondition.GE,
            AmountCondition.GT,
        )
        if self.amount_condition in single and self.amount_value is None:
            raise ValueError(
                f"amount condition '{self.amount_condition.value}' requires an amount value"
            )
        if self.amount_condition == AmountCondition.RANGE:
            if self.amount_min is None and self.amount_max is None:
                raise ValueError("range condition requires a min and/or max amount")
            if (
                self.amount_min is not None
                and self.amount_max is not None
                and self.amount_min > self.amount_max
            ):
                raise ValueError("amount min must be less than or equal to amount max")

        if self.is_regex and self.merchant_pattern:
            try:
                re.compile(self.merchant_pattern)
            except re.error as e:
                raise ValueError(f"invalid merchant regex: {e}") from e


@dataclass
class Category:
    name: str
    description: str = ""
    type: CategoryType = CategoryType.EXPENSE
    is_active: bool = True
    id: Optional[int] = None

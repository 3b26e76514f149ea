from enum import Enum


class Direction(Enum):
    """Which way money moved"""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class ClassificationStatus(Enum):
    """How a transaction ended up in its category"""
    UNCLASSIFIED = "unclassified"
    CLASSIFIED_BY_RULE = "classified_by_rule"
    CLASSIFIED_BY_AI = "classified_by_ai"
    USER_MODIFIED = "user_modified"


class VendorSource(Enum):
    """
    Trust ladder for vendor rules.

    AUTO rules come from a single accepted AI suggestion. Editing one
    promotes it to AUTO_CONFIRMED. MANUAL rules were typed in by the user.
    """
    MANUAL = "manual"
    AUTO = "auto"
    AUTO_CONFIRMED = "auto_confirmed"


class AmountCondition(Enum):
    ANY = "any"
    LT = "lt"
    LE = "le"
    EQ = "eq"
    GE = "ge"
    GT = "gt"
    RANGE = "range"


class RuleState(Enum):
    """Lifecycle of check patterns and pattern rules. Rows are never removed."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class RuleKind(Enum):
    """Source of a rule-based candidate, ordered from most to least trusted"""
    VENDOR = "vendor"
    CHECK_PATTERN = "check_pattern"
    PATTERN_RULE = "pattern_rule"

    @property
    def rank(self) -> int:
        return _RULE_KIND_RANK[self]


_RULE_KIND_RANK = {
    RuleKind.VENDOR: 0,
    RuleKind.CHECK_PATTERN: 1,
    RuleKind.PATTERN_RULE: 2,
}


class CategoryType(Enum):
    INCOME = "income"
    EXPENSE = "expense"
    SYSTEM = "system"


class PromptAction(Enum):
    """What the user did with a suggested classification"""
    ACCEPT = "accept"
    EDIT = "edit"
    REJECT = "reject"

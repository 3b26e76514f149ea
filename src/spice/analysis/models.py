"""
Analysis models.

Reports come back from the AI as JSON, so they are pydantic models and
validated on the way in. Sessions and options are internal and stay
plain dataclasses.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from spice.domain.enums import AmountCondition, Direction


class SessionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class Focus(str, Enum):
    COHERENCE = "coherence"
    PATTERNS = "patterns"
    CATEGORIES = "categories"
    ALL = "all"


class IssueType(str, Enum):
    MISCATEGORIZED = "miscategorized"
    INCONSISTENT = "inconsistent"
    MISSING_PATTERN = "missing_pattern"
    DUPLICATE_PATTERN = "duplicate_pattern"
    AMBIGUOUS_VENDOR = "ambiguous_vendor"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def order(self) -> int:
        """Lower is more severe"""
        return [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW].index(self)


class FixType(str, Enum):
    UPDATE_CATEGORY = "update_category"
    CREATE_PATTERN_RULE = "create_pattern_rule"
    CREATE_VENDOR_RULE = "create_vendor_rule"


_REQUIRED_FIX_DATA = {
    FixType.UPDATE_CATEGORY: ("transaction_ids", "category"),
    FixType.CREATE_PATTERN_RULE: ("name", "category"),
    FixType.CREATE_VENDOR_RULE: ("merchant", "category"),
}


class Fix(BaseModel):
    id: str = Field(min_length=1)
    issue_id: str = ""
    type: FixType
    description: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_data(self) -> "Fix":
        missing = [key for key in _REQUIRED_FIX_DATA[self.type] if not self.data.get(key)]
        if missing:
            raise ValueError(f"{self.type.value} fix is missing data: {', '.join(missing)}")
        return self


class Issue(BaseModel):
    id: str = Field(min_length=1)
    type: IssueType
    severity: Severity
    description: str = Field(min_length=1)
    transaction_ids: List[str] = Field(default_factory=list)
    affected_count: int = Field(default=0, ge=0)
    confidence: float = Field(ge=0.0, le=1.0)
    current_category: Optional[str] = None
    suggested_category: Optional[str] = None
    fix: Optional[Fix] = None

    @model_validator(mode="after")
    def _check_affected(self) -> "Issue":
        if self.affected_count > 0 and not self.transaction_ids:
            raise ValueError("transaction_ids required when affected_count > 0")
        return self


class SuggestedPatternRule(BaseModel):
    name: str = Field(min_length=1)
    category: str = Field(min_length=1)
    merchant_pattern: str = ""
    is_regex: bool = False
    amount_condition: AmountCondition = AmountCondition.ANY
    amount_value: Optional[float] = None
    amount_min: Optional[float] = None
    amount_max: Optional[float] = None
    direction: Optional[Direction] = None
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    priority: int = Field(default=0, ge=0)


class SuggestedPattern(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    impact: str = ""
    example_txn_ids: List[str] = Field(default_factory=list)
    pattern: SuggestedPatternRule
    match_count: int = Field(default=0, ge=0)
    confidence: float = Field(ge=0.0, le=1.0)


class CategoryStat(BaseModel):
    category: str
    transaction_count: int = Field(default=0, ge=0)
    total_amount: float = 0.0
    consistency: float = Field(default=1.0, ge=0.0, le=1.0)
    issues: int = Field(default=0, ge=0)


class Report(BaseModel):
    id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    generated_at: datetime
    period_start: date
    period_end: date
    coherence_score: float = Field(ge=0.0, le=1.0)
    issues: List[Issue] = Field(default_factory=list)
    suggested_patterns: List[SuggestedPattern] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    category_summary: Dict[str, CategoryStat] = Field(default_factory=dict)

    def issues_by_severity(self, severity: Severity) -> List[Issue]:
        return [i for i in self.issues if i.severity == severity]

    def issues_by_type(self, issue_type: IssueType) -> List[Issue]:
        return [i for i in self.issues if i.type == issue_type]

    @property
    def fixes(self) -> List[Fix]:
        return [i.fix for i in self.issues if i.fix is not None]

    @property
    def has_actionable_issues(self) -> bool:
        return any(i.fix is not None for i in self.issues)


@dataclass
class AnalysisOptions:
    start_date: date
    end_date: date
    focus: Focus = Focus.ALL
    max_issues: int = 50
    dry_run: bool = False
    auto_apply: bool = False
    session_id: Optional[str] = None

    def validate(self) -> None:
        if self.end_date < self.start_date:
            raise ValueError("end date must be on or after start date")
        if self.max_issues < 0:
            raise ValueError("max issues must be non-negative")


@dataclass
class Session:
    id: str
    status: SessionStatus = SessionStatus.PENDING
    focus: Focus = Focus.ALL
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    attempts: int = 0
    issue_count: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None


@dataclass
class FixResult:
    fix_id: str
    success: bool
    already_applied: bool = False
    message: str = ""


@dataclass
class PreviewChange:
    transaction_id: str
    field_name: str
    old_value: str
    new_value: str


@dataclass
class FixPreview:
    fix_id: str
    affected_count: int
    changes: List[PreviewChange] = field(default_factory=list)

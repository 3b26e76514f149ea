import hashlib
import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from spice.analysis.models import Fix, FixPreview, FixResult, FixType, PreviewChange
from spice.classification.matcher import RuleMatcher
from spice.classification.rules import PatternRuleMatcher
from spice.domain.enums import AmountCondition, ClassificationStatus, Direction, VendorSource
from spice.domain.models import Classification, PatternRule, VendorRule
from spice.logger import get_logger
from spice.repositories.base import (
    CategoryNotFoundError,
    StorageError,
    TransactionNotFoundError,
)
from spice.repositories.storage import Storage

logger = get_logger(__name__)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"invalid amount {value!r}") from e


def fix_key(fix: Fix) -> str:
    """Identity of a fix by what it does, independent of its id"""
    data = json.dumps(
        {"type": fix.type.value, "data": fix.data}, sort_keys=True, default=str
    )
    return hashlib.sha256(data.encode()).hexdigest()


class FixApplier:
    """
    Applies analysis fixes, each in its own database transaction.

    A fix is recorded in `applied_fixes` inside the same transaction that
    applies it, keyed by session and by the fix's type and data. Applying
    the same fix again in that session is a no-op that still reports
    success; a different fix that happens to reuse an id is applied. One
    failing fix never stops the others.
    """

    def __init__(self, storage: Storage, matcher: Optional[RuleMatcher] = None):
        self.storage = storage
        self.matcher = matcher

    def apply(self, fixes: List[Fix], session_id: Optional[str] = None) -> List[FixResult]:
        results = []
        changed_rules = False

        for fix in fixes:
            if self.is_applied(fix, session_id):
                results.append(
                    FixResult(fix.id, success=True, already_applied=True, message="already applied")
                )
                continue

            try:
                with self.storage.db.transaction() as conn:
                    message = self._apply_one(fix)
                    conn.execute(
                        """
                        INSERT INTO applied_fixes (
                            session_id, fix_key, fix_id, fix_type, payload, applied_at
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            session_id or "",
                            fix_key(fix),
                            fix.id,
                            fix.type.value,
                            json.dumps(fix.data, default=str),
                            datetime.now().isoformat(),
                        ),
                    )
            except (StorageError, ValueError) as e:
                logger.warning("Fix %s failed: %s", fix.id, e)
                results.append(FixResult(fix.id, success=False, message=str(e)))
                continue

            if fix.type != FixType.UPDATE_CATEGORY:
                changed_rules = True
            results.append(FixResult(fix.id, success=True, message=message))

        if changed_rules and self.matcher is not None:
            self.matcher.refresh(self.storage)

        return results

    def is_applied(self, fix: Fix, session_id: Optional[str] = None) -> bool:
        row = self.storage.db.fetch_one(
            "SELECT 1 FROM applied_fixes WHERE session_id = ? AND fix_key = ?",
            (session_id or "", fix_key(fix)),
        )
        return row is not None

    def _apply_one(self, fix: Fix) -> str:
        if fix.type == FixType.UPDATE_CATEGORY:
            return self._update_category(fix)
        if fix.type == FixType.CREATE_PATTERN_RULE:
            return self._create_pattern_rule(fix)
        if fix.type == FixType.CREATE_VENDOR_RULE:
            return self._create_vendor_rule(fix)
        raise ValueError(f"unknown fix type: {fix.type}")

    def _require_category(self, name: str) -> None:
        if self.storage.categories.get_by_name(name) is None:
            raise CategoryNotFoundError(f"category '{name}' does not exist")

    def _update_category(self, fix: Fix) -> str:
        category = fix.data["category"]
        self._require_category(category)

        now = datetime.now()
        ids = list(fix.data["transaction_ids"])
        for txn_id in ids:
            if self.storage.transactions.get_by_id(txn_id) is None:
                raise TransactionNotFoundError(f"transaction '{txn_id}' not found")
            self.storage.classifications.save(
                Classification(
                    transaction_id=txn_id,
                    category=category,
                    status=ClassificationStatus.USER_MODIFIED,
                    classified_at=now,
                    notes=f"analysis fix {fix.id}",
                )
            )
        return f"moved {len(ids)} transactions to {category}"

    def _create_vendor_rule(self, fix: Fix) -> str:
        merchant = fix.data["merchant"]
        category = fix.data["category"]
        self._require_category(category)

        rule = self.storage.vendor_rules.get_by_name(merchant)
        if rule is None:
            rule = VendorRule(name=merchant, category=category, source=VendorSource.AUTO_CONFIRMED)
        else:
            rule.category = category
            rule.promote()
        self.storage.vendor_rules.save(rule)
        return f"vendor rule {merchant} -> {category}"

    def _create_pattern_rule(self, fix: Fix) -> str:
        rule = self._pattern_from_data(fix.data)
        self._require_category(rule.category)
        self.storage.pattern_rules.add(rule)
        return f"pattern rule {rule.name} -> {rule.category}"

    @staticmethod
    def _pattern_from_data(data: Dict[str, Any]) -> PatternRule:
        direction = data.get("direction")
        return PatternRule(
            name=data["name"],
            category=data["category"],
            merchant_pattern=data.get("merchant_pattern") or "",
            is_regex=bool(data.get("is_regex", False)),
            amount_condition=AmountCondition(data.get("amount_condition") or "any"),
            amount_value=_decimal(data.get("amount_value")),
            amount_min=_decimal(data.get("amount_min")),
            amount_max=_decimal(data.get("amount_max")),
            direction=Direction(direction) if direction else None,
            confidence=float(data.get("confidence", 0.8)),
            priority=int(data.get("priority", 0)),
            description=data.get("description", ""),
        )

    def preview(self, fix: Fix) -> FixPreview:
        """What applying the fix would change, without changing anything"""
        changes: List[PreviewChange] = []

        if fix.type == FixType.UPDATE_CATEGORY:
            new = fix.data["category"]
            for txn_id in fix.data["transaction_ids"]:
                current = self.storage.classifications.get(txn_id)
                old = current.category if current else ""
                if old != new:
                    changes.append(PreviewChange(txn_id, "category", old, new))

        elif fix.type == FixType.CREATE_VENDOR_RULE:
            merchant = fix.data["merchant"].strip().lower()
            new = fix.data["category"]
            for txn, classification in self.storage.classifications.get_classified():
                if txn.merchant.lower() == merchant and classification.category != new:
                    changes.append(PreviewChange(txn.id, "category", classification.category, new))

        elif fix.type == FixType.CREATE_PATTERN_RULE:
            rule = self._pattern_from_data(fix.data)
            rule.validate()
            matcher = PatternRuleMatcher([rule])
            for txn, classification in self.storage.classifications.get_classified():
                if matcher.match(txn) and classification.category != rule.category:
                    changes.append(
                        PreviewChange(txn.id, "category", classification.category, rule.category)
                    )

        return FixPreview(fix_id=fix.id, affected_count=len(changes), changes=changes)

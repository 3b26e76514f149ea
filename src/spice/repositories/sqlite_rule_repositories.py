import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from spice.database.connection import DatabaseManager
from spice.domain.enums import AmountCondition, Direction, RuleState, VendorSource
from spice.domain.models import CheckPattern, PatternRule, VendorRule
from spice.repositories.base import (
    CheckPatternRepository,
    PatternRuleRepository,
    RuleNotFoundError,
    VendorRuleRepository,
)


def _dec_to_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _str_to_dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


class SQLiteVendorRuleRepository(VendorRuleRepository):
    """Vendor rules keyed by merchant name. Upserts never create a second row."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def get_all(self) -> List[VendorRule]:
        rows = self.db.fetch_all("SELECT * FROM vendor_rules ORDER BY id ASC")
        return [self._row_to_rule(row) for row in rows]

    def get_by_name(self, name: str) -> Optional[VendorRule]:
        row = self.db.fetch_one(
            "SELECT * FROM vendor_rules WHERE name = ?",
            (name,),
        )
        if row is None:
            return None
        return self._row_to_rule(row)

    def save(self, rule: VendorRule) -> VendorRule:
        rule.last_updated = datetime.now()

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO vendor_rules (
                    name, category, is_regex, source, use_count, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    category = excluded.category,
                    is_regex = excluded.is_regex,
                    source = excluded.source,
                    use_count = excluded.use_count,
                    last_updated = excluded.last_updated
                """,
                (
                    rule.name,
                    rule.category,
                    int(rule.is_regex),
                    rule.source.value,
                    rule.use_count,
                    rule.last_updated.isoformat(),
                ),
            )
            row = conn.execute(
                "SELECT id FROM vendor_rules WHERE name = ?", (rule.name,)
            ).fetchone()
            rule.id = row["id"]

        return rule

    def increment_use(self, name: str) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE vendor_rules
                SET use_count = use_count + 1, last_updated = ?
                WHERE name = ?
                """,
                (datetime.now().isoformat(), name),
            )
            if cursor.rowcount == 0:
                raise RuleNotFoundError(f"Vendor rule '{name}' not found")

    def delete(self, name: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM vendor_rules WHERE name = ?", (name,))
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> VendorRule:
        return VendorRule(
            id=row["id"],
            name=row["name"],
            category=row["category"],
            is_regex=bool(row["is_regex"]),
            source=VendorSource(row["source"]),
            use_count=row["use_count"],
            last_updated=datetime.fromisoformat(row["last_updated"]),
        )


class SQLiteCheckPatternRepository(CheckPatternRepository):
    """Check patterns are deactivated, never deleted."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def add(self, pattern: CheckPattern) -> CheckPattern:
        pattern.validate()
        now = datetime.now()
        pattern.created_at = now
        pattern.updated_at = now

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO check_patterns (
                    name, category, amount, amount_min, amount_max, amounts,
                    day_min, day_max, confidence_boost, use_count, state, notes,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._to_params(pattern) + (now.isoformat(), now.isoformat()),
            )
            pattern.id = cursor.lastrowid

        return pattern

    def get(self, pattern_id: int) -> Optional[CheckPattern]:
        row = self.db.fetch_one(
            "SELECT * FROM check_patterns WHERE id = ?", (pattern_id,)
        )
        if row is None:
            return None
        return self._row_to_pattern(row)

    def get_all(self, active_only: bool = True) -> List[CheckPattern]:
        query = "SELECT * FROM check_patterns"
        params = []
        if active_only:
            query += " WHERE state = ?"
            params.append(RuleState.ACTIVE.value)
        query += " ORDER BY id ASC"
        return [self._row_to_pattern(row) for row in self.db.fetch_all(query, params)]

    def update(self, pattern: CheckPattern) -> CheckPattern:
        if pattern.id is None:
            raise ValueError("Cannot update check pattern without ID")
        pattern.validate()
        pattern.updated_at = datetime.now()

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE check_patterns
                SET name = ?, category = ?, amount = ?, amount_min = ?, amount_max = ?,
                    amounts = ?, day_min = ?, day_max = ?, confidence_boost = ?,
                    use_count = ?, state = ?, notes = ?, updated_at = ?
                WHERE id = ?
                """,
                self._to_params(pattern) + (pattern.updated_at.isoformat(), pattern.id),
            )
            if cursor.rowcount == 0:
                raise RuleNotFoundError(f"Check pattern {pattern.id} not found")

        return pattern

    def set_state(self, pattern_id: int, state: RuleState) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE check_patterns SET state = ?, updated_at = ? WHERE id = ?",
                (state.value, datetime.now().isoformat(), pattern_id),
            )
            if cursor.rowcount == 0:
                raise RuleNotFoundError(f"Check pattern {pattern_id} not found")

    def increment_use(self, pattern_id: int) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE check_patterns SET use_count = use_count + 1 WHERE id = ?",
                (pattern_id,),
            )

    @staticmethod
    def _to_params(pattern: CheckPattern) -> tuple:
        return (
            pattern.name,
            pattern.category,
            _dec_to_str(pattern.amount),
            _dec_to_str(pattern.amount_min),
            _dec_to_str(pattern.amount_max),
            json.dumps([str(a) for a in pattern.amounts]) if pattern.amounts else None,
            pattern.day_min,
            pattern.day_max,
            pattern.confidence_boost,
            pattern.use_count,
            pattern.state.value,
            pattern.notes,
        )

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row) -> CheckPattern:
        return CheckPattern(
            id=row["id"],
            name=row["name"],
            category=row["category"],
            amount=_str_to_dec(row["amount"]),
            amount_min=_str_to_dec(row["amount_min"]),
            amount_max=_str_to_dec(row["amount_max"]),
            amounts=[Decimal(a) for a in json.loads(row["amounts"])] if row["amounts"] else [],
            day_min=row["day_min"],
            day_max=row["day_max"],
            confidence_boost=row["confidence_boost"],
            use_count=row["use_count"],
            state=RuleState(row["state"]),
            notes=row["notes"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class SQLitePatternRuleRepository(PatternRuleRepository):
    """Pattern rules are deactivated, never deleted."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def add(self, rule: PatternRule) -> PatternRule:
        rule.validate()
        now = datetime.now()
        rule.created_at = now
        rule.updated_at = now

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pattern_rules (
                    name, category, merchant_pattern, is_regex, amount_condition,
                    amount_value, amount_min, amount_max, direction, confidence,
                    priority, state, use_count, description, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._to_params(rule) + (now.isoformat(), now.isoformat()),
            )
            rule.id = cursor.lastrowid

        return rule

    def get(self, rule_id: int) -> Optional[PatternRule]:
        row = self.db.fetch_one("SELECT * FROM pattern_rules WHERE id = ?", (rule_id,))
        if row is None:
            return None
        return self._row_to_rule(row)

    def get_all(self, active_only: bool = True) -> List[PatternRule]:
        query = "SELECT * FROM pattern_rules"
        params = []
        if active_only:
            query += " WHERE state = ?"
            params.append(RuleState.ACTIVE.value)
        query += " ORDER BY priority DESC, id ASC"
        return [self._row_to_rule(row) for row in self.db.fetch_all(query, params)]

    def update(self, rule: PatternRule) -> PatternRule:
        if rule.id is None:
            raise ValueError("Cannot update pattern rule without ID")
        rule.validate()
        rule.updated_at = datetime.now()

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pattern_rules
                SET name = ?, category = ?, merchant_pattern = ?, is_regex = ?,
                    amount_condition = ?, amount_value = ?, amount_min = ?,
                    amount_max = ?, direction = ?, confidence = ?, priority = ?,
                    state = ?, use_count = ?, description = ?, updated_at = ?
                WHERE id = ?
                """,
                self._to_params(rule) + (rule.updated_at.isoformat(), rule.id),
            )
            if cursor.rowcount == 0:
                raise RuleNotFoundError(f"Pattern rule {rule.id} not found")

        return rule

    def set_state(self, rule_id: int, state: RuleState) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE pattern_rules SET state = ?, updated_at = ? WHERE id = ?",
                (state.value, datetime.now().isoformat(), rule_id),
            )
            if cursor.rowcount == 0:
                raise RuleNotFoundError(f"Pattern rule {rule_id} not found")

    def increment_use(self, rule_id: int) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE pattern_rules SET use_count = use_count + 1 WHERE id = ?",
                (rule_id,),
            )

    @staticmethod
    def _to_params(rule: PatternRule) -> tuple:
        return (
            rule.name,
            rule.category,
            rule.merchant_pattern,
            int(rule.is_regex),
            rule.amount_condition.value,
            _dec_to_str(rule.amount_value),
            _dec_to_str(rule.amount_min),
            _dec_to_str(rule.amount_max),
            rule.direction.value if rule.direction else None,
            rule.confidence,
            rule.priority,
            rule.state.value,
            rule.use_count,
            rule.description,
        )

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> PatternRule:
        return PatternRule(
            id=row["id"],
            name=row["name"],
            category=row["category"],
            merchant_pattern=row["merchant_pattern"],
            is_regex=bool(row["is_regex"]),
            amount_condition=AmountCondition(row["amount_condition"]),
            amount_value=_str_to_dec(row["amount_value"]),
            amount_min=_str_to_dec(row["amount_min"]),
            amount_max=_str_to_dec(row["amount_max"]),
            direction=Direction(row["direction"]) if row["direction"] else None,
            confidence=row["confidence"],
            priority=row["priority"],
            state=RuleState(row["state"]),
            use_count=row["use_count"],
            description=row["description"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

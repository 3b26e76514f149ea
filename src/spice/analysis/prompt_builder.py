import json
from collections import Counter
from typing import List, Tuple

from spice.analysis.models import AnalysisOptions, Focus
from spice.domain.models import Category, Classification, PatternRule, Transaction

# Keep the prompt bounded on large date ranges
MAX_SAMPLE_TRANSACTIONS = 200

_FOCUS_INSTRUCTIONS = {
    Focus.COHERENCE: "Look for transactions from the same merchant filed under different "
    "categories and for transactions that plainly belong elsewhere.",
    Focus.PATTERNS: "Look for recurring merchants or amounts that deserve a pattern rule "
    "and for pattern rules that duplicate each other.",
    Focus.CATEGORIES: "Look for categories that overlap, are barely used or are "
    "missing for a cluster of transactions.",
    Focus.ALL: "Review coherence, pattern coverage and category structure.",
}

_SCHEMA_HINT = """{
  "coherence_score": 0.0-1.0,
  "issues": [{
    "id": "issue-1",
    "type": "miscategorized|inconsistent|missing_pattern|duplicate_pattern|ambiguous_vendor",
    "severity": "critical|high|medium|low",
    "description": "...",
    "transaction_ids": ["..."],
    "affected_count": 1,
    "confidence": 0.0-1.0,
    "current_category": "...",
    "suggested_category": "...",
    "fix": {
      "id": "fix-1",
      "issue_id": "issue-1",
      "type": "update_category|create_pattern_rule|create_vendor_rule",
      "description": "...",
      "data": {}
    }
  }],
  "suggested_patterns": [{
    "id": "pattern-1", "name": "...", "description": "...", "impact": "...",
    "example_txn_ids": [], "match_count": 0, "confidence": 0.0-1.0,
    "pattern": {"name": "...", "category": "...", "merchant_pattern": "...",
                "is_regex": false, "amount_condition": "any"}
  }],
  "insights": ["..."]
}"""


class PromptBuilder:
    """Builds analysis and correction prompts for the classifier."""

    def build(
        self,
        options: AnalysisOptions,
        classified: List[Tuple[Transaction, Classification]],
        categories: List[Category],
        pattern_rules: List[PatternRule],
    ) -> str:
        sample = classified[:MAX_SAMPLE_TRANSACTIONS]
        usage = Counter(c.category for _, c in classified)

        lines = [
            "You are auditing a personal finance ledger for categorization problems.",
            _FOCUS_INSTRUCTIONS[options.focus],
            f"Period: {options.start_date.isoformat()} to {options.end_date.isoformat()}.",
            f"Report at most {options.max_issues} issues, most severe first.",
            "",
            "Categories (name: description, uses):",
        ]
        for category in categories:
            lines.append(f"- {category.name}: {category.description} ({usage.get(category.name, 0)})")

        lines.append("")
        lines.append("Active pattern rules:")
        if pattern_rules:
            for rule in pattern_rules:
                lines.append(
                    f"- {rule.name}: merchant={rule.merchant_pattern!r} "
                    f"amount={rule.amount_condition.value} -> {rule.category}"
                )
        else:
            lines.append("- none")

        lines.append("")
        lines.append(
            f"Transactions ({len(sample)} of {len(classified)}) as JSON lines "
            "[id, date, merchant, amount, direction, category, status, confidence]:"
        )
        for txn, classification in sample:
            lines.append(
                json.dumps(
                    [
                        txn.id,
                        txn.date.isoformat(),
                        txn.merchant,
                        str(txn.amount),
                        txn.direction.value if txn.direction else None,
                        classification.category,
                        classification.status.value,
                        round(classification.confidence, 2),
                    ]
                )
            )

        lines.append("")
        lines.append("Respond with ONLY a JSON object of this shape:")
        lines.append(_SCHEMA_HINT)
        return "\n".join(lines)

    def build_correction(self, original_prompt: str, bad_response: str, error: str) -> str:
        return "\n".join(
            [
                original_prompt,
                "",
                "Your previous response could not be used:",
                error,
                "",
                "Previous response:",
                bad_response[:4000],
                "",
                "Return the corrected JSON object only, no prose and no code fences.",
            ]
        )

from datetime import datetime
from typing import List, Optional

from spice.classification.interfaces import Classifier, ClassifierError
from spice.classification.matcher import RuleMatcher
from spice.classification.models import Candidate, PromptResult, Suggestion
from spice.domain.enums import (
    CategoryType,
    ClassificationStatus,
    PromptAction,
    RuleKind,
    VendorSource,
)
from spice.domain.models import Category, Classification, Transaction, VendorRule
from spice.logger import get_logger
from spice.repositories.storage import Storage

logger = get_logger(__name__)


class ClassificationRecorder:
    """
    Persists classification outcomes and their side effects.

    Shared by the sequential engine, batch workers and the manual review
    pass, so every path writes classifications, bumps rule use counts and
    learns vendor rules the same way.
    """

    def __init__(self, storage: Storage, matcher: RuleMatcher, classifier: Classifier):
        self.storage = storage
        self.matcher = matcher
        self.classifier = classifier

    def apply_candidate(self, transaction: Transaction, candidate: Candidate) -> Classification:
        """Save a rule hit and increment the rule's use count atomically."""
        classification = Classification(
            transaction_id=transaction.id,
            category=candidate.category,
            status=ClassificationStatus.CLASSIFIED_BY_RULE,
            confidence=candidate.confidence,
            classified_at=datetime.now(),
            notes=f"{candidate.kind.value}: {candidate.rule_name}",
        )

        with self.storage.db.transaction():
            self.storage.classifications.save(classification)
            if candidate.kind == RuleKind.VENDOR:
                self.storage.vendor_rules.increment_use(candidate.rule_name)
            elif candidate.kind == RuleKind.CHECK_PATTERN:
                self.storage.check_patterns.increment_use(candidate.rule_id)
            else:
                self.storage.pattern_rules.increment_use(candidate.rule_id)

        logger.debug(
            "Rule hit %s -> %s (%s)", transaction.id, candidate.category, candidate.rule_name
        )
        return classification

    def accept(self, transactions: List[Transaction], suggestion: Suggestion) -> None:
        """Persist an accepted AI suggestion and learn an AUTO vendor rule."""
        self.ensure_category(suggestion.category, suggestion.description)
        self._save_all(
            transactions,
            suggestion.category,
            ClassificationStatus.CLASSIFIED_BY_AI,
            suggestion.confidence,
        )
        self.learn_vendor(transactions[0].merchant, suggestion.category, confirmed=False)

    def apply_decision(
        self,
        transactions: List[Transaction],
        suggestion: Suggestion,
        result: PromptResult,
    ) -> Optional[ClassificationStatus]:
        """
        Apply what the user chose for a suggestion.

        Returns:
            The status written, or None when the suggestion was rejected
        """
        if result.action == PromptAction.REJECT:
            logger.debug("Rejected %s for %s", suggestion.category, transactions[0].merchant)
            return None

        if result.action == PromptAction.ACCEPT:
            self.accept(transactions, suggestion)
            return ClassificationStatus.CLASSIFIED_BY_AI

        category = result.category
        description = result.description
        if category == suggestion.category and not description:
            description = suggestion.description
        self.ensure_category(category, description)
        self._save_all(transactions, category, ClassificationStatus.USER_MODIFIED, 1.0)
        self.learn_vendor(transactions[0].merchant, category, confirmed=True)
        return ClassificationStatus.USER_MODIFIED

    def ensure_category(self, name: str, description: str = "") -> Category:
        """
        Return the category, creating it first when it doesn't exist.

        A missing description is generated by the classifier; if that fails
        the category is created without one.
        """
        existing = self.storage.categories.get_by_name(name)
        if existing is not None:
            return existing

        if not description:
            try:
                description, _ = self.classifier.generate_category_description(name)
            except ClassifierError as e:
                logger.warning("Could not describe new category %r: %s", name, e)
                description = ""

        category = self.storage.categories.add(
            Category(name=name, description=description, type=CategoryType.EXPENSE)
        )
        logger.info("Created category %r", name)
        return category

    def learn_vendor(self, merchant: str, category: str, confirmed: bool) -> VendorRule:
        """
        Create or strengthen the vendor rule for a merchant.

        New rules start as AUTO, or AUTO_CONFIRMED when the user picked the
        category. An existing rule gets the new category and a higher use
        count; a confirmed choice promotes AUTO to AUTO_CONFIRMED and
        MANUAL rules keep their source.
        """
        with self.storage.db.transaction():
            rule = self.storage.vendor_rules.get_by_name(merchant)
            if rule is None:
                rule = VendorRule(
                    name=merchant,
                    category=category,
                    source=VendorSource.AUTO_CONFIRMED if confirmed else VendorSource.AUTO,
                )
            else:
                rule.use_count += 1
                rule.category = category
                if confirmed:
                    rule.promote()
            rule = self.storage.vendor_rules.save(rule)

        self.matcher.refresh(self.storage)
        return rule

    def _save_all(
        self,
        transactions: List[Transaction],
        category: str,
        status: ClassificationStatus,
        confidence: float,
    ) -> None:
        now = datetime.now()
        with self.storage.db.transaction():
            for txn in transactions:
                self.storage.classifications.save(
                    Classification(
                        transaction_id=txn.id,
                        category=category,
                        status=status,
                        confidence=confidence,
                        classified_at=now,
                    )
                )

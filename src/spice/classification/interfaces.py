import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, List, Tuple

from spice.classification.models import (
    CompletionStats,
    MerchantGroup,
    PendingClassification,
    PromptResult,
    Suggestion,
)
from spice.common.retry import RetryableError
from spice.domain.enums import PromptAction
from spice.domain.models import Category, Transaction


class ClassifierError(RetryableError):
    """Raised when the AI provider call fails or returns garbage."""
    pass


class Classifier(ABC):
    """
    AI collaborator that suggests categories.

    Implementations may talk to any provider. The engines only rely on
    this contract and retry ClassifierError themselves.
    """

    @abstractmethod
    def classify(self, transaction: Transaction, categories: List[Category]) -> Suggestion:
        """
        Suggest a category for one transaction.

        Args:
            transaction: Transaction to classify
            categories: Existing categories the suggestion should prefer

        Returns:
            A Suggestion; is_new is set when the category isn't in categories

        Raises:
            ClassifierError: If the provider fails
        """
        pass

    def classify_batch(
        self,
        groups: List[MerchantGroup],
        categories: List[Category],
    ) -> Dict[str, Suggestion]:
        """
        Suggest one category per merchant group.

        The default classifies each group's first transaction separately.

        Returns:
            Mapping of group signature to suggestion. Groups missing from
            the mapping are treated as failed.
        """
        return {group.signature: self.classify(group.sample, categories) for group in groups}

    @abstractmethod
    def generate_category_description(self, name: str) -> Tuple[str, float]:
        """
        Describe a new category.

        Returns:
            (description, confidence)
        """
        pass

    def analyze(self, prompt: str) -> str:
        """
        Run a free-form analysis prompt and return the raw response text.

        Raises:
            ClassifierError: If the classifier has no analysis mode
        """
        raise ClassifierError(
            f"{self.__class__.__name__} does not support analysis", retryable=False
        )


class Prompter(ABC):
    """
    Asks a human to confirm suggestions and keeps completion statistics.

    Subclasses implement the actual interaction in _ask and _ask_retry.
    """

    def __init__(self):
        self._started = time.monotonic()
        self._total = 0
        self._auto = 0
        self._user = 0

    @abstractmethod
    def _ask(self, pending: PendingClassification) -> PromptResult:
        """Present the suggestion and return the user's decision."""
        pass

    @abstractmethod
    def _ask_retry(self, transaction: Transaction, error: Exception) -> bool:
        """Tell the user a classification failed; True means try again."""
        pass

    def confirm_classification(self, pending: PendingClassification) -> PromptResult:
        result = self._ask(pending)
        count = len(pending.transactions)
        self._total += count
        if result.action == PromptAction.EDIT and not result.category:
            raise ValueError("an edited classification needs a category")
        if result.action in (PromptAction.ACCEPT, PromptAction.EDIT):
            self._user += count
        return result

    def confirm_retry(self, transaction: Transaction, error: Exception) -> bool:
        return self._ask_retry(transaction, error)

    def record_auto_classified(self, count: int = 1) -> None:
        """Count classifications made without asking (rule hits, auto-accepts)."""
        self._total += count
        self._auto += count

    def completion_stats(self) -> CompletionStats:
        return CompletionStats(
            total_processed=self._total,
            auto_classified=self._auto,
            user_classified=self._user,
            duration=timedelta(seconds=time.monotonic() - self._started),
        )

    def show_message(self, message: str) -> None:
        """Optional hook for progress messages."""
        pass

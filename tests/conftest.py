import threading
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest

from spice.classification.interfaces import Classifier, ClassifierError, Prompter
from spice.classification.models import (
    MerchantGroup,
    PendingClassification,
    PromptResult,
    Suggestion,
)
from spice.common.retry import RetryOptions
from spice.domain.enums import Direction, PromptAction
from spice.domain.models import Category, Transaction
from spice.repositories.storage import Storage


class FakeClassifier(Classifier):
    """
    Classifier double answering from a merchant -> Suggestion table.

    Unknown merchants get `default`. Set `fail_times` to make the first
    calls raise ClassifierError.
    """

    def __init__(
        self,
        answers: Optional[Dict[str, Suggestion]] = None,
        default: Optional[Suggestion] = None,
        fail_times: int = 0,
        retryable: bool = True,
    ):
        self.answers = {k.lower(): v for k, v in (answers or {}).items()}
        self.default = default or Suggestion("Shopping", 0.5, "guess")
        self.fail_times = fail_times
        self.retryable = retryable
        self.calls: List[str] = []
        self.analysis_responses: List[str] = []
        self._lock = threading.Lock()

    def _answer(self, merchant: str) -> Suggestion:
        with self._lock:
            self.calls.append(merchant)
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ClassifierError("provider unavailable", retryable=self.retryable)
        found = self.answers.get(merchant.lower(), self.default)
        return Suggestion(found.category, found.confidence, found.reasoning, found.is_new,
                          found.description)

    def classify(self, transaction: Transaction, categories: List[Category]) -> Suggestion:
        return self._answer(transaction.merchant)

    def classify_batch(
        self, groups: List[MerchantGroup], categories: List[Category]
    ) -> Dict[str, Suggestion]:
        with self._lock:
            self.calls.append(",".join(g.signature for g in groups))
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ClassifierError("provider unavailable", retryable=self.retryable)
        result = {}
        for group in groups:
            found = self.answers.get(group.merchant.lower(), self.default)
            result[group.signature] = Suggestion(
                found.category, found.confidence, found.reasoning, found.is_new, found.description
            )
        return result

    def generate_category_description(self, name: str) -> Tuple[str, float]:
        return f"Spending on {name.lower()}", 0.9

    def analyze(self, prompt: str) -> str:
        self.calls.append("analyze")
        if not self.analysis_responses:
            raise ClassifierError("no analysis response scripted", retryable=False)
        return self.analysis_responses.pop(0)


class ScriptedPrompter(Prompter):
    """Prompter double replaying queued decisions, then `default`."""

    def __init__(
        self,
        decisions: Optional[List[PromptResult]] = None,
        default: PromptResult = PromptResult(PromptAction.ACCEPT),
        retry: bool = False,
    ):
        super().__init__()
        self.decisions = list(decisions or [])
        self.default = default
        self.retry = retry
        self.asked: List[PendingClassification] = []
        self.retry_asked = 0

    def _ask(self, pending: PendingClassification) -> PromptResult:
        self.asked.append(pending)
        if self.decisions:
            return self.decisions.pop(0)
        return self.default

    def _ask_retry(self, transaction: Transaction, error: Exception) -> bool:
        self.retry_asked += 1
        return self.retry


@pytest.fixture
def storage(tmp_path):
    """
    Real SQLite storage in a temporary directory.

    Seeded with the default categories by the schema.
    """
    store = Storage.open(tmp_path / "spice.db")
    yield store
    store.close()


@pytest.fixture
def fast_retry() -> RetryOptions:
    return RetryOptions(max_attempts=3, initial_delay=0.0, multiplier=1.0, max_delay=0.0)


@pytest.fixture
def make_txn():
    """Factory for transactions with sensible defaults"""
    counter = {"n": 0}

    def _make(
        name: str = "Coffee Shop",
        amount: str = "4.50",
        day: date = date(2025, 1, 15),
        merchant: Optional[str] = None,
        direction: Optional[Direction] = Direction.EXPENSE,
        check_number: Optional[str] = None,
        txn_id: Optional[str] = None,
        account: str = "checking",
    ) -> Transaction:
        counter["n"] += 1
        return Transaction(
            id=txn_id or f"txn-{counter['n']:04d}",
            date=day,
            name=name,
            amount=Decimal(amount),
            account_id=account,
            merchant_name=merchant,
            direction=direction,
            check_number=check_number,
        )

    return _make


@pytest.fixture
def make_classifier():
    """FakeClassifier constructor, for tests that script suggestions"""
    return FakeClassifier


@pytest.fixture
def make_prompter():
    """ScriptedPrompter constructor, for tests that script decisions"""
    return ScriptedPrompter

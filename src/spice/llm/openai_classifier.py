import os
from typing import Dict, List, Optional, Tuple

import openai
from openai import OpenAI

from spice.classification.interfaces import Classifier, ClassifierError
from spice.classification.models import MerchantGroup, Suggestion
from spice.domain.models import Category, Transaction
from spice.llm.parser import (
    extract_output_text,
    parse_batch,
    parse_description,
    parse_suggestion,
)
from spice.logger import get_logger

logger = get_logger(__name__)

INSTRUCTIONS = (
    "You are a meticulous personal finance assistant. "
    "Always answer with a single JSON object and nothing else."
)


def _category_lines(categories: List[Category]) -> str:
    return "\n".join(f"- {c.name}: {c.description}" for c in categories) or "- (none yet)"


class OpenAIClassifier(Classifier):
    """Classifier backed by the OpenAI Responses API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        client: Optional[OpenAI] = None,
    ):
        self.client = client or OpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            base_url=base_url or os.getenv("OPENAI_BASE_URL") or None,
        )
        self.model = model

    def _complete(self, prompt: str) -> str:
        try:
            response = self.client.responses.create(
                model=self.model,
                instructions=INSTRUCTIONS,
                input=prompt,
                temperature=0.0,
            )
        except (openai.AuthenticationError, openai.BadRequestError, openai.NotFoundError) as e:
            raise ClassifierError(f"OpenAI rejected the request: {e}", retryable=False) from e
        except openai.OpenAIError as e:
            raise ClassifierError(f"OpenAI request failed: {e}") from e

        text = extract_output_text(response)
        if text is None:
            raise ClassifierError("OpenAI returned no text output")
        return text

    def classify(self, transaction: Transaction, categories: List[Category]) -> Suggestion:
        prompt = f"""
        Categorize this financial transaction.
        Merchant: {transaction.merchant}
        Raw description: {transaction.name}
        Amount: {transaction.amount}
        Direction: {transaction.direction.value if transaction.direction else "unknown"}
        Date: {transaction.date.isoformat()}
        Provider category: {transaction.provider_category or "none"}

        Existing categories:
        {_category_lines(categories)}

        Prefer an existing category. Only propose a new one if none fits, and then set
        "is_new" to true and include a one-sentence "description".

        Return JSON: {{"category": str, "confidence": 0.0-1.0, "reasoning": str,
        "is_new": bool, "description": str}}
        """
        text = self._complete(prompt)
        suggestion = parse_suggestion(text, [c.name for c in categories])
        logger.debug(
            "Suggested %s (%.2f) for %s", suggestion.category, suggestion.confidence, transaction.id
        )
        return suggestion

    def classify_batch(
        self,
        groups: List[MerchantGroup],
        categories: List[Category],
    ) -> Dict[str, Suggestion]:
        merchant_lines = "\n".join(
            f'- key "{g.signature}": {g.merchant} '
            f"({len(g)} transactions, total {g.total_amount}, e.g. {g.sample.name!r})"
            for g in groups
        )
        prompt = f"""
        Categorize each merchant below. Every transaction of a merchant gets the same category.

        Merchants:
        {merchant_lines}

        Existing categories:
        {_category_lines(categories)}

        Prefer existing categories. For a new category set "is_new" true and add a "description".

        Return JSON: {{"results": [{{"merchant": <key>, "category": str,
        "confidence": 0.0-1.0, "reasoning": str, "is_new": bool, "description": str}}]}}
        """
        text = self._complete(prompt)
        return parse_batch(text, [c.name for c in categories])

    def generate_category_description(self, name: str) -> Tuple[str, float]:
        prompt = f"""
        Write a one-sentence description of the personal finance category "{name}"
        describing which transactions belong in it.

        Return JSON: {{"description": str, "confidence": 0.0-1.0}}
        """
        return parse_description(self._complete(prompt))

    def analyze(self, prompt: str) -> str:
        return self._complete(prompt)

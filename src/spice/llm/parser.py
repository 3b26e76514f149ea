import json
import re
from typing import Any, Dict, Iterable, Optional, Tuple

from spice.classification.interfaces import ClassifierError
from spice.classification.models import Suggestion

_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def extract_output_text(response: object) -> Optional[str]:
    """Pull the text out of a Responses API result."""
    output_text = getattr(response, "output_text", None)
    if output_text:
        return output_text

    output = getattr(response, "output", None)
    if not output:
        return None

    parts: list[str] = []
    for item in output:
        content = getattr(item, "content", None)
        if not content:
            continue
        for block in content:
            block_type = getattr(block, "type", None)
            if block_type in {"output_text", "text"}:
                text = getattr(block, "text", None)
                if text:
                    parts.append(text)

    if parts:
        return "".join(parts)
    return None


def load_json(text: Optional[str]) -> Dict[str, Any]:
    if not text:
        raise ClassifierError("empty response from classifier")

    match = _CODE_FENCE.match(text)
    if match:
        text = match.group(1)

    try:
        data = json.loads(text.strip())
    except json.JSONDecodeError as e:
        raise ClassifierError(f"classifier returned invalid JSON: {e.msg}") from e

    if not isinstance(data, dict):
        raise ClassifierError("classifier response must be a JSON object")
    return data


def _confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError) as e:
        raise ClassifierError(f"invalid confidence {value!r}") from e
    # Some models answer in percent
    if confidence > 1.0 and confidence <= 100.0:
        confidence /= 100.0
    return min(max(confidence, 0.0), 1.0)


def to_suggestion(data: Dict[str, Any], known: Iterable[str]) -> Suggestion:
    category = str(data.get("category") or "").strip()
    if not category:
        raise ClassifierError("classifier response has no category")

    # Match existing categories case-insensitively
    by_lower = {name.lower(): name for name in known}
    canonical = by_lower.get(category.lower())

    return Suggestion(
        category=canonical or category,
        confidence=_confidence(data.get("confidence", 0.0)),
        reasoning=str(data.get("reasoning") or ""),
        is_new=bool(data.get("is_new")) or canonical is None,
        description=str(data.get("description") or ""),
    )


def parse_suggestion(text: Optional[str], known: Iterable[str]) -> Suggestion:
    return to_suggestion(load_json(text), known)


def parse_batch(text: Optional[str], known: Iterable[str]) -> Dict[str, Suggestion]:
    """Map each `merchant` key in the results array to its suggestion."""
    data = load_json(text)
    results = data.get("results")
    if not isinstance(results, list):
        raise ClassifierError("batch response must contain a results array")

    known = list(known)
    suggestions = {}
    for item in results:
        if not isinstance(item, dict) or not item.get("merchant"):
            continue
        suggestions[str(item["merchant"])] = to_suggestion(item, known)
    return suggestions


def parse_description(text: Optional[str]) -> Tuple[str, float]:
    data = load_json(text)
    description = str(data.get("description") or "").strip()
    if not description:
        raise ClassifierError("classifier returned no description")
    return description, _confidence(data.get("confidence", 0.0))

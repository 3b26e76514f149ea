import json
import re
from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import ValidationError

from spice.analysis.models import Report

_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


class ReportValidationError(Exception):
    """The AI's report could not be parsed or failed validation."""

    def __init__(
        self,
        message: str,
        section: str = "",
        line: Optional[int] = None,
        column: Optional[int] = None,
    ):
        super().__init__(message)
        self.section = section
        self.line = line
        self.column = column

    def describe(self) -> str:
        """Human readable location, used in correction prompts"""
        where = []
        if self.section:
            where.append(f"section '{self.section}'")
        if self.line is not None:
            where.append(f"line {self.line}")
        if self.column is not None:
            where.append(f"column {self.column}")
        location = f" at {', '.join(where)}" if where else ""
        return f"{self}{location}"


class ReportValidator:
    """
    Turns a raw AI response into a validated Report.

    The response may be wrapped in a markdown code fence. Report identity
    fields the model can't know (id, session, period, timestamp) are
    filled in before validation.
    """

    def parse(
        self,
        raw: str,
        report_id: str,
        session_id: str,
        period_start: date,
        period_end: date,
    ) -> Report:
        """
        Raises:
            ReportValidationError: If the text isn't a valid report
        """
        text = self.strip_code_fence(raw)
        if not text:
            raise ReportValidationError("empty response")

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ReportValidationError(
                f"invalid JSON: {e.msg}", line=e.lineno, column=e.colno
            ) from e

        if not isinstance(data, dict):
            raise ReportValidationError("report must be a JSON object")

        data.setdefault("id", report_id)
        data.setdefault("session_id", session_id)
        data.setdefault("generated_at", datetime.now().isoformat())
        data.setdefault("period_start", period_start.isoformat())
        data.setdefault("period_end", period_end.isoformat())

        return self.validate(data)

    def validate(self, data: Dict[str, Any]) -> Report:
        try:
            return Report.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            section = ".".join(str(part) for part in first.get("loc", ()))
            raise ReportValidationError(first.get("msg", str(e)), section=section) from e

    @staticmethod
    def strip_code_fence(raw: str) -> str:
        match = _CODE_FENCE.match(raw or "")
        if match:
            return match.group(1).strip()
        return (raw or "").strip()

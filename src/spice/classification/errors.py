from datetime import date
from typing import Any, Optional


class ClassificationCancelled(Exception):
    """
    The run was stopped by its cancellation context.

    Not a failure: everything persisted so far is valid and the run can be
    resumed. `summary` holds the partial progress.
    """

    def __init__(self, summary: Any):
        super().__init__("classification cancelled")
        self.summary = summary


class ClassificationRunError(Exception):
    """
    A storage failure stopped the run.

    Carries the transaction that was in flight and the date of the last
    fully persisted transaction, usable as a resume cursor.
    """

    def __init__(
        self,
        transaction_id: str,
        resume_from: Optional[date],
        cause: Exception,
    ):
        super().__init__(
            f"classification stopped at transaction {transaction_id}: {cause}"
        )
        self.transaction_id = transaction_id
        self.resume_from = resume_from
        self.cause = cause

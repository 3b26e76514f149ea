import uuid
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from spice.analysis.fixer import FixApplier
from spice.analysis.models import (
    AnalysisOptions,
    Fix,
    FixResult,
    FixType,
    Issue,
    IssueType,
    Report,
    Session,
    SessionStatus,
    Severity,
)
from spice.analysis.prompt_builder import PromptBuilder
from spice.analysis.session_store import SessionNotFoundError, SQLiteSessionStore
from spice.analysis.validator import ReportValidationError, ReportValidator
from spice.classification.interfaces import Classifier, ClassifierError
from spice.classification.matcher import RuleMatcher
from spice.classification.models import merchant_signature
from spice.common.context import CancelContext, Cancelled
from spice.common.retry import MaxRetriesExceeded, RetryOptions, with_retry
from spice.domain.models import Classification, Transaction
from spice.logger import get_logger
from spice.repositories.storage import Storage

logger = get_logger(__name__)

MAX_ATTEMPTS = 3

ProgressCallback = Callable[[str, float], None]


class AnalysisError(Exception):
    """The analysis run could not produce a report."""
    pass


class AnalysisEngine:
    """
    Session-scoped review of already classified transactions.

    A run builds a prompt from the classified transactions in the period,
    asks the classifier for a structured report and validates it, sending
    a correction prompt on failure (up to three attempts). Issues found
    locally, such as one merchant filed under several categories, are
    merged in. The report is stored against the session, which can be
    resumed by id.
    """

    def __init__(
        self,
        storage: Storage,
        classifier: Classifier,
        matcher: Optional[RuleMatcher] = None,
        retry_options: Optional[RetryOptions] = None,
    ):
        self.storage = storage
        self.classifier = classifier
        self.sessions = SQLiteSessionStore(storage.db)
        self.validator = ReportValidator()
        self.prompts = PromptBuilder()
        self.fixer = FixApplier(storage, matcher)
        self.retry_options = retry_options or RetryOptions()

    def analyze(
        self,
        ctx: CancelContext,
        options: AnalysisOptions,
        progress: Optional[ProgressCallback] = None,
    ) -> Tuple[Session, Report]:
        """
        Run (or resume) an analysis session.

        A completed session returns its stored report without calling the
        classifier again. An unknown options.session_id starts a new
        session under that id.

        Raises:
            AnalysisError: If every attempt failed; the session is marked failed
            Cancelled: If ctx is cancelled; the session goes back to pending
        """
        options.validate()
        progress = progress or (lambda _msg, _pct: None)

        session = self._start_session(options)
        if session.status == SessionStatus.COMPLETED:
            report = self.sessions.get_report(session.id)
            if report is not None:
                logger.info("Session %s already completed", session.id)
                progress("Loaded stored report", 1.0)
                return session, report

        session.status = SessionStatus.IN_PROGRESS
        self.sessions.update(session)

        progress("Loading transactions", 0.1)
        classified = self.storage.classifications.get_classified(
            options.start_date, options.end_date
        )
        prompt = self.prompts.build(
            options,
            classified,
            self.storage.categories.get_all(),
            self.storage.pattern_rules.get_all(active_only=True),
        )

        try:
            report = self._request_report(ctx, session, options, prompt, progress)
        except Cancelled:
            session.status = SessionStatus.PENDING
            session.error = "cancelled"
            self.sessions.update(session)
            raise
        except AnalysisError as e:
            session.status = SessionStatus.FAILED
            session.error = str(e)
            self.sessions.update(session)
            raise

        local = self.find_inconsistencies(classified)
        report = self._merge_issues(report, local, options.max_issues)

        self.sessions.save_report(report)
        session.status = SessionStatus.COMPLETED
        session.issue_count = len(report.issues)
        session.error = None
        self.sessions.update(session)
        progress("Analysis complete", 1.0)

        if options.auto_apply and not options.dry_run and report.fixes:
            self.apply_fixes(session.id, [f.id for f in report.fixes])

        return session, report

    def _start_session(self, options: AnalysisOptions) -> Session:
        if options.session_id:
            session = self.sessions.get(options.session_id)
            if session is not None:
                logger.info("Resuming analysis session %s", session.id)
                return session
        return self.sessions.create(options)

    def _request_report(
        self,
        ctx: CancelContext,
        session: Session,
        options: AnalysisOptions,
        prompt: str,
        progress: ProgressCallback,
    ) -> Report:
        current_prompt = prompt
        last_error: Optional[Exception] = None

        for attempt in range(1, MAX_ATTEMPTS + 1):
            ctx.raise_if_cancelled()
            session.attempts += 1
            self.sessions.update(session)
            progress(f"Requesting analysis (attempt {attempt}/{MAX_ATTEMPTS})", 0.2 + 0.2 * attempt)

            try:
                raw = with_retry(
                    ctx, lambda: self.classifier.analyze(current_prompt), self.retry_options
                )
            except (MaxRetriesExceeded, ClassifierError) as e:
                raise AnalysisError(f"classifier failed: {e}") from e

            session.status = SessionStatus.VALIDATING
            self.sessions.update(session)

            try:
                return self.validator.parse(
                    raw,
                    report_id=uuid.uuid4().hex[:12],
                    session_id=session.id,
                    period_start=options.start_date,
                    period_end=options.end_date,
                )
            except ReportValidationError as e:
                last_error = e
                logger.warning("Attempt %d returned an invalid report: %s", attempt, e.describe())
                current_prompt = self.prompts.build_correction(prompt, raw, e.describe())
                session.status = SessionStatus.IN_PROGRESS

        raise AnalysisError(
            f"no valid report after {MAX_ATTEMPTS} attempts: {last_error}"
        ) from last_error

    @staticmethod
    def find_inconsistencies(
        classified: List[Tuple[Transaction, Classification]],
    ) -> List[Issue]:
        """One issue per merchant whose transactions sit in several categories."""
        by_merchant: Dict[str, List[Tuple[Transaction, Classification]]] = defaultdict(list)
        for txn, classification in classified:
            by_merchant[merchant_signature(txn)].append((txn, classification))

        issues = []
        for signature in sorted(by_merchant):
            rows = by_merchant[signature]
            counts: Dict[str, int] = defaultdict(int)
            for _, classification in rows:
                counts[classification.category] += 1
            if len(counts) < 2:
                continue

            majority = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]
            outliers = [txn.id for txn, c in rows if c.category != majority]
            merchant = rows[0][0].merchant
            issue_id = f"local-{signature}"
            issues.append(
                Issue(
                    id=issue_id,
                    type=IssueType.INCONSISTENT,
                    severity=Severity.MEDIUM,
                    description=(
                        f"{merchant} is filed under {len(counts)} categories: "
                        + ", ".join(sorted(counts))
                    ),
                    transaction_ids=outliers,
                    affected_count=len(outliers),
                    confidence=round(counts[majority] / len(rows), 2),
                    suggested_category=majority,
                    fix=Fix(
                        id=f"fix-{issue_id}",
                        issue_id=issue_id,
                        type=FixType.UPDATE_CATEGORY,
                        description=f"Move {len(outliers)} transactions to {majority}",
                        data={"transaction_ids": outliers, "category": majority},
                    ),
                )
            )
        return issues

    @staticmethod
    def _merge_issues(report: Report, local: List[Issue], max_issues: int) -> Report:
        covered = {tuple(sorted(i.transaction_ids)) for i in report.issues}
        merged = list(report.issues) + [
            i for i in local if tuple(sorted(i.transaction_ids)) not in covered
        ]
        merged.sort(key=lambda i: (i.severity.order, -i.confidence))
        if max_issues:
            merged = merged[:max_issues]
        return report.model_copy(update={"issues": merged})

    def apply_fixes(self, session_id: str, fix_ids: Optional[List[str]] = None) -> List[FixResult]:
        """
        Apply fixes from a session's stored report.

        Args:
            session_id: Session whose report holds the fixes
            fix_ids: Subset to apply; None applies every fix in the report
        """
        report = self.sessions.get_report(session_id)
        if report is None:
            raise SessionNotFoundError(f"no report stored for session '{session_id}'")

        fixes = report.fixes
        if fix_ids is not None:
            wanted = set(fix_ids)
            fixes = [f for f in fixes if f.id in wanted]

        results = self.fixer.apply(fixes, session_id=session_id)
        applied = sum(1 for r in results if r.success and not r.already_applied)
        logger.info("Applied %d of %d fixes for session %s", applied, len(fixes), session_id)
        return results

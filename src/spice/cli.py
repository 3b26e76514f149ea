import signal
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Generator, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from spice.analysis.engine import AnalysisEngine
from spice.analysis.models import AnalysisOptions, Focus, Report
from spice.checkpoint.manager import CheckpointManager
from spice.classification.batch import BatchOptions, BatchSummary
from spice.classification.engine import ClassificationEngine
from spice.classification.errors import ClassificationCancelled, ClassificationRunError
from spice.classification.interfaces import Classifier
from spice.classification.models import RunSummary
from spice.common.context import CancelContext
from spice.config.settings import Settings, load_settings
from spice.domain.enums import AmountCondition, CategoryType, Direction, RuleState, VendorSource
from spice.domain.models import Category, CheckPattern, PatternRule, VendorRule
from spice.llm.openai_classifier import OpenAIClassifier
from spice.logger import setup_logging
from spice.parsers.factory import ParserFactory
from spice.prompter import RichPrompter
from spice.repositories.storage import Storage
from spice.services.transaction_service import TransactionService

app = typer.Typer(
    name="spice",
    help="Classify your bank transactions with rules and AI",
    add_completion=False,
)
checkpoint_app = typer.Typer(help="Create, inspect and restore database checkpoints")
vendors_app = typer.Typer(help="Manage learned vendor rules")
checks_app = typer.Typer(help="Manage paper-check patterns")
patterns_app = typer.Typer(help="Manage general pattern rules")
categories_app = typer.Typer(help="Manage categories")

app.add_typer(checkpoint_app, name="checkpoint")
app.add_typer(vendors_app, name="vendors")
app.add_typer(checks_app, name="checks")
app.add_typer(patterns_app, name="patterns")
app.add_typer(categories_app, name="categories")

console = Console()

DATE_FORMATS = ["%Y-%m-%d"]


class AppContext:
    """
    Everything a command needs, built lazily from the settings.

    Handed to commands through typer's ctx.obj.
    """

    def __init__(self, settings: Settings, verbose: bool = False):
        self.settings = settings
        self.verbose = verbose
        self._storage: Optional[Storage] = None
        self._classifier: Optional[Classifier] = None
        self._checkpoints: Optional[CheckpointManager] = None

    @property
    def storage(self) -> Storage:
        if self._storage is None:
            self._storage = Storage.open(self.settings.db_path)
        return self._storage

    @property
    def checkpoints(self) -> CheckpointManager:
        if self._checkpoints is None:
            self._checkpoints = CheckpointManager(
                self.storage, max_auto_checkpoints=self.settings.max_auto_checkpoints
            )
        return self._checkpoints

    @property
    def classifier(self) -> Classifier:
        if self._classifier is None:
            self._classifier = OpenAIClassifier(
                api_key=self.settings.openai_api_key,
                model=self.settings.openai_model,
                base_url=self.settings.openai_base_url,
            )
        return self._classifier

    def engine(self) -> ClassificationEngine:
        known = [c.name for c in self.storage.categories.get_all()]
        prompter = RichPrompter(console, known_categories=known)
        return ClassificationEngine(self.storage, self.classifier, prompter)

    def service(self, with_engine: bool = False) -> TransactionService:
        return TransactionService(
            self.storage,
            self.checkpoints,
            self.engine() if with_engine else None,
        )

    def batch_options(
        self,
        threshold: Optional[float],
        batch_size: Optional[int],
        workers: Optional[int],
        skip_review: bool,
    ) -> BatchOptions:
        return BatchOptions(
            auto_accept_threshold=(
                threshold if threshold is not None else self.settings.auto_accept_threshold
            ),
            batch_size=batch_size or self.settings.batch_size,
            workers=workers or self.settings.workers,
            skip_manual_review=skip_review,
        )

    def close(self) -> None:
        if self._storage is not None:
            self._storage.close()
            self._storage = None


def _fail(app_ctx: AppContext, e: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {e}")
    if app_ctx.verbose:
        console.print_exception()
    raise typer.Exit(code=1)


def _to_date(value: Optional[datetime]) -> Optional[date]:
    return value.date() if value is not None else None


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise typer.BadParameter(f"invalid amount '{value}'") from e


@contextmanager
def _interruptible() -> Generator[CancelContext, None, None]:
    """CancelContext that Ctrl-C cancels; a second Ctrl-C aborts outright."""
    cancel = CancelContext()

    def handler(signum, frame):
        if cancel.cancelled:
            raise KeyboardInterrupt
        console.print("\n[yellow]Stopping after the current step (Ctrl-C again to abort)[/yellow]")
        cancel.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Database file (overrides SPICE_DB_PATH)",
    ),
):
    """
    Spice - Import, classify and review your transactions.
    """
    settings = load_settings()
    if db_path is not None:
        settings.db_path = db_path

    setup_logging("DEBUG" if verbose else settings.log_level)
    ParserFactory.load_parsers_from_config()

    app_ctx = AppContext(settings, verbose=verbose)
    ctx.obj = app_ctx
    ctx.call_on_close(app_ctx.close)


@app.command(name="init")
def init(ctx: typer.Context):
    """Create the database schema and seed the default categories."""
    app_ctx: AppContext = ctx.obj
    try:
        storage = app_ctx.storage
        row = storage.db.fetch_one(
            "SELECT version, description FROM schema_version ORDER BY version DESC LIMIT 1"
        )
        console.print(f"[bold green]✓ Database ready[/bold green] at {storage.db_path}")
        if row:
            console.print(f"  Schema version: {row['version']} ({row['description']})")
        console.print(f"  Categories: {storage.categories.count()}")
    except Exception as e:
        _fail(app_ctx, e)


@app.command(name="import")
def import_transactions(
    ctx: typer.Context,
    filepath: Path = typer.Argument(
        ...,
        help="Path to the statement file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    financial_institution: str = typer.Option(
        "csv",
        "--fi", "-f",
        help="Statement format (see parsers.json)",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Preview without saving to database",
    ),
):
    """
    Import transactions from a statement file.

    Examples:
        spice import statement.csv
        spice import statement.csv --dry-run
    """
    app_ctx: AppContext = ctx.obj
    try:
        console.print(Panel.fit(
            f"[bold cyan]Import Configuration[/bold cyan]\n"
            f"File: {filepath}\n"
            f"Format: {financial_institution}\n"
            f"Mode: {'DRY RUN' if dry_run else 'LIVE'}",
            border_style="cyan",
        ))

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Importing transactions...", total=None)
            result = app_ctx.service().import_statement(
                filepath=filepath,
                financial_institution=financial_institution,
                dry_run=dry_run,
            )
            progress.update(task, completed=True)

        console.print(f"\n[bold]Found {result.total_parsed} transactions[/bold]")

        preview = (result.imported + result.skipped)[:5]
        if preview:
            imported_ids = {id(t) for t in result.imported}
            table = Table(title="Preview (first 5)")
            table.add_column("Date", style="cyan")
            table.add_column("Name", style="white")
            table.add_column("Amount", justify="right")
            table.add_column("Status", justify="center")
            for txn in preview:
                status = "[green]NEW[/green]" if id(txn) in imported_ids else "[yellow]DUP[/yellow]"
                color = "green" if txn.direction == Direction.INCOME else "red"
                table.add_row(
                    str(txn.date),
                    txn.name[:40],
                    f"[{color}]${txn.amount:,.2f}[/{color}]",
                    status,
                )
            console.print(table)

        if dry_run:
            console.print("[yellow]DRY RUN - No changes made[/yellow]")
            console.print(f"[green]✓[/green] Would import: {result.new_transactions}")
            console.print(f"[yellow]Would skip:[/yellow] {result.duplicates_skipped}")
        else:
            console.print(
                f"[bold green]✓ Imported {result.new_transactions} new transactions[/bold green]"
            )
            if result.duplicates_skipped:
                console.print(f"[yellow]Skipped {result.duplicates_skipped} duplicates[/yellow]")
            if result.checkpoint is not None:
                console.print(f"[dim]Checkpoint: {result.checkpoint.id}[/dim]")
    except Exception as e:
        _fail(app_ctx, e)


def _print_run_summary(summary: RunSummary) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("", style="cyan")
    table.add_column("", justify="right")
    table.add_row("Processed", str(summary.processed))
    table.add_row("By rule", str(summary.rule_matched))
    table.add_row("Accepted", str(summary.accepted))
    table.add_row("Edited", str(summary.edited))
    table.add_row("Rejected", str(summary.rejected))
    table.add_row("Skipped", str(summary.skipped))
    console.print(Panel(table, title="Classification", border_style="cyan"))


def _print_batch_summary(summary: BatchSummary) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("", style="cyan")
    table.add_column("", justify="right")
    table.add_row("Transactions", str(summary.total_transactions))
    table.add_row("Merchants", str(summary.total_merchants))
    table.add_row("By rule", str(summary.rule_matched))
    table.add_row("Auto-accepted", str(summary.auto_accepted))
    table.add_row("Needed review", str(summary.needs_review))
    table.add_row("Reviewed", str(summary.reviewed))
    table.add_row("Failed", f"[red]{summary.failed}[/red]" if summary.failed else "0")
    table.add_row("Elapsed", f"{summary.elapsed.total_seconds():.1f}s")
    title = "Batch classification" + (" (cancelled)" if summary.cancelled else "")
    console.print(Panel(table, title=title, border_style="cyan"))

    for txn_id, reason in summary.failures[:10]:
        console.print(f"  [red]✗[/red] {txn_id}: {reason}")
    if len(summary.failures) > 10:
        console.print(f"  [dim]... and {len(summary.failures) - 10} more[/dim]")


@app.command(name="classify")
def classify(
    ctx: typer.Context,
    batch: bool = typer.Option(False, "--batch", help="Parallel, confidence-gated mode"),
    threshold: Optional[float] = typer.Option(
        None, "--threshold", min=0.0, max=1.0, help="Auto-accept threshold (batch)"
    ),
    batch_size: Optional[int] = typer.Option(
        None, "--batch-size", min=1, help="Merchants per classifier call (batch)"
    ),
    workers: Optional[int] = typer.Option(None, "--workers", min=1, help="Worker threads (batch)"),
    skip_review: bool = typer.Option(
        False, "--skip-review", help="Leave low-confidence suggestions unclassified (batch)"
    ),
    from_date: Optional[datetime] = typer.Option(
        None, "--from", formats=DATE_FORMATS, help="Only transactions on or after this date"
    ),
):
    """
    Classify unclassified transactions.

    Examples:
        spice classify
        spice classify --from 2025-01-01
        spice classify --batch --threshold 0.9 --workers 8
    """
    app_ctx: AppContext = ctx.obj
    try:
        engine = app_ctx.engine()
        with _interruptible() as cancel:
            if batch:
                options = app_ctx.batch_options(threshold, batch_size, workers, skip_review)
                summary = engine.classify_transactions_batch(cancel, _to_date(from_date), options)
                _print_batch_summary(summary)
                return

            try:
                run = engine.classify_transactions(cancel, _to_date(from_date))
            except ClassificationCancelled as e:
                _print_run_summary(e.summary)
                console.print("[yellow]Cancelled. Run classify again to continue.[/yellow]")
                return
            _print_run_summary(run)

        stats = engine.prompter.completion_stats()
        console.print(
            f"[dim]{stats.auto_classified} automatic, {stats.user_classified} confirmed "
            f"in {stats.duration.total_seconds():.0f}s[/dim]"
        )
    except ClassificationRunError as e:
        if e.resume_from is not None:
            console.print(f"[yellow]Resume with --from {e.resume_from.isoformat()}[/yellow]")
        _fail(app_ctx, e)
    except Exception as e:
        _fail(app_ctx, e)


@app.command(name="recategorize")
def recategorize(
    ctx: typer.Context,
    start: Optional[datetime] = typer.Option(None, "--start", formats=DATE_FORMATS),
    end: Optional[datetime] = typer.Option(None, "--end", formats=DATE_FORMATS),
    category: Optional[str] = typer.Option(
        None, "--category", "-c", help="Only transactions currently in this category"
    ),
    threshold: Optional[float] = typer.Option(None, "--threshold", min=0.0, max=1.0),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1),
    workers: Optional[int] = typer.Option(None, "--workers", min=1),
    skip_review: bool = typer.Option(False, "--skip-review"),
):
    """
    Re-classify existing transactions, overwriting their category.

    An automatic checkpoint is taken first.
    """
    app_ctx: AppContext = ctx.obj
    try:
        options = app_ctx.batch_options(threshold, batch_size, workers, skip_review)
        with _interruptible() as cancel:
            result = app_ctx.service(with_engine=True).recategorize(
                cancel, _to_date(start), _to_date(end), category, options
            )

        if result.nothing_to_do:
            console.print("[yellow]No transactions match the selection[/yellow]")
            return
        if result.checkpoint is not None:
            console.print(f"[dim]Checkpoint: {result.checkpoint.id}[/dim]")
        _print_batch_summary(result.summary)
    except Exception as e:
        _fail(app_ctx, e)


@checkpoint_app.command(name="create")
def checkpoint_create(
    ctx: typer.Context,
    tag: Optional[str] = typer.Argument(None, help="Checkpoint id (default: timestamp)"),
    description: str = typer.Option("", "--description", "-d"),
):
    """Snapshot the database."""
    app_ctx: AppContext = ctx.obj
    try:
        info = app_ctx.checkpoints.create(tag, description)
        console.print(f"[bold green]✓ Created checkpoint {info.id}[/bold green]")
        console.print(
            f"  {info.transaction_count} transactions, {info.classification_count} "
            f"classifications, {info.file_size:,} bytes"
        )
    except Exception as e:
        _fail(app_ctx, e)


@checkpoint_app.command(name="list")
def checkpoint_list(ctx: typer.Context):
    """List checkpoints, newest first."""
    app_ctx: AppContext = ctx.obj
    try:
        infos = app_ctx.checkpoints.list()
        if not infos:
            console.print("[yellow]No checkpoints[/yellow]")
            return

        table = Table(title="Checkpoints")
        table.add_column("ID", style="cyan")
        table.add_column("Created")
        table.add_column("Transactions", justify="right")
        table.add_column("Size", justify="right")
        table.add_column("Description", style="dim")
        for info in infos:
            table.add_row(
                info.id + (" [dim](auto)[/dim]" if info.is_auto else ""),
                info.created_at.strftime("%Y-%m-%d %H:%M"),
                str(info.transaction_count),
                f"{info.file_size / 1024:,.0f} KB",
                info.description,
            )
        console.print(table)
    except Exception as e:
        _fail(app_ctx, e)


@checkpoint_app.command(name="info")
def checkpoint_info(ctx: typer.Context, checkpoint_id: str = typer.Argument(...)):
    """Show one checkpoint's metadata."""
    app_ctx: AppContext = ctx.obj
    try:
        info = app_ctx.checkpoints.get_checkpoint_info(checkpoint_id)
        console.print(Panel.fit(
            f"Created: {info.created_at:%Y-%m-%d %H:%M:%S}\n"
            f"Description: {info.description or '-'}\n"
            f"Automatic: {'yes' if info.is_auto else 'no'}\n"
            f"Size: {info.file_size:,} bytes\n"
            f"Transactions: {info.transaction_count}\n"
            f"Classifications: {info.classification_count}\n"
            f"Categories: {info.category_count}\n"
            f"Vendor rules: {info.vendor_count}",
            title=f"[bold]{info.id}[/bold]",
            border_style="cyan",
        ))
    except Exception as e:
        _fail(app_ctx, e)


@checkpoint_app.command(name="restore")
def checkpoint_restore(
    ctx: typer.Context,
    checkpoint_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
):
    """Replace the database with a checkpoint."""
    app_ctx: AppContext = ctx.obj
    try:
        manager = app_ctx.checkpoints
        info = manager.get_checkpoint_info(checkpoint_id)
        if not yes and not typer.confirm(
            f"Replace the current database with '{info.id}' "
            f"({info.transaction_count} transactions)?"
        ):
            raise typer.Abort()

        with manager.restoring():
            manager.restore(checkpoint_id)
        console.print(f"[bold green]✓ Restored checkpoint {checkpoint_id}[/bold green]")
    except typer.Abort:
        raise
    except Exception as e:
        _fail(app_ctx, e)


@checkpoint_app.command(name="delete")
def checkpoint_delete(
    ctx: typer.Context,
    checkpoint_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y"),
):
    """Permanently delete a checkpoint."""
    app_ctx: AppContext = ctx.obj
    try:
        if not yes and not typer.confirm(f"Delete checkpoint '{checkpoint_id}'?"):
            raise typer.Abort()
        app_ctx.checkpoints.delete(checkpoint_id)
        console.print(f"[green]✓[/green] Deleted {checkpoint_id}")
    except typer.Abort:
        raise
    except Exception as e:
        _fail(app_ctx, e)


@vendors_app.command(name="list")
def vendors_list(ctx: typer.Context):
    """List vendor rules, most used first."""
    app_ctx: AppContext = ctx.obj
    try:
        rules = sorted(app_ctx.storage.vendor_rules.get_all(), key=lambda r: (-r.use_count, r.name))
        table = Table(title="Vendor rules")
        table.add_column("Vendor", style="cyan")
        table.add_column("Category", style="magenta")
        table.add_column("Source")
        table.add_column("Uses", justify="right")
        for rule in rules:
            name = f"{rule.name} [dim](regex)[/dim]" if rule.is_regex else rule.name
            table.add_row(name, rule.category, rule.source.value, str(rule.use_count))
        console.print(table)
    except Exception as e:
        _fail(app_ctx, e)


@vendors_app.command(name="edit")
def vendors_edit(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Vendor name or regex"),
    category: str = typer.Argument(...),
    regex: bool = typer.Option(False, "--regex", help="Treat name as a regular expression"),
):
    """Point a vendor at a category, creating a manual rule if needed."""
    app_ctx: AppContext = ctx.obj
    try:
        storage = app_ctx.storage
        if storage.categories.get_by_name(category) is None:
            raise ValueError(f"category '{category}' does not exist")

        rule = storage.vendor_rules.get_by_name(name)
        if rule is None:
            rule = VendorRule(name=name, category=category, source=VendorSource.MANUAL, is_regex=regex)
        else:
            rule.category = category
            rule.last_updated = datetime.now()
            rule.promote()
        storage.vendor_rules.save(rule)
        console.print(f"[green]✓[/green] {rule.name} → {category} ({rule.source.value})")
    except Exception as e:
        _fail(app_ctx, e)


@vendors_app.command(name="delete")
def vendors_delete(ctx: typer.Context, name: str = typer.Argument(...)):
    """Remove a vendor rule."""
    app_ctx: AppContext = ctx.obj
    try:
        if not app_ctx.storage.vendor_rules.delete(name):
            raise ValueError(f"no vendor rule named '{name}'")
        console.print(f"[green]✓[/green] Deleted vendor rule {name}")
    except Exception as e:
        _fail(app_ctx, e)


@checks_app.command(name="add")
def checks_add(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    category: str = typer.Argument(...),
    amount: Optional[str] = typer.Option(None, "--amount", help="Exact amount"),
    amount_min: Optional[str] = typer.Option(None, "--min", help="Range lower bound"),
    amount_max: Optional[str] = typer.Option(None, "--max", help="Range upper bound"),
    amounts: Optional[str] = typer.Option(None, "--amounts", help="Comma separated amounts"),
    day_min: Optional[int] = typer.Option(None, "--day-min"),
    day_max: Optional[int] = typer.Option(None, "--day-max"),
    boost: float = typer.Option(0.3, "--boost", help="Confidence given to matches"),
    notes: str = typer.Option("", "--notes"),
):
    """
    Add a check pattern.

    Examples:
        spice checks add rent Rent --min 1400 --max 1600 --day-min 1 --day-max 5
        spice checks add tutor Education --amounts 80,120
    """
    app_ctx: AppContext = ctx.obj
    try:
        if app_ctx.storage.categories.get_by_name(category) is None:
            raise ValueError(f"category '{category}' does not exist")

        pattern = CheckPattern(
            name=name,
            category=category,
            amount=_decimal(amount),
            amount_min=_decimal(amount_min),
            amount_max=_decimal(amount_max),
            amounts=[_decimal(a.strip()) for a in amounts.split(",") if a.strip()] if amounts else [],
            day_min=day_min,
            day_max=day_max,
            confidence_boost=boost,
            notes=notes,
        )
        saved = app_ctx.storage.check_patterns.add(pattern)
        console.print(f"[green]✓[/green] Added check pattern #{saved.id} {name} → {category}")
    except Exception as e:
        _fail(app_ctx, e)


def _check_amount_text(pattern: CheckPattern) -> str:
    if pattern.amount is not None:
        return f"${pattern.amount:,.2f}"
    if pattern.amounts:
        return ", ".join(f"${a:,.2f}" for a in pattern.amounts)
    if pattern.amount_min is not None or pattern.amount_max is not None:
        low = f"${pattern.amount_min:,.2f}" if pattern.amount_min is not None else "…"
        high = f"${pattern.amount_max:,.2f}" if pattern.amount_max is not None else "…"
        return f"{low} - {high}"
    return "any"


@checks_app.command(name="list")
def checks_list(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", help="Include inactive patterns"),
):
    """List check patterns."""
    app_ctx: AppContext = ctx.obj
    try:
        patterns = app_ctx.storage.check_patterns.get_all(active_only=not show_all)
        table = Table(title="Check patterns")
        table.add_column("ID", justify="right")
        table.add_column("Name", style="cyan")
        table.add_column("Category", style="magenta")
        table.add_column("Amount")
        table.add_column("Days")
        table.add_column("Boost", justify="right")
        table.add_column("Uses", justify="right")
        for p in patterns:
            days = "any" if p.day_min is None and p.day_max is None else f"{p.day_min or 1}-{p.day_max or 31}"
            name = p.name if p.is_active else f"[dim]{p.name} (inactive)[/dim]"
            table.add_row(
                str(p.id), name, p.category, _check_amount_text(p), days,
                f"{p.confidence_boost:.2f}", str(p.use_count),
            )
        console.print(table)
    except Exception as e:
        _fail(app_ctx, e)


@checks_app.command(name="deactivate")
def checks_deactivate(
    ctx: typer.Context,
    pattern_id: int = typer.Argument(...),
    reactivate: bool = typer.Option(False, "--reactivate", help="Turn the pattern back on"),
):
    """Deactivate (or reactivate) a check pattern. Patterns are never deleted."""
    app_ctx: AppContext = ctx.obj
    try:
        state = RuleState.ACTIVE if reactivate else RuleState.INACTIVE
        app_ctx.storage.check_patterns.set_state(pattern_id, state)
        console.print(f"[green]✓[/green] Check pattern #{pattern_id} is now {state.value}")
    except Exception as e:
        _fail(app_ctx, e)


@patterns_app.command(name="add")
def patterns_add(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    category: str = typer.Argument(...),
    merchant: str = typer.Option("", "--merchant", "-m", help="Merchant name or regex"),
    regex: bool = typer.Option(False, "--regex"),
    condition: AmountCondition = typer.Option(AmountCondition.ANY, "--condition"),
    value: Optional[str] = typer.Option(None, "--value", help="Threshold for lt/le/eq/ge/gt"),
    amount_min: Optional[str] = typer.Option(None, "--min"),
    amount_max: Optional[str] = typer.Option(None, "--max"),
    direction: Optional[Direction] = typer.Option(None, "--direction"),
    confidence: float = typer.Option(0.8, "--confidence", min=0.0, max=1.0),
    priority: int = typer.Option(0, "--priority", min=0),
    description: str = typer.Option("", "--description", "-d"),
):
    """
    Add a pattern rule.

    Examples:
        spice patterns add big-amazon Shopping -m amazon --condition gt --value 100
        spice patterns add payroll Salary -m "^ACME PAYROLL" --regex --direction income
    """
    app_ctx: AppContext = ctx.obj
    try:
        if app_ctx.storage.categories.get_by_name(category) is None:
            raise ValueError(f"category '{category}' does not exist")

        rule = PatternRule(
            name=name,
            category=category,
            merchant_pattern=merchant,
            is_regex=regex,
            amount_condition=condition,
            amount_value=_decimal(value),
            amount_min=_decimal(amount_min),
            amount_max=_decimal(amount_max),
            direction=direction,
            confidence=confidence,
            priority=priority,
            description=description,
        )
        saved = app_ctx.storage.pattern_rules.add(rule)
        console.print(f"[green]✓[/green] Added pattern rule #{saved.id} {name} → {category}")
    except Exception as e:
        _fail(app_ctx, e)


@patterns_app.command(name="list")
def patterns_list(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", help="Include inactive rules"),
):
    """List pattern rules, highest priority first."""
    app_ctx: AppContext = ctx.obj
    try:
        rules = app_ctx.storage.pattern_rules.get_all(active_only=not show_all)
        table = Table(title="Pattern rules")
        table.add_column("ID", justify="right")
        table.add_column("Name", style="cyan")
        table.add_column("Merchant")
        table.add_column("Amount")
        table.add_column("Direction")
        table.add_column("Category", style="magenta")
        table.add_column("Priority", justify="right")
        table.add_column("Uses", justify="right")
        for r in rules:
            if r.amount_condition == AmountCondition.ANY:
                amount = "any"
            elif r.amount_condition == AmountCondition.RANGE:
                amount = f"{r.amount_min if r.amount_min is not None else '…'} - " \
                         f"{r.amount_max if r.amount_max is not None else '…'}"
            else:
                amount = f"{r.amount_condition.value} {r.amount_value}"
            merchant = r.merchant_pattern or "any"
            if r.is_regex and r.merchant_pattern:
                merchant = f"/{merchant}/"
            name = r.name if r.state == RuleState.ACTIVE else f"[dim]{r.name} (inactive)[/dim]"
            table.add_row(
                str(r.id), name, merchant, amount,
                r.direction.value if r.direction else "any",
                r.category, str(r.priority), str(r.use_count),
            )
        console.print(table)
    except Exception as e:
        _fail(app_ctx, e)


@patterns_app.command(name="deactivate")
def patterns_deactivate(
    ctx: typer.Context,
    rule_id: int = typer.Argument(...),
    reactivate: bool = typer.Option(False, "--reactivate"),
):
    """Deactivate (or reactivate) a pattern rule."""
    app_ctx: AppContext = ctx.obj
    try:
        state = RuleState.ACTIVE if reactivate else RuleState.INACTIVE
        app_ctx.storage.pattern_rules.set_state(rule_id, state)
        console.print(f"[green]✓[/green] Pattern rule #{rule_id} is now {state.value}")
    except Exception as e:
        _fail(app_ctx, e)


@categories_app.command(name="list")
def categories_list(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", help="Include inactive categories"),
):
    """List categories."""
    app_ctx: AppContext = ctx.obj
    try:
        table = Table(title="Categories")
        table.add_column("Name", style="cyan")
        table.add_column("Type")
        table.add_column("Description", style="dim")
        for category in app_ctx.storage.categories.get_all(active_only=not show_all):
            table.add_row(category.name, category.type.value, category.description)
        console.print(table)
    except Exception as e:
        _fail(app_ctx, e)


@categories_app.command(name="add")
def categories_add(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    description: str = typer.Option("", "--description", "-d"),
    category_type: CategoryType = typer.Option(CategoryType.EXPENSE, "--type"),
):
    """Add a category."""
    app_ctx: AppContext = ctx.obj
    try:
        app_ctx.storage.categories.add(
            Category(name=name, description=description, type=category_type)
        )
        console.print(f"[green]✓[/green] Added category {name}")
    except Exception as e:
        _fail(app_ctx, e)


def _print_report(report: Report) -> None:
    console.print(Panel.fit(
        f"Period: {report.period_start} to {report.period_end}\n"
        f"Coherence: {report.coherence_score:.0%}\n"
        f"Issues: {len(report.issues)}",
        title=f"[bold]Analysis {report.session_id}[/bold]",
        border_style="cyan",
    ))

    if report.issues:
        table = Table(show_header=True)
        table.add_column("Severity")
        table.add_column("Type", style="cyan")
        table.add_column("Description", max_width=60)
        table.add_column("Txns", justify="right")
        table.add_column("Fix", style="dim")
        colors = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "dim"}
        for issue in report.issues:
            color = colors.get(issue.severity.value, "white")
            table.add_row(
                f"[{color}]{issue.severity.value}[/{color}]",
                issue.type.value,
                issue.description,
                str(issue.affected_count),
                issue.fix.id if issue.fix else "",
            )
        console.print(table)

    for insight in report.insights:
        console.print(f"  • {insight}")


@app.command(name="analyze")
def analyze(
    ctx: typer.Context,
    start: Optional[datetime] = typer.Option(None, "--start", formats=DATE_FORMATS),
    end: Optional[datetime] = typer.Option(None, "--end", formats=DATE_FORMATS),
    focus: Focus = typer.Option(Focus.ALL, "--focus"),
    max_issues: int = typer.Option(50, "--max-issues", min=0),
    session_id: Optional[str] = typer.Option(None, "--session", help="Resume a session"),
    apply: bool = typer.Option(False, "--apply", help="Apply the report's fixes"),
    fix_ids: Optional[List[str]] = typer.Option(None, "--fix", help="Apply only these fixes"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Never apply fixes"),
):
    """
    Review classified transactions for inconsistencies.

    Examples:
        spice analyze --start 2025-01-01 --end 2025-03-31
        spice analyze --session 3f2a9c --apply
    """
    app_ctx: AppContext = ctx.obj
    try:
        end_date = _to_date(end) or date.today()
        start_date = _to_date(start) or end_date - timedelta(days=90)
        engine = AnalysisEngine(app_ctx.storage, app_ctx.classifier)
        options = AnalysisOptions(
            start_date=start_date,
            end_date=end_date,
            focus=focus,
            max_issues=max_issues,
            dry_run=dry_run,
            session_id=session_id,
        )

        with _interruptible() as cancel, Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Analyzing...", total=None)
            session, report = engine.analyze(
                cancel,
                options,
                progress=lambda message, _pct: progress.update(task, description=message),
            )

        _print_report(report)

        if not apply or dry_run or not report.fixes:
            if report.fixes:
                console.print(f"[dim]Apply fixes with: spice analyze --session {session.id} --apply[/dim]")
            return

        app_ctx.checkpoints.auto_checkpoint("analysis-fixes")
        results = engine.apply_fixes(session.id, fix_ids or None)
        for result in results:
            if result.success:
                note = " (already applied)" if result.already_applied else ""
                console.print(f"[green]✓[/green] {result.fix_id}: {result.message}{note}")
            else:
                console.print(f"[red]✗[/red] {result.fix_id}: {result.message}")
    except Exception as e:
        _fail(app_ctx, e)


def cli_main():
    """Entry point for the CLI"""
    app()


if __name__ == "__main__":
    cli_main()

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

from spice.classification.interfaces import Prompter
from spice.classification.models import PendingClassification, PromptResult
from spice.domain.enums import PromptAction
from spice.domain.models import Transaction


class RichPrompter(Prompter):
    """
    Terminal prompter.

    Shows the suggestion in a panel and asks to accept, edit or reject it.
    An edit asks for the category name and, when the category doesn't
    exist yet, an optional description.
    """

    CHOICES = {"a": PromptAction.ACCEPT, "e": PromptAction.EDIT, "r": PromptAction.REJECT}

    def __init__(self, console: Optional[Console] = None, known_categories=None):
        super().__init__()
        self.console = console or Console()
        self.known_categories = set(known_categories or [])

    def _ask(self, pending: PendingClassification) -> PromptResult:
        suggestion = pending.suggestion
        sample = pending.transactions[0]
        count = len(pending.transactions)

        body = (
            f"[bold]{pending.merchant}[/bold]\n"
            f"{sample.date}  {sample.name[:60]}\n"
            f"Amount: ${sample.amount:,.2f}"
        )
        if count > 1:
            body += f"  ({count} transactions, total ${pending.total_amount:,.2f})"
        body += (
            f"\n\nSuggested: [magenta]{suggestion.category}[/magenta]"
            f"{' [yellow](new)[/yellow]' if suggestion.is_new else ''}"
            f"  confidence {suggestion.confidence:.0%}"
        )
        if suggestion.reasoning:
            body += f"\n[dim]{suggestion.reasoning}[/dim]"

        self.console.print(Panel(body, title="Classify", border_style="cyan"))

        choice = Prompt.ask(
            "[a]ccept, [e]dit or [r]eject",
            choices=list(self.CHOICES),
            default="a",
            console=self.console,
        )
        action = self.CHOICES[choice]
        if action != PromptAction.EDIT:
            return PromptResult(action)

        category = ""
        while not category:
            category = Prompt.ask("Category", console=self.console).strip()

        description = ""
        if category not in self.known_categories:
            description = Prompt.ask(
                "Description for the new category (blank to generate)",
                default="",
                console=self.console,
            ).strip()
        self.known_categories.add(category)
        return PromptResult(PromptAction.EDIT, category=category, description=description)

    def _ask_retry(self, transaction: Transaction, error: Exception) -> bool:
        self.console.print(
            f"[bold red]Classification failed[/bold red] for {transaction.merchant}: {error}"
        )
        return Confirm.ask("Retry?", default=True, console=self.console)

    def show_message(self, message: str) -> None:
        self.console.print(f"[dim]{message}[/dim]")

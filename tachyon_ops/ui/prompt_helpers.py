"""Helper utilities for operator-facing terminal output.

Provides the confirmation keyword prompt and the target/status panels
printed by the migration and release CLIs.
"""

from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt

RISK_STYLES = {
    "low": "green",
    "medium": "yellow",
    "high": "bold red",
}


def prompt_keyword(question: str, console: Optional[Console] = None) -> str:
    """Ask the operator to type a confirmation keyword.

    The answer is returned untouched; matching is the caller's job.

    Args:
        question: Question shown to the operator
        console: Rich console for output

    Returns:
        Raw text entered by the operator
    """
    console = console or Console()
    return Prompt.ask(f"\n  [bold yellow]{question}[/bold yellow]", console=console)


def display_target(
    console: Console,
    title: str,
    lines: list[str],
    risk: str = "low",
) -> None:
    """Display the target panel shown before any command runs.

    Args:
        console: Rich console for output
        title: Panel title
        lines: Body lines (connection details, warnings)
        risk: Risk tier name, selects the border colour
    """
    style = RISK_STYLES.get(risk, "cyan")
    console.print(Panel(escape("\n".join(lines)), title=title, border_style=style))


def display_warning(
    console: Console,
    message: str,
) -> None:
    """Display a warning message.

    Args:
        console: Rich console for output
        message: Warning message to display
    """
    console.print(f"\n  [bold yellow]Warning:[/bold yellow] {escape(message)}")


def display_error(
    console: Console,
    message: str,
) -> None:
    """Display an error message.

    Args:
        console: Rich console for output
        message: Error message to display
    """
    console.print(f"\n  [bold red]Error:[/bold red] {escape(message)}")


def display_success(
    console: Console,
    message: str,
) -> None:
    """Display a success message.

    Args:
        console: Rich console for output
        message: Success message to display
    """
    console.print(f"\n  [bold green]Success:[/bold green] {escape(message)}")

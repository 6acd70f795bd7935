"""
Beautiful console output using Rich.

This module wraps Rich's formatting capabilities so we have consistent,
gorgeous output throughout the tool. Instead of one global console, each
conversion run creates a ConsoleLogger and hands it to every component
that needs to talk to the user.
"""

from typing import Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeRemainingColumn
from rich.panel import Panel
from rich import box


class ConsoleLogger:
    """
    Logger capability passed explicitly to loaders, detectors and writers.

    Log methods (debug/info/warning/error) write to standard error via a
    Rich console. The presentation helpers (header, section, step, success)
    mirror what the CLI shows during a run.

    Args:
        console: Rich console to write to (default: a new stderr console)
        verbose: Whether debug() messages are shown
        quiet: Suppress everything except errors (used by tests)
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        verbose: bool = False,
        quiet: bool = False
    ):
        self.console = console if console is not None else Console(stderr=True)
        self.verbose = verbose
        self.quiet = quiet

    def debug(self, message: str) -> None:
        """Print a dimmed debug message (only when verbose)."""
        if self.verbose and not self.quiet:
            self.console.print(f"[dim]  {message}[/dim]")

    def info(self, message: str) -> None:
        """Print an info message in cyan with an info symbol."""
        if not self.quiet:
            self.console.print(f"[cyan]ℹ[/cyan] {message}")

    def warning(self, message: str) -> None:
        """Print a warning message in yellow with a warning symbol."""
        if not self.quiet:
            self.console.print(f"[bold yellow]⚠[/bold yellow] {message}")

    def error(self, message: str) -> None:
        """Print an error message in red with an X."""
        self.console.print(f"[bold red]✗[/bold red] {message}")

    def success(self, message: str) -> None:
        """Print a success message in green with a checkmark."""
        if not self.quiet:
            self.console.print(f"[bold green]✓[/bold green] {message}")

    def header(self, title: str) -> None:
        """
        Print a fancy header banner.

        Example:
            logger.header("Model Converter v0.2.0")
        """
        if not self.quiet:
            self.console.print(
                Panel.fit(
                    f"[bold cyan]{title}[/bold cyan]",
                    border_style="cyan",
                    box=box.DOUBLE
                )
            )

    def section(self, title: str) -> None:
        """Print a section header."""
        if not self.quiet:
            self.console.print(f"\n[bold yellow]{'=' * 60}[/bold yellow]")
            self.console.print(f"[bold yellow]{title}[/bold yellow]")
            self.console.print(f"[bold yellow]{'=' * 60}[/bold yellow]\n")

    def step(self, current: int, total: int, message: str) -> None:
        """
        Print a step indicator.

        Example: [1/4] Loading text encoder...
        """
        if not self.quiet:
            self.console.print(f"[bold cyan][{current}/{total}][/bold cyan] {message}")

    def progress(self) -> Progress:
        """
        Create a Rich Progress instance with our preferred styling.

        Returns:
            Configured Progress object bound to this logger's console.
            Use with context manager:

            with logger.progress() as progress:
                task = progress.add_task("Writing...", total=100)
                for i in range(100):
                    progress.advance(task)
        """
        return Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(complete_style="green", finished_style="bold green"),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeRemainingColumn(),
            console=self.console,
            disable=self.quiet
        )


def print_completion(
    logger: ConsoleLogger,
    output_path: str,
    size_mb: float,
    hash_value: str,
    elapsed_seconds: float
) -> None:
    """
    Print the final success message with all the details.

    Makes a beautiful panel with all the info about the written container.
    """
    if logger.quiet:
        return

    logger.console.print()

    message = (
        f"[bold green]✨ CONVERSION COMPLETE! ✨[/bold green]\n\n"
        f"[cyan]Location:[/cyan] {output_path}\n"
        f"[cyan]Size:[/cyan] {size_mb:.2f} MB\n"
        f"[cyan]Time:[/cyan] {elapsed_seconds:.1f}s\n"
        f"[cyan]SHA-256:[/cyan] [dim]{hash_value}[/dim]"
    )

    logger.console.print(
        Panel(
            message,
            border_style="green",
            box=box.DOUBLE,
            padding=(1, 2)
        )
    )

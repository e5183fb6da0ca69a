"""Console output formatting utilities for formulary."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from formulary.ledger import LedgerEntry
    from formulary.orchestrator import InstallReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_install_started(self, target: str, order: List[str]) -> None:
        """Print install start information."""
        print("\nINSTALL STARTED")
        print(f"Formula: {target}")
        print(f"Order: {' -> '.join(order)}")
        print()

    def print_plan(self, target: str, order: List[str]) -> None:
        self.print_header(f"Install plan for {target}")
        for idx, name in enumerate(order, 1):
            print(f"  {idx}. {name}")

    def print_report(self, report: "InstallReport") -> None:
        """Print the per-formula outcome summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for name in report.order:
            outcome = report.outcomes[name]
            print(f"  {name}: {outcome.status.upper()}")
            if outcome.message:
                print(f"    {outcome.message}")

        for outcome in report.failures:
            if not outcome.output:
                continue
            self.print_header(f"{outcome.name}: {outcome.error_kind} output (tail)")
            lines = outcome.output.rstrip().splitlines()
            shown = lines if self.debug else lines[-20:]
            for line in shown:
                print(f"  {line}")

    def print_ledger(self, entries: Iterable["LedgerEntry"]) -> None:
        entries = list(entries)
        if not entries:
            print("No formulas installed.")
            return
        for e in entries:
            version = e.version or "HEAD"
            print(f"{e.name} {version} [{e.state.value}] {e.prefix or ''}".rstrip())

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)



# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console

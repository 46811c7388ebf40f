"""Decision report."""

from __future__ import annotations

import json
from dataclasses import dataclass

from rich.console import Console
from rich.table import Table

from gatekeeper.core import Decision, EffectResult, MatchOutcome


@dataclass
class DecisionReport:
    """Explained enforcement decision for display."""

    decision: Decision
    ptype: str = "p"
    matcher: str = ""

    def __str__(self) -> str:
        """Return a formatted string representation using Rich."""
        console = Console(force_terminal=True, width=100)
        with console.capture() as capture:
            self._print_to_console(console)
        return capture.get()

    def _print_to_console(self, console: Console) -> None:
        """Print the decision report to a Rich console."""
        console.print()
        console.print("[bold]Gatekeeper Decision[/bold]")
        console.print("━" * 70)

        console.print(f"Request: {', '.join(str(v) for v in self.decision.request)}")
        if self.matcher:
            console.print(f"Matcher: {self.matcher}", markup=False)
        console.print()

        if not self.decision.outcomes:
            console.print("[dim]No policy rows evaluated[/dim]")
        else:
            table = Table(show_header=True, header_style="bold")
            table.add_column("Row", style="cyan", justify="right")
            table.add_column("Rule", style="white")
            table.add_column("Match", justify="center")
            table.add_column("Effect", justify="center")

            for outcome in self.decision.outcomes:
                table.add_row(
                    f"{self.ptype}[{outcome.index}]",
                    ", ".join(outcome.rule),
                    self._match_cell(outcome),
                    outcome.effect.value if outcome.matched else "-",
                )
            console.print(table)

        console.print()
        style = self._get_result_style(self.decision.result)
        console.print(f"Decision: [{style}]{self.decision.result.value.upper()}[/{style}]")
        if self.decision.matched_rule:
            console.print(f"Decided by: {', '.join(self.decision.matched_rule)}")
        console.print()

    def _match_cell(self, outcome: MatchOutcome) -> str:
        if outcome.error is not None:
            return "[red]error[/red]"
        return "[green]yes[/green]" if outcome.matched else "[dim]no[/dim]"

    def _get_result_style(self, result: EffectResult) -> str:
        """Get Rich style for a verdict."""
        return {
            EffectResult.ALLOW: "bold green",
            EffectResult.DENY: "bold red",
            EffectResult.INDETERMINATE: "yellow",
        }[result]

    def print(self) -> None:
        """Print the report to stdout."""
        console = Console()
        self._print_to_console(console)

    def to_dict(self) -> dict:
        """Convert report to dictionary."""
        return {
            "request": list(self.decision.request),
            "allowed": self.decision.allowed,
            "result": self.decision.result.value,
            "matched_rule": list(self.decision.matched_rule) if self.decision.matched_rule else None,
            "explain": list(self.decision.explain),
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert report to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

"""Rich table rendering and canonical JSON output for the CLI."""

from __future__ import annotations

import json
from typing import Optional

from rich.console import Console
from rich.table import Table

from access_guard.models import PasswordAnalysisResult, PasswordPolicy

_STRENGTH_COLORS = {
    "very-weak": "red bold",
    "weak": "red",
    "fair": "yellow",
    "good": "green",
    "strong": "green bold",
    "very-strong": "cyan bold",
}

_BREACH_COLORS = {
    "clean": "green",
    "compromised": "red bold",
    "unavailable": "yellow",
}


def render_analysis(result: PasswordAnalysisResult, console: Optional[Console] = None) -> None:
    """Print a password analysis. The password itself is never shown."""
    console = console or Console()
    color = _STRENGTH_COLORS.get(result.strength, "white")
    breach_color = _BREACH_COLORS.get(result.breach_status, "white")
    table = Table(title="Password Analysis", show_lines=True)
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_row("Score", f"[{color}]{result.score}/100[/{color}]")
    table.add_row("Strength", f"[{color}]{result.strength}[/{color}]")
    table.add_row("Entropy", f"{result.entropy_bits:.1f} bits")
    breach = result.breach_status
    if result.breach_count:
        breach += f" ({result.breach_count} sightings)"
    table.add_row("Breach corpus", f"[{breach_color}]{breach}[/{breach_color}]")
    table.add_row("Feedback", "\n".join(result.feedback) or "-")
    console.print(table)


def render_policy(policy: PasswordPolicy, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Password Policy")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in policy.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


def to_json(payload: dict) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)

"""
Terminal and JSON reporting for testlens.

Uses Rich for colored output, tables and panels, with a plain-text
fallback when color is disabled.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .durations import format_duration
from .models import (
    Anomaly,
    DetectionResult,
    LogStep,
    Severity,
    TestOutcome,
    TestStatus,
)


# Status colors and badges
STATUS_STYLES = {
    TestStatus.PASSED: ("green", "PASS", "[green]PASS[/green]"),
    TestStatus.FAILED: ("red", "FAIL", "[red]FAIL[/red]"),
    TestStatus.SKIPPED: ("yellow", "SKIP", "[yellow]SKIP[/yellow]"),
    TestStatus.RUNNING: ("blue", "RUN ", "[blue]RUN [/blue]"),
}

SEVERITY_STYLES = {
    Severity.HIGH: "red bold",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "dim",
}


class Reporter:
    """
    Console reporter for parse and detection results.

    Everything except errors is suppressed in quiet mode.
    """

    def __init__(
        self,
        verbose: bool = False,
        quiet: bool = False,
        no_color: bool = False,
        console: Optional[Console] = None,
    ):
        """
        Initialize reporter.

        Args:
            verbose: Show error details for failed tests
            quiet: Minimal output (only errors)
            no_color: Plain text output without Rich
            console: Rich console to print to (defaults to a new Console)
        """
        self.verbose = verbose
        self.quiet = quiet
        self.no_color = no_color

        if no_color:
            self.console = None
        else:
            self.console = console or Console()

    def print(self, message: str, style: Optional[str] = None) -> None:
        """Print a message to the console."""
        if self.quiet:
            return

        if self.console:
            if style:
                self.console.print(message, style=style)
            else:
                self.console.print(message)
        else:
            print(self._strip_markup(message))

    def print_error(self, message: str) -> None:
        """Print an error message (always shown, even in quiet mode)."""
        if self.console:
            self.console.print(f"[red]Error:[/red] {escape(message)}")
        else:
            print(f"Error: {message}")

    def _strip_markup(self, text: str) -> str:
        """Strip Rich markup from text for plain output."""
        return Text.from_markup(text).plain

    def print_steps(self, steps: Sequence[LogStep]) -> None:
        """Print the steps of a job log with their line counts."""
        if self.quiet:
            return
        if not steps:
            self.print("No steps found.")
            return

        if self.console:
            table = Table(title="Steps")
            table.add_column("#", justify="right", style="dim")
            table.add_column("Step", style="cyan")
            table.add_column("Lines", justify="right")
            for step in steps:
                table.add_row(
                    str(step.step_number),
                    escape(step.name),
                    str(_line_count(step.log_text)),
                )
            self.console.print(table)
        else:
            for step in steps:
                print(f"{step.step_number:>3}  {step.name} ({_line_count(step.log_text)} lines)")

    def print_outcomes(
        self,
        outcomes: Sequence[TestOutcome],
        title: Optional[str] = None,
    ) -> None:
        """
        Print one line per outcome, followed by a count summary.

        Args:
            outcomes: Extracted outcomes
            title: Heading (typically the step name)
        """
        if self.quiet:
            return

        if title:
            if self.console:
                self.console.print(f"\n[bold]{escape(title)}[/bold]")
            else:
                print(f"\n{title}")

        if not outcomes:
            self.print("  No test results found.", style="dim")
            return

        for outcome in outcomes:
            self._print_outcome(outcome)

        counts = _count_statuses(outcomes)
        summary = ", ".join(
            f"{count} {status.value}" for status, count in counts.items() if count
        )
        self.print(f"  [dim]{summary}[/dim]")

    def _print_outcome(self, outcome: TestOutcome) -> None:
        """Print a single outcome line."""
        _, plain_status, rich_status = STATUS_STYLES.get(
            outcome.status,
            ("white", "???", "[white]???[/white]"),
        )
        duration_str = (
            f" ({format_duration(outcome.duration)})"
            if outcome.duration is not None else ""
        )
        location = ""
        if outcome.file:
            location = outcome.file
            if outcome.line is not None:
                location += f":{outcome.line}"

        if self.console:
            where = f" [dim]{escape(location)}[/dim]" if location else ""
            self.console.print(
                f"  {rich_status} {escape(outcome.test_name)}"
                f"[dim]{duration_str}[/dim]{where}"
            )
            if self.verbose and outcome.error:
                for line in outcome.error.split("\n"):
                    self.console.print(f"      [dim]{escape(line)}[/dim]")
        else:
            where = f" {location}" if location else ""
            print(f"  {plain_status} {outcome.test_name}{duration_str}{where}")
            if self.verbose and outcome.error:
                for line in outcome.error.split("\n"):
                    print(f"      {line}")

    def print_anomalies(self, anomalies: Sequence[Anomaly]) -> None:
        """Print anomalies as a table, newest first as given."""
        if self.quiet:
            return
        if not anomalies:
            self.print("No anomalies.", style="green")
            return

        if self.console:
            table = Table(title="Anomalies")
            table.add_column("ID", style="dim")
            table.add_column("Test", style="cyan")
            table.add_column("Type")
            table.add_column("Severity")
            table.add_column("Details")
            table.add_column("Detected", style="dim")
            table.add_column("Status")

            for anomaly in anomalies:
                table.add_row(
                    anomaly.id or "-",
                    escape(anomaly.test_name),
                    anomaly.type.value,
                    f"[{SEVERITY_STYLES[anomaly.severity]}]{anomaly.severity.value}[/]",
                    escape(describe_details(anomaly)),
                    anomaly.detected_at.strftime("%Y-%m-%d %H:%M"),
                    "[green]resolved[/green]" if anomaly.resolved else "[red]open[/red]",
                )

            self.console.print(table)
        else:
            for anomaly in anomalies:
                state = "resolved" if anomaly.resolved else "open"
                print(
                    f"  {anomaly.id or '-'}  {anomaly.severity.value.upper():<6} "
                    f"{anomaly.type.value:<18} {anomaly.test_name}  "
                    f"[{describe_details(anomaly)}] ({state})"
                )

    def print_detection_summary(self, result: DetectionResult) -> None:
        """Print how many candidates were found and how many were new."""
        if self.quiet:
            return

        found = len(result.candidates)
        new = len(result.inserted)

        if self.console:
            if found == 0:
                text = f"[green bold]No anomalies in {escape(result.project_id)}[/green bold]"
                border_style = "green"
            else:
                text = (
                    f"[bold]{found}[/bold] anomalies detected, "
                    f"[red]{new} new[/red], "
                    f"[dim]{result.skipped} already open[/dim]"
                )
                border_style = "red" if new else "yellow"
            self.console.print(Panel(text, title="Detection", border_style=border_style))
        else:
            print("\n" + "=" * 60)
            print("DETECTION")
            print("=" * 60)
            if found == 0:
                print(f"\nNo anomalies in {result.project_id}")
            else:
                print(f"\nDetected: {found}, New: {new}, Already open: {result.skipped}")


def _line_count(text: str) -> int:
    return len(text.split("\n")) if text else 0


def _count_statuses(outcomes: Sequence[TestOutcome]) -> Dict[TestStatus, int]:
    counts: Dict[TestStatus, int] = {}
    for outcome in outcomes:
        counts[outcome.status] = counts.get(outcome.status, 0) + 1
    return counts


def describe_details(anomaly: Anomaly) -> str:
    """One-line human summary of an anomaly's details."""
    details = anomaly.details
    if "failRate" in details:
        return (
            f"fails {details['failRate']:.0%} of {details.get('totalRuns', '?')} runs"
        )
    if "averageDuration" in details:
        return (
            f"avg {format_duration(details['averageDuration'])}, "
            f"max {format_duration(details.get('maxDuration', 0))}"
        )
    if "failureRate" in details:
        return (
            f"{details.get('recentFailures', '?')} failures, "
            f"{details['failureRate']:.0%} of {details.get('totalRuns', '?')} runs"
        )
    return ", ".join(f"{k}={v}" for k, v in details.items())


def write_json_report(
    output_path: Path,
    steps: Optional[Sequence[Tuple[LogStep, List[TestOutcome]]]] = None,
    anomalies: Optional[Sequence[Anomaly]] = None,
) -> None:
    """
    Write parse and/or detection results to a JSON file.

    Args:
        output_path: Path to output JSON file
        steps: (step, outcomes) pairs from ``parse_job_outcomes`` (optional)
        anomalies: Anomalies to include (optional)
    """
    report: Dict[str, object] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if steps is not None:
        report["steps"] = [
            {
                "name": step.name,
                "step_number": step.step_number,
                "outcomes": [o.to_dict() for o in step_outcomes],
            }
            for step, step_outcomes in steps
        ]
        outcomes = [o for _, step_outcomes in steps for o in step_outcomes]
        counts = _count_statuses(outcomes)
        report["summary"] = {
            "total": len(outcomes),
            **{status.value: count for status, count in counts.items()},
        }
        report["outcomes"] = [o.to_dict() for o in outcomes]

    if anomalies is not None:
        report["anomalies"] = [a.to_dict() for a in anomalies]

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(report, indent=2, default=str))

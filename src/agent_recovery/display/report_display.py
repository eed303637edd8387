"""Rich rendering of recovery reports and probe results.

``ReportDisplay`` implements the ``ReportSink`` protocol for human operators:
an attempt table, a summary panel with the terminal reason and a suggested
next step, and the container's recent log lines when recovery did not
succeed.  All output goes through a ``Console(stderr=True)`` so stdout stays
clean for the JSON sink.
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from agent_recovery.display.sink import ReportSink
from agent_recovery.models.recovery import Condition, Observation, RecoveryReport, TerminalReason

# Next step offered to the operator for each way a run can end.
TERMINAL_SUGGESTIONS: dict[TerminalReason, str] = {
    TerminalReason.RECOVERED: "No action needed.",
    TerminalReason.BUDGET_EXHAUSTED: (
        "Escalation ran out. Inspect the recent logs below; if the run was "
        "--non-destructive, re-run without it or with --recreate-spec."
    ),
    TerminalReason.DEADLINE_EXCEEDED: (
        "The container did not recover in time. Check daemon health and host "
        "resources (disk, memory) before retrying with a longer --deadline."
    ),
    TerminalReason.USER_ABORTED: "Re-run the same command to resume recovery from scratch.",
    TerminalReason.MISCONFIGURED: (
        "No matching container exists. Provide --recreate-spec, fix "
        "--name-pattern, or pass --treat-missing-as-success."
    ),
    TerminalReason.PLANNED: "Dry run only. Re-run without --dry-run to apply the planned action.",
}

_CONDITION_STYLES: dict[Condition, str] = {
    Condition.HEALTHY: "green",
    Condition.UNRESPONSIVE: "yellow",
    Condition.STOPPED: "yellow",
    Condition.CRASHED: "red",
    Condition.MISSING: "red",
}

_OUTCOME_STYLES = {
    "success": "[green]success[/green]",
    "failed": "[red]failed[/red]",
    "timed_out": "[yellow]timed out[/yellow]",
    "skipped": "[dim]skipped[/dim]",
}


def styled_condition(condition: Condition | None) -> str:
    if condition is None:
        return "[dim]unknown[/dim]"
    style = _CONDITION_STYLES[condition]
    return f"[{style}]{condition.value}[/{style}]"


def _mib(value: float) -> str:
    return f"{value / (1024 * 1024):.1f} MiB"


def format_usage(usage: dict[str, float]) -> str:
    """Render a resource snapshot like ``CPU 12.5%, memory 180.0 MiB / 2048.0 MiB (8.8%)``."""
    parts: list[str] = []
    if "cpu_percent" in usage:
        parts.append(f"CPU {usage['cpu_percent']:.1f}%")
    if "memory_bytes" in usage:
        memory = f"memory {_mib(usage['memory_bytes'])}"
        if "memory_limit_bytes" in usage:
            memory += f" / {_mib(usage['memory_limit_bytes'])}"
        if "memory_percent" in usage:
            memory += f" ({usage['memory_percent']:.1f}%)"
        parts.append(memory)
    return ", ".join(parts)


class ReportDisplay(ReportSink):
    """Human-readable report rendering."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

    def emit(self, report: RecoveryReport) -> None:
        self.console.print(self.render(report))

    def render(self, report: RecoveryReport) -> Panel:
        """Build the full report panel."""
        summary = Text()
        summary.append("Target:     ", style="bold")
        summary.append(f"{report.container_ref.name_pattern}\n")
        summary.append("Result:     ", style="bold")
        summary.append(
            f"{report.terminal_reason.value} (exit {report.exit_code})\n",
            style="green" if report.exit_code == 0 else "red",
        )
        summary.append("Final:      ", style="bold")
        summary.append_text(Text.from_markup(styled_condition(report.final_condition) + "\n"))
        if report.detail:
            summary.append("Detail:     ", style="bold")
            summary.append(f"{report.detail}\n")
        if report.planned_action is not None:
            summary.append("Would take: ", style="bold")
            summary.append(f"{report.planned_action.kind}\n")
        if report.resource_usage:
            summary.append("Resources:  ", style="bold")
            summary.append(f"{format_usage(report.resource_usage)}\n")
        summary.append("Suggestion: ", style="bold")
        summary.append(TERMINAL_SUGGESTIONS[report.terminal_reason])

        parts: list = [summary]
        if report.history:
            parts.append(self._attempt_table(report))
        if report.recent_logs:
            logs = Text("\nRecent logs:\n", style="bold")
            for line in report.recent_logs:
                logs.append(f"  {line}\n", style="dim")
            parts.append(logs)

        return Panel(
            Group(*parts),
            title="Recovery Report",
            border_style="green" if report.exit_code == 0 else "red",
        )

    @staticmethod
    def _attempt_table(report: RecoveryReport) -> Table:
        table = Table(title="Attempts", expand=True)
        table.add_column("#", justify="right")
        table.add_column("Observed")
        table.add_column("Action", style="bold")
        table.add_column("Outcome")
        table.add_column("Duration", justify="right")
        table.add_column("Detail")
        for record in report.history:
            outcome = record.outcome
            detail = getattr(outcome, "reason", None) or getattr(outcome, "detail", "") or ""
            table.add_row(
                str(record.sequence_number),
                styled_condition(record.observed_condition),
                record.action.kind,
                _OUTCOME_STYLES.get(outcome.status, outcome.status),
                f"{record.duration_seconds:.1f}s",
                detail,
            )
        return table

    def show_observations(
        self,
        pattern: str,
        observations: list[Observation],
        usage: dict[str, dict[str, float]] | None = None,
    ) -> None:
        """Render the result of a probe-only run.

        ``usage`` maps container ids to resource snapshots.
        """
        usage = usage or {}
        table = Table(title=f"Containers matching '{pattern}'", expand=True)
        table.add_column("Container", style="bold")
        table.add_column("Condition")
        table.add_column("Exit code", justify="right")
        table.add_column("Resources")
        table.add_column("Note")
        for observation in observations:
            note = observation.error or ""
            snapshot = usage.get(observation.container_id or "", {})
            table.add_row(
                observation.container_name or "-",
                styled_condition(observation.condition),
                "-" if observation.exit_code is None else str(observation.exit_code),
                format_usage(snapshot) or "-",
                note,
            )
        self.console.print(table)

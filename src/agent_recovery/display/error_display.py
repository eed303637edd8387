"""Structured error display using Rich panels.

Renders failures that prevent a recovery run from starting at all (daemon
unreachable, invalid settings or recreate spec) as a panel with the failing
component, error class, message and an actionable suggestion.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from rich.console import Console

    from agent_recovery.preflight import ConfigIssue


class ErrorDisplay:
    """Renders structured error panels.

    All output goes through the shared ``Console`` instance (typically
    ``stderr=True``) so it does not interfere with the JSON report on stdout.
    """

    def __init__(self, console: Console) -> None:
        self.console = console

    def show_error(
        self,
        component: str,
        error_class: str,
        message: str,
        suggestion: str,
    ) -> None:
        """Render a structured error panel.

        Args:
            component: Part of the tool that failed (e.g. ``"docker"``).
            error_class: Classification of the error.
            message: Human-readable error description (truncated to 500 chars).
            suggestion: Actionable fix suggestion.
        """
        body = Text()
        body.append("Component:   ", style="bold")
        body.append(f"{component}\n")
        body.append("Error Class: ", style="bold")
        body.append(f"{error_class}\n")
        body.append("Message:     ", style="bold")
        body.append(f"{message[:500]}\n")
        body.append("Suggestion:  ", style="bold")
        body.append(suggestion)

        panel = Panel(
            body,
            border_style="red",
            title="Recovery Error",
        )
        self.console.print(panel)

    def show_config_issues(self, config_dir: str, issues: list[ConfigIssue]) -> None:
        """Render agent configuration issues found by the preflight check."""
        if not issues:
            self.console.print(f"[green]Configuration in {config_dir} looks valid[/green]")
            return
        table = Table(title=f"Configuration issues in {config_dir}", expand=True)
        table.add_column("File", style="bold")
        table.add_column("Severity")
        table.add_column("Issue")
        for issue in issues:
            severity = (
                "[red]error[/red]" if issue.severity == "error" else "[yellow]warning[/yellow]"
            )
            table.add_row(issue.path, severity, issue.message)
        self.console.print(table)

    @staticmethod
    def format_error(error: Exception) -> tuple[str, str, str, str]:
        """Inspect an exception and return structured error fields.

        Returns:
            Tuple of ``(component, error_class, message, suggestion)``.
        """
        from docker.errors import DockerException

        from agent_recovery.config import ConfigError
        from agent_recovery.runtime.client import RuntimeClientError

        if isinstance(error, ConfigError):
            return (
                "config",
                "invalid_config",
                str(error),
                "Fix the YAML file or export the referenced environment variables",
            )

        if isinstance(error, DockerException):
            return (
                "docker",
                "daemon_unreachable",
                str(error),
                "Check that Docker is running and DOCKER_HOST (or --config runtime.base_url) "
                "points at it; on Synology the CLI may need sudo",
            )

        if isinstance(error, RuntimeClientError):
            return (
                "runtime",
                error.kind.value,
                error.message,
                "Check Docker daemon health and retry",
            )

        return (
            "unknown",
            type(error).__name__,
            str(error)[:500],
            "Re-run with --verbose and check the log output",
        )

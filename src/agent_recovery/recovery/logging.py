"""Structured logging for recovery runs.

Provides dual-sink logging via loguru:

- **Console sink**: Human-readable, shows the target pattern for every
  record emitted inside a recovery run.  When a shared Rich ``Console`` is
  provided, output routes through it so it does not interleave badly with
  the report display.
- **File sink**: optional JSON-structured JSONL file for alerting pipelines
  and audit trails.

Every probe, plan, attempt and terminal transition is logged, including
failed and timed-out attempts, so nothing is retried silently.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from pathlib import Path

    from rich.console import Console

    from agent_recovery.models.recovery import (
        Action,
        AttemptRecord,
        Observation,
        RecoveryReport,
    )


def setup_logging(
    console: Console | None = None,
    log_file: Path | None = None,
    *,
    verbose: bool = False,
) -> None:
    """Configure loguru sinks for a recovery invocation.

    Removes all existing handlers first to avoid duplicate output.

    Args:
        console: Optional shared Rich Console for output routing.
        log_file: Optional JSONL file receiving every record at DEBUG level.
        verbose: Lower the console level from INFO to DEBUG.
    """
    logger.remove()
    # Records logged outside a recovery run have no target bound.
    logger.configure(extra={"target": "-"})
    level = "DEBUG" if verbose else "INFO"

    if console is not None:
        logger.add(
            lambda msg: console.print(msg, end="", highlight=False, markup=False),
            format="{time:HH:mm:ss} | {level: <8} | {extra[target]} | {message}",
            level=level,
            colorize=False,
        )
    else:
        logger.add(
            sys.stderr,
            format=(
                "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level>"
                " | <cyan>{extra[target]}</cyan> | {message}"
            ),
            level=level,
        )

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            format="{message}",
            serialize=True,
            level="DEBUG",
        )


def log_observation(target: str, observation: Observation) -> None:
    """Log the condition a probe classified."""
    with logger.contextualize(target=target):
        if observation.error:
            logger.warning(
                "Probe degraded to {condition}: {error}",
                condition=observation.condition.value,
                error=observation.error,
            )
        else:
            logger.info(
                "Observed {condition} (container={container})",
                condition=observation.condition.value,
                container=observation.container_name or "-",
            )


def log_plan(target: str, action: Action, reason: str, *, dry_run: bool = False) -> None:
    """Log the action the planner chose."""
    with logger.contextualize(target=target):
        prefix = "Would take" if dry_run else "Planned"
        logger.info(
            "{prefix} {action}: {reason}",
            prefix=prefix,
            action=action.kind,
            reason=reason,
        )


def log_attempt(target: str, attempt: AttemptRecord) -> None:
    """Log a complete attempt record.

    INFO for successes, WARNING for everything else.
    """
    with logger.contextualize(target=target):
        outcome = attempt.outcome
        if outcome.status == "success":
            logger.info(
                "Attempt {seq} {action} succeeded in {duration:.1f}s",
                seq=attempt.sequence_number,
                action=attempt.action.kind,
                duration=attempt.duration_seconds,
            )
        else:
            logger.warning(
                "Attempt {seq} {action} {status} in {duration:.1f}s: {detail}",
                seq=attempt.sequence_number,
                action=attempt.action.kind,
                status=outcome.status,
                duration=attempt.duration_seconds,
                detail=getattr(outcome, "reason", "") or "-",
            )


def log_terminal(target: str, report: RecoveryReport) -> None:
    """Log how the run ended."""
    with logger.contextualize(target=target):
        if report.exit_code == 0:
            logger.info(
                "Recovery finished: {reason} after {attempts} attempt(s)",
                reason=report.terminal_reason.value,
                attempts=len(report.history),
            )
        else:
            logger.error(
                "Recovery finished: {reason} after {attempts} attempt(s) ({detail})",
                reason=report.terminal_reason.value,
                attempts=len(report.history),
                detail=report.detail or "-",
            )

"""Report sink protocol and the machine-readable JSON sink.

A ``ReportSink`` receives each finished ``RecoveryReport`` exactly once.
``JsonReportSink`` writes one JSON document per line to stdout so alerting
systems can consume reports while human output goes to stderr.
"""

import sys
from typing import Protocol, TextIO, runtime_checkable

from agent_recovery.models.recovery import RecoveryReport


@runtime_checkable
class ReportSink(Protocol):
    """Receives finished recovery reports."""

    def emit(self, report: RecoveryReport) -> None:
        """Handle one finished report.

        Args:
            report: The immutable report of a completed recovery run.
        """
        ...


class JsonReportSink(ReportSink):
    """Writes each report as a single JSON line."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def emit(self, report: RecoveryReport) -> None:
        stream = self._stream or sys.stdout
        stream.write(report.to_json() + "\n")
        stream.flush()

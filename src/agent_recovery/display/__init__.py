"""Report sinks and Rich display for recovery reports and errors."""

from agent_recovery.display.error_display import ErrorDisplay
from agent_recovery.display.report_display import ReportDisplay
from agent_recovery.display.sink import JsonReportSink, ReportSink

__all__ = ["ErrorDisplay", "JsonReportSink", "ReportDisplay", "ReportSink"]

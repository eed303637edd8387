"""Data models for container runtime state, recovery attempts and reports."""

from agent_recovery.models.recovery import (
    DESTRUCTIVE_ACTIONS,
    EXIT_CODES,
    Action,
    ActionKind,
    AttemptRecord,
    Condition,
    Failed,
    ForceKill,
    ForceRemove,
    GracefulRestart,
    History,
    HistoryClosedError,
    NoOp,
    Observation,
    Outcome,
    OutcomeStatus,
    Recreate,
    RecoveryReport,
    SignalRestart,
    Skipped,
    Success,
    TerminalReason,
    TimedOut,
)
from agent_recovery.models.runtime import (
    ContainerRef,
    ContainerSummary,
    RecreateSpec,
    RuntimeStatus,
)

__all__ = [
    "Action",
    "ActionKind",
    "AttemptRecord",
    "Condition",
    "ContainerRef",
    "ContainerSummary",
    "DESTRUCTIVE_ACTIONS",
    "EXIT_CODES",
    "Failed",
    "ForceKill",
    "ForceRemove",
    "GracefulRestart",
    "History",
    "HistoryClosedError",
    "NoOp",
    "Observation",
    "Outcome",
    "OutcomeStatus",
    "RecoveryReport",
    "Recreate",
    "RecreateSpec",
    "RuntimeStatus",
    "SignalRestart",
    "Skipped",
    "Success",
    "TerminalReason",
    "TimedOut",
]

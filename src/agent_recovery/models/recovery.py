"""Recovery state models: conditions, actions, outcomes, history and reports."""

from collections.abc import Iterator
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from agent_recovery.models.runtime import ContainerRef, RecreateSpec


class Condition(StrEnum):
    """Classified health of the target container at one probe."""

    HEALTHY = "healthy"
    UNRESPONSIVE = "unresponsive"
    STOPPED = "stopped"
    MISSING = "missing"
    CRASHED = "crashed"


class Observation(BaseModel):
    """What a single probe saw.

    ``error`` is set when a runtime failure was degraded to
    ``UNRESPONSIVE`` instead of being raised.
    """

    model_config = ConfigDict(frozen=True)

    condition: Condition
    container_id: str | None = None
    container_name: str | None = None
    exit_code: int | None = None
    finished_at: datetime | None = None
    error: str | None = None
    ambiguous_matches: int = 0


class ActionKind(StrEnum):
    """Remediation steps, declared from least to most invasive."""

    NOOP = "noop"
    GRACEFUL_RESTART = "graceful_restart"
    SIGNAL_RESTART = "signal_restart"
    FORCE_KILL = "force_kill"
    FORCE_REMOVE = "force_remove"
    RECREATE = "recreate"

    @property
    def rank(self) -> int:
        """Invasiveness rank; NOOP is 0, RECREATE is 5."""
        return list(ActionKind).index(self)

    @property
    def destructive(self) -> bool:
        return self in DESTRUCTIVE_ACTIONS


DESTRUCTIVE_ACTIONS = frozenset(
    {ActionKind.FORCE_KILL, ActionKind.FORCE_REMOVE, ActionKind.RECREATE}
)


class _ActionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def action_kind(self) -> ActionKind:
        return ActionKind(self.kind)  # type: ignore[attr-defined]

    @property
    def rank(self) -> int:
        return self.action_kind.rank


class NoOp(_ActionBase):
    kind: Literal["noop"] = "noop"


class GracefulRestart(_ActionBase):
    """Stop with a grace period, then start again."""

    kind: Literal["graceful_restart"] = "graceful_restart"
    timeout: int = 30


class SignalRestart(_ActionBase):
    """Signal the in-container supervisor to reload (HUP by default)."""

    kind: Literal["signal_restart"] = "signal_restart"
    signal: str = "SIGHUP"


class ForceKill(_ActionBase):
    kind: Literal["force_kill"] = "force_kill"
    signal: str = "SIGKILL"


class ForceRemove(_ActionBase):
    kind: Literal["force_remove"] = "force_remove"


class Recreate(_ActionBase):
    kind: Literal["recreate"] = "recreate"
    spec: RecreateSpec


Action = Annotated[
    NoOp | GracefulRestart | SignalRestart | ForceKill | ForceRemove | Recreate,
    Field(discriminator="kind"),
]


class OutcomeStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


class Success(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    detail: str = ""


class Failed(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["failed"] = "failed"
    reason: str


class TimedOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["timed_out"] = "timed_out"
    after_seconds: float | None = None


class Skipped(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["skipped"] = "skipped"
    reason: str


Outcome = Annotated[
    Success | Failed | TimedOut | Skipped,
    Field(discriminator="status"),
]


class AttemptRecord(BaseModel):
    """One executed remediation, with the condition that justified it."""

    model_config = ConfigDict(frozen=True)

    sequence_number: int
    observed_condition: Condition
    action: Action
    outcome: Outcome
    started_at: datetime
    duration_seconds: float
    container_id: str | None = None


class HistoryClosedError(RuntimeError):
    """Raised when appending to a history that was frozen into a report."""


class History:
    """Append-only, strictly ordered record of attempts for one run."""

    def __init__(self) -> None:
        self._records: list[AttemptRecord] = []
        self._frozen = False

    def append(self, record: AttemptRecord) -> None:
        """Append ``record``; its sequence number must be the next one.

        Raises:
            HistoryClosedError: If the history has been frozen.
            ValueError: If the sequence number is out of order.
        """
        if self._frozen:
            raise HistoryClosedError("history was frozen into a report")
        if record.sequence_number != self.next_sequence_number:
            msg = (
                f"expected sequence number {self.next_sequence_number}, "
                f"got {record.sequence_number}"
            )
            raise ValueError(msg)
        self._records.append(record)

    @property
    def next_sequence_number(self) -> int:
        return len(self._records) + 1

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> tuple[AttemptRecord, ...]:
        self._frozen = True
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[AttemptRecord]:
        return iter(tuple(self._records))

    def __getitem__(self, index: int) -> AttemptRecord:
        return self._records[index]


class TerminalReason(StrEnum):
    """Why a recovery run stopped."""

    RECOVERED = "recovered"
    BUDGET_EXHAUSTED = "budget_exhausted"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    USER_ABORTED = "user_aborted"
    MISCONFIGURED = "misconfigured"
    PLANNED = "planned"


EXIT_CODES: dict[TerminalReason, int] = {
    TerminalReason.RECOVERED: 0,
    TerminalReason.BUDGET_EXHAUSTED: 1,
    TerminalReason.DEADLINE_EXCEEDED: 2,
    TerminalReason.USER_ABORTED: 3,
    TerminalReason.MISCONFIGURED: 4,
    TerminalReason.PLANNED: 5,
}


class RecoveryReport(BaseModel):
    """The single, immutable artifact produced by one recovery run."""

    model_config = ConfigDict(frozen=True)

    container_ref: ContainerRef
    history: tuple[AttemptRecord, ...] = ()
    final_condition: Condition | None = None
    terminal_reason: TerminalReason
    detail: str = ""
    planned_action: Action | None = None
    recent_logs: tuple[str, ...] = ()
    resource_usage: dict[str, float] = Field(default_factory=dict)
    dry_run: bool = False
    started_at: datetime
    finished_at: datetime

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.terminal_reason]

    @property
    def executed_actions(self) -> list[ActionKind]:
        return [record.action.action_kind for record in self.history]

    def to_json(self) -> str:
        return self.model_dump_json()

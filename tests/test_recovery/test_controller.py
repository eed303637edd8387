"""End-to-end recovery scenarios against the in-memory runtime.

Verifies:
- A stopped or crashed container is restarted and reported recovered
- A crashed container whose restart fails is removed and recreated
- Budget exhaustion after graceful restart, signal restart and force kill
- The destructive path ends in remove + recreate when a spec is given
- A missing container without a spec is misconfigured with zero actions
- A healthy container is left untouched
- Cancellation, deadline and dry-run terminate cleanly
- Reports are immutable and controllers are single-use
- recover_all runs independent controllers per match
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime

import pytest
from conftest import FakeClock, FakeContainer, FakeRuntimeClient
from pydantic import ValidationError

from agent_recovery.config import EscalationPolicy, RecoveryConfig, Settings
from agent_recovery.models.recovery import (
    ActionKind,
    AttemptRecord,
    Condition,
    Failed,
    GracefulRestart,
    History,
    HistoryClosedError,
    Success,
    TerminalReason,
    TimedOut,
)
from agent_recovery.models.runtime import RecreateSpec
from agent_recovery.recovery import ControllerState, RecoveryController, recover_all


def _controller(
    client: FakeRuntimeClient,
    clock: FakeClock,
    settings: Settings,
    **kwargs,
) -> RecoveryController:
    return RecoveryController(
        client,
        "dd-agent",
        settings=settings,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Section 1: Outcomes of complete runs
# ---------------------------------------------------------------------------


class TestRecoveryRuns:
    """Complete runs through the probe/plan/execute loop."""

    def test_crashed_container_recovers_with_restart(
        self, clock: FakeClock, settings: Settings
    ) -> None:
        client = FakeRuntimeClient(
            FakeContainer(id="c1", name="dd-agent", running=False, exit_code=1)
        )
        report = _controller(client, clock, settings).run()

        assert report.terminal_reason is TerminalReason.RECOVERED
        assert report.exit_code == 0
        assert report.final_condition is Condition.HEALTHY
        assert report.executed_actions == [ActionKind.GRACEFUL_RESTART]
        assert report.history[0].observed_condition is Condition.CRASHED
        assert report.recent_logs == ()
        assert clock.sleeps == [5]

    def test_stopped_container_recovers_with_one_restart(
        self, clock: FakeClock, settings: Settings
    ) -> None:
        client = FakeRuntimeClient(
            FakeContainer(id="c1", name="dd-agent", running=False, exit_code=0)
        )
        report = _controller(client, clock, settings).run()

        assert report.terminal_reason is TerminalReason.RECOVERED
        assert len(report.history) == 1
        assert report.history[0].observed_condition is Condition.STOPPED
        assert report.executed_actions == [ActionKind.GRACEFUL_RESTART]
        assert [verb for verb, _ in client.mutations] == ["stop", "start"]

    def test_crashed_container_with_failing_restart_is_recreated(
        self, clock: FakeClock, settings: Settings, recreate_spec: RecreateSpec
    ) -> None:
        client = FakeRuntimeClient(
            FakeContainer(id="c1", name="dd-agent", running=False, exit_code=1)
        )
        client.script("start", Failed(reason="OCI runtime create failed"))
        report = _controller(client, clock, settings, recreate_spec=recreate_spec).run()

        assert report.terminal_reason is TerminalReason.RECOVERED
        assert report.history[0].observed_condition is Condition.CRASHED
        assert isinstance(report.history[0].outcome, Failed)
        assert report.executed_actions == [
            ActionKind.GRACEFUL_RESTART,
            ActionKind.FORCE_REMOVE,
            ActionKind.RECREATE,
        ]
        assert set(client.containers) == {"recreated-1"}

    def test_no_backoff_after_last_attempt(self, clock: FakeClock, settings: Settings) -> None:
        settings = settings.model_copy(
            update={"recovery": settings.recovery.model_copy(update={"max_attempts": 3})}
        )
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        report = _controller(client, clock, settings).run()

        assert report.terminal_reason is TerminalReason.BUDGET_EXHAUSTED
        assert clock.sleeps == [5, 15]
        # The final condition still comes from a probe after the last action.
        assert report.final_condition is Condition.CRASHED

    def test_resource_usage_attached_when_not_recovered(
        self, clock: FakeClock, settings: Settings
    ) -> None:
        usage = {"cpu_percent": 97.5, "memory_bytes": 512.0}
        client = FakeRuntimeClient(
            FakeContainer(id="c1", name="dd-agent", responsive=False, usage=usage)
        )
        report = _controller(client, clock, settings, dry_run=True).run()
        assert report.resource_usage == usage

        healthy = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", usage=usage))
        report = _controller(healthy, FakeClock(), settings).run()
        assert report.resource_usage == {}
        assert ("stats", "c1") not in healthy.calls

    def test_budget_exhausted_after_three_attempts(
        self, clock: FakeClock, settings: Settings
    ) -> None:
        settings = settings.model_copy(
            update={"recovery": settings.recovery.model_copy(update={"max_attempts": 3})}
        )
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        report = _controller(client, clock, settings).run()

        assert report.terminal_reason is TerminalReason.BUDGET_EXHAUSTED
        assert report.exit_code == 1
        assert report.executed_actions == [
            ActionKind.GRACEFUL_RESTART,
            ActionKind.SIGNAL_RESTART,
            ActionKind.FORCE_KILL,
        ]
        assert len(report.history) == 3
        assert report.final_condition is Condition.CRASHED
        assert report.recent_logs

    def test_destructive_path_ends_in_recreate(
        self, clock: FakeClock, settings: Settings, recreate_spec: RecreateSpec
    ) -> None:
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        client.script("stop", Failed(reason="container is restarting"))
        client.script("kill", Failed(reason="no such process"))
        report = _controller(client, clock, settings, recreate_spec=recreate_spec).run()

        assert report.terminal_reason is TerminalReason.RECOVERED
        assert report.executed_actions == [
            ActionKind.GRACEFUL_RESTART,
            ActionKind.SIGNAL_RESTART,
            ActionKind.FORCE_KILL,
            ActionKind.FORCE_REMOVE,
            ActionKind.RECREATE,
        ]
        verbs = [verb for verb, _ in client.mutations]
        assert verbs.index("remove") < verbs.index("run")
        assert set(client.containers) == {"recreated-1"}

    def test_stuck_without_recreate_spec(self, clock: FakeClock, settings: Settings) -> None:
        """Without a spec the run escalates up to force kill and never removes."""
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        report = _controller(client, clock, settings).run()

        assert report.terminal_reason is TerminalReason.BUDGET_EXHAUSTED
        assert ActionKind.FORCE_REMOVE not in report.executed_actions
        assert "c1" in client.containers
        assert all(verb not in ("remove", "run") for verb, _ in client.mutations)

    def test_missing_without_spec_is_misconfigured(
        self, clock: FakeClock, settings: Settings
    ) -> None:
        client = FakeRuntimeClient()
        report = _controller(client, clock, settings).run()

        assert report.terminal_reason is TerminalReason.MISCONFIGURED
        assert report.exit_code == 4
        assert report.history == ()
        assert client.mutations == []

    def test_missing_with_spec_is_recreated(
        self, clock: FakeClock, settings: Settings, recreate_spec: RecreateSpec
    ) -> None:
        client = FakeRuntimeClient()
        report = _controller(client, clock, settings, recreate_spec=recreate_spec).run()

        assert report.terminal_reason is TerminalReason.RECOVERED
        assert report.executed_actions == [ActionKind.FORCE_REMOVE, ActionKind.RECREATE]
        assert report.history[0].outcome.status == "skipped"
        assert client.mutations == [("run", "dd-agent")]

    def test_missing_treated_as_success(self, clock: FakeClock, settings: Settings) -> None:
        settings = settings.model_copy(
            update={
                "recovery": settings.recovery.model_copy(
                    update={"treat_missing_as_success": True}
                )
            }
        )
        report = _controller(FakeRuntimeClient(), clock, settings).run()
        assert report.exit_code == 0
        assert report.final_condition is Condition.MISSING

    def test_healthy_container_is_untouched(self, clock: FakeClock, settings: Settings) -> None:
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent"))
        report = _controller(client, clock, settings).run()

        assert report.terminal_reason is TerminalReason.RECOVERED
        assert report.history == ()
        assert client.mutations == []
        assert clock.sleeps == []

    def test_non_destructive_never_kills(
        self, clock: FakeClock, recreate_spec: RecreateSpec
    ) -> None:
        settings = Settings(policy=EscalationPolicy(non_destructive=True))
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        report = _controller(client, clock, settings, recreate_spec=recreate_spec).run()

        assert report.executed_actions == [
            ActionKind.GRACEFUL_RESTART,
            ActionKind.SIGNAL_RESTART,
        ]
        assert ("kill", "c1:SIGKILL") not in client.mutations
        assert report.exit_code == 1

    def test_timeouts_are_recorded_not_retried_silently(
        self, clock: FakeClock, settings: Settings
    ) -> None:
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        client.script("stop", TimedOut(after_seconds=90))
        report = _controller(client, clock, settings).run()
        assert isinstance(report.history[0].outcome, TimedOut)
        assert report.executed_actions[1] is ActionKind.SIGNAL_RESTART


# ---------------------------------------------------------------------------
# Section 2: Cancellation, deadline and dry run
# ---------------------------------------------------------------------------


class TestTermination:
    """Ways a run ends other than recovery or budget."""

    def test_cancel_before_start(self, clock: FakeClock, settings: Settings) -> None:
        cancel = threading.Event()
        cancel.set()
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        report = _controller(client, clock, settings, cancel=cancel).run()

        assert report.terminal_reason is TerminalReason.USER_ABORTED
        assert report.exit_code == 3
        assert report.history == ()
        assert report.final_condition is None

    def test_cancel_during_backoff(self, clock: FakeClock, settings: Settings) -> None:
        cancel = threading.Event()

        def cancelling_sleep(seconds: float) -> None:
            clock.sleep(seconds)
            cancel.set()

        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        controller = RecoveryController(
            client,
            "dd-agent",
            settings=settings,
            cancel=cancel,
            clock=clock,
            sleep=cancelling_sleep,
        )
        report = controller.run()

        assert report.terminal_reason is TerminalReason.USER_ABORTED
        assert len(report.history) == 1
        assert report.final_condition is Condition.UNRESPONSIVE

    def test_deadline_exceeded(self, clock: FakeClock) -> None:
        settings = Settings(
            recovery=RecoveryConfig(deadline_seconds=10, backoff_seconds=[30])
        )
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        report = _controller(client, clock, settings).run()

        assert report.terminal_reason is TerminalReason.DEADLINE_EXCEEDED
        assert report.exit_code == 2
        assert len(report.history) == 1
        assert clock.sleeps == [10]

    def test_dry_run_plans_without_mutating(
        self, clock: FakeClock, settings: Settings, recreate_spec: RecreateSpec
    ) -> None:
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        report = _controller(
            client, clock, settings, recreate_spec=recreate_spec, dry_run=True
        ).run()

        assert report.terminal_reason is TerminalReason.PLANNED
        assert report.exit_code == 5
        assert report.dry_run
        assert report.planned_action.kind == "graceful_restart"
        assert report.history == ()
        assert client.mutations == []

    def test_dry_run_on_healthy_container_is_recovered(
        self, clock: FakeClock, settings: Settings
    ) -> None:
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent"))
        report = _controller(client, clock, settings, dry_run=True).run()
        assert report.exit_code == 0
        assert report.planned_action is None


# ---------------------------------------------------------------------------
# Section 3: Report and controller lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Single-use controllers and immutable reports."""

    def test_controller_runs_once(self, clock: FakeClock, settings: Settings) -> None:
        controller = _controller(
            FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent")), clock, settings
        )
        controller.run()
        assert controller.state is ControllerState.TERMINAL
        with pytest.raises(RuntimeError):
            controller.run()

    def test_report_is_immutable(self, clock: FakeClock, settings: Settings) -> None:
        client = FakeRuntimeClient(
            FakeContainer(id="c1", name="dd-agent", running=False, exit_code=1)
        )
        report = _controller(client, clock, settings).run()
        assert isinstance(report.history, tuple)
        with pytest.raises(ValidationError):
            report.terminal_reason = TerminalReason.BUDGET_EXHAUSTED

    def test_sequence_numbers_are_contiguous(
        self, clock: FakeClock, settings: Settings, recreate_spec: RecreateSpec
    ) -> None:
        client = FakeRuntimeClient(FakeContainer(id="c1", name="dd-agent", responsive=False))
        client.recreated_responsive = False
        report = _controller(client, clock, settings, recreate_spec=recreate_spec).run()
        assert [r.sequence_number for r in report.history] == list(
            range(1, len(report.history) + 1)
        )
        assert len(report.history) <= settings.recovery.max_attempts

    def test_report_serializes_to_json(self, clock: FakeClock, settings: Settings) -> None:
        client = FakeRuntimeClient(
            FakeContainer(id="c1", name="dd-agent", running=False, exit_code=1)
        )
        payload = _controller(client, clock, settings).run().to_json()
        assert '"terminal_reason":"recovered"' in payload
        assert '"kind":"graceful_restart"' in payload


# ---------------------------------------------------------------------------
# Section 4: recover_all fan-out
# ---------------------------------------------------------------------------


class TestRecoverAll:
    """Independent controllers per matching container."""

    async def test_one_report_per_match(self) -> None:
        settings = Settings(recovery=RecoveryConfig(backoff_seconds=[0]))
        client = FakeRuntimeClient(
            FakeContainer(id="a", name="dd-agent-1"),
            FakeContainer(id="b", name="dd-agent-2", running=False, exit_code=1),
        )
        reports = await recover_all(client, "dd-agent", settings=settings)

        assert [r.container_ref.name_pattern for r in reports] == [
            r"^/?dd\-agent\-1$",
            r"^/?dd\-agent\-2$",
        ]
        assert [r.exit_code for r in reports] == [0, 0]
        assert reports[0].history == ()
        assert reports[1].executed_actions == [ActionKind.GRACEFUL_RESTART]

    async def test_no_match_reports_pattern(self) -> None:
        reports = await recover_all(FakeRuntimeClient(), "dd-agent")
        assert len(reports) == 1
        assert reports[0].terminal_reason is TerminalReason.MISCONFIGURED


class TestHistory:
    """Append-only, ordered attempt history."""

    @staticmethod
    def _attempt(seq: int) -> AttemptRecord:
        return AttemptRecord(
            sequence_number=seq,
            observed_condition=Condition.STOPPED,
            action=GracefulRestart(),
            outcome=Success(),
            started_at=datetime(2026, 1, 1, tzinfo=UTC),
            duration_seconds=0.1,
        )

    def test_rejects_out_of_order(self) -> None:
        history = History()
        history.append(self._attempt(1))
        with pytest.raises(ValueError, match="expected sequence number 2"):
            history.append(self._attempt(3))
        assert len(history) == 1

    def test_frozen_history_rejects_appends(self) -> None:
        history = History()
        history.append(self._attempt(1))
        records = history.freeze()
        assert records == (self._attempt(1),)
        assert history.frozen
        with pytest.raises(HistoryClosedError):
            history.append(self._attempt(2))

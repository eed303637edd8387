"""Recovery controller: probe -> plan -> execute -> evaluate, until terminal.

One controller owns one recovery run for one target.  The run is strictly
sequential; the controller is the only writer of its ``History`` and nothing
it mutates is shared with other runs.  Termination is guaranteed by the
attempt budget (every executed action grows the history) and the wall-clock
deadline (checked after every probe; every runtime call is itself bounded).

``recover_all`` fans out one independent controller per container matching
a pattern and runs them concurrently.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum

from loguru import logger

from agent_recovery.config import Settings
from agent_recovery.models.recovery import (
    Action,
    History,
    Observation,
    RecoveryReport,
    TerminalReason,
)
from agent_recovery.models.runtime import ContainerRef, RecreateSpec
from agent_recovery.recovery.executor import RecoveryExecutor
from agent_recovery.recovery.logging import (
    log_attempt,
    log_observation,
    log_plan,
    log_terminal,
)
from agent_recovery.recovery.planner import plan
from agent_recovery.recovery.probe import HealthProbe, select_latest
from agent_recovery.runtime.client import (
    ContainerRuntimeClient,
    RuntimeClientError,
    exact_name_pattern,
)


class ControllerState(StrEnum):
    PROBING = "probing"
    PLANNING = "planning"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    TERMINAL = "terminal"


class RecoveryController:
    """Runs one bounded recovery loop for the containers matching a pattern.

    Args:
        client: Runtime client shared by the probe and the executor.
        name_pattern: Name filter identifying the target.
        settings: Probe, budget, backoff and escalation settings.
        recreate_spec: Spec used by ``recreate``; without one the run never
            removes or recreates the container.
        dry_run: Probe and plan once, report the planned action, execute
            nothing.
        cancel: Event checked before every probe; when set the run ends
            with ``user_aborted``.
        clock: Monotonic clock for the deadline and attempt durations.
        sleep: Backoff sleep.  Defaults to waiting on ``cancel`` so a
            cancellation interrupts the backoff.
        now: Wall-clock source for report timestamps.
    """

    def __init__(
        self,
        client: ContainerRuntimeClient,
        name_pattern: str,
        *,
        settings: Settings | None = None,
        recreate_spec: RecreateSpec | None = None,
        dry_run: bool = False,
        cancel: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self._client = client
        self._pattern = name_pattern
        self._settings = settings or Settings()
        self._recreate_spec = recreate_spec
        self._dry_run = dry_run
        self._cancel = cancel or threading.Event()
        self._clock = clock
        self._sleep = sleep or self._cancel.wait
        self._now = now
        self._probe = HealthProbe(client, self._settings.probe)
        self._executor = RecoveryExecutor(
            client, clock=clock, now=now, recreate_spec=recreate_spec
        )
        self._used = False
        self.state = ControllerState.PROBING

    def run(self) -> RecoveryReport:
        """Run the loop to a terminal state and return the report.

        Raises:
            RuntimeError: If this controller already produced a report.
        """
        if self._used:
            raise RuntimeError("a recovery controller runs exactly once")
        self._used = True
        with logger.contextualize(target=self._pattern):
            return self._run()

    def _run(self) -> RecoveryReport:
        recovery = self._settings.recovery
        policy = self._settings.policy
        started_at = self._now()
        start = self._clock()
        ref = self._resolve()
        history = History()
        observation: Observation | None = None

        while True:
            self._enter(ControllerState.PROBING)
            if self._cancel.is_set():
                return self._finish(
                    ref, history, observation, started_at,
                    TerminalReason.USER_ABORTED, "cancelled before the next probe",
                )
            observation = self._probe.classify(ref)
            log_observation(self._pattern, observation)

            self._enter(ControllerState.PLANNING)
            decision = plan(
                observation.condition,
                list(history),
                policy,
                recreate_spec=self._recreate_spec,
                treat_missing_as_success=recovery.treat_missing_as_success,
            )
            if decision.terminal is not None:
                return self._finish(
                    ref, history, observation, started_at, decision.terminal, decision.reason
                )
            if len(history) >= recovery.max_attempts:
                return self._finish(
                    ref, history, observation, started_at,
                    TerminalReason.BUDGET_EXHAUSTED,
                    f"{len(history)} attempt(s) made; still {observation.condition.value}",
                )
            elapsed = self._clock() - start
            if elapsed >= recovery.deadline_seconds:
                return self._finish(
                    ref, history, observation, started_at,
                    TerminalReason.DEADLINE_EXCEEDED,
                    f"deadline of {recovery.deadline_seconds:.0f}s passed; "
                    f"still {observation.condition.value}",
                )
            log_plan(self._pattern, decision.action, decision.reason, dry_run=self._dry_run)
            if self._dry_run:
                return self._finish(
                    ref, history, observation, started_at,
                    TerminalReason.PLANNED, decision.reason,
                    planned_action=decision.action,
                )

            self._enter(ControllerState.EXECUTING)
            target = ref.model_copy(update={"runtime_handle": observation.container_id})
            record = self._executor.execute(
                decision.action,
                target,
                sequence_number=history.next_sequence_number,
                observed_condition=observation.condition,
            )
            history.append(record)
            log_attempt(self._pattern, record)

            self._enter(ControllerState.EVALUATING)
            if len(history) >= recovery.max_attempts:
                # Budget spent: one last probe decides recovered vs. exhausted.
                continue
            remaining = recovery.deadline_seconds - (self._clock() - start)
            delay = min(recovery.backoff_for(len(history)), max(remaining, 0.0))
            if delay > 0:
                logger.debug("Waiting {delay:.1f}s before re-probing", delay=delay)
                self._sleep(delay)

    def _enter(self, state: ControllerState) -> None:
        self.state = state

    def _resolve(self) -> ContainerRef:
        """Resolve the pattern to the container the run starts from."""
        try:
            matches = self._client.list(self._pattern)
        except RuntimeClientError as exc:
            logger.warning("Could not resolve '{}': {}", self._pattern, exc)
            return ContainerRef(name_pattern=self._pattern)
        if not matches:
            return ContainerRef(name_pattern=self._pattern)
        return ContainerRef(
            name_pattern=self._pattern,
            runtime_handle=select_latest(matches).id,
        )

    def _finish(
        self,
        ref: ContainerRef,
        history: History,
        observation: Observation | None,
        started_at: datetime,
        reason: TerminalReason,
        detail: str,
        planned_action: Action | None = None,
    ) -> RecoveryReport:
        self._enter(ControllerState.TERMINAL)
        recent_logs: list[str] = []
        usage: dict[str, float] = {}
        if reason is not TerminalReason.RECOVERED and observation and observation.container_id:
            recent_logs = self._tail_logs(observation.container_id)
            usage = self._client.resource_usage(observation.container_id)
        report = RecoveryReport(
            container_ref=ref,
            history=history.freeze(),
            final_condition=observation.condition if observation else None,
            terminal_reason=reason,
            detail=detail,
            planned_action=planned_action,
            recent_logs=tuple(recent_logs),
            resource_usage=usage,
            dry_run=self._dry_run,
            started_at=started_at,
            finished_at=self._now(),
        )
        log_terminal(self._pattern, report)
        return report

    def _tail_logs(self, container_id: str) -> list[str]:
        try:
            return self._client.tail_logs(container_id, self._settings.recovery.log_tail_lines)
        except RuntimeClientError as exc:
            logger.debug("Could not tail logs of '{}': {}", container_id, exc)
            return []


async def recover_all(
    client: ContainerRuntimeClient,
    name_pattern: str,
    *,
    settings: Settings | None = None,
    recreate_spec: RecreateSpec | None = None,
    dry_run: bool = False,
    cancel: threading.Event | None = None,
) -> list[RecoveryReport]:
    """Run one independent controller per container matching ``name_pattern``.

    Controllers run concurrently in worker threads, each with its own history
    and deadline.  When nothing matches (or listing fails) a single
    controller runs on the pattern itself so the missing target is reported.
    The recreate spec is only handed to the controller whose container
    carries the recreate spec's name.

    Returns:
        Reports in the order the runtime listed the containers.
    """
    cancel = cancel or threading.Event()
    try:
        matches = await asyncio.to_thread(client.list, name_pattern)
    except RuntimeClientError as exc:
        logger.warning("Listing '{}' failed: {}", name_pattern, exc)
        matches = []

    if not matches:
        targets = [(name_pattern, recreate_spec)]
    else:
        targets = [
            (
                exact_name_pattern(summary.name),
                recreate_spec
                if recreate_spec is not None and recreate_spec.name == summary.name
                else None,
            )
            for summary in matches
        ]

    controllers = [
        RecoveryController(
            client,
            pattern,
            settings=settings,
            recreate_spec=spec,
            dry_run=dry_run,
            cancel=cancel,
        )
        for pattern, spec in targets
    ]
    return list(await asyncio.gather(*(asyncio.to_thread(c.run) for c in controllers)))

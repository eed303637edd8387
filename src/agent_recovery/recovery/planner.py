"""Pure escalation planning: condition + history + policy -> next action.

The planner performs no I/O.  Escalation rules live in
``EscalationPolicy`` (ladders per condition, chained follow-ups), so the
decision logic here only walks data:

- Each condition belongs to a category (``STOPPED`` and ``CRASHED`` share
  one).  The next action must rank strictly above every action already
  attempted for that category, so per-category sequences are finite and
  strictly escalating and the controller cannot cycle on one failure mode.
- A chained follow-up of the previous attempt (``force_kill`` ->
  ``force_remove`` -> ``recreate``) takes precedence when it is allowed.
- Repeated timeouts in a category skip one rung.
- ``recreate`` is only planned after a ``force_remove`` that happened since
  the last ``recreate``.
- When nothing allowed is left the run is Stuck.
"""

from __future__ import annotations

from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict

from agent_recovery.config import EscalationPolicy
from agent_recovery.models.recovery import (
    Action,
    ActionKind,
    AttemptRecord,
    Condition,
    ForceKill,
    ForceRemove,
    GracefulRestart,
    NoOp,
    Recreate,
    SignalRestart,
    TerminalReason,
)
from agent_recovery.models.runtime import RecreateSpec

_CATEGORIES: dict[Condition, str] = {
    Condition.HEALTHY: "healthy",
    Condition.STOPPED: "down",
    Condition.CRASHED: "down",
    Condition.UNRESPONSIVE: "hung",
    Condition.MISSING: "absent",
}

# Most severe first; used when several conditions could apply.
SEVERITY: tuple[Condition, ...] = (
    Condition.MISSING,
    Condition.CRASHED,
    Condition.UNRESPONSIVE,
    Condition.STOPPED,
    Condition.HEALTHY,
)


class Plan(BaseModel):
    """The planner's decision.

    ``terminal`` is set when the controller must stop instead of executing
    ``action``; ``action`` is then a ``NoOp``.
    """

    model_config = ConfigDict(frozen=True)

    action: Action
    terminal: TerminalReason | None = None
    reason: str = ""
    stuck: bool = False


def category(condition: Condition) -> str:
    return _CATEGORIES[condition]


def most_severe(conditions: Sequence[Condition]) -> Condition:
    """Tie-break between candidate conditions: the most severe wins."""
    return min(conditions, key=SEVERITY.index)


def allowed_actions(
    policy: EscalationPolicy, recreate_spec: RecreateSpec | None
) -> set[ActionKind]:
    """Actions the policy permits at all for this run."""
    allowed = set(ActionKind) - {ActionKind.NOOP}
    if policy.non_destructive:
        allowed -= {ActionKind.FORCE_KILL, ActionKind.FORCE_REMOVE, ActionKind.RECREATE}
    if recreate_spec is None:
        # Never remove what cannot be recreated.
        allowed -= {ActionKind.FORCE_REMOVE, ActionKind.RECREATE}
    return allowed


def escalation_floor(condition: Condition, history: Sequence[AttemptRecord]) -> int:
    """Highest invasiveness rank already attempted for the condition's category."""
    cat = category(condition)
    ranks = [r.action.rank for r in history if category(r.observed_condition) == cat]
    return max(ranks, default=0)


def remove_since_last_recreate(history: Sequence[AttemptRecord]) -> bool:
    """True if a force-remove happened after the most recent recreate (or ever, if none)."""
    for record in reversed(history):
        kind = record.action.action_kind
        if kind is ActionKind.FORCE_REMOVE:
            return True
        if kind is ActionKind.RECREATE:
            return False
    return False


def _consecutive_timeouts(condition: Condition, history: Sequence[AttemptRecord]) -> int:
    cat = category(condition)
    count = 0
    for record in reversed([r for r in history if category(r.observed_condition) == cat]):
        if record.outcome.status != "timed_out":
            break
        count += 1
    return count


def build_action(
    kind: ActionKind, policy: EscalationPolicy, recreate_spec: RecreateSpec | None
) -> Action:
    """Materialize an action with the parameters the policy prescribes."""
    if kind is ActionKind.GRACEFUL_RESTART:
        return GracefulRestart(timeout=policy.graceful_timeout)
    if kind is ActionKind.SIGNAL_RESTART:
        return SignalRestart(signal=policy.restart_signal)
    if kind is ActionKind.FORCE_KILL:
        return ForceKill(signal=policy.kill_signal)
    if kind is ActionKind.FORCE_REMOVE:
        return ForceRemove()
    if kind is ActionKind.RECREATE:
        if recreate_spec is None:
            raise ValueError("recreate requires a recreate spec")
        return Recreate(spec=recreate_spec)
    return NoOp()


def plan(
    condition: Condition,
    history: Sequence[AttemptRecord],
    policy: EscalationPolicy,
    *,
    recreate_spec: RecreateSpec | None = None,
    treat_missing_as_success: bool = False,
) -> Plan:
    """Decide the next remediation for ``condition`` given prior attempts.

    Args:
        condition: Condition observed by the probe that just ran.
        history: Attempts made so far in this run, in order.
        policy: Escalation rules.
        recreate_spec: Spec for re-instantiating the container, if any.
        treat_missing_as_success: A target that is missing before any
            attempt counts as "nothing to recover".

    Returns:
        A :class:`Plan`; when ``plan.terminal`` is set the controller stops.
    """
    if condition is Condition.HEALTHY:
        return Plan(action=NoOp(), terminal=TerminalReason.RECOVERED, reason="container is healthy")

    if condition is Condition.MISSING:
        if treat_missing_as_success and not history:
            return Plan(
                action=NoOp(),
                terminal=TerminalReason.RECOVERED,
                reason="no container matches; nothing to recover",
            )
        if recreate_spec is None:
            return Plan(
                action=NoOp(),
                terminal=TerminalReason.MISCONFIGURED,
                reason="no container matches and no recreate spec is configured",
            )

    allowed = allowed_actions(policy, recreate_spec)
    floor = escalation_floor(condition, history)
    ladder = [
        kind
        for kind in policy.ladders.get(condition, [])
        if kind in allowed and kind.rank > floor
    ]

    choice: ActionKind | None = None
    reason = ""

    if history:
        follow_up = policy.chains.get(history[-1].action.action_kind)
        if follow_up is not None and follow_up in allowed and follow_up.rank > floor:
            choice = follow_up
            reason = f"follow-up to {history[-1].action.kind}"

    if choice is None and ladder:
        threshold = policy.timeout_escalation_after
        skip = (
            threshold > 0
            and len(ladder) > 1
            and _consecutive_timeouts(condition, history) >= threshold
            and not (ladder[0] is ActionKind.FORCE_REMOVE and ladder[1] is ActionKind.RECREATE)
        )
        choice = ladder[1] if skip else ladder[0]
        reason = (
            f"{condition.value}: repeated timeouts, skipping {ladder[0].value}"
            if skip
            else f"{condition.value}: next rung above rank {floor}"
        )

    if choice is ActionKind.RECREATE and not remove_since_last_recreate(history):
        if ActionKind.FORCE_REMOVE in allowed and ActionKind.FORCE_REMOVE.rank > floor:
            choice = ActionKind.FORCE_REMOVE
            reason = "recreate requires a prior force-remove"
        else:
            choice = None
            reason = "recreate requires a force-remove since the last recreate"

    if choice is None:
        return Plan(
            action=NoOp(),
            terminal=TerminalReason.BUDGET_EXHAUSTED,
            reason=reason or f"no permitted escalation left for {condition.value}",
            stuck=True,
        )

    return Plan(action=build_action(choice, policy, recreate_spec), reason=reason)

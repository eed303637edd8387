"""Health probing, escalation planning, action execution and the control loop."""

from agent_recovery.recovery.controller import (
    ControllerState,
    RecoveryController,
    recover_all,
)
from agent_recovery.recovery.executor import RecoveryExecutor
from agent_recovery.recovery.planner import Plan, plan
from agent_recovery.recovery.probe import HealthProbe

__all__ = [
    "ControllerState",
    "HealthProbe",
    "Plan",
    "RecoveryController",
    "RecoveryExecutor",
    "plan",
    "recover_all",
]

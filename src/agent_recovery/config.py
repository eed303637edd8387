"""Pydantic settings models for all configuration."""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from agent_recovery.models.recovery import ActionKind, Condition


class ConfigError(Exception):
    """Raised when a settings or recreate-spec file cannot be used."""


class RuntimeConfig(BaseModel):
    """Docker daemon connection settings.

    ``base_url`` of ``None`` means "use the environment" (``DOCKER_HOST``
    or the local socket), matching ``docker.from_env()``.
    """

    base_url: str | None = None
    api_timeout: int = 60


class ProbeConfig(BaseModel):
    """In-container liveness and agent health checks."""

    liveness_command: list[str] = ["echo", "responsive"]
    health_command: list[str] | None = ["/opt/datadog-agent/bin/agent/agent", "health"]
    liveness_timeout: float = 5.0


def _default_ladders() -> dict[Condition, list[ActionKind]]:
    return {
        Condition.STOPPED: [
            ActionKind.GRACEFUL_RESTART,
            ActionKind.FORCE_REMOVE,
            ActionKind.RECREATE,
        ],
        Condition.CRASHED: [
            ActionKind.GRACEFUL_RESTART,
            ActionKind.FORCE_REMOVE,
            ActionKind.RECREATE,
        ],
        Condition.UNRESPONSIVE: [
            ActionKind.GRACEFUL_RESTART,
            ActionKind.SIGNAL_RESTART,
            ActionKind.FORCE_KILL,
            ActionKind.FORCE_REMOVE,
            ActionKind.RECREATE,
        ],
        Condition.MISSING: [
            ActionKind.FORCE_REMOVE,
            ActionKind.RECREATE,
        ],
    }


class EscalationPolicy(BaseModel):
    """Escalation rules consumed by the planner.

    Attributes:
        ladders: Ordered remediation rungs per condition.  Every ladder must
            be strictly increasing in invasiveness.
        chains: Follow-up action planned right after the key action, as
            long as the container is still not healthy.
        graceful_timeout: Seconds granted to a graceful stop.
        restart_signal: Signal sent for a signal restart.
        kill_signal: Signal sent for a force kill.
        timeout_escalation_after: Consecutive timed-out attempts in one
            condition category after which one rung is skipped.  ``0``
            disables fast escalation.
        non_destructive: Never plan force kill, force remove or recreate.
    """

    ladders: dict[Condition, list[ActionKind]] = _default_ladders()
    chains: dict[ActionKind, ActionKind] = {
        ActionKind.FORCE_KILL: ActionKind.FORCE_REMOVE,
        ActionKind.FORCE_REMOVE: ActionKind.RECREATE,
    }
    graceful_timeout: int = 30
    restart_signal: str = "SIGHUP"
    kill_signal: str = "SIGKILL"
    timeout_escalation_after: int = 2
    non_destructive: bool = False

    @field_validator("ladders")
    @classmethod
    def _ladders_escalate(
        cls, value: dict[Condition, list[ActionKind]]
    ) -> dict[Condition, list[ActionKind]]:
        for condition, ladder in value.items():
            ranks = [kind.rank for kind in ladder]
            if ranks != sorted(set(ranks)):
                msg = f"ladder for '{condition}' must be strictly escalating"
                raise ValueError(msg)
            if ActionKind.NOOP in ladder:
                msg = f"ladder for '{condition}' must not contain 'noop'"
                raise ValueError(msg)
        return value


class RecoveryConfig(BaseModel):
    """Controller budget, pacing and reporting."""

    max_attempts: int = 8
    deadline_seconds: float = 600.0
    backoff_seconds: list[float] = [5.0, 15.0, 30.0]
    treat_missing_as_success: bool = False
    log_tail_lines: int = 20

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_attempts must be at least 1")
        return value

    def backoff_for(self, attempt_number: int) -> float:
        """Delay after the ``attempt_number``-th attempt; the last entry repeats."""
        if not self.backoff_seconds:
            return 0.0
        index = min(attempt_number, len(self.backoff_seconds)) - 1
        return self.backoff_seconds[max(index, 0)]


class Settings(BaseModel):
    """Root configuration model for agent-recovery."""

    runtime: RuntimeConfig = RuntimeConfig()
    probe: ProbeConfig = ProbeConfig()
    recovery: RecoveryConfig = RecoveryConfig()
    policy: EscalationPolicy = EscalationPolicy()

    @classmethod
    def from_yaml(cls, path: Path) -> "Settings":
        """Load and validate settings from a YAML configuration file.

        If a YAML value starts with ``$``, the corresponding environment
        variable is resolved at load time.

        Raises:
            ConfigError: If the file cannot be parsed or validated, or a
                referenced environment variable is not set.
        """
        try:
            raw = yaml.safe_load(path.read_text()) or {}
            return cls.model_validate(resolve_env_vars(raw))
        except (OSError, yaml.YAMLError, ValidationError, ValueError) as exc:
            raise ConfigError(f"Invalid settings file '{path}': {exc}") from exc


def resolve_env_vars(data: object) -> object:
    """Recursively resolve environment variable references in config data.

    Any string value starting with ``$`` is treated as an environment variable
    reference and replaced with the value of that variable.

    Raises:
        ValueError: If a referenced environment variable is not set.
    """
    if isinstance(data, dict):
        return {k: resolve_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    if isinstance(data, str) and data.startswith("$"):
        var_name = data[1:]
        value = os.environ.get(var_name)
        if value is None:
            msg = (
                f"Environment variable '{var_name}' is not set "
                f"(referenced as '{data}' in config)"
            )
            raise ValueError(msg)
        return value
    return data

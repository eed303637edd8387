"""Health classification of the recovery target.

``HealthProbe.classify`` combines the runtime's view of a container with an
in-container liveness exec and, optionally, the agent's own health command:

1. No container matches the pattern -> ``MISSING``.
2. Several match -> the most recently started one is used and the ambiguity
   is logged.
3. Not running -> ``CRASHED`` if it exited nonzero and this exit has not
   been seen by this probe before, else ``STOPPED``.
4. Running -> ``HEALTHY`` only if the liveness command (and the health
   command, when configured) succeed within the timeout, else
   ``UNRESPONSIVE``.

Runtime failures never escape: they degrade to ``UNRESPONSIVE`` with the
error attached, and a container that vanishes mid-probe is ``MISSING``.
"""

from __future__ import annotations

from datetime import UTC, datetime

from loguru import logger

from agent_recovery.config import ProbeConfig
from agent_recovery.models.recovery import Condition, Observation
from agent_recovery.models.runtime import ContainerRef, ContainerSummary, RuntimeStatus
from agent_recovery.runtime.client import (
    ContainerNotFoundError,
    ContainerRuntimeClient,
    RuntimeClientError,
)

_EPOCH = datetime.min.replace(tzinfo=UTC)


def select_latest(matches: list[ContainerSummary]) -> ContainerSummary:
    """Pick the most recently started container; never-started ones sort first."""
    return max(matches, key=lambda summary: summary.started_at or _EPOCH)


class HealthProbe:
    """Classifies the current condition of a target container.

    One probe instance belongs to one recovery run: it remembers which
    nonzero exits it has already reported so a container that stays down
    after a crash is classified ``STOPPED`` on later probes.

    Args:
        client: Runtime client used for listing, inspection and exec.
        config: Liveness/health commands and their timeout.
    """

    def __init__(self, client: ContainerRuntimeClient, config: ProbeConfig | None = None) -> None:
        self._client = client
        self._config = config or ProbeConfig()
        self._seen_exits: set[tuple[str, datetime | None, int | None]] = set()

    def classify(self, ref: ContainerRef) -> Observation:
        try:
            return self._classify(ref)
        except ContainerNotFoundError:
            # Removed between list and inspect.
            return Observation(condition=Condition.MISSING)
        except RuntimeClientError as exc:
            return Observation(
                condition=Condition.UNRESPONSIVE,
                container_id=ref.runtime_handle,
                error=str(exc),
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected probe failure for '{}'", ref.name_pattern)
            return Observation(
                condition=Condition.UNRESPONSIVE,
                container_id=ref.runtime_handle,
                error=f"{type(exc).__name__}: {exc}",
            )

    def _classify(self, ref: ContainerRef) -> Observation:
        matches = self._client.list(ref.name_pattern)
        if not matches:
            return Observation(condition=Condition.MISSING)

        target = select_latest(matches)
        if len(matches) > 1:
            logger.warning(
                "{count} containers match '{pattern}'; using most recently started '{name}'",
                count=len(matches),
                pattern=ref.name_pattern,
                name=target.name,
            )

        status = self._client.inspect_status(target.id)
        base = {
            "container_id": target.id,
            "container_name": target.name,
            "exit_code": status.exit_code,
            "finished_at": status.finished_at,
            "ambiguous_matches": len(matches) if len(matches) > 1 else 0,
        }

        if not status.running:
            return Observation(condition=self._exited_condition(target.id, status), **base)

        timeout = self._config.liveness_timeout
        if not self._client.exec_liveness(target.id, timeout, self._config.liveness_command):
            return Observation(condition=Condition.UNRESPONSIVE, **base)
        health_command = self._config.health_command
        if health_command and not self._client.exec_liveness(target.id, timeout, health_command):
            logger.debug("Agent health command failed in '{}'", target.name)
            return Observation(condition=Condition.UNRESPONSIVE, **base)
        return Observation(condition=Condition.HEALTHY, **base)

    def _exited_condition(self, container_id: str, status: RuntimeStatus) -> Condition:
        if not status.exit_code:
            return Condition.STOPPED
        signature = (container_id, status.finished_at, status.exit_code)
        if signature in self._seen_exits:
            return Condition.STOPPED
        self._seen_exits.add(signature)
        return Condition.CRASHED

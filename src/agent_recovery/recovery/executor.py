"""Apply one planned action against the container runtime.

Every call produces exactly one ``AttemptRecord``.  Runtime errors, vanished
containers and unexpected exceptions all become ``Failed`` outcomes and
runtime timeouts become ``TimedOut``: the executor never raises, so the
controller always proceeds to re-probe.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime

from loguru import logger

from agent_recovery.models.recovery import (
    Action,
    AttemptRecord,
    Condition,
    Failed,
    ForceKill,
    ForceRemove,
    GracefulRestart,
    NoOp,
    Outcome,
    Recreate,
    SignalRestart,
    Skipped,
    Success,
)
from agent_recovery.models.runtime import ContainerRef, RecreateSpec
from agent_recovery.runtime.client import (
    ContainerNotFoundError,
    ContainerRuntimeClient,
    RuntimeClientError,
    exact_name_pattern,
)


class RecoveryExecutor:
    """Executes remediation actions.

    Args:
        client: Runtime client that performs the container operations.
        clock: Monotonic clock used to time attempts.
        now: Wall-clock source for ``started_at`` timestamps.
        recreate_spec: When set, a force-remove with no observed container
            removes any container carrying the recreate spec's name instead.
    """

    def __init__(
        self,
        client: ContainerRuntimeClient,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
        recreate_spec: RecreateSpec | None = None,
    ) -> None:
        self._client = client
        self._clock = clock
        self._now = now
        self._recreate_spec = recreate_spec

    def execute(
        self,
        action: Action,
        ref: ContainerRef,
        *,
        sequence_number: int,
        observed_condition: Condition,
    ) -> AttemptRecord:
        """Run ``action`` against the container identified by ``ref``.

        ``ref.runtime_handle`` is the container the preceding probe observed
        (``None`` when it observed nothing).
        """
        started_at = self._now()
        start = self._clock()
        try:
            outcome = self._dispatch(action, ref)
        except ContainerNotFoundError as exc:
            outcome = Failed(reason=f"container vanished: {exc.message}")
        except RuntimeClientError as exc:
            outcome = Failed(reason=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected failure executing {}", action.kind)
            outcome = Failed(reason=f"{type(exc).__name__}: {exc}")

        return AttemptRecord(
            sequence_number=sequence_number,
            observed_condition=observed_condition,
            action=action,
            outcome=outcome,
            started_at=started_at,
            duration_seconds=max(self._clock() - start, 0.0),
            container_id=ref.runtime_handle,
        )

    def _dispatch(self, action: Action, ref: ContainerRef) -> Outcome:
        if isinstance(action, NoOp):
            return Skipped(reason="nothing to do")
        if isinstance(action, Recreate):
            new_ref = self._client.run(action.spec)
            return Success(detail=f"created {new_ref.runtime_handle}")
        if isinstance(action, ForceRemove):
            return self._force_remove(ref)

        container_id = ref.runtime_handle
        if container_id is None:
            return Skipped(reason=f"{action.kind} needs an observed container")

        if isinstance(action, GracefulRestart):
            return self._graceful_restart(container_id, action.timeout)
        if isinstance(action, SignalRestart | ForceKill):
            return self._client.kill(container_id, action.signal)
        return Failed(reason=f"unsupported action '{action.kind}'")

    def _graceful_restart(self, container_id: str, timeout: int) -> Outcome:
        # Stopping an already stopped container is a no-op for the runtime.
        stopped = self._client.stop(container_id, timeout)
        if stopped.status != "success":
            return stopped
        return self._client.start(container_id)

    def _force_remove(self, ref: ContainerRef) -> Outcome:
        if ref.runtime_handle is not None:
            return self._client.remove(ref.runtime_handle, force=True)
        if self._recreate_spec is not None:
            # Clear leftovers holding the name the recreate will need.
            return self._clear_name(self._recreate_spec.name)
        return Skipped(reason="no container observed to remove")

    def _clear_name(self, name: str) -> Outcome:
        matches = self._client.list(exact_name_pattern(name))
        if not matches:
            return Skipped(reason=f"no container named '{name}'")
        for summary in matches:
            outcome = self._client.remove(summary.id, force=True)
            if outcome.status != "success":
                return outcome
        return Success(detail=f"removed {len(matches)} container(s) named '{name}'")


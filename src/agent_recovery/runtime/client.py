"""Container runtime contract shared by the probe, executor and controller.

Every potentially hanging operation takes an explicit timeout.  Operations
that a caller may want to escalate past (``stop``, ``kill``, ``remove``,
``start``) return an ``Outcome`` instead of raising on timeouts.  Transport
failures raise ``RuntimeClientError``; a vanished container raises
``ContainerNotFoundError`` so callers can tell the two apart.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from agent_recovery.models.recovery import Outcome
    from agent_recovery.models.runtime import (
        ContainerRef,
        ContainerSummary,
        RecreateSpec,
        RuntimeStatus,
    )


class RuntimeErrorKind(StrEnum):
    TRANSPORT = "transport"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


class RuntimeClientError(Exception):
    """A runtime call failed outright.

    Attributes:
        kind: Broad failure category.
        message: Human-readable description from the runtime.
    """

    def __init__(self, kind: RuntimeErrorKind, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")


class ContainerNotFoundError(RuntimeClientError):
    """The container no longer exists (for example removed out-of-band)."""

    def __init__(self, container_id: str) -> None:
        self.container_id = container_id
        super().__init__(RuntimeErrorKind.NOT_FOUND, f"container '{container_id}' not found")


def exact_name_pattern(name: str) -> str:
    """Return a name filter that matches exactly ``name``.

    Runtimes match the ``name`` filter as a regular expression, and some
    report names with a leading slash.
    """
    return f"^/?{re.escape(name)}$"


@runtime_checkable
class ContainerRuntimeClient(Protocol):
    """Thin interface over the container engine."""

    def list(self, name_pattern: str) -> list[ContainerSummary]:
        """Return containers (running or not) whose name matches the pattern.

        Returns an empty list when nothing matches.
        """
        ...

    def inspect_status(self, container_id: str) -> RuntimeStatus:
        """Inspect a container.

        Raises:
            ContainerNotFoundError: If the container no longer exists.
        """
        ...

    def exec_liveness(
        self, container_id: str, timeout: float, command: list[str] | None = None
    ) -> bool:
        """Run a trivial command inside the container.

        Returns ``False`` on any failure or timeout; never raises.
        """
        ...

    def stop(self, container_id: str, timeout: int) -> Outcome:
        """Gracefully stop; returns ``TimedOut`` if the runtime times out."""
        ...

    def kill(self, container_id: str, signal: str) -> Outcome: ...

    def remove(self, container_id: str, force: bool) -> Outcome: ...

    def start(self, container_id: str) -> Outcome: ...

    def run(self, spec: RecreateSpec) -> ContainerRef:
        """Create and start a new container from ``spec``."""
        ...

    def tail_logs(self, container_id: str, lines: int) -> list[str]:
        """Return the last ``lines`` log lines; ``[]`` when unavailable."""
        ...

    def resource_usage(self, container_id: str) -> dict[str, float]:
        """Best-effort CPU and memory snapshot of the container.

        Keys are ``cpu_percent``, ``memory_bytes``, ``memory_limit_bytes``
        and ``memory_percent``; any may be absent.  Returns ``{}`` when
        stats are unavailable; never raises.
        """
        ...

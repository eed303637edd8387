"""Shared pytest fixtures for the agent-recovery test suite."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_recovery.config import EscalationPolicy, RecoveryConfig, Settings
from agent_recovery.models.recovery import Outcome, Success
from agent_recovery.models.runtime import (
    ContainerRef,
    ContainerSummary,
    RecreateSpec,
    RuntimeStatus,
)
from agent_recovery.runtime.client import ContainerNotFoundError, exact_name_pattern

# Verbs that change container state; everything else only observes.
MUTATING_VERBS = frozenset({"stop", "kill", "remove", "start", "run"})

_BASE_TIME = datetime(2026, 1, 1, tzinfo=UTC)


@dataclass
class FakeContainer:
    """In-memory container state driven by FakeRuntimeClient operations."""

    id: str
    name: str
    running: bool = True
    responsive: bool = True
    agent_healthy: bool = True
    exit_code: int | None = None
    started_at: datetime | None = field(default_factory=lambda: _BASE_TIME)
    finished_at: datetime | None = None
    usage: dict[str, float] = field(default_factory=dict)


class FakeRuntimeClient:
    """Scriptable ContainerRuntimeClient that records every call.

    Default behaviour mimics Docker: ``stop`` exits 0, ``kill`` with SIGKILL
    exits 137, other signals leave the container running, ``remove`` deletes
    it and ``run`` creates a fresh running container.  ``script`` queues an
    outcome (or an exception to raise) for the next call of a verb, in which
    case no state changes.
    """

    def __init__(self, *containers: FakeContainer) -> None:
        self.containers: dict[str, FakeContainer] = {c.id: c for c in containers}
        self.calls: list[tuple[str, str]] = []
        self.recreated_responsive = True
        self.closed = False
        self._scripts: dict[str, list[object]] = {}
        self._ticks = 0
        self._created = 0

    # -- scripting ---------------------------------------------------------

    def script(self, verb: str, *results: object) -> None:
        self._scripts.setdefault(verb, []).extend(results)

    def _scripted(self, verb: str) -> object | None:
        queue = self._scripts.get(verb)
        if not queue:
            return None
        result = queue.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    @property
    def mutations(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] in MUTATING_VERBS]

    def _tick(self) -> datetime:
        self._ticks += 1
        return _BASE_TIME + timedelta(minutes=self._ticks)

    def _get(self, container_id: str) -> FakeContainer:
        try:
            return self.containers[container_id]
        except KeyError:
            raise ContainerNotFoundError(container_id) from None

    # -- observation -------------------------------------------------------

    def list(self, name_pattern: str) -> list[ContainerSummary]:
        self.calls.append(("list", name_pattern))
        scripted = self._scripted("list")
        if scripted is not None:
            return scripted  # type: ignore[return-value]
        return [
            ContainerSummary(
                id=c.id,
                name=c.name,
                running=c.running,
                exit_code=c.exit_code,
                started_at=c.started_at,
                finished_at=c.finished_at,
            )
            for c in self.containers.values()
            if re.search(name_pattern, c.name)
        ]

    def inspect_status(self, container_id: str) -> RuntimeStatus:
        self.calls.append(("inspect", container_id))
        self._scripted("inspect")
        c = self._get(container_id)
        return RuntimeStatus(
            running=c.running,
            exit_code=c.exit_code,
            started_at=c.started_at,
            finished_at=c.finished_at,
        )

    def exec_liveness(
        self, container_id: str, timeout: float, command: list[str] | None = None
    ) -> bool:
        self.calls.append(("exec", container_id))
        c = self.containers.get(container_id)
        if c is None or not c.running or not c.responsive:
            return False
        if command and command[0] != "echo":
            return c.agent_healthy
        return True

    def tail_logs(self, container_id: str, lines: int) -> list[str]:
        self.calls.append(("logs", container_id))
        return [f"log line {i}" for i in range(min(lines, 3))]

    def resource_usage(self, container_id: str) -> dict[str, float]:
        self.calls.append(("stats", container_id))
        c = self.containers.get(container_id)
        return dict(c.usage) if c is not None else {}

    def daemon_responsive(self) -> bool:
        return True

    def close(self) -> None:
        self.closed = True

    # -- mutation ----------------------------------------------------------

    def stop(self, container_id: str, timeout: int) -> Outcome:
        self.calls.append(("stop", container_id))
        c = self._get(container_id)
        scripted = self._scripted("stop")
        if scripted is not None:
            return scripted  # type: ignore[return-value]
        if c.running:
            c.running, c.exit_code, c.finished_at = False, 0, self._tick()
        return Success()

    def kill(self, container_id: str, signal: str) -> Outcome:
        self.calls.append(("kill", f"{container_id}:{signal}"))
        c = self._get(container_id)
        scripted = self._scripted("kill")
        if scripted is not None:
            return scripted  # type: ignore[return-value]
        if signal == "SIGKILL":
            c.running, c.exit_code, c.finished_at = False, 137, self._tick()
        return Success()

    def remove(self, container_id: str, force: bool) -> Outcome:
        self.calls.append(("remove", container_id))
        self._get(container_id)
        scripted = self._scripted("remove")
        if scripted is not None:
            return scripted  # type: ignore[return-value]
        del self.containers[container_id]
        return Success()

    def start(self, container_id: str) -> Outcome:
        self.calls.append(("start", container_id))
        c = self._get(container_id)
        scripted = self._scripted("start")
        if scripted is not None:
            return scripted  # type: ignore[return-value]
        c.running, c.started_at = True, self._tick()
        return Success()

    def run(self, spec: RecreateSpec) -> ContainerRef:
        self.calls.append(("run", spec.name))
        self._scripted("run")
        self._created += 1
        container = FakeContainer(
            id=f"recreated-{self._created}",
            name=spec.name,
            responsive=self.recreated_responsive,
            started_at=self._tick(),
        )
        self.containers[container.id] = container
        return ContainerRef(name_pattern=exact_name_pattern(spec.name), runtime_handle=container.id)


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recreate_spec() -> RecreateSpec:
    """Recreate spec modelled on the NAS deployment of the agent."""
    return RecreateSpec(
        name="dd-agent",
        image="gcr.io/datadoghq/agent:7",
        environment={"DD_API_KEY": "test-key", "DD_SITE": "datadoghq.com"},
        volumes={
            "/var/run/docker.sock": "/var/run/docker.sock:ro",
            "/proc/": "/host/proc/:ro",
        },
        cap_add=["SYS_ADMIN"],
        security_opt=["no-new-privileges"],
    )


@pytest.fixture
def settings() -> Settings:
    """Settings with the default policy and a short, predictable backoff."""
    return Settings(
        recovery=RecoveryConfig(max_attempts=8, deadline_seconds=600, backoff_seconds=[5, 15, 30]),
        policy=EscalationPolicy(),
    )


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    """Settings YAML with zero backoff, for CLI runs using real sleeps."""
    path = tmp_path / "settings.yaml"
    path.write_text("recovery:\n  max_attempts: 4\n  deadline_seconds: 60\n  backoff_seconds: [0]\n")
    return path

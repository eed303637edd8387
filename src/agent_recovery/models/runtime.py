"""Container runtime models: targets, listing entries, status, recreate specs."""

from datetime import datetime
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict


class ContainerRef(BaseModel):
    """Identifies the recovery target.

    ``runtime_handle`` is the container id resolved at controller start, or
    ``None`` when nothing matched the pattern at that point.
    """

    model_config = ConfigDict(frozen=True)

    name_pattern: str
    runtime_handle: str | None = None


class ContainerSummary(BaseModel):
    """One container returned by a runtime ``list`` call."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    image: str = ""
    running: bool
    status: str = ""
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RuntimeStatus(BaseModel):
    """Result of inspecting a single container."""

    model_config = ConfigDict(frozen=True)

    running: bool
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    pid: int | None = None


class RecreateSpec(BaseModel):
    """Everything needed to re-instantiate the agent container.

    Mirrors the ``docker run`` invocation used for the original deployment:
    host networking, read-only host mounts, a small capability set and
    ``no-new-privileges``.  ``volumes`` maps host paths to
    ``"container_path[:mode]"`` strings.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    environment: dict[str, str] = {}
    volumes: dict[str, str] = {}
    cap_add: list[str] = []
    security_opt: list[str] = []
    labels: dict[str, str] = {}
    network_mode: str | None = "host"
    restart_policy: str | None = "unless-stopped"
    command: list[str] | None = None

    @classmethod
    def from_yaml(cls, path: Path) -> "RecreateSpec":
        """Load a recreate spec from YAML, resolving ``$VAR`` references.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If a referenced environment variable is not set.
        """
        from agent_recovery.config import resolve_env_vars

        raw = yaml.safe_load(path.read_text())
        return cls.model_validate(resolve_env_vars(raw))
